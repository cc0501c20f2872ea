"""
Database Persistence Layer - Keyed Locks.

============================================================
PURPOSE
============================================================
Serializes check-then-act critical sections (coverage check
plus insert, trial/referral grant, NAV writes, liquidation
transition, settlement) per logical key.

Two layers:
- In-process mutex per key, acquired in sorted key order
- PostgreSQL transaction-scoped advisory lock per key so other
  processes are serialized as well; released at commit/rollback

============================================================
"""

import logging
import threading
from contextlib import ExitStack, contextmanager
from typing import Dict, Generator, Iterable, Optional

from sqlalchemy import text
from sqlalchemy.orm import Session, sessionmaker

from .engine import transaction_scope

logger = logging.getLogger(__name__)


class KeyedMutex:
    """Registry of one re-entrant lock per key."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock


_process_locks = KeyedMutex()


def acquire_advisory_locks(session: Session, keys: Iterable[str]) -> None:
    """Take transaction-scoped advisory locks (PostgreSQL only)."""
    if session.get_bind().dialect.name != "postgresql":
        return
    for key in keys:
        session.execute(
            text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
            {"key": key},
        )


@contextmanager
def locked_transaction(
    session_factory: sessionmaker,
    keys: Iterable[str],
    mutex: Optional[KeyedMutex] = None,
) -> Generator[Session, None, None]:
    """
    Open a transaction that holds every lock in ``keys`` until it ends.

    Usage:
        with locked_transaction(factory, [product_lock_key(pid)]) as session:
            guard.check_or_raise(session, ...)
            session.add(subscription)
    """
    ordered = sorted(set(keys))
    registry = mutex or _process_locks

    with ExitStack() as stack:
        for key in ordered:
            stack.enter_context(registry.lock_for(key))
        with transaction_scope(session_factory) as session:
            acquire_advisory_locks(session, ordered)
            logger.debug(f"Locks acquired: {ordered}")
            yield session


# =============================================================
# LOCK KEYS
# =============================================================

GLOBAL_GUARANTEE_KEY = "managed_wealth:guaranteed:global"


def product_lock_key(product_id: str) -> str:
    return f"managed_wealth:guaranteed:{product_id}"


def wallet_lock_key(wallet_address: str) -> str:
    return f"managed_wealth:wallet:{wallet_address.lower()}"


def subscription_lock_key(subscription_id: str) -> str:
    return f"managed_wealth:subscription:{subscription_id}"


__all__ = [
    "KeyedMutex",
    "acquire_advisory_locks",
    "locked_transaction",
    "GLOBAL_GUARANTEE_KEY",
    "product_lock_key",
    "wallet_lock_key",
    "subscription_lock_key",
]
