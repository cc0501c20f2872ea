"""
Database Package Initialization.

============================================================
MANAGED WEALTH PERSISTENCE LAYER
============================================================

Engine/session management, the declarative base shared by all
managed wealth models, transaction scopes and keyed locks.

REQUIRED:
- All transactions are explicit with commit/rollback
- Every failure propagates to the caller
- Critical sections hold their locks until commit

============================================================
"""

from .engine import (
    Base,
    UTCDateTime,
    create_database_engine,
    create_session_factory,
    get_engine,
    get_session_factory,
    initialize_database,
    transaction_scope,
)
from .locks import (
    locked_transaction,
    product_lock_key,
    subscription_lock_key,
    wallet_lock_key,
)

__all__ = [
    "Base",
    "UTCDateTime",
    "create_database_engine",
    "create_session_factory",
    "get_engine",
    "get_session_factory",
    "initialize_database",
    "transaction_scope",
    "locked_transaction",
    "product_lock_key",
    "subscription_lock_key",
    "wallet_lock_key",
]
