"""
Managed Wealth - Reserve Ledger.

============================================================
PURPOSE
============================================================
Append-only ledger of reserve fund movements.

- DEPOSIT / TOPUP add to the balance
- WITHDRAW / GUARANTEE_PAYOUT subtract from it
- The balance is recomputed from the rows on every call;
  there is no cached running total to drift

============================================================
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from core.clock import ClockProtocol, ClockFactory
from core.exceptions import ValidationError
from database.engine import transaction_scope

from .models import ReserveFundLedger
from .types import ReserveEntryType

logger = logging.getLogger(__name__)


def fold_balance(totals_by_type: Dict[ReserveEntryType, Decimal]) -> Decimal:
    """Signed sum of per-type totals."""
    balance = Decimal("0")
    for entry_type, total in totals_by_type.items():
        balance += entry_type.sign * Decimal(total or 0)
    return balance


class ReserveLedger:
    """
    Reserve fund ledger service.

    Session-level methods participate in the caller's transaction
    (the coverage guard reads the balance inside its lock); the
    ``record``/``get_balance`` helpers open their own.
    """

    def __init__(self, session_factory: sessionmaker, clock: Optional[ClockProtocol] = None):
        self._session_factory = session_factory
        self._clock = clock or ClockFactory.get_clock()

    # ------------------------------------------------------------------
    # Session-level
    # ------------------------------------------------------------------

    def balance(self, session: Session) -> Decimal:
        rows = session.execute(
            select(ReserveFundLedger.entry_type, func.sum(ReserveFundLedger.amount))
            .group_by(ReserveFundLedger.entry_type)
        ).all()
        return fold_balance({entry_type: total for entry_type, total in rows})

    def append(
        self,
        session: Session,
        entry_type: ReserveEntryType,
        amount: Decimal,
        reference: Optional[str] = None,
        subscription_id: Optional[str] = None,
        recorded_at: Optional[datetime] = None,
    ) -> ReserveFundLedger:
        """
        Write one immutable entry.

        Raises:
            ValidationError: amount is not a positive finite number
        """
        amount = Decimal(amount)
        if not amount.is_finite() or amount <= 0:
            raise ValidationError(f"Reserve entry amount must be positive, got {amount}", field="amount")

        entry = ReserveFundLedger(
            entry_type=ReserveEntryType(entry_type),
            amount=amount,
            reference=reference,
            subscription_id=subscription_id,
            recorded_at=recorded_at or self._clock.now(),
        )
        session.add(entry)
        session.flush()

        logger.info(
            f"Reserve entry recorded: {entry.entry_type.value} {amount} "
            f"(subscription={subscription_id}, ref={reference})"
        )
        return entry

    def entries(self, session: Session, limit: int = 100) -> List[ReserveFundLedger]:
        return list(
            session.scalars(
                select(ReserveFundLedger)
                .order_by(ReserveFundLedger.recorded_at.desc(), ReserveFundLedger.id.desc())
                .limit(limit)
            )
        )

    # ------------------------------------------------------------------
    # Standalone
    # ------------------------------------------------------------------

    def get_balance(self) -> Decimal:
        with transaction_scope(self._session_factory) as session:
            return self.balance(session)

    def record(
        self,
        entry_type: ReserveEntryType,
        amount: Decimal,
        reference: Optional[str] = None,
    ) -> Decimal:
        """Append an entry in its own transaction and return the new balance."""
        with transaction_scope(self._session_factory) as session:
            self.append(session, entry_type, amount, reference=reference)
            return self.balance(session)
