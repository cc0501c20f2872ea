"""
Managed Wealth - Profit Fee Hand-off.

============================================================
PURPOSE
============================================================
After a settlement with positive gross PnL is committed, hands
the profit fee to the external commission system.

Claim-then-execute on the settlement's commission_status:
    PENDING ──claim──► PROCESSING ──► COMPLETED | FAILED
Non-profitable settlements are written as SKIPPED and never
handed off. A settlement whose claim is lost to another process
is left alone.

============================================================
"""

import logging
from decimal import Decimal
from typing import Optional, Protocol

from sqlalchemy import update
from sqlalchemy.orm import sessionmaker

from core.clock import ClockFactory, ClockProtocol
from database.engine import transaction_scope

from .models import ManagedSettlement
from .types import CommissionStatus

logger = logging.getLogger(__name__)


class ProfitFeeDistributor(Protocol):
    """External commission system entry point."""

    def distribute(self, wallet_address: str, gross_pnl: Decimal, trade_id: str) -> Optional[Decimal]:
        """Post the fee; returns the fee actually charged when known."""
        ...


class CommissionHandoff:
    """Drives one settlement's commission_status."""

    def __init__(
        self,
        session_factory: sessionmaker,
        distributor: ProfitFeeDistributor,
        clock: Optional[ClockProtocol] = None,
    ):
        self._session_factory = session_factory
        self._distributor = distributor
        self._clock = clock or ClockFactory.get_clock()

    def _claim(self, settlement_id: str) -> Optional[ManagedSettlement]:
        with transaction_scope(self._session_factory) as session:
            result = session.execute(
                update(ManagedSettlement)
                .where(ManagedSettlement.id == settlement_id)
                .where(ManagedSettlement.commission_status == CommissionStatus.PENDING)
                .values(commission_status=CommissionStatus.PROCESSING)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            return session.get(ManagedSettlement, settlement_id, populate_existing=True)

    def _finish(self, settlement_id: str, status: CommissionStatus, actual_fee=None, error=None) -> None:
        with transaction_scope(self._session_factory) as session:
            settlement = session.get(ManagedSettlement, settlement_id)
            settlement.commission_status = status
            settlement.commission_error = error
            if actual_fee is not None:
                settlement.actual_fee = actual_fee

    def hand_off(self, settlement_id: str) -> CommissionStatus:
        settlement = self._claim(settlement_id)
        if settlement is None:
            logger.info(f"Commission for settlement {settlement_id} not pending, skipping")
            with transaction_scope(self._session_factory) as session:
                current = session.get(ManagedSettlement, settlement_id)
                return current.commission_status if current else CommissionStatus.SKIPPED

        try:
            actual_fee = self._distributor.distribute(
                settlement.wallet_address,
                Decimal(settlement.gross_pnl),
                settlement.trade_id,
            )
        except Exception as e:
            logger.error(f"Profit fee distribution failed for {settlement.trade_id}: {e}")
            self._finish(settlement_id, CommissionStatus.FAILED, error=str(e)[:1000])
            return CommissionStatus.FAILED

        self._finish(settlement_id, CommissionStatus.COMPLETED, actual_fee=actual_fee)
        logger.info(f"Profit fee distributed for {settlement.trade_id} (fee={actual_fee})")
        return CommissionStatus.COMPLETED
