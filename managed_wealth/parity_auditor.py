"""
Managed Wealth - Settlement Parity Auditor.

============================================================
PURPOSE
============================================================
Reconciles settlements against the commission system's profit
fee postings.

For every settlement in the trailing window with gross PnL > 0:
- no posting for its trade id           -> missing
- |Σ posted fee - expectedFee| > epsilon -> fee mismatch (signed drift)

Detection only: never writes to either ledger. A record that
cannot be evaluated is reported under errors and the scan goes on.

============================================================
"""

import logging
from collections import defaultdict
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from core.clock import ClockFactory, ClockProtocol
from database.engine import transaction_scope

from .config import AuditConfig
from .models import ManagedSettlement, ProfitFeeLog
from .types import ParityFinding, ParityReport

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class SettlementParityAuditor:
    """Read-only settlement/commission reconciliation."""

    def __init__(
        self,
        session_factory: sessionmaker,
        config: Optional[AuditConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._session_factory = session_factory
        self._config = config or AuditConfig()
        self._clock = clock or ClockFactory.get_clock()

    def audit(self, window_days: Optional[int] = None, limit: Optional[int] = None) -> ParityReport:
        """
        Audit settlements settled within the last ``window_days``.

        Args:
            window_days: Trailing window, clamped to [1, max_window_days]
            limit: Settlements scanned, clamped to [1, max_parity_limit]
        """
        window_days = min(max(1, window_days or self._config.window_days), self._config.max_window_days)
        limit = min(max(1, limit or self._config.parity_limit), self._config.max_parity_limit)
        since = self._clock.now() - timedelta(days=window_days)

        with transaction_scope(self._session_factory) as session:
            settlements = list(
                session.scalars(
                    select(ManagedSettlement)
                    .where(ManagedSettlement.settled_at >= since)
                    .order_by(ManagedSettlement.settled_at.desc())
                    .limit(limit)
                )
            )
            profitable = [s for s in settlements if Decimal(s.gross_pnl) > ZERO]
            postings = self._postings_by_trade(session, profitable)

            report = ParityReport(
                window_days=window_days,
                checked_settlements=len(settlements),
                profitable_settlements=len(profitable),
                missing=[],
                fee_mismatches=[],
            )
            for settlement in profitable:
                try:
                    self._check(settlement, postings, report)
                except (InvalidOperation, TypeError, ValueError) as e:
                    logger.warning(f"Parity check failed for settlement {settlement.id}: {e}")
                    report.errors.append({"settlementId": settlement.id, "error": str(e)})

        log = logger.info if report.is_clean else logger.warning
        log(
            f"Parity audit ({window_days}d): checked={report.checked_settlements} "
            f"profitable={report.profitable_settlements} missing={len(report.missing)} "
            f"mismatched={len(report.fee_mismatches)} errors={len(report.errors)}"
        )
        return report

    def _postings_by_trade(self, session: Session, settlements: List[ManagedSettlement]) -> Dict[str, List[ProfitFeeLog]]:
        trade_ids = [s.trade_id for s in settlements]
        postings: Dict[str, List[ProfitFeeLog]] = defaultdict(list)
        if not trade_ids:
            return postings
        for row in session.scalars(select(ProfitFeeLog).where(ProfitFeeLog.trade_id.in_(trade_ids))):
            postings[row.trade_id].append(row)
        return postings

    def _check(
        self,
        settlement: ManagedSettlement,
        postings: Dict[str, List[ProfitFeeLog]],
        report: ParityReport,
    ) -> None:
        matches = [
            p
            for p in postings.get(settlement.trade_id, [])
            if p.subscription_id is None or p.subscription_id == settlement.subscription_id
        ]
        finding = ParityFinding(
            settlement_id=settlement.id,
            subscription_id=settlement.subscription_id,
            wallet_address=settlement.wallet_address,
            trade_id=settlement.trade_id,
            gross_pnl=Decimal(settlement.gross_pnl),
            expected_fee=Decimal(settlement.expected_fee),
            settled_at=settlement.settled_at,
        )
        if not matches:
            report.missing.append(finding)
            return

        actual = sum((Decimal(p.fee_amount) for p in matches), ZERO)
        drift = actual - finding.expected_fee
        if abs(drift) > self._config.fee_epsilon:
            finding.actual_fee = actual
            finding.drift = drift
            report.fee_mismatches.append(finding)
