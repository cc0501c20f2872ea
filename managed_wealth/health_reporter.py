"""
Managed Wealth - Ops Health Reporter.

============================================================
PURPOSE
============================================================
Composes one operational snapshot for the admin surface:

- reserve coverage per active guaranteed product
- allocation mapping (bound / unbound / stale unbound)
- liquidation backlog and ready-to-settle subscriptions
- liquidation task counts by status
- settlement / commission parity

Holds no state. Every scan is bounded by the caller's window and
limits. Also the single entry point for operator task mutations.

============================================================
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from core.clock import ClockFactory, ClockProtocol
from database.engine import transaction_scope

from .allocation_monitor import AllocationMappingMonitor
from .config import AuditConfig
from .coverage_guard import GuaranteeCoverageGuard
from .liquidation_queue import LiquidationTaskQueue
from .models import ManagedLiquidationTask, ManagedProduct, ManagedSubscription
from .parity_auditor import SettlementParityAuditor
from .staleness import flag_stale
from .types import (
    NON_TERMINAL_TASK_STATUSES,
    AllocationReport,
    LiquidationStatus,
    OperatorAction,
    OperatorActionResult,
    ParityReport,
    ReserveCoverage,
    StaleRecord,
    SubscriptionStatus,
    TaskSummary,
)

logger = logging.getLogger(__name__)


@dataclass
class ProductCoverage:
    product_id: str
    slug: str
    required_ratio: object
    coverage: ReserveCoverage

    @property
    def is_healthy(self) -> bool:
        return self.coverage.coverage_ratio >= self.required_ratio


@dataclass
class LiquidationBacklog:
    """Subscriptions in liquidation, split by whether tasks remain open."""

    inspected: int
    backlog: List[StaleRecord] = field(default_factory=list)
    ready_to_settle: int = 0


@dataclass
class HealthSnapshot:
    generated_at: datetime
    window_days: int
    coverage: List[ProductCoverage]
    allocation: AllocationReport
    liquidation: LiquidationBacklog
    tasks: TaskSummary
    parity: ParityReport

    @property
    def is_healthy(self) -> bool:
        return (
            all(c.is_healthy for c in self.coverage)
            and not self.allocation.stale_unmapped
            and self.tasks.by_status.get(LiquidationStatus.BLOCKED.value, 0) == 0
            and self.parity.is_clean
        )


class OpsHealthReporter:
    """Read-only aggregation over the guard, queue, auditor and monitor."""

    def __init__(
        self,
        session_factory: sessionmaker,
        guard: GuaranteeCoverageGuard,
        queue: LiquidationTaskQueue,
        auditor: SettlementParityAuditor,
        allocation: AllocationMappingMonitor,
        config: Optional[AuditConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._session_factory = session_factory
        self._guard = guard
        self._queue = queue
        self._auditor = auditor
        self._allocation = allocation
        self._config = config or AuditConfig()
        self._clock = clock or ClockFactory.get_clock()

    def snapshot(
        self,
        window_days: Optional[int] = None,
        liquidation_limit: Optional[int] = None,
        parity_limit: Optional[int] = None,
        stale_mapping_minutes: Optional[int] = None,
    ) -> HealthSnapshot:
        window_days = window_days or self._config.window_days
        liquidation_limit = min(
            max(1, liquidation_limit or self._config.liquidation_limit), self._config.max_liquidation_limit
        )

        with transaction_scope(self._session_factory) as session:
            coverage = self._coverage(session)
            liquidation = self._liquidation_backlog(session, liquidation_limit)
            tasks = self._queue.summary(session)

        allocation = self._allocation.scan(stale_mapping_minutes)
        parity = self._auditor.audit(window_days, parity_limit)

        snapshot = HealthSnapshot(
            generated_at=self._clock.now(),
            window_days=parity.window_days,
            coverage=coverage,
            allocation=allocation,
            liquidation=liquidation,
            tasks=tasks,
            parity=parity,
        )
        logger.info(
            f"Health snapshot: healthy={snapshot.is_healthy} backlog={len(liquidation.backlog)} "
            f"readyToSettle={liquidation.ready_to_settle} blocked={tasks.by_status.get('BLOCKED', 0)} "
            f"staleUnmapped={allocation.stale_unmapped_count}"
        )
        return snapshot

    def _coverage(self, session: Session) -> List[ProductCoverage]:
        products = session.scalars(
            select(ManagedProduct)
            .where(ManagedProduct.is_guaranteed.is_(True))
            .where(ManagedProduct.is_active.is_(True))
            .order_by(ManagedProduct.slug)
        )
        return [
            ProductCoverage(
                product_id=product.id,
                slug=product.slug,
                required_ratio=product.reserve_coverage_min,
                coverage=self._guard.current_coverage(session, product.id),
            )
            for product in products
        ]

    def _liquidation_backlog(self, session: Session, limit: int) -> LiquidationBacklog:
        open_counts: Dict[str, int] = dict(
            session.execute(
                select(ManagedLiquidationTask.subscription_id, func.count())
                .where(ManagedLiquidationTask.status.in_(NON_TERMINAL_TASK_STATUSES))
                .group_by(ManagedLiquidationTask.subscription_id)
            ).all()
        )
        exiting = list(
            session.scalars(
                select(ManagedSubscription)
                .where(ManagedSubscription.settled_at.is_(None))
                .where(
                    ManagedSubscription.liquidation_started_at.is_not(None)
                    | (ManagedSubscription.status == SubscriptionStatus.MATURED)
                )
                .order_by(ManagedSubscription.liquidation_started_at)
                .limit(limit)
            )
        )

        backlog = flag_stale(
            exiting,
            predicate=lambda s: open_counts.get(s.id, 0) > 0,
            threshold_minutes=0,
            now=self._clock.now(),
            age_from=lambda s: s.liquidation_started_at or s.matured_at,
            details=lambda s: {
                "walletAddress": s.wallet_address,
                "status": s.status.value,
                "openTasks": open_counts.get(s.id, 0),
            },
        )
        ready = sum(1 for s in exiting if open_counts.get(s.id, 0) == 0)
        return LiquidationBacklog(
            inspected=len(exiting),
            backlog=backlog[: self._config.max_items],
            ready_to_settle=ready,
        )

    # ------------------------------------------------------------------
    # Admin pass-throughs
    # ------------------------------------------------------------------

    def list_tasks(
        self,
        statuses: Optional[Sequence[LiquidationStatus]] = None,
        subscription_id: Optional[str] = None,
        wallet_address: Optional[str] = None,
        due_only: bool = False,
        limit: int = 100,
    ) -> Tuple[List[ManagedLiquidationTask], TaskSummary]:
        return self._queue.list_tasks(statuses, subscription_id, wallet_address, due_only, limit)

    def apply_operator_action(
        self,
        action: OperatorAction,
        task_ids: Sequence[str],
        delay_seconds: int = 0,
        reason: Optional[str] = None,
        actor: str = "admin",
    ) -> OperatorActionResult:
        return self._queue.apply_operator_action(action, task_ids, delay_seconds, reason, actor)
