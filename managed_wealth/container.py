"""
Managed Wealth - Service Container.

Wires the control plane's services over one session factory and
one clock. The API, the scheduler and the worker all build their
services through create_container().
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import sessionmaker

from core.clock import ClockFactory, ClockProtocol
from database.engine import get_session_factory

from .alerting import TelegramAlerter
from .allocation_monitor import AllocationMappingMonitor
from .commission import CommissionHandoff, ProfitFeeDistributor
from .config import ManagedWealthConfig
from .coverage_guard import GuaranteeCoverageGuard
from .executor import LiquidationExecutor, PaperLiquidationExecutor
from .health_reporter import OpsHealthReporter
from .lifecycle import SubscriptionLifecycle
from .liquidation_queue import LiquidationTaskQueue
from .liquidation_worker import LiquidationWorker
from .nav_sampler import NavSampler
from .parity_auditor import SettlementParityAuditor
from .positions import SqlPositionBook
from .pricing import ClobPriceSource, MarketPriceSource, PriceLookup
from .reserve_ledger import ReserveLedger

logger = logging.getLogger(__name__)


@dataclass
class ManagedWealthContainer:
    config: ManagedWealthConfig
    session_factory: sessionmaker
    clock: ClockProtocol
    ledger: ReserveLedger
    guard: GuaranteeCoverageGuard
    queue: LiquidationTaskQueue
    positions: SqlPositionBook
    lifecycle: SubscriptionLifecycle
    auditor: SettlementParityAuditor
    allocation: AllocationMappingMonitor
    health: OpsHealthReporter
    prices: PriceLookup
    alerter: TelegramAlerter
    worker: LiquidationWorker
    nav_sampler: NavSampler


def create_container(
    config: Optional[ManagedWealthConfig] = None,
    session_factory: Optional[sessionmaker] = None,
    clock: Optional[ClockProtocol] = None,
    price_source: Optional[MarketPriceSource] = None,
    executor: Optional[LiquidationExecutor] = None,
    distributor: Optional[ProfitFeeDistributor] = None,
) -> ManagedWealthContainer:
    """
    Build all services.

    Without an explicit executor the paper executor is used; a live
    executor must be supplied by the caller.
    """
    config = config or ManagedWealthConfig.from_env()
    session_factory = session_factory or get_session_factory()
    clock = clock or ClockFactory.get_clock()

    ledger = ReserveLedger(session_factory, clock)
    guard = GuaranteeCoverageGuard(ledger, config.reserve)
    queue = LiquidationTaskQueue(session_factory, config.liquidation, clock)
    positions = SqlPositionBook()
    commission = CommissionHandoff(session_factory, distributor, clock) if distributor else None
    lifecycle = SubscriptionLifecycle(
        session_factory,
        config,
        guard,
        ledger,
        queue,
        positions=positions,
        commission=commission,
        clock=clock,
    )
    auditor = SettlementParityAuditor(session_factory, config.audit, clock)
    allocation = AllocationMappingMonitor(session_factory, config.audit, clock)
    health = OpsHealthReporter(session_factory, guard, queue, auditor, allocation, config.audit, clock)
    prices = PriceLookup(price_source or ClobPriceSource(config.pricing), config.pricing, clock)
    alerter = TelegramAlerter(config.alerting, clock)

    if executor is None:
        if not config.dry_run:
            logger.warning("No liquidation executor supplied, falling back to paper execution")
        executor = PaperLiquidationExecutor()

    worker = LiquidationWorker(session_factory, queue, prices, executor, positions, alerter, clock)
    nav_sampler = NavSampler(session_factory, lifecycle, prices, positions, config.nav, clock)

    return ManagedWealthContainer(
        config=config,
        session_factory=session_factory,
        clock=clock,
        ledger=ledger,
        guard=guard,
        queue=queue,
        positions=positions,
        lifecycle=lifecycle,
        auditor=auditor,
        allocation=allocation,
        health=health,
        prices=prices,
        alerter=alerter,
        worker=worker,
        nav_sampler=nav_sampler,
    )
