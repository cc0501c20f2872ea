"""
Managed Wealth - NAV Sampler.

One sampling pass marks every RUNNING / MATURED subscription that
holds position rows and records one NAV snapshot per subscription
through the lifecycle (which serializes writers per subscription).
Marks that fall back are carried at the entry price and the
snapshot is flagged is_fallback_price.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from core.clock import ClockFactory, ClockProtocol, truncate_to_minute
from core.exceptions import ManagedWealthException
from database.engine import transaction_scope

from .config import NavConfig
from .lifecycle import SubscriptionLifecycle
from .models import ManagedSubscription, ManagedSubscriptionPosition
from .positions import SqlPositionBook
from .pricing import PriceLookup
from .types import PriceSource, SubscriptionStatus

logger = logging.getLogger(__name__)


@dataclass
class NavSampleStats:
    candidates: int = 0
    recorded: int = 0
    duplicate_ticks: int = 0
    fallback: int = 0
    errors: int = 0


class NavSampler:

    def __init__(
        self,
        session_factory: sessionmaker,
        lifecycle: SubscriptionLifecycle,
        prices: PriceLookup,
        positions: Optional[SqlPositionBook] = None,
        config: Optional[NavConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._session_factory = session_factory
        self._lifecycle = lifecycle
        self._prices = prices
        self._positions = positions or SqlPositionBook()
        self._config = config or NavConfig()
        self._clock = clock or ClockFactory.get_clock()

    def _candidates(self):
        with transaction_scope(self._session_factory) as session:
            has_rows = select(ManagedSubscriptionPosition.subscription_id).distinct()
            return list(
                session.scalars(
                    select(ManagedSubscription.id)
                    .where(ManagedSubscription.status.in_((SubscriptionStatus.RUNNING, SubscriptionStatus.MATURED)))
                    .where(ManagedSubscription.id.in_(has_rows))
                    .order_by(ManagedSubscription.id)
                    .limit(self._config.batch_size)
                )
            )

    async def run_once(self) -> NavSampleStats:
        stats = NavSampleStats()
        tick = truncate_to_minute(self._clock.now())
        candidates = self._candidates()
        stats.candidates = len(candidates)

        for subscription_id in candidates:
            try:
                await self._sample(subscription_id, tick, stats)
            except ManagedWealthException as e:
                stats.errors += 1
                logger.warning(f"NAV sample failed for {subscription_id}: {e.to_log_format()}")

        logger.info(
            f"NAV pass @ {tick.isoformat()}: candidates={stats.candidates} recorded={stats.recorded} "
            f"duplicates={stats.duplicate_ticks} fallback={stats.fallback} errors={stats.errors}"
        )
        return stats

    async def _sample(self, subscription_id: str, tick, stats: NavSampleStats) -> None:
        with transaction_scope(self._session_factory) as session:
            subscription = session.get(ManagedSubscription, subscription_id)
            principal = Decimal(subscription.principal)
            positions = self._positions.open_positions(session, subscription_id)

        marks: Dict[str, Decimal] = {}
        used_fallback = False
        for position in positions:
            quote = await self._prices.mark(position.token_id, fallback=position.avg_entry_price)
            marks[position.token_id] = quote.price
            used_fallback = used_fallback or quote.is_fallback

        with transaction_scope(self._session_factory) as session:
            equity = self._positions.mark_equity(session, subscription_id, principal, marks)

        snapshot = self._lifecycle.record_snapshot(
            subscription_id,
            equity,
            price_source=PriceSource.FALLBACK if used_fallback else PriceSource.MARK_TO_MARKET,
            is_fallback=used_fallback,
            at=tick,
        )
        if snapshot is None:
            stats.duplicate_ticks += 1
            return
        stats.recorded += 1
        if used_fallback:
            stats.fallback += 1
