"""
Managed Wealth - Allocation Mapping Monitor.

A subscription is in execution scope once RUNNING (and while
MATURED, until it settles); it is mapped once bound to an execution
account (copy_config_id). In-scope, unmapped subscriptions older than
the threshold are reported individually.

Counts are aggregated in SQL; only the oldest ``limit`` stale rows
are loaded.
"""

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import sessionmaker

from core.clock import ClockFactory, ClockProtocol
from database.engine import transaction_scope

from .config import AuditConfig
from .models import ManagedSubscription
from .staleness import flag_stale
from .types import AllocationReport, SubscriptionStatus

logger = logging.getLogger(__name__)

EXECUTION_SCOPE_STATUSES = (SubscriptionStatus.RUNNING, SubscriptionStatus.MATURED)


def _in_scope(query):
    return (
        query.where(ManagedSubscription.status.in_(EXECUTION_SCOPE_STATUSES))
        .where(ManagedSubscription.settled_at.is_(None))
    )


def _unmapped_clause():
    return or_(ManagedSubscription.copy_config_id.is_(None), ManagedSubscription.copy_config_id == "")


class AllocationMappingMonitor:

    def __init__(
        self,
        session_factory: sessionmaker,
        config: Optional[AuditConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._session_factory = session_factory
        self._config = config or AuditConfig()
        self._clock = clock or ClockFactory.get_clock()

    def scan(self, stale_mapping_minutes: Optional[int] = None, limit: Optional[int] = None) -> AllocationReport:
        threshold = stale_mapping_minutes if stale_mapping_minutes is not None else self._config.stale_mapping_minutes
        limit = limit or self._config.max_items
        now = self._clock.now()
        cutoff = now - timedelta(minutes=threshold)

        by_status = {status.value: 0 for status in EXECUTION_SCOPE_STATUSES}
        unmapped = 0
        with transaction_scope(self._session_factory) as session:
            is_unmapped = _unmapped_clause().label("is_unmapped")
            rows = session.execute(
                _in_scope(select(ManagedSubscription.status, is_unmapped, func.count()))
                .group_by(ManagedSubscription.status, is_unmapped)
            )
            for status, row_unmapped, count in rows:
                by_status[status.value] += count
                if row_unmapped:
                    unmapped += count

            stale_total = session.scalar(
                _in_scope(select(func.count()).select_from(ManagedSubscription))
                .where(_unmapped_clause())
                .where(ManagedSubscription.created_at <= cutoff)
            ) or 0
            candidates = list(
                session.scalars(
                    _in_scope(select(ManagedSubscription))
                    .where(_unmapped_clause())
                    .where(ManagedSubscription.created_at <= cutoff)
                    .order_by(ManagedSubscription.created_at)
                    .limit(limit)
                )
            )

        stale = flag_stale(
            candidates,
            predicate=lambda s: True,
            threshold_minutes=threshold,
            now=now,
            age_from=lambda s: s.created_at,
            details=lambda s: {"walletAddress": s.wallet_address, "status": s.status.value},
        )
        if stale_total:
            logger.warning(f"{stale_total} subscription(s) unmapped for more than {threshold} minutes")

        return AllocationReport(
            mapped_count=sum(by_status.values()) - unmapped,
            unmapped_count=unmapped,
            stale_unmapped=stale,
            stale_unmapped_count=stale_total,
            by_status=by_status,
            stale_mapping_minutes=threshold,
        )
