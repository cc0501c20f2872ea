"""
Managed Wealth - Liquidation Worker.

============================================================
PURPOSE
============================================================
Drains due liquidation tasks.

FLOW (per claimed task):
1. Resolve subscription and execution account
2. Re-read the position (gone -> COMPLETED with zero fill)
3. Bounded best-bid lookup (fallback -> transient failure unless
   fallback execution is allowed)
4. Minimum notional check
5. Sell through the executor
6. Book the fill on the position and record it on the task,
   under the subscription lock

SAFETY:
- Claim-then-execute: a task is worked by one worker at a time
- Every task runs inside its own exception boundary; one bad
  task never stops the cycle or the loop
- Results are fenced by claim token

============================================================
"""

import asyncio
import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from core.clock import ClockFactory, ClockProtocol
from core.exceptions import LiquidationError, TerminalOperatorError
from database.engine import transaction_scope
from database.locks import locked_transaction, subscription_lock_key

from .alerting import TelegramAlerter, create_blocked_task_alert, create_worker_error_alert
from .executor import LiquidationExecutor, SellRequest
from .liquidation_queue import DUST_SHARES, ClaimedTask, LiquidationTaskQueue
from .models import ManagedLiquidationTask, ManagedSubscription
from .positions import SqlPositionBook
from .pricing import PriceLookup
from .types import CycleStats, LiquidationStatus

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class LiquidationWorker:
    """Async worker pool over the liquidation task queue."""

    def __init__(
        self,
        session_factory: sessionmaker,
        queue: LiquidationTaskQueue,
        prices: PriceLookup,
        executor: LiquidationExecutor,
        positions: Optional[SqlPositionBook] = None,
        alerter: Optional[TelegramAlerter] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._session_factory = session_factory
        self._queue = queue
        self._config = queue.config
        self._prices = prices
        self._executor = executor
        self._positions = positions or SqlPositionBook()
        self._alerter = alerter
        self._clock = clock or ClockFactory.get_clock()

    # ============================================================
    # CYCLE
    # ============================================================

    async def run_cycle(self) -> CycleStats:
        """Claim one batch of due tasks and work them concurrently."""
        stats = CycleStats()
        claimed = self._queue.claim_due(self._config.batch_size)
        stats.claimed = len(claimed)
        if not claimed:
            return stats

        semaphore = asyncio.Semaphore(self._config.concurrency)

        async def bounded(task: ClaimedTask) -> None:
            async with semaphore:
                await self._process_guarded(task, stats)

        await asyncio.gather(*(bounded(task) for task in claimed))
        logger.info(f"Liquidation cycle: {stats.to_dict()}")
        return stats

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None) -> None:
        stop_event = stop_event or asyncio.Event()
        logger.info(
            f"Liquidation worker started (interval={self._config.loop_interval_seconds}s, "
            f"concurrency={self._config.concurrency}, batch={self._config.batch_size})"
        )
        while not stop_event.is_set():
            try:
                await self.run_cycle()
            except SQLAlchemyError as e:
                logger.error(f"Liquidation cycle failed: {e}")
                await self._alert(create_worker_error_alert("liquidation_worker", str(e)))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._config.loop_interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Liquidation worker stopped")

    # ============================================================
    # PER TASK
    # ============================================================

    async def _process_guarded(self, task: ClaimedTask, stats: CycleStats) -> None:
        try:
            status = await self._process(task, stats)
        except Exception as e:
            logger.exception(f"Unhandled error on liquidation task {task.id}")
            status = self._record_failure(task, "UNHANDLED_EXECUTION_ERROR", f"{type(e).__name__}: {e}")
        self._count(stats, status)
        if status == LiquidationStatus.BLOCKED:
            await self._alert_blocked(task.id)

    async def _process(self, task: ClaimedTask, stats: CycleStats) -> Optional[LiquidationStatus]:
        with transaction_scope(self._session_factory) as session:
            subscription = session.get(ManagedSubscription, task.subscription_id)
            if subscription is None:
                return self._queue.record_missing_subscription(session, task.id, task.claim_token)
            execution_account = subscription.copy_config_id
            position = next(
                (p for p in self._positions.open_positions(session, task.subscription_id) if p.token_id == task.token_id),
                None,
            )

        if not execution_account:
            return self._record_failure(
                task, "MISSING_EXECUTION_ACCOUNT", "Subscription has no execution account binding", blocking=True
            )

        if position is None or position.shares <= DUST_SHARES:
            logger.info(f"Liquidation task {task.id}: position {task.token_id} already closed")
            with transaction_scope(self._session_factory) as session:
                return self._queue.record_fill(
                    session, task.id, task.claim_token, ZERO, Decimal(task.indicative_price or task.avg_entry_price), ZERO
                )

        shares = min(task.requested_shares, position.shares)
        fallback = Decimal(task.indicative_price) if task.indicative_price else task.avg_entry_price
        quote = await self._prices.best_bid(task.token_id, fallback=fallback)
        if quote.is_fallback and not self._config.allow_fallback_execution:
            return self._record_failure(
                task,
                quote.fallback_reason or "PRICE_UNAVAILABLE",
                f"No live bid for {task.token_id}; fallback {quote.price} not executable",
                indicative_price=quote.price,
                price_is_fallback=True,
            )

        notional = shares * quote.price
        if notional < self._config.min_order_notional_usd:
            return self._record_failure(
                task,
                "NOTIONAL_BELOW_MIN_ORDER",
                f"Notional {notional:.4f} below minimum {self._config.min_order_notional_usd}",
                indicative_price=quote.price,
                price_is_fallback=quote.is_fallback,
            )

        request = SellRequest(
            task_id=task.id,
            subscription_id=task.subscription_id,
            execution_account_id=execution_account,
            token_id=task.token_id,
            shares=shares,
            limit_price=quote.price,
            idempotency_key=f"{task.id}:{task.attempt_count}",
        )
        try:
            fill = await self._executor.sell(request)
        except LiquidationError as e:
            return self._record_failure(
                task,
                e.error_code,
                e.message,
                blocking=isinstance(e, TerminalOperatorError),
                indicative_price=quote.price,
                price_is_fallback=quote.is_fallback,
            )

        if fill.filled_shares <= ZERO:
            return self._record_failure(
                task, "ZERO_FILLED_SHARES", "Executor returned no filled shares", indicative_price=quote.price
            )

        filled = min(fill.filled_shares, shares)
        with locked_transaction(self._session_factory, [subscription_lock_key(task.subscription_id)]) as session:
            self._positions.apply_sell(
                session, task.subscription_id, task.token_id, filled, fill.avg_price, self._clock.now()
            )
            status = self._queue.record_fill(
                session,
                task.id,
                task.claim_token,
                filled,
                fill.avg_price,
                remaining_shares=task.requested_shares - filled,
                price_is_fallback=quote.is_fallback,
            )
        if status == LiquidationStatus.RETRYING:
            stats.partial += 1
        return status

    def _record_failure(self, task: ClaimedTask, code: str, message: str, **kwargs) -> Optional[LiquidationStatus]:
        try:
            with transaction_scope(self._session_factory) as session:
                return self._queue.record_failure(session, task.id, task.claim_token, code, message, **kwargs)
        except SQLAlchemyError as e:
            logger.error(f"Could not record failure {code} on task {task.id}: {e}")
            return None

    # ============================================================
    # HELPERS
    # ============================================================

    @staticmethod
    def _count(stats: CycleStats, status: Optional[LiquidationStatus]) -> None:
        if status is None:
            stats.fenced += 1
        elif status == LiquidationStatus.COMPLETED:
            stats.completed += 1
        elif status == LiquidationStatus.BLOCKED:
            stats.blocked += 1
        elif status == LiquidationStatus.FAILED:
            stats.failed += 1
        elif status == LiquidationStatus.RETRYING:
            stats.retried += 1

    async def _alert_blocked(self, task_id: str) -> None:
        if self._alerter is None:
            return
        with transaction_scope(self._session_factory) as session:
            task = session.get(ManagedLiquidationTask, task_id)
            alert = create_blocked_task_alert(
                task.id, task.subscription_id, task.token_id, task.error_code or "", task.error_message or ""
            )
        await self._alerter.send_alert(alert)

    async def _alert(self, alert) -> None:
        if self._alerter is not None:
            await self._alerter.send_alert(alert)
