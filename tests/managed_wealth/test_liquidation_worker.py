"""
Tests for the liquidation worker.

============================================================
PURPOSE
============================================================
1. Happy path sell and position bookkeeping
2. Price lookup fallbacks (no bid, timeout)
3. Blocking conditions (no account, dust notional, funds)
4. Partial fills and executor errors
5. Single execution per task across workers

============================================================
"""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def liquidating(container, guaranteed_product, make_subscription, add_position):
    """Factory: subscription with one position, liquidation enqueued."""

    def _make(shares="100", price="0.50", copy_config_id="copy-1"):
        product, term = guaranteed_product
        subscription = make_subscription(product, term, copy_config_id=copy_config_id)
        add_position(subscription.id, token_id="token-yes", shares=shares, price=price)
        container.lifecycle.transition_to_liquidating(subscription.id)
        tasks, _ = container.queue.list_tasks(subscription_id=subscription.id)
        return subscription, tasks[0].id

    return _make


@pytest.fixture
def make_worker(container):
    """Factory: worker over the shared queue with a custom executor."""
    from managed_wealth.liquidation_worker import LiquidationWorker

    def _make(executor):
        return LiquidationWorker(
            container.session_factory,
            container.queue,
            container.prices,
            executor,
            container.positions,
            container.alerter,
            container.clock,
        )

    return _make


def _task(container, task_id):
    from database.engine import transaction_scope
    from managed_wealth.models import ManagedLiquidationTask

    with transaction_scope(container.session_factory) as session:
        return session.get(ManagedLiquidationTask, task_id)


def _open_shares(container, subscription_id):
    from database.engine import transaction_scope

    with transaction_scope(container.session_factory) as session:
        return sum((p.shares for p in container.positions.open_positions(session, subscription_id)), Decimal("0"))


# ============================================================
# HAPPY PATH
# ============================================================

class TestLiquidationWorkerFills:
    """Successful sells."""

    @pytest.mark.asyncio
    async def test_sells_position_at_best_bid(self, container, liquidating, executor, price_source):
        """Full fill at the live bid completes the task and closes the position."""
        from database.engine import transaction_scope
        from managed_wealth.types import LiquidationStatus

        subscription, task_id = liquidating()

        stats = await container.worker.run_cycle()

        assert stats.claimed == 1
        assert stats.completed == 1
        assert _task(container, task_id).status == LiquidationStatus.COMPLETED
        assert _open_shares(container, subscription.id) == Decimal("0")
        with transaction_scope(container.session_factory) as session:
            assert container.positions.realized_pnl(session, subscription.id) == Decimal("10")

        price_source.best_bid.assert_awaited_once_with("token-yes")
        order = next(iter(executor.orders.values()))
        assert order.execution_account_id == "copy-1"
        assert order.limit_price == Decimal("0.60")
        assert order.idempotency_key == f"{task_id}:0"

    @pytest.mark.asyncio
    async def test_partial_fill_retries_remainder(self, container, liquidating, make_worker):
        """40% fill: position reduced, task RETRYING for the rest."""
        from managed_wealth.executor import PaperExecutorConfig, PaperLiquidationExecutor
        from managed_wealth.types import LiquidationStatus

        subscription, task_id = liquidating()
        worker = make_worker(PaperLiquidationExecutor(PaperExecutorConfig(fill_ratio=Decimal("0.4"))))

        stats = await worker.run_cycle()

        task = _task(container, task_id)
        assert stats.partial == 1
        assert task.status == LiquidationStatus.RETRYING
        assert task.requested_shares == Decimal("60")
        assert task.attempt_count == 0
        assert _open_shares(container, subscription.id) == Decimal("60")

    @pytest.mark.asyncio
    async def test_closed_position_completes_without_selling(self, container, liquidating, executor):
        """A position already flat when the task runs is completed with no order."""
        from database.engine import transaction_scope
        from managed_wealth.types import LiquidationStatus

        subscription, task_id = liquidating()
        with transaction_scope(container.session_factory) as session:
            container.positions.apply_sell(
                session, subscription.id, "token-yes", Decimal("100"), Decimal("0.55"), container.clock.now()
            )

        stats = await container.worker.run_cycle()

        assert stats.completed == 1
        assert executor.orders == {}
        assert _task(container, task_id).status == LiquidationStatus.COMPLETED


# ============================================================
# FAILURES
# ============================================================

class TestLiquidationWorkerFailures:
    """Price, account and executor failures."""

    @pytest.mark.asyncio
    async def test_no_bid_is_retried_with_fallback_price(self, container, liquidating, price_source, executor):
        """An empty book yields NO_BID_LIQUIDITY and stores the fallback indicative price."""
        from managed_wealth.types import LiquidationStatus

        _, task_id = liquidating()
        price_source.best_bid = AsyncMock(return_value=None)

        stats = await container.worker.run_cycle()

        task = _task(container, task_id)
        assert stats.retried == 1
        assert task.status == LiquidationStatus.RETRYING
        assert task.error_code == "NO_BID_LIQUIDITY"
        assert task.indicative_price_is_fallback is True
        assert task.indicative_price == Decimal("0.5")
        assert executor.orders == {}

    @pytest.mark.asyncio
    async def test_price_timeout_is_price_unavailable(self, container, liquidating, price_source):
        """A lookup that exceeds the timeout is PRICE_UNAVAILABLE."""

        async def slow_bid(token_id):
            await asyncio.sleep(5)
            return Decimal("0.6")

        _, task_id = liquidating()
        price_source.best_bid = slow_bid

        await container.worker.run_cycle()

        assert _task(container, task_id).error_code == "PRICE_UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_missing_execution_account_blocks_and_alerts(self, container, liquidating):
        """No copy config binding blocks the task and raises an operator alert."""
        from managed_wealth.alerting import AlertType
        from managed_wealth.types import LiquidationStatus

        _, task_id = liquidating(copy_config_id=None)

        stats = await container.worker.run_cycle()

        assert stats.blocked == 1
        task = _task(container, task_id)
        assert task.status == LiquidationStatus.BLOCKED
        assert task.error_code == "MISSING_EXECUTION_ACCOUNT"
        alerts = container.alerter.get_history()
        assert [a.alert_type for a in alerts] == [AlertType.LIQUIDATION_BLOCKED]

    @pytest.mark.asyncio
    async def test_dust_notional_blocks(self, container, liquidating):
        """1 share at 0.60 is below the 1 USD minimum order."""
        from managed_wealth.types import LiquidationStatus

        _, task_id = liquidating(shares="1")

        await container.worker.run_cycle()

        task = _task(container, task_id)
        assert task.status == LiquidationStatus.BLOCKED
        assert task.error_code == "NOTIONAL_BELOW_MIN_ORDER"

    @pytest.mark.asyncio
    async def test_insufficient_funds_blocks(self, container, liquidating, make_worker):
        from managed_wealth.executor import PaperExecutorConfig, PaperLiquidationExecutor
        from managed_wealth.types import LiquidationStatus

        _, task_id = liquidating()
        worker = make_worker(PaperLiquidationExecutor(PaperExecutorConfig(blocked_accounts=["copy-1"])))

        await worker.run_cycle()

        task = _task(container, task_id)
        assert task.status == LiquidationStatus.BLOCKED
        assert task.error_code == "INSUFFICIENT_FUNDS"

    @pytest.mark.asyncio
    async def test_transient_executor_error_is_retried(self, container, liquidating, make_worker):
        from managed_wealth.executor import PaperExecutorConfig, PaperLiquidationExecutor
        from managed_wealth.types import LiquidationStatus

        _, task_id = liquidating()
        worker = make_worker(PaperLiquidationExecutor(PaperExecutorConfig(fail_with="EXECUTION_FAILED")))

        stats = await worker.run_cycle()

        task = _task(container, task_id)
        assert stats.retried == 1
        assert task.status == LiquidationStatus.RETRYING
        assert task.attempt_count == 1
        assert _open_shares(container, task.subscription_id) == Decimal("100")

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_recorded(self, container, liquidating, make_worker):
        """An executor crash is recorded as UNHANDLED_EXECUTION_ERROR, not raised."""
        from managed_wealth.types import LiquidationStatus

        _, task_id = liquidating()
        broken = AsyncMock()
        broken.sell = AsyncMock(side_effect=RuntimeError("venue exploded"))

        await make_worker(broken).run_cycle()

        task = _task(container, task_id)
        assert task.status == LiquidationStatus.RETRYING
        assert task.error_code == "UNHANDLED_EXECUTION_ERROR"
        assert "venue exploded" in task.error_message

    @pytest.mark.asyncio
    async def test_zero_fill_is_retried(self, container, liquidating, make_worker):
        from managed_wealth.executor import PaperExecutorConfig, PaperLiquidationExecutor

        _, task_id = liquidating()
        worker = make_worker(PaperLiquidationExecutor(PaperExecutorConfig(fill_ratio=Decimal("0"))))

        await worker.run_cycle()

        assert _task(container, task_id).error_code == "ZERO_FILLED_SHARES"


# ============================================================
# CONCURRENCY
# ============================================================

class TestLiquidationWorkerConcurrency:

    @pytest.mark.asyncio
    async def test_two_workers_execute_a_task_once(self, container, liquidating, make_worker, executor):
        """Concurrent cycles share one queue; each task is sold exactly once."""
        liquidating()
        liquidating()
        other = make_worker(executor)

        first, second = await asyncio.gather(container.worker.run_cycle(), other.run_cycle())

        assert first.claimed + second.claimed == 2
        assert len(executor.orders) == 2
        assert first.completed + second.completed == 2

    @pytest.mark.asyncio
    async def test_empty_queue_is_a_no_op(self, container):
        stats = await container.worker.run_cycle()
        assert stats.to_dict() == {
            "claimed": 0, "completed": 0, "partial": 0, "retried": 0,
            "blocked": 0, "failed": 0, "fenced": 0,
        }
