"""
Tests for the liquidation task queue.

============================================================
PURPOSE
============================================================
1. Backoff schedule
2. Claiming and claim fencing
3. Attempt results (fill, partial fill, failure outcomes)
4. Operator actions (retry / requeue / fail)
5. Filtered listing and summary counts

============================================================
"""

from datetime import timedelta
from decimal import Decimal

import pytest


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def queue(container):
    return container.queue


@pytest.fixture
def task_id(container, guaranteed_product, make_subscription, add_position):
    """One PENDING task for a 100-share position."""
    product, term = guaranteed_product
    subscription = make_subscription(product, term)
    add_position(subscription.id, shares="100", price="0.50")
    container.lifecycle.transition_to_liquidating(subscription.id)
    tasks, _ = container.queue.list_tasks(subscription_id=subscription.id)
    return tasks[0].id


def _load_task(session_factory, task_id):
    from database.engine import transaction_scope
    from managed_wealth.models import ManagedLiquidationTask

    with transaction_scope(session_factory) as session:
        return session.get(ManagedLiquidationTask, task_id)


def _fail(queue, session_factory, code="EXECUTION_FAILED", **kwargs):
    """Claim the due task and record one failure; returns the new status."""
    from database.engine import transaction_scope

    claimed = queue.claim_due()
    assert len(claimed) == 1
    with transaction_scope(session_factory) as session:
        return queue.record_failure(session, claimed[0].id, claimed[0].claim_token, code, "boom", **kwargs)


# ============================================================
# BACKOFF TESTS
# ============================================================

class TestBackoff:
    """base * 2^(n-1), capped."""

    @pytest.mark.parametrize("attempts,expected", [(0, 60), (1, 60), (2, 120), (3, 240), (5, 960), (6, 1800), (20, 1800)])
    def test_backoff_schedule(self, queue, attempts, expected):
        assert queue.backoff_seconds(attempts) == expected


# ============================================================
# CLAIM TESTS
# ============================================================

class TestClaim:
    """Claims are exclusive and fenced by the claim token."""

    def test_claimed_task_is_not_claimed_twice(self, queue, task_id):
        """A leased task is invisible to the next claim."""
        first = queue.claim_due()
        second = queue.claim_due()

        assert [t.id for t in first] == [task_id]
        assert second == []

    def test_expired_lease_fences_the_old_claim(self, queue, task_id, session_factory, clock):
        """After the lease expires a new claim wins and the stale result is dropped."""
        from database.engine import transaction_scope
        from managed_wealth.types import LiquidationStatus

        stale = queue.claim_due()[0]
        clock.advance(seconds=queue.config.claim_lease_seconds + 1)
        fresh = queue.claim_due()[0]
        assert fresh.claim_token != stale.claim_token

        with transaction_scope(session_factory) as session:
            result = queue.record_fill(
                session, stale.id, stale.claim_token, Decimal("100"), Decimal("0.6"), Decimal("0")
            )
        assert result is None
        assert _load_task(session_factory, task_id).status == LiquidationStatus.PENDING

        with transaction_scope(session_factory) as session:
            result = queue.record_fill(
                session, fresh.id, fresh.claim_token, Decimal("100"), Decimal("0.6"), Decimal("0")
            )
        assert result == LiquidationStatus.COMPLETED

    def test_task_is_not_due_before_retry_time(self, queue, task_id, session_factory, clock):
        """A retrying task waits for its backoff."""
        _fail(queue, session_factory)

        assert queue.claim_due() == []
        clock.advance(seconds=queue.backoff_seconds(1))
        assert [t.id for t in queue.claim_due()] == [task_id]

    def test_is_due_is_derived_from_status_and_time(self, task_id, session_factory, clock):
        from managed_wealth.liquidation_queue import is_due

        task = _load_task(session_factory, task_id)
        assert is_due(task, clock.now()) is True
        assert is_due(task, clock.now() - timedelta(seconds=1)) is False


# ============================================================
# ATTEMPT RESULT TESTS
# ============================================================

class TestAttemptResults:
    """record_fill / record_failure outcomes."""

    def test_full_fill_completes(self, queue, task_id, session_factory):
        from database.engine import transaction_scope
        from managed_wealth.types import LiquidationStatus

        claimed = queue.claim_due()[0]
        with transaction_scope(session_factory) as session:
            status = queue.record_fill(
                session, claimed.id, claimed.claim_token, Decimal("100"), Decimal("0.6"), Decimal("0")
            )

        task = _load_task(session_factory, task_id)
        assert status == LiquidationStatus.COMPLETED
        assert task.filled_shares == Decimal("100")
        assert task.completed_at is not None
        assert task.next_retry_at is None

    def test_partial_fill_retries_remainder_without_counting_an_attempt(self, queue, task_id, session_factory, clock):
        """40 of 100 filled: RETRYING for 60, attempt_count unchanged."""
        from database.engine import transaction_scope
        from managed_wealth.types import LiquidationStatus

        claimed = queue.claim_due()[0]
        with transaction_scope(session_factory) as session:
            status = queue.record_fill(
                session, claimed.id, claimed.claim_token, Decimal("40"), Decimal("0.6"), Decimal("60")
            )

        task = _load_task(session_factory, task_id)
        assert status == LiquidationStatus.RETRYING
        assert task.attempt_count == 0
        assert task.requested_shares == Decimal("60")
        assert task.filled_shares == Decimal("40")
        assert task.error_code == "PARTIAL_LIQUIDATION_RETRY"
        assert task.next_retry_at == clock.now() + timedelta(seconds=queue.config.retry_base_seconds)

    def test_partial_fill_after_failures_uses_attempt_backoff(self, queue, task_id, session_factory, clock):
        """Two failures, then a partial fill: the remainder waits backoff(2), still two attempts."""
        from database.engine import transaction_scope

        _fail(queue, session_factory)
        clock.advance(seconds=queue.backoff_seconds(1))
        _fail(queue, session_factory)
        clock.advance(seconds=queue.backoff_seconds(2))

        claimed = queue.claim_due()[0]
        with transaction_scope(session_factory) as session:
            queue.record_fill(session, claimed.id, claimed.claim_token, Decimal("40"), Decimal("0.6"), Decimal("60"))

        task = _load_task(session_factory, task_id)
        assert task.attempt_count == 2
        assert task.next_retry_at == clock.now() + timedelta(seconds=queue.backoff_seconds(2))

    def test_blocks_after_max_attempts(self, queue, task_id, session_factory, clock):
        """Five retryable failures (testing max) end in BLOCKED."""
        from managed_wealth.types import LiquidationStatus

        statuses = []
        for attempt in range(1, queue.config.max_attempts + 1):
            statuses.append(_fail(queue, session_factory))
            clock.advance(seconds=queue.backoff_seconds(attempt))

        task = _load_task(session_factory, task_id)
        assert statuses[:-1] == [LiquidationStatus.RETRYING] * (queue.config.max_attempts - 1)
        assert statuses[-1] == LiquidationStatus.BLOCKED
        assert task.attempt_count == queue.config.max_attempts
        assert task.error_code == "MAX_ATTEMPTS_EXCEEDED"
        assert queue.claim_due() == []

    def test_blocking_code_blocks_immediately(self, queue, task_id, session_factory):
        from managed_wealth.types import LiquidationStatus

        assert _fail(queue, session_factory, code="NOTIONAL_BELOW_MIN_ORDER") == LiquidationStatus.BLOCKED
        assert _load_task(session_factory, task_id).attempt_count == 1

    def test_blocking_flag_overrides_retryable_code(self, queue, task_id, session_factory):
        from managed_wealth.types import LiquidationStatus

        assert _fail(queue, session_factory, code="EXECUTION_FAILED", blocking=True) == LiquidationStatus.BLOCKED

    def test_missing_subscription_fails_task(self, queue, task_id, session_factory):
        from managed_wealth.types import LiquidationStatus

        assert _fail(queue, session_factory, code="SUBSCRIPTION_NOT_FOUND") == LiquidationStatus.FAILED

    def test_unknown_code_is_retried(self, queue, task_id, session_factory):
        from managed_wealth.types import LiquidationStatus

        assert _fail(queue, session_factory, code="SOMETHING_NEW") == LiquidationStatus.RETRYING

    def test_failure_records_indicative_price(self, queue, task_id, session_factory):
        """A fallback indicative price is stored with its flag."""
        _fail(queue, session_factory, code="NO_BID_LIQUIDITY", indicative_price=Decimal("0.5"), price_is_fallback=True)

        task = _load_task(session_factory, task_id)
        assert task.indicative_price == Decimal("0.5")
        assert task.indicative_price_is_fallback is True
        assert task.notional_usd == Decimal("50")


# ============================================================
# OPERATOR ACTION TESTS
# ============================================================

class TestOperatorActions:
    """Admin retry / requeue / fail."""

    def test_requeue_blocked_resets_attempts(self, queue, task_id, session_factory, clock):
        """requeue: PENDING, attempt_count 0, due now, error cleared."""
        from managed_wealth.types import LiquidationStatus, OperatorAction

        _fail(queue, session_factory, code="INSUFFICIENT_FUNDS")
        result = queue.apply_operator_action(OperatorAction.REQUEUE, [task_id])

        task = _load_task(session_factory, task_id)
        assert result.updated_count == 1
        assert task.status == LiquidationStatus.PENDING
        assert task.attempt_count == 0
        assert task.error_code is None
        assert task.next_retry_at <= clock.now()
        assert [t.id for t in queue.claim_due()] == [task_id]

    def test_requeue_of_in_flight_task_keeps_lease(self, queue, task_id, session_factory, clock):
        """Requeue while a worker holds the task: no second claim until the lease runs out."""
        from database.engine import transaction_scope
        from managed_wealth.types import LiquidationStatus, OperatorAction

        first = queue.claim_due()
        queue.apply_operator_action(OperatorAction.REQUEUE, [task_id])

        assert queue.claim_due() == []
        with transaction_scope(session_factory) as session:
            fenced = queue.record_fill(
                session, task_id, first[0].claim_token, Decimal("100"), Decimal("0.5"), Decimal("0")
            )
        assert fenced is None
        assert _load_task(session_factory, task_id).status == LiquidationStatus.PENDING

        clock.advance(seconds=queue.config.claim_lease_seconds)
        assert [t.id for t in queue.claim_due()] == [task_id]

    def test_retry_of_in_flight_task_keeps_lease(self, queue, task_id, session_factory, clock):
        """Retry on a RETRYING task that a worker re-claimed does not open it to another worker."""
        from managed_wealth.types import OperatorAction

        _fail(queue, session_factory)
        clock.advance(seconds=queue.backoff_seconds(1))
        assert [t.id for t in queue.claim_due()] == [task_id]

        result = queue.apply_operator_action(OperatorAction.RETRY, [task_id], delay_seconds=0)

        assert result.updated_count == 1
        assert queue.claim_due() == []
        clock.advance(seconds=queue.config.claim_lease_seconds)
        assert [t.id for t in queue.claim_due()] == [task_id]

    def test_retry_never_moves_next_retry_backward(self, queue, task_id, session_factory, clock):
        """An operator retry keeps an already later retry time."""
        from managed_wealth.types import OperatorAction

        _fail(queue, session_factory)
        before = _load_task(session_factory, task_id).next_retry_at

        queue.apply_operator_action(OperatorAction.RETRY, [task_id], delay_seconds=0)
        assert _load_task(session_factory, task_id).next_retry_at == before

        queue.apply_operator_action(OperatorAction.RETRY, [task_id], delay_seconds=3600)
        assert _load_task(session_factory, task_id).next_retry_at == clock.now() + timedelta(seconds=3600)

    def test_retry_blocked_task(self, queue, task_id, session_factory):
        from managed_wealth.types import LiquidationStatus, OperatorAction

        _fail(queue, session_factory, code="MISSING_EXECUTION_ACCOUNT")
        queue.apply_operator_action(OperatorAction.RETRY, [task_id])

        task = _load_task(session_factory, task_id)
        assert task.status == LiquidationStatus.RETRYING
        assert task.attempt_count == 1

    def test_retry_from_pending_is_skipped(self, queue, task_id):
        from managed_wealth.types import OperatorAction

        result = queue.apply_operator_action(OperatorAction.RETRY, [task_id])

        assert result.updated_count == 0
        assert task_id in result.skipped

    def test_fail_is_terminal_and_idempotent(self, queue, task_id, session_factory):
        """fail twice: the second call is reported as skipped, not an error."""
        from managed_wealth.types import LiquidationStatus, OperatorAction

        first = queue.apply_operator_action(OperatorAction.FAIL, [task_id], reason="dust")
        second = queue.apply_operator_action(OperatorAction.FAIL, [task_id])

        task = _load_task(session_factory, task_id)
        assert first.updated_count == 1
        assert second.updated_count == 0
        assert second.skipped[task_id] == "already FAILED"
        assert task.status == LiquidationStatus.FAILED
        assert task.error_code == "MANUAL_FAIL"
        assert task.error_message == "dust"

        requeue = queue.apply_operator_action(OperatorAction.REQUEUE, [task_id])
        assert requeue.updated_count == 0

    def test_unknown_ids_are_reported(self, queue, task_id):
        from managed_wealth.types import OperatorAction

        result = queue.apply_operator_action(OperatorAction.FAIL, [task_id, "missing", task_id])

        assert result.requested_count == 2
        assert result.updated_task_ids == [task_id]
        assert result.skipped == {"missing": "not found"}

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"task_ids": []},
            {"task_ids": ["  "]},
            {"task_ids": ["a"], "delay_seconds": -1},
            {"task_ids": ["a"], "delay_seconds": 86401},
            {"task_ids": ["a"], "reason": "x" * 241},
        ],
    )
    def test_rejects_invalid_requests(self, queue, kwargs):
        from core.exceptions import ValidationError
        from managed_wealth.types import OperatorAction

        with pytest.raises(ValidationError):
            queue.apply_operator_action(OperatorAction.RETRY, **kwargs)

    def test_rejects_too_many_ids(self, queue):
        from core.exceptions import ValidationError
        from managed_wealth.types import OperatorAction

        ids = [f"task-{i}" for i in range(queue.config.max_operator_task_ids + 1)]
        with pytest.raises(ValidationError):
            queue.apply_operator_action(OperatorAction.FAIL, ids)


# ============================================================
# LISTING TESTS
# ============================================================

class TestListTasks:

    def test_filters_and_summary(self, queue, task_id, session_factory, container, make_subscription,
                                 guaranteed_product, add_position):
        """Status / due filters apply to both the list and the summary."""
        from database.engine import transaction_scope
        from managed_wealth.types import LiquidationStatus

        product, term = guaranteed_product
        other = make_subscription(product, term)
        add_position(other.id, token_id="token-no")
        container.lifecycle.transition_to_liquidating(other.id)
        claimed = [t for t in queue.claim_due() if t.id == task_id]
        with transaction_scope(session_factory) as session:
            queue.record_failure(session, task_id, claimed[0].claim_token, "EXECUTION_FAILED", "boom")

        tasks, summary = queue.list_tasks()
        assert summary.total_count == 2
        assert summary.by_status["RETRYING"] == 1
        assert summary.by_status["COMPLETED"] == 0
        assert len(tasks) == 2

        retrying, retry_summary = queue.list_tasks(statuses=[LiquidationStatus.RETRYING])
        assert [t.id for t in retrying] == [task_id]
        assert retry_summary.total_count == 1
        assert retry_summary.due_count == 0

        by_wallet, _ = queue.list_tasks(wallet_address=other.wallet_address.upper())
        assert [t.subscription_id for t in by_wallet] == [other.id]

    @pytest.mark.parametrize("limit", [0, 201])
    def test_limit_is_bounded(self, queue, limit):
        from core.exceptions import ValidationError

        with pytest.raises(ValidationError):
            queue.list_tasks(limit=limit)
