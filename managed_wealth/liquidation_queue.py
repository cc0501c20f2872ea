"""
Managed Wealth - Liquidation Task Queue.

============================================================
PURPOSE
============================================================
Durable, retryable per-position exit tasks.

STATE MACHINE:
    PENDING ──attempt──► COMPLETED
       │
       └──failure──► RETRYING ──(backoff)──► attempt ...
                        │
                        └──max attempts / blocking code──► BLOCKED
    BLOCKED ──operator──► RETRYING (retry) | PENDING (requeue) | FAILED (fail)

INVARIANTS:
- A due task is claimed by exactly one worker (conditional UPDATE
  plus a lease); results carry the claim token and are fenced
- attempt_count never decreases except through requeue
- next_retry_at only moves forward except through requeue
- fail is terminal and idempotent

============================================================
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from core.clock import ClockFactory, ClockProtocol, ensure_utc
from core.exceptions import ValidationError
from database.engine import transaction_scope

from .config import LiquidationConfig
from .liquidation_errors import FailureOutcome, get_error_info
from .models import ManagedLiquidationTask, ManagedSubscription
from .state_machine import transition_task
from .types import (
    DUE_STATUSES,
    NON_TERMINAL_TASK_STATUSES,
    LiquidationStatus,
    OpenPosition,
    OperatorAction,
    OperatorActionResult,
    TaskSummary,
)

logger = logging.getLogger(__name__)

DUST_SHARES = Decimal("0.000001")
MAX_REASON_LENGTH = 240
MAX_LIST_LIMIT = 200


@dataclass(frozen=True)
class ClaimedTask:
    """Snapshot of a task taken at claim time."""

    id: str
    subscription_id: str
    wallet_address: str
    token_id: str
    requested_shares: Decimal
    avg_entry_price: Decimal
    indicative_price: Optional[Decimal]
    attempt_count: int
    claim_token: str


def is_due(task: ManagedLiquidationTask, now: datetime) -> bool:
    """Derived, never stored: claimable status and retry time reached."""
    if task.status not in DUE_STATUSES:
        return False
    return task.next_retry_at is None or ensure_utc(task.next_retry_at) <= now


def _due_clause(now: datetime):
    return and_(
        ManagedLiquidationTask.status.in_(DUE_STATUSES),
        or_(ManagedLiquidationTask.next_retry_at.is_(None), ManagedLiquidationTask.next_retry_at <= now),
    )


def _unclaimed_clause(now: datetime):
    return or_(
        ManagedLiquidationTask.claim_expires_at.is_(None),
        ManagedLiquidationTask.claim_expires_at <= now,
    )


class LiquidationTaskQueue:
    """
    Liquidation task queue service.

    Session-level methods (enqueue, record_*) participate in the
    caller's transaction; claim_due, apply_operator_action and
    list_tasks open their own.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        config: Optional[LiquidationConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._session_factory = session_factory
        self._config = config or LiquidationConfig()
        self._clock = clock or ClockFactory.get_clock()

        self._operator_handlers: Dict[
            OperatorAction,
            Callable[[ManagedLiquidationTask, datetime, int, Optional[str]], Optional[str]],
        ] = {
            OperatorAction.RETRY: self._operator_retry,
            OperatorAction.REQUEUE: self._operator_requeue,
            OperatorAction.FAIL: self._operator_fail,
        }

    @property
    def config(self) -> LiquidationConfig:
        return self._config

    def backoff_seconds(self, attempt_count: int) -> int:
        """min(base * 2^(attempt_count - 1), max); the first retry waits base seconds."""
        exponent = max(0, attempt_count - 1)
        return int(min(self._config.retry_max_seconds, self._config.retry_base_seconds * (2 ** exponent)))

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue_for_positions(
        self,
        session: Session,
        subscription: ManagedSubscription,
        positions: Iterable[OpenPosition],
    ) -> List[ManagedLiquidationTask]:
        """
        Create one task per open position not already covered by a
        non-terminal task. Safe to call repeatedly.
        """
        now = self._clock.now()
        covered = set(
            session.scalars(
                select(ManagedLiquidationTask.token_id)
                .where(ManagedLiquidationTask.subscription_id == subscription.id)
                .where(ManagedLiquidationTask.status.in_(NON_TERMINAL_TASK_STATUSES))
            )
        )

        created: List[ManagedLiquidationTask] = []
        for position in positions:
            if position.token_id in covered or position.shares <= DUST_SHARES:
                continue
            task = ManagedLiquidationTask(
                id=str(uuid.uuid4()),
                subscription_id=subscription.id,
                wallet_address=subscription.wallet_address,
                token_id=position.token_id,
                market_slug=position.market_slug,
                requested_shares=position.shares,
                filled_shares=Decimal("0"),
                avg_entry_price=position.avg_entry_price,
                indicative_price=position.avg_entry_price,
                indicative_price_is_fallback=True,
                notional_usd=position.shares * position.avg_entry_price,
                status=LiquidationStatus.PENDING,
                attempt_count=0,
                next_retry_at=now,
                created_at=now,
                updated_at=now,
            )
            session.add(task)
            covered.add(position.token_id)
            created.append(task)

        session.flush()
        if created:
            logger.info(
                f"Enqueued {len(created)} liquidation task(s) for subscription {subscription.id}: "
                f"{[t.token_id for t in created]}"
            )
        return created

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    def claim_due(self, limit: Optional[int] = None) -> List[ClaimedTask]:
        """
        Claim up to ``limit`` due tasks.

        Each claim is a conditional UPDATE on (status, next_retry_at,
        claim lease); a row another worker claimed first updates zero
        rows and is skipped.
        """
        limit = limit or self._config.batch_size
        now = self._clock.now()
        lease_until = now + timedelta(seconds=self._config.claim_lease_seconds)
        claimed: List[ClaimedTask] = []

        with transaction_scope(self._session_factory) as session:
            candidate_ids = list(
                session.scalars(
                    select(ManagedLiquidationTask.id)
                    .where(_due_clause(now))
                    .where(_unclaimed_clause(now))
                    .order_by(ManagedLiquidationTask.next_retry_at, ManagedLiquidationTask.created_at)
                    .limit(limit)
                )
            )

            for task_id in candidate_ids:
                token = str(uuid.uuid4())
                result = session.execute(
                    update(ManagedLiquidationTask)
                    .where(ManagedLiquidationTask.id == task_id)
                    .where(_due_clause(now))
                    .where(_unclaimed_clause(now))
                    .values(
                        claim_token=token,
                        claim_expires_at=lease_until,
                        last_attempt_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    continue

                task = session.get(ManagedLiquidationTask, task_id, populate_existing=True)
                claimed.append(
                    ClaimedTask(
                        id=task.id,
                        subscription_id=task.subscription_id,
                        wallet_address=task.wallet_address,
                        token_id=task.token_id,
                        requested_shares=Decimal(task.requested_shares),
                        avg_entry_price=Decimal(task.avg_entry_price),
                        indicative_price=task.indicative_price,
                        attempt_count=task.attempt_count,
                        claim_token=token,
                    )
                )

        if claimed:
            logger.info(f"Claimed {len(claimed)} liquidation task(s)")
        return claimed

    def _load_for_result(self, session: Session, task_id: str, claim_token: str) -> Optional[ManagedLiquidationTask]:
        """Load a claimed task for update; None if the claim was superseded."""
        task = session.scalars(
            select(ManagedLiquidationTask)
            .where(ManagedLiquidationTask.id == task_id)
            .with_for_update()
        ).first()
        if task is None or task.claim_token != claim_token:
            logger.warning(f"Liquidation task {task_id} claim superseded, result not applied")
            return None
        return task

    # ------------------------------------------------------------------
    # Attempt results
    # ------------------------------------------------------------------

    def record_fill(
        self,
        session: Session,
        task_id: str,
        claim_token: str,
        filled_shares: Decimal,
        price: Decimal,
        remaining_shares: Decimal,
        price_is_fallback: bool = False,
    ) -> Optional[LiquidationStatus]:
        """
        Apply a successful (possibly partial) fill.

        Full fill -> COMPLETED. Partial fill -> RETRYING for the
        remainder after the backoff of the current attempt_count, which
        is not incremented.

        Returns:
            New status, or None if the claim was fenced
        """
        task = self._load_for_result(session, task_id, claim_token)
        if task is None:
            return None

        now = self._clock.now()
        task.filled_shares = Decimal(task.filled_shares or 0) + filled_shares
        task.indicative_price = price
        task.indicative_price_is_fallback = price_is_fallback
        task.last_attempt_at = now
        task.updated_at = now
        task.claim_token = None
        task.claim_expires_at = None

        if remaining_shares <= DUST_SHARES:
            transition_task(task, LiquidationStatus.COMPLETED, f"filled {filled_shares} @ {price}")
            task.requested_shares = Decimal("0")
            task.notional_usd = filled_shares * price
            task.next_retry_at = None
            task.error_code = None
            task.error_message = None
            task.completed_at = now
        else:
            transition_task(task, LiquidationStatus.RETRYING, f"partial fill {filled_shares}, {remaining_shares} remaining")
            task.requested_shares = remaining_shares
            task.notional_usd = remaining_shares * price
            task.next_retry_at = now + timedelta(seconds=self.backoff_seconds(task.attempt_count))
            task.error_code = "PARTIAL_LIQUIDATION_RETRY"
            task.error_message = "Partially liquidated; retry remaining shares"

        session.flush()
        return task.status

    def record_failure(
        self,
        session: Session,
        task_id: str,
        claim_token: str,
        error_code: str,
        message: str,
        blocking: bool = False,
        indicative_price: Optional[Decimal] = None,
        price_is_fallback: bool = False,
    ) -> Optional[LiquidationStatus]:
        """
        Record a failed attempt.

        attempt_count += 1; outcome per the error registry:
        FAIL -> FAILED, BLOCK (or blocking=True) -> BLOCKED,
        RETRY -> RETRYING with backoff, or BLOCKED once
        attempt_count reaches max_attempts.

        Returns:
            New status, or None if the claim was fenced
        """
        task = self._load_for_result(session, task_id, claim_token)
        if task is None:
            return None

        now = self._clock.now()
        task.attempt_count = task.attempt_count + 1
        task.last_attempt_at = now
        task.updated_at = now
        task.claim_token = None
        task.claim_expires_at = None
        task.error_code = error_code
        task.error_message = message[:1000]
        if indicative_price is not None:
            task.indicative_price = indicative_price
            task.indicative_price_is_fallback = price_is_fallback
            task.notional_usd = Decimal(task.requested_shares) * indicative_price

        outcome = get_error_info(error_code).outcome
        if blocking and outcome == FailureOutcome.RETRY:
            outcome = FailureOutcome.BLOCK

        if outcome == FailureOutcome.FAIL:
            transition_task(task, LiquidationStatus.FAILED, error_code)
            task.next_retry_at = None
        elif outcome == FailureOutcome.BLOCK:
            transition_task(task, LiquidationStatus.BLOCKED, error_code)
        elif task.attempt_count >= self._config.max_attempts:
            task.error_code = "MAX_ATTEMPTS_EXCEEDED"
            task.error_message = f"{error_code}: {message} (max attempts reached)"[:1000]
            transition_task(task, LiquidationStatus.BLOCKED, f"{error_code} after {task.attempt_count} attempts")
        else:
            delay = self.backoff_seconds(task.attempt_count)
            transition_task(task, LiquidationStatus.RETRYING, f"{error_code}, retry in {delay}s")
            task.next_retry_at = now + timedelta(seconds=delay)

        logger.warning(
            f"Liquidation task {task.id} attempt {task.attempt_count} failed: "
            f"{error_code} {message} -> {task.status.value}"
        )
        session.flush()
        return task.status

    def record_missing_subscription(self, session: Session, task_id: str, claim_token: str) -> Optional[LiquidationStatus]:
        return self.record_failure(session, task_id, claim_token, "SUBSCRIPTION_NOT_FOUND", "Managed subscription not found")

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def apply_operator_action(
        self,
        action: OperatorAction,
        task_ids: Sequence[str],
        delay_seconds: int = 0,
        reason: Optional[str] = None,
        actor: str = "admin",
    ) -> OperatorActionResult:
        """
        Apply retry / requeue / fail to a list of tasks.

        Tasks not in a valid source state are left unchanged and
        reported in ``skipped``; updated_count counts real transitions.

        Raises:
            ValidationError: bad ids, delay or reason
        """
        action = OperatorAction(action)
        ids = list(dict.fromkeys(t.strip() for t in task_ids if t and t.strip()))
        if not ids:
            raise ValidationError("taskIds must contain at least one id", field="taskIds")
        if len(ids) > self._config.max_operator_task_ids:
            raise ValidationError(
                f"At most {self._config.max_operator_task_ids} task ids per request", field="taskIds"
            )
        if delay_seconds < 0 or delay_seconds > self._config.max_operator_delay_seconds:
            raise ValidationError(
                f"delaySeconds must be within 0..{self._config.max_operator_delay_seconds}", field="delaySeconds"
            )
        reason = reason.strip() if reason else None
        if reason and len(reason) > MAX_REASON_LENGTH:
            raise ValidationError(f"reason must be at most {MAX_REASON_LENGTH} characters", field="reason")

        handler = self._operator_handlers[action]
        result = OperatorActionResult(action=action, requested_count=len(ids), updated_count=0)
        now = self._clock.now()

        with transaction_scope(self._session_factory) as session:
            tasks = {
                task.id: task
                for task in session.scalars(
                    select(ManagedLiquidationTask)
                    .where(ManagedLiquidationTask.id.in_(ids))
                    .with_for_update()
                )
            }
            for task_id in ids:
                task = tasks.get(task_id)
                if task is None:
                    result.skipped[task_id] = "not found"
                    continue
                skip_reason = handler(task, now, delay_seconds, reason)
                if skip_reason:
                    result.skipped[task_id] = skip_reason
                    continue
                task.updated_at = now
                result.updated_count += 1
                result.updated_task_ids.append(task_id)

        logger.info(
            f"Operator {actor} applied {action.value} to {result.updated_count}/{result.requested_count} "
            f"task(s) (delay={delay_seconds}s, reason={reason!r}, skipped={result.skipped})"
        )
        return result

    def _operator_retry(self, task, now, delay_seconds, reason) -> Optional[str]:
        if task.status not in (LiquidationStatus.RETRYING, LiquidationStatus.BLOCKED):
            return f"retry not allowed from {task.status.value}"
        target = now + timedelta(seconds=delay_seconds)
        if task.next_retry_at is not None and ensure_utc(task.next_retry_at) > target:
            target = ensure_utc(task.next_retry_at)
        transition_task(task, LiquidationStatus.RETRYING, reason or "operator retry")
        task.next_retry_at = target
        task.claim_token = None
        return None

    def _operator_requeue(self, task, now, delay_seconds, reason) -> Optional[str]:
        if task.status.is_terminal():
            return f"requeue not allowed from {task.status.value}"
        transition_task(task, LiquidationStatus.PENDING, reason or "operator requeue")
        task.attempt_count = 0
        task.error_code = None
        task.error_message = None
        task.next_retry_at = now
        task.claim_token = None
        return None

    def _operator_fail(self, task, now, delay_seconds, reason) -> Optional[str]:
        if task.status == LiquidationStatus.FAILED:
            return "already FAILED"
        if task.status.is_terminal():
            return f"fail not allowed from {task.status.value}"
        transition_task(task, LiquidationStatus.FAILED, reason or "operator fail")
        task.error_code = "MANUAL_FAIL"
        task.error_message = reason or "Manually marked as failed by admin"
        task.next_retry_at = None
        task.claim_token = None
        task.claim_expires_at = None
        return None

    # ------------------------------------------------------------------
    # Read model
    # ------------------------------------------------------------------

    def list_tasks(
        self,
        statuses: Optional[Sequence[LiquidationStatus]] = None,
        subscription_id: Optional[str] = None,
        wallet_address: Optional[str] = None,
        due_only: bool = False,
        limit: int = 100,
    ) -> Tuple[List[ManagedLiquidationTask], TaskSummary]:
        """Filtered task list (newest update first) plus summary over the same filter."""
        if limit < 1 or limit > MAX_LIST_LIMIT:
            raise ValidationError(f"limit must be within 1..{MAX_LIST_LIMIT}", field="limit")

        now = self._clock.now()
        filters = []
        if statuses:
            filters.append(ManagedLiquidationTask.status.in_(list(statuses)))
        if subscription_id:
            filters.append(ManagedLiquidationTask.subscription_id == subscription_id)
        if wallet_address:
            filters.append(ManagedLiquidationTask.wallet_address == wallet_address.lower())
        if due_only:
            filters.append(_due_clause(now))

        with transaction_scope(self._session_factory) as session:
            tasks = list(
                session.scalars(
                    select(ManagedLiquidationTask)
                    .where(*filters)
                    .order_by(ManagedLiquidationTask.updated_at.desc(), ManagedLiquidationTask.created_at.desc())
                    .limit(limit)
                )
            )
            summary = self.summary(session, filters)
        return tasks, summary

    def summary(self, session: Session, filters: Optional[list] = None) -> TaskSummary:
        filters = list(filters or [])
        now = self._clock.now()

        by_status = {status.value: 0 for status in LiquidationStatus}
        for status, count in session.execute(
            select(ManagedLiquidationTask.status, func.count())
            .where(*filters)
            .group_by(ManagedLiquidationTask.status)
        ):
            by_status[status.value] = count

        due_count = session.scalar(
            select(func.count()).select_from(ManagedLiquidationTask).where(*filters).where(_due_clause(now))
        ) or 0

        return TaskSummary(total_count=sum(by_status.values()), due_count=due_count, by_status=by_status)

    def non_terminal_count(self, session: Session, subscription_id: str) -> int:
        return session.scalar(
            select(func.count())
            .select_from(ManagedLiquidationTask)
            .where(ManagedLiquidationTask.subscription_id == subscription_id)
            .where(ManagedLiquidationTask.status.in_(NON_TERMINAL_TASK_STATUSES))
        ) or 0
