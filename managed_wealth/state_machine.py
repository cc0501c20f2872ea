"""
Managed Wealth - State Machines.

============================================================
PURPOSE
============================================================
Transition tables and guards for subscriptions and liquidation
tasks.

SUBSCRIPTION:

    PENDING ──► RUNNING ──► MATURED ──► SETTLED
       │           │
       └───────────┴──────► CANCELLED

LIQUIDATION TASK:

    PENDING ──► COMPLETED
       │   ╲
       │    ► RETRYING ──► COMPLETED
       │         │  ▲
       ▼         ▼  │
    BLOCKED ─────┴──┘ ──► FAILED

    Operator requeue returns any non-terminal task to PENDING.

INVARIANTS:
- Terminal states are final
- Same-state transitions are allowed (idempotent writes)

============================================================
"""

import logging
from typing import Dict, Set, Tuple

from core.exceptions import InvalidTransitionError

from .types import LiquidationStatus, SubscriptionStatus

logger = logging.getLogger(__name__)


# ============================================================
# STATE TRANSITION RULES
# ============================================================

SUBSCRIPTION_TRANSITIONS: Dict[SubscriptionStatus, Set[SubscriptionStatus]] = {
    SubscriptionStatus.PENDING: {
        SubscriptionStatus.RUNNING,
        SubscriptionStatus.CANCELLED,
    },
    SubscriptionStatus.RUNNING: {
        SubscriptionStatus.MATURED,
        SubscriptionStatus.CANCELLED,
    },
    SubscriptionStatus.MATURED: {
        SubscriptionStatus.SETTLED,
    },
    SubscriptionStatus.SETTLED: set(),
    SubscriptionStatus.CANCELLED: set(),
}

TASK_TRANSITIONS: Dict[LiquidationStatus, Set[LiquidationStatus]] = {
    LiquidationStatus.PENDING: {
        LiquidationStatus.RETRYING,
        LiquidationStatus.BLOCKED,
        LiquidationStatus.COMPLETED,
        LiquidationStatus.FAILED,
    },
    LiquidationStatus.RETRYING: {
        LiquidationStatus.PENDING,
        LiquidationStatus.BLOCKED,
        LiquidationStatus.COMPLETED,
        LiquidationStatus.FAILED,
    },
    LiquidationStatus.BLOCKED: {
        LiquidationStatus.PENDING,
        LiquidationStatus.RETRYING,
        LiquidationStatus.FAILED,
    },
    LiquidationStatus.COMPLETED: set(),
    LiquidationStatus.FAILED: set(),
}


# ============================================================
# STATE TRANSITION GUARD
# ============================================================

class TransitionGuard:
    """
    Guard for state transitions.

    Ensures transitions are valid and provides reason for denial.
    """

    @staticmethod
    def can_transition_subscription(
        from_state: SubscriptionStatus,
        to_state: SubscriptionStatus,
    ) -> Tuple[bool, str]:
        return _check(SUBSCRIPTION_TRANSITIONS, from_state, to_state)

    @staticmethod
    def can_transition_task(
        from_state: LiquidationStatus,
        to_state: LiquidationStatus,
    ) -> Tuple[bool, str]:
        return _check(TASK_TRANSITIONS, from_state, to_state)


def _check(table, from_state, to_state) -> Tuple[bool, str]:
    if from_state == to_state:
        return True, "Same state"

    if to_state in table.get(from_state, set()):
        return True, "Valid transition"

    if from_state.is_terminal():
        return False, f"Cannot transition from terminal state {from_state.value}"

    return False, f"Invalid transition: {from_state.value} -> {to_state.value}"


def transition_subscription(subscription, to_state: SubscriptionStatus, reason: str = "") -> bool:
    """
    Apply a subscription status change in place.

    Returns:
        True if the status changed, False for a same-state no-op

    Raises:
        InvalidTransitionError: transition not in SUBSCRIPTION_TRANSITIONS
    """
    from_state = subscription.status
    allowed, why = TransitionGuard.can_transition_subscription(from_state, to_state)
    if not allowed:
        raise InvalidTransitionError("subscription", from_state, to_state, why)
    if from_state == to_state:
        return False

    subscription.status = to_state
    logger.info(
        f"Subscription {subscription.id} {from_state.value} -> {to_state.value}"
        + (f" ({reason})" if reason else "")
    )
    return True


def transition_task(task, to_state: LiquidationStatus, reason: str = "") -> bool:
    """Apply a liquidation task status change in place. Same contract as transition_subscription."""
    from_state = task.status
    allowed, why = TransitionGuard.can_transition_task(from_state, to_state)
    if not allowed:
        raise InvalidTransitionError("liquidation_task", from_state, to_state, why)
    if from_state == to_state:
        return False

    task.status = to_state
    logger.info(
        f"Liquidation task {task.id} {from_state.value} -> {to_state.value}"
        + (f" ({reason})" if reason else "")
    )
    return True
