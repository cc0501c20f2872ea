"""
Managed Wealth - Liquidation Error Codes.

============================================================
PURPOSE
============================================================
Registry of the error codes persisted on liquidation tasks,
with the queue outcome each one drives.

OUTCOMES:
- RETRY: task -> RETRYING with backoff (BLOCKED at max attempts)
- BLOCK: task -> BLOCKED, needs an operator
- FAIL:  task -> FAILED

============================================================
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict


class FailureOutcome(Enum):
    """What the queue does with a failed attempt."""

    RETRY = "RETRY"
    BLOCK = "BLOCK"
    FAIL = "FAIL"


@dataclass(frozen=True)
class ErrorCodeInfo:
    """Information about an error code."""

    code: str
    """Error code."""

    outcome: FailureOutcome
    """Queue outcome."""

    description: str
    """Human-readable description."""

    recommended_action: str
    """What an operator should do."""

    @property
    def is_retryable(self) -> bool:
        return self.outcome == FailureOutcome.RETRY


def _info(code: str, outcome: FailureOutcome, description: str, action: str) -> ErrorCodeInfo:
    return ErrorCodeInfo(code=code, outcome=outcome, description=description, recommended_action=action)


ERROR_CODES: Dict[str, ErrorCodeInfo] = {
    # ========== RETRYABLE ==========
    "NO_BID_LIQUIDITY": _info(
        "NO_BID_LIQUIDITY", FailureOutcome.RETRY,
        "Order book has no bids for the token",
        "Wait for liquidity or requeue once the book recovers",
    ),
    "PRICE_UNAVAILABLE": _info(
        "PRICE_UNAVAILABLE", FailureOutcome.RETRY,
        "Live price lookup failed or timed out; only a fallback price was available",
        "Check price source health",
    ),
    "EXECUTION_FAILED": _info(
        "EXECUTION_FAILED", FailureOutcome.RETRY,
        "Sell order was rejected or errored",
        "Inspect executor logs; requeue when resolved",
    ),
    "ZERO_FILLED_SHARES": _info(
        "ZERO_FILLED_SHARES", FailureOutcome.RETRY,
        "Sell order filled zero shares",
        "Retry later",
    ),
    "UNHANDLED_EXECUTION_ERROR": _info(
        "UNHANDLED_EXECUTION_ERROR", FailureOutcome.RETRY,
        "Unexpected error while executing the task",
        "Inspect worker logs",
    ),
    "PARTIAL_LIQUIDATION_RETRY": _info(
        "PARTIAL_LIQUIDATION_RETRY", FailureOutcome.RETRY,
        "Partially liquidated; remaining shares will be retried",
        "None",
    ),
    # ========== BLOCKING ==========
    "NOTIONAL_BELOW_MIN_ORDER": _info(
        "NOTIONAL_BELOW_MIN_ORDER", FailureOutcome.BLOCK,
        "Remaining notional is below the minimum order size",
        "Fail the task to write the dust off, or requeue after a price move",
    ),
    "MISSING_EXECUTION_ACCOUNT": _info(
        "MISSING_EXECUTION_ACCOUNT", FailureOutcome.BLOCK,
        "Subscription has no execution account binding",
        "Bind the execution account, then requeue",
    ),
    "INSUFFICIENT_FUNDS": _info(
        "INSUFFICIENT_FUNDS", FailureOutcome.BLOCK,
        "Execution account cannot cover the order",
        "Fund the execution account, then requeue",
    ),
    "MAX_ATTEMPTS_EXCEEDED": _info(
        "MAX_ATTEMPTS_EXCEEDED", FailureOutcome.BLOCK,
        "Task exhausted its automatic retries",
        "Investigate the last error, then requeue or fail",
    ),
    # ========== FAILING ==========
    "SUBSCRIPTION_NOT_FOUND": _info(
        "SUBSCRIPTION_NOT_FOUND", FailureOutcome.FAIL,
        "Subscription no longer exists",
        "None",
    ),
    "MANUAL_FAIL": _info(
        "MANUAL_FAIL", FailureOutcome.FAIL,
        "Operator accepted the failure",
        "None",
    ),
}


def get_error_info(code: str) -> ErrorCodeInfo:
    """
    Get error info for a code.

    Unknown codes are treated as retryable so that a new failure
    mode still ends at BLOCKED via the attempt cap.
    """
    return ERROR_CODES.get(code, ErrorCodeInfo(
        code=code,
        outcome=FailureOutcome.RETRY,
        description=f"Unknown error: {code}",
        recommended_action="Investigate error",
    ))


def is_retryable(code: str) -> bool:
    """Check if an error code is retryable."""
    return get_error_info(code).is_retryable


RETRYABLE_ERROR_CODES = {code for code, info in ERROR_CODES.items() if info.is_retryable}
BLOCKING_ERROR_CODES = {code for code, info in ERROR_CODES.items() if info.outcome == FailureOutcome.BLOCK}
