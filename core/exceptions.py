"""
Core Module - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Domain failures raised by the managed wealth services.

Every exception knows the HTTP status and error code the API
renders it with. Liquidation failures additionally decide whether
a task is retried or parked for an operator.

============================================================
HIERARCHY
============================================================
ManagedWealthException
├── ValidationError                  400
├── NotFoundError                    404
├── ConflictError                    409
│   ├── ReserveCoverageError         409
│   └── InvalidTransitionError       409
├── PersistenceError                 500
└── LiquidationError
    ├── TransientError               task -> RETRYING
    └── TerminalOperatorError        task -> BLOCKED

============================================================
"""

from enum import Enum
from typing import Any, Dict, Optional


class Severity(Enum):
    """How loudly a failure is logged."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# ============================================================
# BASE
# ============================================================

class ManagedWealthException(Exception):
    """
    Base class for control plane errors.

    ``context`` ends up verbatim in the API ``details`` field, so keep
    it JSON-friendly.
    """

    http_status: int = 500
    error_code: str = "INTERNAL_ERROR"
    severity: Severity = Severity.MEDIUM
    retryable: bool = False

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})
        self.cause = cause
        if error_code:
            self.error_code = error_code
        if cause is not None:
            self.context["cause"] = f"{type(cause).__name__}: {cause}"

    def to_log_format(self) -> str:
        details = " ".join(f"{key}={value}" for key, value in self.context.items())
        head = f"[{self.severity.value}] {self.error_code}: {self.message}"
        return f"{head} ({details})" if details else head


# ============================================================
# REQUEST ERRORS
# ============================================================

class ValidationError(ManagedWealthException):
    """Malformed or out-of-range request."""

    http_status = 400
    error_code = "VALIDATION_ERROR"
    severity = Severity.LOW

    def __init__(self, message: str, field: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        context = dict(context or {})
        if field:
            context["field"] = field
        super().__init__(message, context=context)


class NotFoundError(ManagedWealthException):
    http_status = 404
    error_code = "NOT_FOUND"
    severity = Severity.LOW

    def __init__(self, entity: str, identifier: Any):
        super().__init__(
            f"{entity} not found: {identifier}",
            context={"entity": entity, "identifier": str(identifier)},
        )
        self.entity = entity
        self.identifier = identifier


class ConflictError(ManagedWealthException):
    """Request clashes with current state, e.g. a full term or open liquidation tasks."""

    http_status = 409
    error_code = "CONFLICT"
    severity = Severity.LOW


class ReserveCoverageError(ConflictError):
    """
    The guarantee reserve cannot absorb another subscription.

    Holds the coverage struct and the required ratio so the API can
    show the caller the exact shortfall.
    """

    error_code = "RESERVE_COVERAGE_INSUFFICIENT"
    severity = Severity.MEDIUM

    def __init__(self, coverage: Any, required_ratio: Any, product_id: Optional[str] = None):
        super().__init__(
            "Guaranteed product is temporarily unavailable due to reserve coverage",
            context={
                "product_id": product_id,
                "coverage_ratio": str(coverage.coverage_ratio),
                "required_ratio": str(required_ratio),
            },
        )
        self.coverage = coverage
        self.required_ratio = required_ratio
        self.product_id = product_id


class InvalidTransitionError(ConflictError):
    error_code = "INVALID_TRANSITION"

    def __init__(self, entity: str, from_state: Any, to_state: Any, reason: str = ""):
        source = getattr(from_state, "value", from_state)
        target = getattr(to_state, "value", to_state)
        super().__init__(
            reason or f"Invalid {entity} transition: {source} -> {target}",
            context={"entity": entity, "from_state": source, "to_state": target},
        )
        self.from_state = from_state
        self.to_state = to_state


class PersistenceError(ManagedWealthException):
    """Database unreachable or schema setup failed."""

    error_code = "PERSISTENCE_ERROR"
    severity = Severity.HIGH
    retryable = True


# ============================================================
# LIQUIDATION TASK ERRORS
# ============================================================

class LiquidationError(ManagedWealthException):
    """
    Failure while closing a position for a liquidation task.

    The code is stored on the task row; the known codes live in
    managed_wealth.liquidation_errors.
    """

    def __init__(self, error_code: str, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context=context, error_code=error_code)


class TransientError(LiquidationError):
    """Retried with backoff."""

    retryable = True


class TerminalOperatorError(LiquidationError):
    """Parks the task as BLOCKED until an operator acts."""

    severity = Severity.HIGH


__all__ = [
    "Severity",
    "ManagedWealthException",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "ReserveCoverageError",
    "InvalidTransitionError",
    "PersistenceError",
    "LiquidationError",
    "TransientError",
    "TerminalOperatorError",
]
