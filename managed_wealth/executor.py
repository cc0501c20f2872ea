"""
Managed Wealth - Liquidation Executors.

============================================================
PURPOSE
============================================================
Contract for selling a subscription's position, plus a paper
executor for dry runs and tests.

Executors raise TransientError / TerminalOperatorError with a
registry code (see liquidation_errors); any other exception is
recorded by the worker as UNHANDLED_EXECUTION_ERROR.

============================================================
"""

import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Protocol

from core.exceptions import TerminalOperatorError, TransientError

from .types import FillResult

logger = logging.getLogger(__name__)


@dataclass
class SellRequest:
    """One liquidation sell order."""

    task_id: str
    subscription_id: str
    execution_account_id: str
    token_id: str
    shares: Decimal
    limit_price: Decimal
    idempotency_key: str


class LiquidationExecutor(Protocol):
    """Sells shares on behalf of a subscription's execution account."""

    async def sell(self, request: SellRequest) -> FillResult:
        ...


# ============================================================
# PAPER EXECUTOR
# ============================================================

@dataclass
class PaperExecutorConfig:
    """Configuration for the paper executor."""

    fill_ratio: Decimal = Decimal("1")
    """Fraction of requested shares filled per order."""

    fail_with: Optional[str] = None
    """Error code to raise on every order (None = fill)."""

    blocked_accounts: List[str] = field(default_factory=list)
    """Execution accounts that raise INSUFFICIENT_FUNDS."""


class PaperLiquidationExecutor:
    """
    Fills orders at the limit price without touching a venue.

    Used in dry-run mode and tests.
    """

    def __init__(self, config: Optional[PaperExecutorConfig] = None):
        self._config = config or PaperExecutorConfig()
        self.orders: Dict[str, SellRequest] = {}

    async def sell(self, request: SellRequest) -> FillResult:
        if request.execution_account_id in self._config.blocked_accounts:
            raise TerminalOperatorError(
                "INSUFFICIENT_FUNDS",
                f"Paper account {request.execution_account_id} has insufficient funds",
            )
        if self._config.fail_with:
            raise TransientError(self._config.fail_with, "Paper executor configured to fail")

        if request.idempotency_key in self.orders:
            logger.info(f"Paper sell {request.idempotency_key} already placed, replaying fill")

        self.orders[request.idempotency_key] = request
        filled = request.shares * self._config.fill_ratio
        logger.info(
            f"Paper sell {request.token_id}: {filled}/{request.shares} @ {request.limit_price} "
            f"(task {request.task_id})"
        )
        return FillResult(
            filled_shares=filled,
            avg_price=request.limit_price,
            order_id=f"paper-{uuid.uuid4().hex[:12]}",
            notional_usd=filled * request.limit_price,
        )
