"""
Managed Wealth - Types.

============================================================
PURPOSE
============================================================
Enums and value objects shared by the ledger, coverage guard,
lifecycle, liquidation queue and the audit components.

All money and share quantities are Decimal.

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


# ============================================================
# RESERVE LEDGER
# ============================================================

class ReserveEntryType(str, Enum):
    """Reserve fund movement type."""

    DEPOSIT = "DEPOSIT"
    """Capital added to the reserve."""

    WITHDRAW = "WITHDRAW"
    """Capital removed from the reserve."""

    TOPUP = "TOPUP"
    """Capital injected to restore coverage."""

    GUARANTEE_PAYOUT = "GUARANTEE_PAYOUT"
    """Reserve paid out to honor a guarantee floor at settlement."""

    @property
    def sign(self) -> int:
        if self in (ReserveEntryType.DEPOSIT, ReserveEntryType.TOPUP):
            return 1
        return -1


class LiabilityScope(str, Enum):
    """Which subscriptions a reserve balance is measured against."""

    PRODUCT = "product"
    GLOBAL = "global"


# ============================================================
# SUBSCRIPTION LIFECYCLE
# ============================================================

class SubscriptionStatus(str, Enum):
    """
    Subscription lifecycle state.

    PENDING ──► RUNNING ──► MATURED ──► SETTLED
       │           │
       └───────────┴──► CANCELLED

    Liquidation is tracked by liquidation_started_at on the
    subscription, not by a separate status.
    """

    PENDING = "PENDING"
    """Created, not yet funded/active."""

    RUNNING = "RUNNING"
    """Active and trading."""

    MATURED = "MATURED"
    """Term elapsed, pending exit."""

    SETTLED = "SETTLED"
    """Fully exited and paid."""

    CANCELLED = "CANCELLED"
    """Withdrawn before maturity."""

    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.SETTLED, SubscriptionStatus.CANCELLED)


GUARANTEE_LIABLE_STATUSES = (
    SubscriptionStatus.PENDING,
    SubscriptionStatus.RUNNING,
    SubscriptionStatus.MATURED,
)


class ExitReason(str, Enum):
    """Why a subscription left the market."""

    MATURITY = "MATURITY"
    EARLY_WITHDRAWAL = "EARLY_WITHDRAWAL"


class PriceSource(str, Enum):
    """Where a NAV mark or liquidation price came from."""

    INITIAL = "INITIAL"
    """Seed snapshot written at subscription creation."""

    ORDERBOOK = "ORDERBOOK"
    """Live best bid."""

    MARK_TO_MARKET = "MARK_TO_MARKET"
    """Current mark from the price source."""

    FALLBACK = "FALLBACK"
    """Lookup failed or timed out; last known / entry price used."""


class CommissionStatus(str, Enum):
    """Profit fee hand-off state on a settlement."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class ReferralOutcome(str, Enum):
    """Result of the one-time referral bonus hook."""

    GRANTED = "GRANTED"
    NO_REFERRAL = "NO_REFERRAL"
    ALREADY_GRANTED = "ALREADY_GRANTED"
    NO_ACTIVE_SUBSCRIPTION = "NO_ACTIVE_SUBSCRIPTION"


# ============================================================
# LIQUIDATION TASKS
# ============================================================

class LiquidationStatus(str, Enum):
    """
    Liquidation task state.

    PENDING ──► COMPLETED
       │
       └──► RETRYING ──► COMPLETED
                │
                └──► BLOCKED ──(operator)──► RETRYING | PENDING | FAILED
    """

    PENDING = "PENDING"
    """Waiting for its first attempt."""

    RETRYING = "RETRYING"
    """Failed at least once, waiting for nextRetryAt."""

    BLOCKED = "BLOCKED"
    """Needs operator intervention."""

    COMPLETED = "COMPLETED"
    """Position fully exited."""

    FAILED = "FAILED"
    """Operator accepted the failure."""

    def is_terminal(self) -> bool:
        return self in (LiquidationStatus.COMPLETED, LiquidationStatus.FAILED)


DUE_STATUSES = (LiquidationStatus.PENDING, LiquidationStatus.RETRYING)
NON_TERMINAL_TASK_STATUSES = (
    LiquidationStatus.PENDING,
    LiquidationStatus.RETRYING,
    LiquidationStatus.BLOCKED,
)
TERMINAL_TASK_STATUSES = (LiquidationStatus.COMPLETED, LiquidationStatus.FAILED)


class OperatorAction(str, Enum):
    """Admin intents against liquidation tasks."""

    RETRY = "retry"
    REQUEUE = "requeue"
    FAIL = "fail"


# ============================================================
# VALUE OBJECTS
# ============================================================

@dataclass(frozen=True)
class ReserveCoverage:
    """Reserve coverage computed for one acceptance decision."""

    balance: Decimal
    existing_liability: Decimal
    additional_liability: Decimal
    projected_liability: Decimal
    coverage_ratio: Decimal
    """Decimal('Infinity') when projected liability is zero."""

    @property
    def is_unbounded(self) -> bool:
        return self.coverage_ratio.is_infinite()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "balance": str(self.balance),
            "existingLiability": str(self.existing_liability),
            "additionalLiability": str(self.additional_liability),
            "projectedLiability": str(self.projected_liability),
            "coverageRatio": None if self.is_unbounded else str(self.coverage_ratio),
            "coverageUnbounded": self.is_unbounded,
        }


@dataclass(frozen=True)
class SettlementCalculation:
    """Exit payout breakdown for one subscription."""

    principal: Decimal
    final_equity: Decimal
    gross_pnl: Decimal
    high_water_mark: Decimal
    """Peak equity the fee is measured from, never below principal."""

    hwm_eligible_profit: Decimal
    performance_fee_rate: Decimal
    performance_fee: Decimal
    pre_guarantee_payout: Decimal
    guaranteed_payout: Optional[Decimal]
    reserve_topup: Decimal
    final_payout: Decimal
    expected_fee: Decimal


@dataclass
class OpenPosition:
    """Open exposure held by a subscription."""

    subscription_id: str
    token_id: str
    shares: Decimal
    avg_entry_price: Decimal
    market_slug: Optional[str] = None


@dataclass
class PriceQuote:
    """Result of a bounded price lookup."""

    token_id: str
    price: Decimal
    source: PriceSource
    is_fallback: bool = False
    fetched_at: Optional[datetime] = None
    fallback_reason: Optional[str] = None
    """NO_BID_LIQUIDITY or PRICE_UNAVAILABLE when is_fallback."""


@dataclass
class FillResult:
    """What the executor actually sold."""

    filled_shares: Decimal
    avg_price: Decimal
    order_id: Optional[str] = None
    notional_usd: Optional[Decimal] = None


@dataclass
class StaleRecord:
    """One item flagged by an age-thresholded scan."""

    record_id: str
    age_minutes: float
    since: datetime
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AllocationReport:
    """Execution-binding coverage of in-scope subscriptions."""

    mapped_count: int
    unmapped_count: int
    stale_unmapped: List[StaleRecord]
    stale_unmapped_count: int = 0
    """All stale rows; stale_unmapped holds only the oldest ``limit``."""

    by_status: Dict[str, int] = field(default_factory=dict)
    stale_mapping_minutes: int = 0


@dataclass
class ParityFinding:
    """A settlement whose fee posting is missing or wrong."""

    settlement_id: str
    subscription_id: str
    wallet_address: str
    trade_id: str
    gross_pnl: Decimal
    expected_fee: Decimal
    settled_at: datetime
    actual_fee: Optional[Decimal] = None
    drift: Optional[Decimal] = None
    """actual_fee - expected_fee; positive means over-charged."""


@dataclass
class ParityReport:
    """Output of one settlement/commission reconciliation pass."""

    window_days: int
    checked_settlements: int
    profitable_settlements: int
    missing: List[ParityFinding]
    fee_mismatches: List[ParityFinding]
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not self.missing and not self.fee_mismatches and not self.errors


@dataclass
class TaskSummary:
    """Aggregate counts over the liquidation task queue."""

    total_count: int
    due_count: int
    by_status: Dict[str, int]


@dataclass
class OperatorActionResult:
    """Outcome of an admin mutation against liquidation tasks."""

    action: OperatorAction
    requested_count: int
    updated_count: int
    updated_task_ids: List[str] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)
    """task id -> reason it was left unchanged."""


@dataclass
class CycleStats:
    """Counters for one liquidation worker cycle."""

    claimed: int = 0
    completed: int = 0
    partial: int = 0
    retried: int = 0
    blocked: int = 0
    failed: int = 0
    fenced: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "claimed": self.claimed,
            "completed": self.completed,
            "partial": self.partial,
            "retried": self.retried,
            "blocked": self.blocked,
            "failed": self.failed,
            "fenced": self.fenced,
        }


@dataclass
class SettlementSweepResult:
    """Counters for one maturity + liquidation + settlement sweep."""

    matured: int = 0
    liquidations_started: int = 0
    tasks_created: int = 0
    settled: int = 0
    cancelled: int = 0
    waiting_on_tasks: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matured": self.matured,
            "liquidationsStarted": self.liquidations_started,
            "tasksCreated": self.tasks_created,
            "settled": self.settled,
            "cancelled": self.cancelled,
            "waitingOnTasks": self.waiting_on_tasks,
            "errors": self.errors,
        }
