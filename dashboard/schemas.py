"""
Pydantic schemas for the Managed Wealth API.

Wire format is camelCase; money values serialize as decimal strings.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from managed_wealth.types import (
    CommissionStatus,
    ExitReason,
    LiquidationStatus,
    OperatorAction,
    PriceSource,
    SubscriptionStatus,
)


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# =======================
# SUBSCRIPTIONS
# =======================

class CreateSubscriptionRequest(ApiModel):
    wallet_address: str = Field(min_length=1, max_length=64)
    product_id: Optional[str] = None
    product_slug: Optional[str] = None
    term_id: str = Field(min_length=1)
    principal: Decimal
    accepted_terms: bool = False
    copy_config_id: Optional[str] = None

    @model_validator(mode="after")
    def _product_reference(self):
        if not self.product_id and not self.product_slug:
            raise ValueError("productId or productSlug is required")
        return self


class ProductOut(ApiModel):
    id: str
    slug: str
    name: str
    strategy_profile: Optional[str] = None
    is_guaranteed: bool
    is_active: bool
    reserve_coverage_min: Decimal
    performance_fee_rate: Decimal


class TermOut(ApiModel):
    id: str
    label: str
    duration_days: int
    min_yield_rate: Decimal
    performance_fee_rate: Optional[Decimal] = None
    max_subscription_amount: Optional[Decimal] = None
    is_active: bool


class NavSnapshotOut(ApiModel):
    snapshot_at: datetime
    nav: Decimal
    equity: Decimal
    period_return: Decimal
    cumulative_return: Decimal
    drawdown: Decimal
    price_source: PriceSource
    is_fallback_price: bool


class SettlementOut(ApiModel):
    id: str
    trade_id: str
    exit_reason: ExitReason
    principal: Decimal
    final_equity: Decimal
    gross_pnl: Decimal
    high_water_mark: Decimal
    hwm_eligible_profit: Decimal
    performance_fee: Decimal
    guaranteed_payout: Optional[Decimal] = None
    reserve_topup: Decimal
    final_payout: Decimal
    expected_fee: Decimal
    actual_fee: Optional[Decimal] = None
    commission_status: CommissionStatus
    settled_at: datetime


class SubscriptionOut(ApiModel):
    id: str
    wallet_address: str
    product_id: str
    term_id: str
    principal: Decimal
    status: SubscriptionStatus
    high_water_mark: Decimal
    current_equity: Decimal
    start_at: datetime
    end_at: datetime
    is_trial: bool
    trial_ends_at: Optional[datetime] = None
    copy_config_id: Optional[str] = None
    cancel_requested_at: Optional[datetime] = None
    liquidation_started_at: Optional[datetime] = None
    matured_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    created_at: datetime


class SubscriptionDetailOut(SubscriptionOut):
    product: ProductOut
    term: TermOut
    nav_snapshots: List[NavSnapshotOut] = []
    settlement: Optional[SettlementOut] = None


class CreateSubscriptionResponse(ApiModel):
    subscription: SubscriptionOut
    reserve_coverage: Optional[Dict[str, Any]] = None
    referral_bonus: Optional[str] = None


class SubscriptionListResponse(ApiModel):
    subscriptions: List[SubscriptionDetailOut]


class WithdrawResponse(ApiModel):
    subscription: SubscriptionOut
    settlement: Optional[SettlementOut] = None
    liquidating: bool
    liquidation_tasks_created: int


# =======================
# LIQUIDATION TASKS
# =======================

class LiquidationTaskOut(ApiModel):
    id: str
    subscription_id: str
    wallet_address: str
    token_id: str
    market_slug: Optional[str] = None
    requested_shares: Decimal
    filled_shares: Decimal
    avg_entry_price: Decimal
    indicative_price: Optional[Decimal] = None
    indicative_price_is_fallback: bool
    notional_usd: Optional[Decimal] = None
    status: LiquidationStatus
    attempt_count: int
    last_attempt_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    is_due: bool = False
    created_at: datetime
    updated_at: datetime


class TaskSummaryOut(ApiModel):
    total_count: int
    due_count: int
    by_status: Dict[str, int]


class TaskListResponse(ApiModel):
    tasks: List[LiquidationTaskOut]
    summary: TaskSummaryOut


class TaskActionRequest(ApiModel):
    action: OperatorAction
    task_ids: List[str] = Field(min_length=1)
    delay_seconds: int = Field(default=0, ge=0)
    reason: Optional[str] = None


class TaskActionResponse(ApiModel):
    action: OperatorAction
    requested_count: int
    updated_count: int
    updated_task_ids: List[str]
    skipped: Dict[str, str]


# =======================
# SETTLEMENT HEALTH
# =======================

class StaleRecordOut(ApiModel):
    record_id: str
    age_minutes: float
    since: datetime
    details: Dict[str, Any] = {}


class ProductCoverageOut(ApiModel):
    product_id: str
    slug: str
    required_ratio: Decimal
    reserve_coverage: Dict[str, Any]
    is_healthy: bool


class AllocationOut(ApiModel):
    mapped_count: int
    unmapped_count: int
    stale_unmapped_count: int
    by_status: Dict[str, int]
    stale_mapping_minutes: int
    stale_unmapped: List[StaleRecordOut]


class LiquidationBacklogOut(ApiModel):
    inspected: int
    ready_to_settle: int
    backlog: List[StaleRecordOut]


class ParityFindingOut(ApiModel):
    settlement_id: str
    subscription_id: str
    wallet_address: str
    trade_id: str
    gross_pnl: Decimal
    expected_fee: Decimal
    settled_at: datetime
    actual_fee: Optional[Decimal] = None
    drift: Optional[Decimal] = None


class ParityOut(ApiModel):
    window_days: int
    checked_settlements: int
    profitable_settlements: int
    missing: List[ParityFindingOut]
    fee_mismatches: List[ParityFindingOut]
    errors: List[Dict[str, Any]]
    is_clean: bool


class HealthResponse(ApiModel):
    generated_at: datetime
    healthy: bool
    window_days: int
    coverage: List[ProductCoverageOut]
    allocation: AllocationOut
    liquidation: LiquidationBacklogOut
    tasks: TaskSummaryOut
    parity: ParityOut


class SettlementRunResponse(ApiModel):
    matured: int
    liquidations_started: int
    tasks_created: int
    settled: int
    cancelled: int
    waiting_on_tasks: int
    errors: List[Dict[str, Any]]
