"""
Managed Wealth ORM Models.

============================================================
PURPOSE
============================================================
Tables owned by the managed wealth control plane, plus the two
external tables it reads (positions fed by the copy-trade
execution engine, profit fee logs written by the commission
system).

============================================================
MODELS
============================================================
- ManagedProduct: Product catalogue (guaranteed or not)
- ManagedTerm: Duration / yield terms per product
- ManagedSubscription: One wallet's subscription
- ManagedNavSnapshot: Append-only NAV samples
- ReserveFundLedger: Append-only reserve movements
- ManagedLiquidationTask: Retryable per-position exit task
- ManagedSettlement: One exit record per subscription
- ManagedSubscriptionPosition: Open exposure (external feed)
- ManagedReferral: Referee -> referrer binding
- ProfitFeeLog: Commission postings (external, read-only)

============================================================
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database.engine import Base

from .types import (
    CommissionStatus,
    ExitReason,
    LiquidationStatus,
    PriceSource,
    ReserveEntryType,
    SubscriptionStatus,
)


def _uuid() -> str:
    return str(uuid.uuid4())


def _enum(enum_cls):
    return SAEnum(enum_cls, native_enum=False, length=32, validate_strings=True)


MONEY = Numeric(24, 8)
RATE = Numeric(12, 6)
SHARES = Numeric(24, 8)


# ============================================================
# PRODUCTS & TERMS
# ============================================================

class ManagedProduct(Base):
    """Managed wealth product."""

    __tablename__ = "managed_products"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    strategy_profile: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    is_guaranteed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    reserve_coverage_min: Mapped[Decimal] = mapped_column(
        RATE, nullable=False, default=Decimal("1.2"),
        comment="Minimum reserve coverage ratio at acceptance"
    )
    performance_fee_rate: Mapped[Decimal] = mapped_column(
        RATE, nullable=False, default=Decimal("0.2"),
        comment="Share of positive PnL charged at exit"
    )
    min_principal: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False)

    terms: Mapped[List["ManagedTerm"]] = relationship(
        back_populates="product", order_by="ManagedTerm.duration_days"
    )


class ManagedTerm(Base):
    """Duration and yield terms offered by a product."""

    __tablename__ = "managed_terms"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    product_id: Mapped[str] = mapped_column(
        ForeignKey("managed_products.id"), nullable=False, index=True
    )
    label: Mapped[str] = mapped_column(String(50), nullable=False)
    duration_days: Mapped[int] = mapped_column(Integer, nullable=False)

    min_yield_rate: Mapped[Decimal] = mapped_column(
        RATE, nullable=False, default=Decimal("0"),
        comment="Guaranteed minimum yield over the term"
    )
    performance_fee_rate: Mapped[Optional[Decimal]] = mapped_column(
        RATE, nullable=True, comment="Overrides the product rate when set"
    )
    max_subscription_amount: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    product: Mapped[ManagedProduct] = relationship(back_populates="terms")


# ============================================================
# SUBSCRIPTIONS
# ============================================================

class ManagedSubscription(Base):
    """
    One wallet's subscription to a product term.

    Mutated only by the lifecycle services and explicit admin/user
    actions. high_water_mark is the running maximum of current_equity.
    """

    __tablename__ = "managed_subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    wallet_address: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(
        ForeignKey("managed_products.id"), nullable=False, index=True
    )
    term_id: Mapped[str] = mapped_column(ForeignKey("managed_terms.id"), nullable=False)

    principal: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    status: Mapped[SubscriptionStatus] = mapped_column(
        _enum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.PENDING
    )
    high_water_mark: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    current_equity: Mapped[Decimal] = mapped_column(MONEY, nullable=False)

    start_at: Mapped[datetime] = mapped_column(nullable=False)
    end_at: Mapped[datetime] = mapped_column(nullable=False)

    is_trial: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    trial_ends_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    copy_config_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, comment="Execution account binding"
    )

    cancel_requested_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    liquidation_started_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    matured_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    settled_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    product: Mapped[ManagedProduct] = relationship()
    term: Mapped[ManagedTerm] = relationship()
    settlement: Mapped[Optional["ManagedSettlement"]] = relationship(
        back_populates="subscription", uselist=False
    )

    __table_args__ = (
        Index("ix_managed_subscriptions_status_end_at", "status", "end_at"),
    )


class ManagedNavSnapshot(Base):
    """One NAV sample per subscription per tick. Never mutated after write."""

    __tablename__ = "managed_nav_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscription_id: Mapped[str] = mapped_column(
        ForeignKey("managed_subscriptions.id"), nullable=False
    )
    snapshot_at: Mapped[datetime] = mapped_column(nullable=False)

    nav: Mapped[Decimal] = mapped_column(Numeric(24, 10), nullable=False)
    equity: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    period_return: Mapped[Decimal] = mapped_column(Numeric(24, 10), nullable=False)
    cumulative_return: Mapped[Decimal] = mapped_column(Numeric(24, 10), nullable=False)
    drawdown: Mapped[Decimal] = mapped_column(Numeric(24, 10), nullable=False)
    price_source: Mapped[PriceSource] = mapped_column(_enum(PriceSource), nullable=False)
    is_fallback_price: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("subscription_id", "snapshot_at", name="uq_nav_subscription_tick"),
    )


# ============================================================
# RESERVE FUND
# ============================================================

class ReserveFundLedger(Base):
    """Append-only reserve fund movement. Balance is the signed sum."""

    __tablename__ = "reserve_fund_ledger"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entry_type: Mapped[ReserveEntryType] = mapped_column(_enum(ReserveEntryType), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, comment="Always positive")
    subscription_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(nullable=False, index=True)


# ============================================================
# LIQUIDATION
# ============================================================

class ManagedLiquidationTask(Base):
    """
    Exit task for one open position of a liquidating subscription.

    attempt_count only decreases through an operator requeue.
    claim_token fences results from a worker whose claim was
    superseded by an operator action or lease expiry.
    """

    __tablename__ = "managed_liquidation_tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    subscription_id: Mapped[str] = mapped_column(
        ForeignKey("managed_subscriptions.id"), nullable=False, index=True
    )
    wallet_address: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    token_id: Mapped[str] = mapped_column(String(128), nullable=False)
    market_slug: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    requested_shares: Mapped[Decimal] = mapped_column(SHARES, nullable=False)
    filled_shares: Mapped[Decimal] = mapped_column(SHARES, nullable=False, default=Decimal("0"))
    avg_entry_price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    indicative_price: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    indicative_price_is_fallback: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notional_usd: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)

    status: Mapped[LiquidationStatus] = mapped_column(
        _enum(LiquidationStatus), nullable=False, default=LiquidationStatus.PENDING
    )
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    claim_token: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    claim_expires_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (
        Index("ix_liquidation_tasks_status_next_retry", "status", "next_retry_at"),
    )


# ============================================================
# SETTLEMENT
# ============================================================

class ManagedSettlement(Base):
    """Exit record, written once per subscription."""

    __tablename__ = "managed_settlements"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    subscription_id: Mapped[str] = mapped_column(
        ForeignKey("managed_subscriptions.id"), nullable=False, unique=True
    )
    wallet_address: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    trade_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    exit_reason: Mapped[ExitReason] = mapped_column(_enum(ExitReason), nullable=False)

    principal: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    final_equity: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    gross_pnl: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    high_water_mark: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    hwm_eligible_profit: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    performance_fee_rate: Mapped[Decimal] = mapped_column(RATE, nullable=False)
    performance_fee: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    guaranteed_payout: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    reserve_topup: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    final_payout: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    expected_fee: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    actual_fee: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)

    commission_status: Mapped[CommissionStatus] = mapped_column(
        _enum(CommissionStatus), nullable=False, default=CommissionStatus.PENDING
    )
    commission_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    settled_at: Mapped[datetime] = mapped_column(nullable=False, index=True)

    subscription: Mapped[ManagedSubscription] = relationship(back_populates="settlement")


# ============================================================
# EXTERNAL FEEDS
# ============================================================

class ManagedSubscriptionPosition(Base):
    """Open exposure per subscription and token, fed by the execution engine."""

    __tablename__ = "managed_subscription_positions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscription_id: Mapped[str] = mapped_column(
        ForeignKey("managed_subscriptions.id"), nullable=False, index=True
    )
    token_id: Mapped[str] = mapped_column(String(128), nullable=False)
    market_slug: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    shares: Mapped[Decimal] = mapped_column(SHARES, nullable=False, default=Decimal("0"))
    avg_entry_price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    realized_pnl: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    last_mark_price: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (
        UniqueConstraint("subscription_id", "token_id", name="uq_position_subscription_token"),
    )


class ManagedReferral(Base):
    """Referee wallet bound to the wallet that referred it."""

    __tablename__ = "managed_referrals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    referee_wallet: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    referrer_wallet: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    bonus_granted_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    bonus_subscription_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)


class ProfitFeeLog(Base):
    """Commission posting written by the fee system. Read-only here."""

    __tablename__ = "profit_fee_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_address: Mapped[str] = mapped_column(String(64), nullable=False)
    subscription_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    trade_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    profit_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    fee_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
