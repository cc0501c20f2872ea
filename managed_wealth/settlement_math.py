"""
Managed Wealth - Settlement Math.

============================================================
PURPOSE
============================================================
Pure Decimal arithmetic for guarantee liability, coverage
ratios and exit payouts. No I/O, no clock.

============================================================
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from core.clock import ensure_utc

from .types import SettlementCalculation

ZERO = Decimal("0")
ONE = Decimal("1")
INFINITE_RATIO = Decimal("Infinity")


def guarantee_liability(principal: Decimal, min_yield_rate: Optional[Decimal]) -> Decimal:
    """Amount the reserve could owe at minimum yield."""
    return Decimal(principal) * Decimal(min_yield_rate or ZERO)


def coverage_ratio(balance: Decimal, existing_liability: Decimal, additional_liability: Decimal = ZERO) -> Decimal:
    """
    balance / (existing + additional).

    Zero (or negative) total liability yields Decimal('Infinity'),
    which passes every threshold.
    """
    total = existing_liability + additional_liability
    if total <= ZERO:
        return INFINITE_RATIO
    return balance / total


def effective_performance_fee_rate(
    base_rate: Decimal,
    is_trial: bool,
    trial_ends_at: Optional[datetime],
    end_at: Optional[datetime],
) -> Decimal:
    """Trial subscriptions that end within the trial pay no performance fee."""
    if not is_trial or trial_ends_at is None or end_at is None:
        return base_rate
    if ensure_utc(end_at) <= ensure_utc(trial_ends_at):
        return ZERO
    return base_rate


def is_guarantee_eligible(is_guaranteed: bool, end_at: datetime, now: datetime) -> bool:
    """Guarantee floors only apply to subscriptions that matured by time."""
    return bool(is_guaranteed) and ensure_utc(end_at) <= ensure_utc(now)


def calculate_settlement(
    principal: Decimal,
    final_equity: Decimal,
    high_water_mark: Decimal,
    performance_fee_rate: Decimal,
    guarantee_eligible: bool,
    min_yield_rate: Optional[Decimal],
    profit_fee_rate: Decimal,
) -> SettlementCalculation:
    """
    Compute the exit payout.

    grossPnl            = finalEquity - principal
    highWaterMark       = max(highWaterMark, principal)
    hwmEligibleProfit   = max(0, finalEquity - highWaterMark)
    performanceFee      = hwmEligibleProfit * rate
    preGuaranteePayout  = finalEquity - performanceFee
    guaranteedPayout    = principal * (1 + minYieldRate)   (eligible only)
    reserveTopup        = max(0, guaranteedPayout - preGuaranteePayout)
    finalPayout         = preGuaranteePayout + reserveTopup
    expectedFee         = max(0, grossPnl) * profitFeeRate
    """
    gross_pnl = final_equity - principal
    positive_pnl = max(ZERO, gross_pnl)
    high_water_mark = max(Decimal(high_water_mark), principal)
    hwm_eligible_profit = max(ZERO, final_equity - high_water_mark)
    performance_fee = hwm_eligible_profit * performance_fee_rate
    pre_guarantee_payout = final_equity - performance_fee

    guaranteed_payout: Optional[Decimal] = None
    reserve_topup = ZERO
    if guarantee_eligible:
        guaranteed_payout = principal * (ONE + Decimal(min_yield_rate or ZERO))
        reserve_topup = max(ZERO, guaranteed_payout - pre_guarantee_payout)

    return SettlementCalculation(
        principal=principal,
        final_equity=final_equity,
        gross_pnl=gross_pnl,
        high_water_mark=high_water_mark,
        hwm_eligible_profit=hwm_eligible_profit,
        performance_fee_rate=performance_fee_rate,
        performance_fee=performance_fee,
        pre_guarantee_payout=pre_guarantee_payout,
        guaranteed_payout=guaranteed_payout,
        reserve_topup=reserve_topup,
        final_payout=pre_guarantee_payout + reserve_topup,
        expected_fee=positive_pnl * profit_fee_rate,
    )


def settlement_trade_id(subscription_id: str, settlement_id: str) -> str:
    """Trade id the commission system posts the profit fee under."""
    return f"managed-settlement:{subscription_id}:{settlement_id}"
