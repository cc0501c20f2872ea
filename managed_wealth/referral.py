"""
Managed Wealth - Referral Bonus.

One-time bonus for the referrer of a wallet that subscribes:
the referrer's earliest-ending RUNNING subscription is extended.
Runs inside the subscription-creation transaction, under the
referee's wallet lock, so it is granted at most once.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import ManagedReferral, ManagedSubscription
from .types import ReferralOutcome, SubscriptionStatus

logger = logging.getLogger(__name__)


@dataclass
class ReferralBonusResult:
    outcome: ReferralOutcome
    referrer_wallet: Optional[str] = None
    subscription_id: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.outcome == ReferralOutcome.GRANTED


def apply_referral_bonus(
    session: Session,
    referee_wallet: str,
    now: datetime,
    bonus_days: int = 1,
) -> ReferralBonusResult:
    referee_wallet = referee_wallet.strip().lower()

    referral = session.scalars(
        select(ManagedReferral)
        .where(ManagedReferral.referee_wallet == referee_wallet)
        .with_for_update()
    ).first()
    if referral is None:
        return ReferralBonusResult(ReferralOutcome.NO_REFERRAL)
    if referral.bonus_granted_at is not None:
        return ReferralBonusResult(ReferralOutcome.ALREADY_GRANTED, referral.referrer_wallet)

    referrer_wallet = referral.referrer_wallet.strip().lower()
    target = session.scalars(
        select(ManagedSubscription)
        .where(ManagedSubscription.wallet_address == referrer_wallet)
        .where(ManagedSubscription.status == SubscriptionStatus.RUNNING)
        .where(ManagedSubscription.end_at > now)
        .order_by(ManagedSubscription.end_at.asc())
        .limit(1)
    ).first()
    if target is None:
        logger.info(f"Referral bonus for {referee_wallet} deferred: referrer {referrer_wallet} has no running subscription")
        return ReferralBonusResult(ReferralOutcome.NO_ACTIVE_SUBSCRIPTION, referrer_wallet)

    target.end_at = target.end_at + timedelta(days=bonus_days)
    target.updated_at = now
    referral.bonus_granted_at = now
    referral.bonus_subscription_id = target.id
    session.flush()

    logger.info(
        f"Referral bonus granted: referee={referee_wallet} referrer={referrer_wallet} "
        f"subscription={target.id} extended by {bonus_days}d to {target.end_at.isoformat()}"
    )
    return ReferralBonusResult(ReferralOutcome.GRANTED, referrer_wallet, target.id)
