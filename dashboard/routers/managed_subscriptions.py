from typing import Optional

from fastapi import APIRouter, Depends, Query
from starlette.concurrency import run_in_threadpool

from core.exceptions import ReserveCoverageError
from dashboard.dependencies import get_container
from dashboard.schemas import (
    CreateSubscriptionRequest,
    CreateSubscriptionResponse,
    NavSnapshotOut,
    ProductOut,
    SettlementOut,
    SubscriptionDetailOut,
    SubscriptionListResponse,
    SubscriptionOut,
    TermOut,
    WithdrawResponse,
)
from managed_wealth.alerting import create_coverage_rejected_alert
from managed_wealth.container import ManagedWealthContainer
from managed_wealth.lifecycle import SubscriptionRequest
from managed_wealth.types import SubscriptionStatus

router = APIRouter(prefix="/managed-subscriptions", tags=["Managed Subscriptions"])


@router.post("", response_model=CreateSubscriptionResponse, status_code=201)
async def create_subscription(
    body: CreateSubscriptionRequest,
    container: ManagedWealthContainer = Depends(get_container),
):
    """
    Subscribe a wallet to a product term.

    409 with reserveCoverage / requiredCoverageRatio when a guaranteed
    product cannot be covered by the reserve.
    """
    request = SubscriptionRequest(
        wallet_address=body.wallet_address,
        product_id=body.product_id,
        product_slug=body.product_slug,
        term_id=body.term_id,
        principal=body.principal,
        accepted_terms=body.accepted_terms,
        copy_config_id=body.copy_config_id,
    )
    try:
        result = await run_in_threadpool(container.lifecycle.create, request)
    except ReserveCoverageError as e:
        await container.alerter.send_alert(
            create_coverage_rejected_alert(e.product_id or "", e.coverage, e.required_ratio)
        )
        raise

    return CreateSubscriptionResponse(
        subscription=SubscriptionOut.model_validate(result.subscription),
        reserve_coverage=result.coverage.to_dict() if result.coverage else None,
        referral_bonus=result.referral.outcome.value if result.referral else None,
    )


@router.get("", response_model=SubscriptionListResponse)
def list_subscriptions(
    wallet: Optional[str] = Query(default=None, max_length=64),
    status: Optional[SubscriptionStatus] = None,
    container: ManagedWealthContainer = Depends(get_container),
):
    views = container.lifecycle.list_subscriptions(wallet_address=wallet, status=status)
    return SubscriptionListResponse(
        subscriptions=[
            SubscriptionDetailOut.model_validate(
                {
                    **SubscriptionOut.model_validate(view.subscription).model_dump(),
                    "product": ProductOut.model_validate(view.product),
                    "term": TermOut.model_validate(view.term),
                    "nav_snapshots": [NavSnapshotOut.model_validate(s) for s in view.nav_snapshots],
                    "settlement": SettlementOut.model_validate(view.settlement) if view.settlement else None,
                }
            )
            for view in views
        ]
    )


@router.post("/{subscription_id}/withdraw", response_model=WithdrawResponse)
def withdraw_subscription(
    subscription_id: str,
    container: ManagedWealthContainer = Depends(get_container),
):
    """Early withdrawal: cancels now, or starts liquidation when positions are open."""
    result = container.lifecycle.cancel(subscription_id)
    return WithdrawResponse(
        subscription=SubscriptionOut.model_validate(result.subscription),
        settlement=SettlementOut.model_validate(result.settlement) if result.settlement else None,
        liquidating=result.liquidating,
        liquidation_tasks_created=result.liquidation_tasks_created,
    )
