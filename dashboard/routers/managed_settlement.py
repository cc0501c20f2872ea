from typing import Optional

from fastapi import APIRouter, Depends, Query

from dashboard.dependencies import get_container, require_admin
from dashboard.schemas import (
    AllocationOut,
    HealthResponse,
    LiquidationBacklogOut,
    ParityFindingOut,
    ParityOut,
    ProductCoverageOut,
    SettlementRunResponse,
    TaskSummaryOut,
)
from managed_wealth.container import ManagedWealthContainer

router = APIRouter(prefix="/managed-settlement", tags=["Managed Settlement"])


@router.get("/health", response_model=HealthResponse)
def get_settlement_health(
    window_days: Optional[int] = Query(default=None, alias="windowDays", ge=1, le=90),
    liquidation_limit: Optional[int] = Query(default=None, alias="liquidationLimit", ge=1, le=2000),
    parity_limit: Optional[int] = Query(default=None, alias="parityLimit", ge=1, le=5000),
    stale_mapping_minutes: Optional[int] = Query(default=None, alias="staleMappingMinutes", ge=1, le=24 * 60),
    container: ManagedWealthContainer = Depends(get_container),
    actor: str = Depends(require_admin),
):
    """
    Ops snapshot: reserve coverage, allocation mapping, liquidation
    backlog, task counts and settlement/commission parity.
    """
    snapshot = container.health.snapshot(
        window_days=window_days,
        liquidation_limit=liquidation_limit,
        parity_limit=parity_limit,
        stale_mapping_minutes=stale_mapping_minutes,
    )
    max_items = container.config.audit.max_items
    parity = snapshot.parity

    return HealthResponse(
        generated_at=snapshot.generated_at,
        healthy=snapshot.is_healthy,
        window_days=snapshot.window_days,
        coverage=[
            ProductCoverageOut(
                product_id=c.product_id,
                slug=c.slug,
                required_ratio=c.required_ratio,
                reserve_coverage=c.coverage.to_dict(),
                is_healthy=c.is_healthy,
            )
            for c in snapshot.coverage
        ],
        allocation=AllocationOut.model_validate(snapshot.allocation),
        liquidation=LiquidationBacklogOut.model_validate(snapshot.liquidation),
        tasks=TaskSummaryOut.model_validate(snapshot.tasks),
        parity=ParityOut(
            window_days=parity.window_days,
            checked_settlements=parity.checked_settlements,
            profitable_settlements=parity.profitable_settlements,
            missing=[ParityFindingOut.model_validate(f) for f in parity.missing[:max_items]],
            fee_mismatches=[ParityFindingOut.model_validate(f) for f in parity.fee_mismatches[:max_items]],
            errors=parity.errors[:max_items],
            is_clean=parity.is_clean,
        ),
    )


@router.post("/run", response_model=SettlementRunResponse)
def run_settlement(
    limit: int = Query(default=200, ge=1, le=1000),
    container: ManagedWealthContainer = Depends(get_container),
    actor: str = Depends(require_admin),
):
    """One maturity + liquidation-enqueue + settlement sweep."""
    result = container.lifecycle.run_settlement_cycle(limit=limit)
    return SettlementRunResponse.model_validate(result)
