from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from core.exceptions import ValidationError
from dashboard.dependencies import get_container, require_admin
from dashboard.schemas import (
    LiquidationTaskOut,
    TaskActionRequest,
    TaskActionResponse,
    TaskListResponse,
    TaskSummaryOut,
)
from managed_wealth.container import ManagedWealthContainer
from managed_wealth.liquidation_queue import MAX_LIST_LIMIT, is_due
from managed_wealth.types import LiquidationStatus

router = APIRouter(prefix="/managed-liquidation", tags=["Managed Liquidation"])


@router.get("/tasks", response_model=TaskListResponse)
def list_tasks(
    statuses: Optional[str] = Query(default=None, description="Comma separated statuses"),
    subscription_id: Optional[str] = Query(default=None, alias="subscriptionId"),
    wallet_address: Optional[str] = Query(default=None, alias="walletAddress"),
    due_only: bool = Query(default=False, alias="dueOnly"),
    limit: int = Query(default=100, ge=1, le=MAX_LIST_LIMIT),
    container: ManagedWealthContainer = Depends(get_container),
    actor: str = Depends(require_admin),
):
    status_filter: List[LiquidationStatus] = []
    if statuses:
        try:
            status_filter = [LiquidationStatus(s.strip().upper()) for s in statuses.split(",") if s.strip()]
        except ValueError:
            raise ValidationError(f"Unknown status in {statuses!r}", field="statuses")

    tasks, summary = container.health.list_tasks(
        statuses=status_filter or None,
        subscription_id=subscription_id,
        wallet_address=wallet_address,
        due_only=due_only,
        limit=limit,
    )
    now = container.clock.now()
    return TaskListResponse(
        tasks=[
            LiquidationTaskOut.model_validate(task).model_copy(update={"is_due": is_due(task, now)})
            for task in tasks
        ],
        summary=TaskSummaryOut.model_validate(summary),
    )


@router.post("/tasks", response_model=TaskActionResponse)
def apply_task_action(
    body: TaskActionRequest,
    container: ManagedWealthContainer = Depends(get_container),
    actor: str = Depends(require_admin),
):
    """Operator retry / requeue / fail over a list of task ids."""
    result = container.health.apply_operator_action(
        body.action,
        body.task_ids,
        delay_seconds=body.delay_seconds,
        reason=body.reason,
        actor=actor,
    )
    return TaskActionResponse.model_validate(result)
