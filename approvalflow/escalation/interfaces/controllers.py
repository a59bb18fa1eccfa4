"""
Escalation Controllers (API Routes)
===================================

FastAPI routes for work item intake, overdue reporting and escalation
history.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request

from approvalflow.escalation.application import EscalationWatchdog, WorkItemService
from approvalflow.escalation.application.dto import (
    EscalationEventResponse,
    EscalationSweepResponse,
    OverdueWorkItemResponse,
    ReassignRequest,
    WorkItemResponse,
    WorkItemUpsertRequest,
)
from approvalflow.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/escalation", tags=["Escalation"])


# ========== Dependencies ==========

def get_work_item_service(request: Request) -> WorkItemService:
    return request.app.state.work_item_service


def get_watchdog(request: Request) -> EscalationWatchdog:
    return request.app.state.escalation_watchdog


# ========== Work Items ==========

@router.put(
    "/work-items",
    response_model=WorkItemResponse,
    summary="Register or update a work item",
    description="""
    Upsert by `id`. Escalation bookkeeping (flag, level, target) is kept
    across updates; use the reassign or resolve endpoints to reset it.
    """,
)
async def upsert_work_item(
    body: WorkItemUpsertRequest,
    service: WorkItemService = Depends(get_work_item_service),
):
    return WorkItemResponse.from_domain(await service.register_work_item(body.to_domain()))


@router.get("/work-items/{item_id}", response_model=WorkItemResponse, summary="Get a work item")
async def get_work_item(item_id: str, service: WorkItemService = Depends(get_work_item_service)):
    return WorkItemResponse.from_domain(await service.get_work_item(item_id))


@router.post("/work-items/{item_id}/resolve", response_model=WorkItemResponse, summary="Resolve a work item")
async def resolve_work_item(item_id: str, service: WorkItemService = Depends(get_work_item_service)):
    return WorkItemResponse.from_domain(await service.resolve_work_item(item_id))


@router.post(
    "/work-items/{item_id}/reassign",
    response_model=WorkItemResponse,
    summary="Reassign a work item",
    description="Clears the escalated flag so a renewed breach escalates again.",
)
async def reassign_work_item(
    item_id: str,
    body: ReassignRequest,
    service: WorkItemService = Depends(get_work_item_service),
):
    item = await service.reassign_work_item(item_id, body.assignee_id, body.due_at)
    return WorkItemResponse.from_domain(item)


# ========== Reporting ==========

@router.get(
    "/workspaces/{workspace_id}/overdue",
    response_model=List[OverdueWorkItemResponse],
    summary="At-risk and breached items of a workspace",
)
async def list_overdue(workspace_id: str, service: WorkItemService = Depends(get_work_item_service)):
    overdue = await service.list_overdue_work_items(workspace_id)
    return [OverdueWorkItemResponse.from_domain(o) for o in overdue]


@router.get("/events", response_model=List[EscalationEventResponse], summary="Escalation history")
async def list_events(
    item_id: Optional[str] = Query(None),
    workspace_id: Optional[str] = Query(None, description="Events from or to this workspace"),
    service: WorkItemService = Depends(get_work_item_service),
):
    events = await service.list_events(item_id=item_id, workspace_id=workspace_id)
    return [EscalationEventResponse.from_domain(e) for e in events]


@router.post("/sweeps", response_model=EscalationSweepResponse, summary="Run the escalation sweep now")
async def run_escalation_sweep(watchdog: EscalationWatchdog = Depends(get_watchdog)):
    events = await watchdog.sweep()
    logger.info("Manual escalation sweep", extra={"escalated": len(events)})
    return EscalationSweepResponse(events=[EscalationEventResponse.from_domain(e) for e in events])
