"""
Approval Controllers (API Routes)
=================================

FastAPI routes for policies and approval instances.

Controllers are thin - they delegate to application services held on
``app.state`` and let the shared exception handlers map domain errors.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status

from approvalflow.approvals.application import (
    ApprovalChainExecutor,
    AutoApprovalScheduler,
    PolicyService,
)
from approvalflow.approvals.application.dto import (
    ApproverActionRequest,
    InstanceResponse,
    PolicyMatchResponse,
    PolicyResponse,
    PolicyUpsertRequest,
    SubmissionRequest,
    SubmitterActionRequest,
    SweepResponse,
    WorkItemDTO,
)
from approvalflow.config import ApprovalAction
from approvalflow.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/approvals", tags=["Approvals"])


# ========== Dependencies ==========

def get_policy_service(request: Request) -> PolicyService:
    return request.app.state.policy_service


def get_executor(request: Request) -> ApprovalChainExecutor:
    return request.app.state.approval_executor


def get_auto_approval_scheduler(request: Request) -> AutoApprovalScheduler:
    return request.app.state.auto_approval_scheduler


# ========== Policies ==========

@router.post(
    "/policies",
    response_model=PolicyResponse,
    status_code=status.HTTP_200_OK,
    summary="Create or update an approval policy",
    description="""
    Creates a policy, or replaces it when `id` matches an existing one.

    **Validation** (422 on failure):
    - chain has at least one level, numbered 1..N without gaps
    - ROLE levels carry `required_role`, HIERARCHY levels carry `hierarchy_level`
    - at most one enabled default policy per workspace
    """,
)
async def upsert_policy(
    body: PolicyUpsertRequest,
    service: PolicyService = Depends(get_policy_service),
):
    policy = await service.create_or_update_policy(body.to_domain())
    return PolicyResponse.from_domain(policy)


@router.get("/policies", response_model=List[PolicyResponse], summary="List approval policies")
async def list_policies(
    workspace_id: Optional[str] = Query(None, description="Only policies of this workspace"),
    service: PolicyService = Depends(get_policy_service),
):
    return [PolicyResponse.from_domain(p) for p in await service.list_policies(workspace_id)]


@router.get("/policies/{policy_id}", response_model=PolicyResponse, summary="Get an approval policy")
async def get_policy(policy_id: str, service: PolicyService = Depends(get_policy_service)):
    return PolicyResponse.from_domain(await service.get_policy(policy_id))


@router.post(
    "/policies/match",
    response_model=PolicyMatchResponse,
    summary="Preview which policy governs a work item",
)
async def match_policy(body: WorkItemDTO, service: PolicyService = Depends(get_policy_service)):
    return PolicyMatchResponse.from_domain(await service.select_policy(body.to_domain()))


# ========== Instances ==========

@router.post(
    "/submissions",
    response_model=InstanceResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a work item for approval",
    description="""
    Binds the work item to the most specific matching policy (or the
    workspace default) and opens level 1. When no policy applies the
    instance comes back already `approved`.
    """,
)
async def submit_for_approval(
    body: SubmissionRequest,
    executor: ApprovalChainExecutor = Depends(get_executor),
):
    instance = await executor.submit(body.work_item.to_domain(), body.submitter_id, body.policy_id)
    return InstanceResponse.from_domain(instance)


@router.get("/instances/{instance_id}", response_model=InstanceResponse, summary="Get an approval instance")
async def get_instance(instance_id: str, executor: ApprovalChainExecutor = Depends(get_executor)):
    return InstanceResponse.from_domain(await executor.get_instance(instance_id))


@router.post(
    "/instances/{instance_id}/actions",
    response_model=InstanceResponse,
    summary="Record an approver action",
    description="""
    `approve`, `reject` or `request_revision`.

    A caller that loses a race for the same level receives
    `{"status": "already_decided"}` with HTTP 200.
    """,
)
async def record_action(
    instance_id: str,
    body: ApproverActionRequest,
    executor: ApprovalChainExecutor = Depends(get_executor),
):
    instance = await executor.act(
        instance_id,
        body.actor_id,
        ApprovalAction(body.action),
        notes=body.notes,
        level=body.level,
    )
    return InstanceResponse.from_domain(instance)


@router.post(
    "/instances/{instance_id}/resubmit",
    response_model=InstanceResponse,
    summary="Resubmit after a requested revision",
)
async def resubmit(
    instance_id: str,
    body: SubmitterActionRequest,
    executor: ApprovalChainExecutor = Depends(get_executor),
):
    return InstanceResponse.from_domain(await executor.resubmit(instance_id, body.actor_id, body.notes))


@router.post(
    "/instances/{instance_id}/withdraw",
    response_model=InstanceResponse,
    summary="Withdraw a request before any approval",
)
async def withdraw(
    instance_id: str,
    body: SubmitterActionRequest,
    executor: ApprovalChainExecutor = Depends(get_executor),
):
    return InstanceResponse.from_domain(await executor.withdraw(instance_id, body.actor_id, body.notes))


@router.get(
    "/pending",
    response_model=List[InstanceResponse],
    summary="Instances waiting on a user",
)
async def list_pending(
    workspace_id: str = Query(..., description="Workspace to look in"),
    user_id: str = Query(..., description="Approver"),
    executor: ApprovalChainExecutor = Depends(get_executor),
):
    instances = await executor.list_pending_for_approver(workspace_id, user_id)
    return [InstanceResponse.from_domain(i) for i in instances]


@router.post(
    "/sweeps",
    response_model=SweepResponse,
    summary="Run the auto-approval sweep now",
)
async def run_auto_approval_sweep(
    scheduler: AutoApprovalScheduler = Depends(get_auto_approval_scheduler),
):
    advanced = await scheduler.sweep()
    logger.info("Manual auto-approval sweep", extra={"advanced": len(advanced)})
    return SweepResponse(advanced=advanced)
