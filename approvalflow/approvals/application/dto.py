"""
Approval Application DTOs
=========================

Pydantic models for the approvals API: request validation, response
serialization and conversion to and from domain entities.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from approvalflow.approvals.domain import (
    ApprovalInstance,
    ApprovalLevel,
    ApprovalPolicy,
    PolicyCriteria,
    PolicySelection,
)
from approvalflow.config import SYSTEM_ACTOR, HierarchyLevel
from approvalflow.shared.domain import WorkItem


# ========== Type Aliases for Literals ==========
ApproverTypeStr = Literal["ROLE", "HIERARCHY"]
HierarchyLevelStr = Literal["OWNER", "MANAGER", "LEAD", "COORDINATOR"]
ReviewStageStr = Literal["submitted", "content_review", "design_review", "final_approval"]
ApproverActionStr = Literal["approve", "reject", "request_revision"]
WorkItemTypeStr = Literal["task", "approval", "ticket", "issue", "budget_request", "resource_request"]


# ========== Request DTOs ==========

class PolicyCriteriaDTO(BaseModel):
    categories: List[str] = Field(default_factory=list, description="Matching categories")
    priorities: List[str] = Field(default_factory=list, description="Matching priorities")
    min_estimated_hours: Optional[float] = Field(None, ge=0, description="Minimum estimated hours")


class ApprovalLevelDTO(BaseModel):
    level: int = Field(..., ge=1, description="1-based position in the chain")
    approver_type: ApproverTypeStr
    required_role: Optional[str] = Field(None, description="Role for ROLE approvers")
    hierarchy_level: Optional[HierarchyLevelStr] = Field(
        None, description="Minimum seniority for HIERARCHY approvers"
    )
    anyone_at_level: bool = Field(True, description="First eligible action decides the level")

    def to_domain(self) -> ApprovalLevel:
        return ApprovalLevel(
            level=self.level,
            approver_type=self.approver_type,
            required_role=self.required_role,
            hierarchy_level=HierarchyLevel[self.hierarchy_level] if self.hierarchy_level else None,
            anyone_at_level=self.anyone_at_level,
        )


class PolicyUpsertRequest(BaseModel):
    """Create a policy, or replace it when ``id`` already exists."""
    id: Optional[str] = Field(None, description="Policy ID; generated when omitted")
    workspace_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    is_default: bool = False
    criteria: PolicyCriteriaDTO = Field(default_factory=PolicyCriteriaDTO)
    chain: List[ApprovalLevelDTO] = Field(..., min_length=1)
    require_all_levels: bool = True
    allow_self_approval: bool = False
    auto_approve_after_hours: Optional[int] = Field(None, ge=0)
    revision_target_stage: Optional[ReviewStageStr] = None
    is_enabled: bool = True

    def to_domain(self) -> ApprovalPolicy:
        now = datetime.now(timezone.utc)
        return ApprovalPolicy(
            id=self.id or str(uuid.uuid4()),
            workspace_id=self.workspace_id,
            name=self.name,
            is_default=self.is_default,
            criteria=PolicyCriteria(
                categories=frozenset(self.criteria.categories),
                priorities=frozenset(self.criteria.priorities),
                min_estimated_hours=self.criteria.min_estimated_hours,
            ),
            chain=[lvl.to_domain() for lvl in self.chain],
            require_all_levels=self.require_all_levels,
            allow_self_approval=self.allow_self_approval,
            auto_approve_after_hours=self.auto_approve_after_hours,
            revision_target_stage=self.revision_target_stage,
            is_enabled=self.is_enabled,
            created_at=now,
            updated_at=now,
        )


class WorkItemDTO(BaseModel):
    """Work item as submitted for approval."""
    id: str = Field(..., min_length=1)
    type: WorkItemTypeStr = "task"
    title: str = Field(..., min_length=1)
    workspace_id: str = Field(..., min_length=1)
    parent_workspace_id: Optional[str] = None
    priority: Optional[str] = None
    category: Optional[str] = None
    estimated_hours: Optional[float] = Field(None, ge=0)
    assignee_id: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_domain(self) -> WorkItem:
        return WorkItem(
            id=self.id,
            type=self.type,
            title=self.title,
            workspace_id=self.workspace_id,
            parent_workspace_id=self.parent_workspace_id,
            priority=self.priority,
            category=self.category,
            estimated_hours=self.estimated_hours,
            assignee_id=self.assignee_id,
            created_at=self.created_at or datetime.now(timezone.utc),
        )


def _not_system(value: str) -> str:
    if value == SYSTEM_ACTOR:
        raise ValueError(f"'{SYSTEM_ACTOR}' is reserved for automatic approvals")
    return value


class SubmissionRequest(BaseModel):
    work_item: WorkItemDTO
    submitter_id: str = Field(..., min_length=1)
    policy_id: Optional[str] = Field(None, description="Bypass matching and use this policy")

    @field_validator("submitter_id")
    @classmethod
    def submitter_is_not_system(cls, value: str) -> str:
        return _not_system(value)


class ApproverActionRequest(BaseModel):
    actor_id: str = Field(..., min_length=1)
    action: ApproverActionStr
    notes: Optional[str] = None
    level: Optional[int] = Field(None, ge=1, description="Level the actor is deciding")

    @field_validator("actor_id")
    @classmethod
    def actor_is_not_system(cls, value: str) -> str:
        return _not_system(value)


class SubmitterActionRequest(BaseModel):
    actor_id: str = Field(..., min_length=1)
    notes: Optional[str] = None

    @field_validator("actor_id")
    @classmethod
    def actor_is_not_system(cls, value: str) -> str:
        return _not_system(value)


# ========== Response DTOs ==========

class PolicyResponse(BaseModel):
    id: str
    workspace_id: str
    name: str
    is_default: bool
    criteria: Dict[str, Any]
    chain: List[Dict[str, Any]]
    require_all_levels: bool
    allow_self_approval: bool
    auto_approve_after_hours: Optional[int]
    revision_target_stage: Optional[str]
    is_enabled: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, policy: ApprovalPolicy) -> "PolicyResponse":
        return cls(**policy.to_dict())


class PolicyMatchResponse(BaseModel):
    requires_approval: bool
    policy_id: Optional[str]
    score: int
    is_fallback: bool

    @classmethod
    def from_domain(cls, selection: PolicySelection) -> "PolicyMatchResponse":
        return cls(
            requires_approval=selection.requires_approval,
            policy_id=selection.policy.id if selection.policy else None,
            score=selection.score,
            is_fallback=selection.is_fallback,
        )


class HistoryEntryResponse(BaseModel):
    level: int
    actor_id: str
    action: str
    stage: str
    notes: Optional[str]
    timestamp: datetime


class InstanceResponse(BaseModel):
    id: str
    work_item_id: str
    workspace_id: str
    submitter_id: str
    policy_id: Optional[str]
    current_level: int
    current_stage: str
    level_entered_at: datetime
    level_states: Dict[str, Dict[str, Any]]
    history: List[HistoryEntryResponse]
    version: int
    created_at: datetime
    completed_at: Optional[datetime]

    @classmethod
    def from_domain(cls, instance: ApprovalInstance) -> "InstanceResponse":
        return cls(**instance.to_dict())


class SweepResponse(BaseModel):
    advanced: List[str] = Field(default_factory=list)
