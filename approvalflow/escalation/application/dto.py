"""
Escalation Application DTOs
===========================

Pydantic models for the escalation API.
"""

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from approvalflow.escalation.domain import EscalationEvent, OverdueWorkItem
from approvalflow.shared.domain import WorkItem


# ========== Type Aliases for Literals ==========
WorkItemTypeStr = Literal["task", "approval", "ticket", "issue", "budget_request", "resource_request"]
WorkItemStatusStr = Literal["open", "resolved"]
SLAStateStr = Literal["on_track", "at_risk", "breached"]


# ========== Request DTOs ==========

class WorkItemUpsertRequest(BaseModel):
    """Register a work item with the watchdog, or update it."""
    id: str = Field(..., min_length=1)
    type: WorkItemTypeStr
    title: str = Field(..., min_length=1)
    workspace_id: str = Field(..., min_length=1)
    parent_workspace_id: Optional[str] = None
    priority: Optional[str] = None
    category: Optional[str] = None
    estimated_hours: Optional[float] = Field(None, ge=0)
    assignee_id: Optional[str] = None
    due_at: Optional[datetime] = None
    sla_threshold_hours: Optional[float] = Field(None, ge=0)
    status: WorkItemStatusStr = "open"
    created_at: Optional[datetime] = None

    @model_validator(mode="after")
    def validate_deadline(self) -> "WorkItemUpsertRequest":
        if self.due_at is not None and self.sla_threshold_hours is not None:
            raise ValueError("Set either due_at or sla_threshold_hours, not both")
        return self

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
            due_at=self.due_at,
            sla_threshold_hours=self.sla_threshold_hours,
            status=self.status,
            created_at=self.created_at or datetime.now(timezone.utc),
        )


class ReassignRequest(BaseModel):
    assignee_id: str = Field(..., min_length=1)
    due_at: Optional[datetime] = Field(None, description="New deadline")


# ========== Response DTOs ==========

class WorkItemResponse(BaseModel):
    id: str
    type: WorkItemTypeStr
    title: str
    workspace_id: str
    parent_workspace_id: Optional[str]
    priority: Optional[str]
    category: Optional[str]
    estimated_hours: Optional[float]
    assignee_id: Optional[str]
    due_at: Optional[datetime]
    sla_threshold_hours: Optional[float]
    status: WorkItemStatusStr
    resolved_at: Optional[datetime]
    escalated: bool
    escalated_at: Optional[datetime]
    escalated_to_workspace_id: Optional[str]
    escalation_level: int
    created_at: datetime

    @classmethod
    def from_domain(cls, item: WorkItem) -> "WorkItemResponse":
        return cls(**item.to_dict())


class OverdueWorkItemResponse(BaseModel):
    item: WorkItemResponse
    state: SLAStateStr
    effective_due_at: Optional[datetime]
    overdue_hours: float
    breach_threshold_hours: float

    @classmethod
    def from_domain(cls, overdue: OverdueWorkItem) -> "OverdueWorkItemResponse":
        return cls(
            item=WorkItemResponse.from_domain(overdue.item),
            state=overdue.status.state.value,
            effective_due_at=overdue.status.effective_due_at,
            overdue_hours=overdue.status.overdue_hours,
            breach_threshold_hours=overdue.status.breach_threshold_hours,
        )


class EscalationEventResponse(BaseModel):
    id: str
    item_id: str
    item_type: WorkItemTypeStr
    escalated_from: str
    escalated_to: str
    overdue_hours_at_escalation: float
    escalation_level: int
    created_at: datetime

    @classmethod
    def from_domain(cls, event: EscalationEvent) -> "EscalationEventResponse":
        return cls(**event.to_dict())


class EscalationSweepResponse(BaseModel):
    events: List[EscalationEventResponse] = Field(default_factory=list)
