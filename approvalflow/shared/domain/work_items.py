"""
Work Items
==========

The unit of work the escalation watchdog monitors. Tasks, tickets, issues
and active approval instances all reach the watchdog as a ``WorkItem``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from approvalflow.config import WorkItemStatus, WorkItemType
from approvalflow.core import ValidationException


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class WorkItem:
    """
    Work item entity.

    Deadline is either absolute (``due_at``) or relative to ``created_at``
    (``sla_threshold_hours``). When neither is set the escalation rule for
    the item type supplies a default.
    """

    id: str
    type: WorkItemType
    title: str
    workspace_id: str
    created_at: datetime

    priority: Optional[str] = None
    category: Optional[str] = None
    estimated_hours: Optional[float] = None
    assignee_id: Optional[str] = None
    parent_workspace_id: Optional[str] = None

    due_at: Optional[datetime] = None
    sla_threshold_hours: Optional[float] = None

    status: WorkItemStatus = WorkItemStatus.OPEN
    resolved_at: Optional[datetime] = None

    # Escalation bookkeeping
    escalated: bool = False
    escalated_at: Optional[datetime] = None
    escalated_to_workspace_id: Optional[str] = None
    escalation_level: int = 0

    def __post_init__(self):
        """Validate work item on initialization."""
        self.type = WorkItemType(self.type)
        self.status = WorkItemStatus(self.status)

        if not self.id:
            raise ValidationException("Work item id is required")
        if not self.workspace_id:
            raise ValidationException("Work item workspace_id is required")
        if self.estimated_hours is not None and self.estimated_hours < 0:
            raise ValidationException("estimated_hours cannot be negative")
        if self.sla_threshold_hours is not None and self.sla_threshold_hours < 0:
            raise ValidationException("sla_threshold_hours cannot be negative")

    @property
    def is_open(self) -> bool:
        return self.status == WorkItemStatus.OPEN

    def deadline(self) -> Optional[datetime]:
        """Own deadline of the item, ignoring per-type defaults."""
        if self.due_at is not None:
            return self.due_at
        if self.sla_threshold_hours is not None:
            return self.created_at + timedelta(hours=self.sla_threshold_hours)
        return None

    def clear_escalation(self) -> None:
        """Start a new overdue episode; a later breach escalates again."""
        self.escalated = False
        self.escalated_at = None
        self.escalated_to_workspace_id = None

    def mark_resolved(self, timestamp: datetime) -> None:
        self.status = WorkItemStatus.RESOLVED
        self.resolved_at = timestamp
        self.clear_escalation()

    def reassign(self, assignee_id: str, due_at: Optional[datetime] = None) -> None:
        self.assignee_id = assignee_id
        if due_at is not None:
            self.due_at = due_at
        self.clear_escalation()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "title": self.title,
            "workspace_id": self.workspace_id,
            "created_at": _iso(self.created_at),
            "priority": self.priority,
            "category": self.category,
            "estimated_hours": self.estimated_hours,
            "assignee_id": self.assignee_id,
            "parent_workspace_id": self.parent_workspace_id,
            "due_at": _iso(self.due_at),
            "sla_threshold_hours": self.sla_threshold_hours,
            "status": self.status.value,
            "resolved_at": _iso(self.resolved_at),
            "escalated": self.escalated,
            "escalated_at": _iso(self.escalated_at),
            "escalated_to_workspace_id": self.escalated_to_workspace_id,
            "escalation_level": self.escalation_level,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkItem":
        values = dict(data)
        for key in ("created_at", "due_at", "resolved_at", "escalated_at"):
            values[key] = _parse_dt(values.get(key))
        return cls(**values)


@dataclass(frozen=True)
class WorkItemTrackingRequest:
    """What the approval engine publishes for an active instance."""
    item_id: str
    workspace_id: str
    title: str
    due_at: datetime
    created_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


class IWorkItemTracker(ABC):
    """Port through which other contexts hand work to the watchdog."""

    @abstractmethod
    async def track(self, request: WorkItemTrackingRequest) -> WorkItem:
        """Open or refresh an approval work item."""

    @abstractmethod
    async def close(self, item_id: str, timestamp: datetime) -> None:
        """Resolve a tracked item; unknown ids are ignored."""
