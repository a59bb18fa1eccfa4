"""
Escalation Domain Entities
==========================

Escalation events and the SLA assessment of a single work item.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from approvalflow.config import SLAState, WorkItemType
from approvalflow.shared.domain import WorkItem


@dataclass(frozen=True)
class EscalationEvent:
    """
    Append-only record of one escalation.

    Written once per overdue episode, together with the item's escalated
    flag.
    """

    id: str
    item_id: str
    item_type: WorkItemType
    escalated_from: str
    escalated_to: str
    overdue_hours_at_escalation: float
    escalation_level: int
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "item_id": self.item_id,
            "item_type": WorkItemType(self.item_type).value,
            "escalated_from": self.escalated_from,
            "escalated_to": self.escalated_to,
            "overdue_hours_at_escalation": self.overdue_hours_at_escalation,
            "escalation_level": self.escalation_level,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class WorkItemSLAStatus:
    """Where a work item stands against its deadline at ``evaluated_at``."""

    item_id: str
    workspace_id: str
    state: SLAState
    effective_due_at: Optional[datetime]
    overdue_hours: float
    breach_threshold_hours: float
    evaluated_at: datetime

    @property
    def is_breached(self) -> bool:
        return self.state == SLAState.BREACHED


@dataclass(frozen=True)
class OverdueWorkItem:
    item: WorkItem
    status: WorkItemSLAStatus
