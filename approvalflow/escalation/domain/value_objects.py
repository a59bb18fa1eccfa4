"""
Escalation Value Objects
========================

Escalation rules loaded from YAML and the pure SLA arithmetic the watchdog
runs on every sweep.
"""

from datetime import datetime, timedelta
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from approvalflow.config import EscalationTarget, SLAState, WorkItemType
from approvalflow.escalation.domain.entities import WorkItemSLAStatus
from approvalflow.shared.domain import WorkItem


class EscalationRule(BaseModel):
    """Escalation behaviour for one work item type."""
    item_type: WorkItemType
    trigger_after_hours: Optional[float] = Field(
        default=None, ge=0, description="Overdue hours before the item counts as breached"
    )
    sla_hours: Optional[float] = Field(
        default=None, ge=0, description="Deadline, relative to creation, for items without one"
    )
    escalate_to: EscalationTarget = Field(default=EscalationTarget.PARENT)
    notify_roles: List[str] = Field(default_factory=list)
    is_active: bool = True


class EscalationConfig(BaseModel):
    """
    Escalation configuration loaded from YAML.

    Example:
        rules:
          - item_type: task
            trigger_after_hours: 24
            sla_hours: 48
            escalate_to: parent
            notify_roles: [OWNER, MANAGER]
    """
    rules: List[EscalationRule] = Field(default_factory=list)

    @field_validator("rules")
    @classmethod
    def validate_unique_types(cls, v: List[EscalationRule]) -> List[EscalationRule]:
        seen = set()
        for rule in v:
            if rule.is_active and rule.item_type in seen:
                raise ValueError(f"More than one active rule for item type {rule.item_type.value}")
            if rule.is_active:
                seen.add(rule.item_type)
        return v

    def get_rule(self, item_type: WorkItemType) -> Optional[EscalationRule]:
        for rule in self.rules:
            if rule.is_active and rule.item_type == item_type:
                return rule
        return None


class EscalationCalculator:
    """
    Pure functions for overdue classification.

    overdue_hours = max(0, now - effective_due_at)
    - on_track: overdue_hours == 0
    - at_risk:  0 < overdue_hours < threshold
    - breached: overdue_hours >= threshold
    """

    @staticmethod
    def effective_due_at(item: WorkItem, rule: Optional[EscalationRule] = None) -> Optional[datetime]:
        due = item.deadline()
        if due is None and rule is not None and rule.sla_hours is not None:
            due = item.created_at + timedelta(hours=rule.sla_hours)
        return due

    @staticmethod
    def overdue_hours(effective_due_at: datetime, now: datetime) -> float:
        return max(0.0, (now - effective_due_at).total_seconds() / 3600)

    @staticmethod
    def classify(overdue_hours: float, threshold_hours: float) -> SLAState:
        if overdue_hours <= 0:
            return SLAState.ON_TRACK
        if overdue_hours < threshold_hours:
            return SLAState.AT_RISK
        return SLAState.BREACHED

    @staticmethod
    def threshold_hours(rule: Optional[EscalationRule], default_hours: float) -> float:
        if rule is not None and rule.trigger_after_hours is not None:
            return rule.trigger_after_hours
        return default_hours

    @staticmethod
    def assess(
        item: WorkItem,
        now: datetime,
        rule: Optional[EscalationRule],
        default_threshold_hours: float,
    ) -> WorkItemSLAStatus:
        threshold = EscalationCalculator.threshold_hours(rule, default_threshold_hours)
        due = EscalationCalculator.effective_due_at(item, rule)

        if due is None:
            overdue = 0.0
            state = SLAState.ON_TRACK
        else:
            overdue = EscalationCalculator.overdue_hours(due, now)
            state = EscalationCalculator.classify(overdue, threshold)

        return WorkItemSLAStatus(
            item_id=item.id,
            workspace_id=item.workspace_id,
            state=state,
            effective_due_at=due,
            overdue_hours=round(overdue, 4),
            breach_threshold_hours=threshold,
            evaluated_at=now,
        )
