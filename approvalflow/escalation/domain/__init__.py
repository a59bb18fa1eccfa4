"""
Escalation Domain Layer
=======================

Contains:
- Entities: EscalationEvent, WorkItemSLAStatus, OverdueWorkItem
- Value Objects: EscalationRule, EscalationConfig
- Domain Services: EscalationCalculator
"""

from approvalflow.escalation.domain.entities import (
    EscalationEvent,
    OverdueWorkItem,
    WorkItemSLAStatus,
)
from approvalflow.escalation.domain.value_objects import (
    EscalationCalculator,
    EscalationConfig,
    EscalationRule,
)

__all__ = [
    "EscalationEvent",
    "OverdueWorkItem",
    "WorkItemSLAStatus",
    "EscalationCalculator",
    "EscalationConfig",
    "EscalationRule",
]
