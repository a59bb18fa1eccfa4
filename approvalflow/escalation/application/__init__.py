"""
Escalation Application Layer
============================

Contains:
- Services: EscalationWatchdog, WorkItemService
- Repository and configuration interfaces
- DTOs: Pydantic models for the API
"""

from approvalflow.escalation.application.services import (
    EscalationWatchdog,
    IEscalationConfigProvider,
    IWorkItemRepository,
    WorkItemService,
)

__all__ = [
    "EscalationWatchdog",
    "IEscalationConfigProvider",
    "IWorkItemRepository",
    "WorkItemService",
]
