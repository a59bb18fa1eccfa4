"""
Escalation Infrastructure Layer
===============================

- Models: SQLAlchemy ORM models
- Repositories: SQLAlchemy and in-memory work item stores
- External: rule file hot reload, sweep scheduler
"""

from approvalflow.escalation.infrastructure.external import EscalationConfigManager, SweepScheduler
from approvalflow.escalation.infrastructure.models import EscalationEventModel, WorkItemModel
from approvalflow.escalation.infrastructure.repositories import (
    InMemoryWorkItemRepository,
    SQLAlchemyWorkItemRepository,
)

__all__ = [
    "EscalationConfigManager",
    "EscalationEventModel",
    "InMemoryWorkItemRepository",
    "SQLAlchemyWorkItemRepository",
    "SweepScheduler",
    "WorkItemModel",
]
