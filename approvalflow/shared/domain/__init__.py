"""
Shared Domain
=============

Domain types both bounded contexts exchange.
"""

from approvalflow.shared.domain.work_items import (
    WorkItem,
    WorkItemTrackingRequest,
    IWorkItemTracker,
)
from approvalflow.shared.domain.notifications import NotificationIntent, INotifier

__all__ = [
    "WorkItem",
    "WorkItemTrackingRequest",
    "IWorkItemTracker",
    "NotificationIntent",
    "INotifier",
]
