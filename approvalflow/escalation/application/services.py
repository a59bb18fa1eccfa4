"""
Escalation Application Services
===============================

The escalation watchdog and the work item service that feeds it.

Following SOLID principles:
- Single Responsibility: the watchdog only classifies and escalates; work
  item intake and resolution live in WorkItemService
- Dependency Inversion: both depend on repository and hierarchy ports
"""

import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import List, Optional

from approvalflow.config import EscalationTarget, SLAState, WorkItemType
from approvalflow.core import ApplicationException, HierarchyResolutionFailed, WorkItemNotFound
from approvalflow.escalation.domain import (
    EscalationCalculator,
    EscalationConfig,
    EscalationEvent,
    EscalationRule,
    OverdueWorkItem,
    WorkItemSLAStatus,
)
from approvalflow.shared.domain import (
    INotifier,
    IWorkItemTracker,
    NotificationIntent,
    WorkItem,
    WorkItemTrackingRequest,
)
from approvalflow.shared.infrastructure.hierarchy import HierarchyResolver
from approvalflow.shared.infrastructure.logging import get_logger, log_latency

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ========== Repository Interfaces (Dependency Inversion) ==========

class IWorkItemRepository(ABC):
    """Interface for work item and escalation event data access."""

    @abstractmethod
    async def get(self, item_id: str) -> Optional[WorkItem]:
        """Get work item by ID."""

    @abstractmethod
    async def save(self, item: WorkItem) -> WorkItem:
        """Insert or replace a work item."""

    @abstractmethod
    async def list_open(self) -> List[WorkItem]:
        """All open work items."""

    @abstractmethod
    async def list_for_workspace(self, workspace_id: str) -> List[WorkItem]:
        """Open items owned by, or escalated to, a workspace."""

    @abstractmethod
    async def mark_escalated(self, item_id: str, event: EscalationEvent) -> bool:
        """
        Set the escalated flag and append ``event`` in one step.

        Returns:
            False if the item is no longer open or is already escalated
        """

    @abstractmethod
    async def list_events(
        self,
        item_id: Optional[str] = None,
        workspace_id: Optional[str] = None,
    ) -> List[EscalationEvent]:
        """Escalation events, oldest first."""


class IEscalationConfigProvider(ABC):
    """Interface for escalation rule access."""

    @abstractmethod
    def get_config(self) -> EscalationConfig:
        """Get current escalation configuration."""


# ========== Application Services ==========

class EscalationWatchdog:
    """
    Periodically escalates breached work items up the hierarchy.

    An item escalates at most once per overdue episode: the escalated flag
    is set atomically with the event and only cleared when the item is
    resolved, reassigned or given a new deadline.
    """

    def __init__(
        self,
        work_item_repository: IWorkItemRepository,
        hierarchy: HierarchyResolver,
        config_provider: IEscalationConfigProvider,
        notifier: Optional[INotifier] = None,
        breach_threshold_hours: float = 24,
    ):
        self._items = work_item_repository
        self._hierarchy = hierarchy
        self._config_provider = config_provider
        self._notifier = notifier
        self._breach_threshold_hours = breach_threshold_hours

    async def sweep(self, now: Optional[datetime] = None) -> List[EscalationEvent]:
        """
        Evaluate every open work item and escalate the breached ones.

        Returns:
            Events created in this sweep
        """
        now = now or _utcnow()
        config = self._config_provider.get_config()
        events: List[EscalationEvent] = []

        items = await self._items.list_open()
        with log_latency(logger, "escalation_sweep", open_items=len(items)):
            for item in items:
                if item.escalated:
                    continue

                rule = config.get_rule(item.type)
                status = EscalationCalculator.assess(item, now, rule, self._breach_threshold_hours)
                if not status.is_breached:
                    continue

                try:
                    event = await self._escalate(item, status, rule, now)
                except HierarchyResolutionFailed as e:
                    logger.warning(
                        "Hierarchy unavailable, escalation deferred",
                        extra={"item_id": item.id, "workspace_id": item.workspace_id, "error": str(e)}
                    )
                    continue
                except ApplicationException as e:
                    logger.error(
                        "Escalation failed",
                        extra={"item_id": item.id, "error_type": type(e).__name__, "error": e.message}
                    )
                    continue

                if event is not None:
                    events.append(event)

        if events:
            logger.info("Escalation sweep created events", extra={"count": len(events)})
        return events

    async def _escalation_target(self, item: WorkItem, rule: Optional[EscalationRule]) -> Optional[str]:
        if rule is not None and rule.escalate_to == EscalationTarget.ROOT:
            return await self._hierarchy.get_root_workspace(item.workspace_id)
        if item.parent_workspace_id:
            return item.parent_workspace_id
        return await self._hierarchy.get_parent_workspace(item.workspace_id)

    async def _escalate(
        self,
        item: WorkItem,
        status: WorkItemSLAStatus,
        rule: Optional[EscalationRule],
        now: datetime,
    ) -> Optional[EscalationEvent]:
        target = await self._escalation_target(item, rule)
        if target is None:
            logger.info(
                "Breached item has no parent workspace",
                extra={"item_id": item.id, "workspace_id": item.workspace_id}
            )
            return None

        event = EscalationEvent(
            id=str(uuid.uuid4()),
            item_id=item.id,
            item_type=item.type,
            escalated_from=item.workspace_id,
            escalated_to=target,
            overdue_hours_at_escalation=status.overdue_hours,
            escalation_level=item.escalation_level + 1,
            created_at=now,
        )

        if not await self._items.mark_escalated(item.id, event):
            logger.info("Work item changed before escalation", extra={"item_id": item.id})
            return None

        logger.warning(
            "Work item escalated",
            extra={
                "item_id": item.id,
                "item_type": item.type.value,
                "escalated_from": item.workspace_id,
                "escalated_to": target,
                "overdue_hours": status.overdue_hours,
                "escalation_level": event.escalation_level,
            }
        )
        await self._notify(item, event, rule)
        return event

    async def _notify(self, item: WorkItem, event: EscalationEvent, rule: Optional[EscalationRule]) -> None:
        if self._notifier is None:
            return

        payload = {
            **event.to_dict(),
            "title": item.title,
            "assignee_id": item.assignee_id,
            "notify_roles": list(rule.notify_roles) if rule else [],
        }
        recipients = [event.escalated_to]
        if item.assignee_id:
            recipients.append(item.assignee_id)

        for recipient in recipients:
            intent = NotificationIntent(
                event_type="escalation.triggered",
                recipient=recipient,
                occurred_at=event.created_at,
                payload=payload,
            )
            try:
                await self._notifier.notify(intent)
            except Exception as e:
                logger.error(
                    "Escalation notification failed",
                    extra={"item_id": item.id, "recipient": recipient, "error": str(e)}
                )


class WorkItemService(IWorkItemTracker):
    """
    Intake, resolution and reporting for work items.

    Also the tracker through which the approval engine publishes active
    approval instances.
    """

    def __init__(
        self,
        work_item_repository: IWorkItemRepository,
        config_provider: IEscalationConfigProvider,
        breach_threshold_hours: float = 24,
    ):
        self._items = work_item_repository
        self._config_provider = config_provider
        self._breach_threshold_hours = breach_threshold_hours

    async def get_work_item(self, item_id: str) -> WorkItem:
        item = await self._items.get(item_id)
        if item is None:
            raise WorkItemNotFound(item_id)
        return item

    async def register_work_item(self, item: WorkItem) -> WorkItem:
        """Create or update an item; escalation bookkeeping survives updates."""
        existing = await self._items.get(item.id)
        if existing is not None:
            item.escalated = existing.escalated
            item.escalated_at = existing.escalated_at
            item.escalated_to_workspace_id = existing.escalated_to_workspace_id
            item.escalation_level = existing.escalation_level

        saved = await self._items.save(item)
        logger.info(
            "Work item registered",
            extra={"item_id": item.id, "item_type": item.type.value, "is_new": existing is None}
        )
        return saved

    async def resolve_work_item(self, item_id: str, now: Optional[datetime] = None) -> WorkItem:
        item = await self.get_work_item(item_id)
        item.mark_resolved(now or _utcnow())
        return await self._items.save(item)

    async def reassign_work_item(
        self,
        item_id: str,
        assignee_id: str,
        due_at: Optional[datetime] = None,
    ) -> WorkItem:
        item = await self.get_work_item(item_id)
        item.reassign(assignee_id, due_at)
        logger.info("Work item reassigned", extra={"item_id": item_id, "assignee_id": assignee_id})
        return await self._items.save(item)

    async def list_overdue_work_items(
        self,
        workspace_id: str,
        now: Optional[datetime] = None,
    ) -> List[OverdueWorkItem]:
        """At-risk and breached items of a workspace, most overdue first."""
        now = now or _utcnow()
        config = self._config_provider.get_config()

        overdue = []
        for item in await self._items.list_for_workspace(workspace_id):
            status = EscalationCalculator.assess(
                item, now, config.get_rule(item.type), self._breach_threshold_hours
            )
            if status.state != SLAState.ON_TRACK:
                overdue.append(OverdueWorkItem(item=item, status=status))

        return sorted(overdue, key=lambda o: o.status.overdue_hours, reverse=True)

    async def list_events(
        self,
        item_id: Optional[str] = None,
        workspace_id: Optional[str] = None,
    ) -> List[EscalationEvent]:
        return await self._items.list_events(item_id=item_id, workspace_id=workspace_id)

    # ---------- IWorkItemTracker ----------

    async def track(self, request: WorkItemTrackingRequest) -> WorkItem:
        existing = await self._items.get(request.item_id)

        if existing is not None and existing.is_open:
            item = existing
            item.title = request.title
            if item.due_at != request.due_at:
                # a new level was entered: new deadline, new overdue episode
                item.due_at = request.due_at
                item.clear_escalation()
        else:
            item = WorkItem(
                id=request.item_id,
                type=WorkItemType.APPROVAL,
                title=request.title,
                workspace_id=request.workspace_id,
                created_at=request.created_at,
                due_at=request.due_at,
                escalation_level=existing.escalation_level if existing else 0,
            )

        return await self._items.save(item)

    async def close(self, item_id: str, timestamp: datetime) -> None:
        item = await self._items.get(item_id)
        if item is None or not item.is_open:
            return
        item.mark_resolved(timestamp)
        await self._items.save(item)
