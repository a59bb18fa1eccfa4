"""
Escalation Infrastructure Repositories
======================================

Concrete implementations of the work item repository.

``mark_escalated`` is a conditional update: the flag flip and the event
insert happen in one transaction, and only while the item is still open
and not yet escalated.
"""

import copy
import threading
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from approvalflow.config import WorkItemStatus, WorkItemType
from approvalflow.escalation.application.services import IWorkItemRepository
from approvalflow.escalation.domain import EscalationEvent
from approvalflow.escalation.infrastructure.models import EscalationEventModel, WorkItemModel
from approvalflow.infrastructure.database import get_session_context
from approvalflow.shared.domain import WorkItem

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]


def _to_entity(model: WorkItemModel) -> WorkItem:
    return WorkItem(**{column.name: getattr(model, column.name) for column in model.__table__.columns})


def _item_values(item: WorkItem) -> Dict[str, Any]:
    values = item.to_dict()
    for key in ("created_at", "due_at", "resolved_at", "escalated_at"):
        values[key] = getattr(item, key)
    return values


def _event_to_entity(model: EscalationEventModel) -> EscalationEvent:
    return EscalationEvent(
        id=model.id,
        item_id=model.item_id,
        item_type=WorkItemType(model.item_type),
        escalated_from=model.escalated_from,
        escalated_to=model.escalated_to,
        overdue_hours_at_escalation=model.overdue_hours_at_escalation,
        escalation_level=model.escalation_level,
        created_at=model.created_at,
    )


# ========== SQLAlchemy ==========

class SQLAlchemyWorkItemRepository(IWorkItemRepository):
    """SQLAlchemy implementation of the work item repository."""

    def __init__(self, session_factory: SessionFactory = get_session_context):
        self._session_factory = session_factory

    async def get(self, item_id: str) -> Optional[WorkItem]:
        async with self._session_factory() as session:
            model = await session.get(WorkItemModel, item_id)
            return _to_entity(model) if model else None

    async def save(self, item: WorkItem) -> WorkItem:
        async with self._session_factory() as session:
            await session.merge(WorkItemModel(**_item_values(item)))
        return item

    async def list_open(self) -> List[WorkItem]:
        stmt = (
            select(WorkItemModel)
            .where(WorkItemModel.status == WorkItemStatus.OPEN.value)
            .order_by(WorkItemModel.created_at)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_to_entity(m) for m in result.scalars().all()]

    async def list_for_workspace(self, workspace_id: str) -> List[WorkItem]:
        stmt = (
            select(WorkItemModel)
            .where(
                WorkItemModel.status == WorkItemStatus.OPEN.value,
                or_(
                    WorkItemModel.workspace_id == workspace_id,
                    WorkItemModel.escalated_to_workspace_id == workspace_id,
                ),
            )
            .order_by(WorkItemModel.created_at)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_to_entity(m) for m in result.scalars().all()]

    async def mark_escalated(self, item_id: str, event: EscalationEvent) -> bool:
        stmt = (
            update(WorkItemModel)
            .where(
                WorkItemModel.id == item_id,
                WorkItemModel.status == WorkItemStatus.OPEN.value,
                WorkItemModel.escalated.is_(False),
            )
            .values(
                escalated=True,
                escalated_at=event.created_at,
                escalated_to_workspace_id=event.escalated_to,
                escalation_level=event.escalation_level,
            )
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            if result.rowcount != 1:
                return False
            session.add(EscalationEventModel(
                id=event.id,
                item_id=event.item_id,
                item_type=WorkItemType(event.item_type).value,
                escalated_from=event.escalated_from,
                escalated_to=event.escalated_to,
                overdue_hours_at_escalation=event.overdue_hours_at_escalation,
                escalation_level=event.escalation_level,
                created_at=event.created_at,
            ))
        return True

    async def list_events(
        self,
        item_id: Optional[str] = None,
        workspace_id: Optional[str] = None,
    ) -> List[EscalationEvent]:
        stmt = select(EscalationEventModel).order_by(EscalationEventModel.created_at)
        if item_id is not None:
            stmt = stmt.where(EscalationEventModel.item_id == item_id)
        if workspace_id is not None:
            stmt = stmt.where(or_(
                EscalationEventModel.escalated_from == workspace_id,
                EscalationEventModel.escalated_to == workspace_id,
            ))

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_event_to_entity(m) for m in result.scalars().all()]


# ========== In-memory ==========

class InMemoryWorkItemRepository(IWorkItemRepository):
    """Process-local work item store."""

    def __init__(self):
        self._items: Dict[str, WorkItem] = {}
        self._events: List[EscalationEvent] = []
        self._lock = threading.Lock()

    async def get(self, item_id: str) -> Optional[WorkItem]:
        with self._lock:
            item = self._items.get(item_id)
            return copy.deepcopy(item) if item else None

    async def save(self, item: WorkItem) -> WorkItem:
        with self._lock:
            self._items[item.id] = copy.deepcopy(item)
        return item

    async def list_open(self) -> List[WorkItem]:
        with self._lock:
            items = [copy.deepcopy(i) for i in self._items.values() if i.is_open]
        return sorted(items, key=lambda i: i.created_at)

    async def list_for_workspace(self, workspace_id: str) -> List[WorkItem]:
        with self._lock:
            items = [
                copy.deepcopy(i) for i in self._items.values()
                if i.is_open and workspace_id in (i.workspace_id, i.escalated_to_workspace_id)
            ]
        return sorted(items, key=lambda i: i.created_at)

    async def mark_escalated(self, item_id: str, event: EscalationEvent) -> bool:
        with self._lock:
            item = self._items.get(item_id)
            if item is None or not item.is_open or item.escalated:
                return False
            item.escalated = True
            item.escalated_at = event.created_at
            item.escalated_to_workspace_id = event.escalated_to
            item.escalation_level = event.escalation_level
            self._events.append(event)
            return True

    async def list_events(
        self,
        item_id: Optional[str] = None,
        workspace_id: Optional[str] = None,
    ) -> List[EscalationEvent]:
        with self._lock:
            events = [
                e for e in self._events
                if (item_id is None or e.item_id == item_id)
                and (workspace_id is None or workspace_id in (e.escalated_from, e.escalated_to))
            ]
        return sorted(events, key=lambda e: e.created_at)
