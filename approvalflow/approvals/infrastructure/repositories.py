"""
Approval Infrastructure Repositories
====================================

Concrete implementations of the approval repository interfaces.

- SQLAlchemy*: async SQLAlchemy, one session per operation
- InMemory*: process-local dicts guarded by a lock; used for the
  ``memory`` storage backend and in tests

Both honour the compare-and-set contract of ``save``.
"""

import copy
import threading
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from approvalflow.approvals.application.services import (
    IApprovalInstanceRepository,
    IApprovalPolicyRepository,
)
from approvalflow.approvals.domain import ApprovalInstance, ApprovalPolicy
from approvalflow.approvals.infrastructure.models import ApprovalInstanceModel, ApprovalPolicyModel
from approvalflow.config import TERMINAL_STAGES
from approvalflow.core import ValidationException
from approvalflow.infrastructure.database import get_session_context
from approvalflow.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]

_TERMINAL_STAGE_VALUES = [stage.value for stage in TERMINAL_STAGES]


def _row_to_dict(model: Any) -> Dict[str, Any]:
    return {column.name: getattr(model, column.name) for column in model.__table__.columns}


def _policy_values(policy: ApprovalPolicy) -> Dict[str, Any]:
    values = policy.to_dict()
    values["created_at"] = policy.created_at
    values["updated_at"] = policy.updated_at
    return values


def _instance_values(instance: ApprovalInstance) -> Dict[str, Any]:
    values = instance.to_dict()
    values["level_entered_at"] = instance.level_entered_at
    values["created_at"] = instance.created_at
    values["completed_at"] = instance.completed_at
    return values


# ========== SQLAlchemy ==========

class SQLAlchemyPolicyRepository(IApprovalPolicyRepository):
    """SQLAlchemy implementation of the policy repository."""

    def __init__(self, session_factory: SessionFactory = get_session_context):
        self._session_factory = session_factory

    async def get(self, policy_id: str) -> Optional[ApprovalPolicy]:
        async with self._session_factory() as session:
            model = await session.get(ApprovalPolicyModel, policy_id)
            return ApprovalPolicy.from_dict(_row_to_dict(model)) if model else None

    async def list(self, workspace_id: Optional[str] = None) -> List[ApprovalPolicy]:
        stmt = select(ApprovalPolicyModel).order_by(ApprovalPolicyModel.created_at, ApprovalPolicyModel.id)
        if workspace_id is not None:
            stmt = stmt.where(ApprovalPolicyModel.workspace_id == workspace_id)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [ApprovalPolicy.from_dict(_row_to_dict(m)) for m in result.scalars().all()]

    async def save(self, policy: ApprovalPolicy) -> ApprovalPolicy:
        try:
            async with self._session_factory() as session:
                await session.merge(ApprovalPolicyModel(**_policy_values(policy)))
        except IntegrityError as e:
            # the partial unique index caught a second enabled default
            raise ValidationException(
                f"Workspace {policy.workspace_id} already has an enabled default policy",
                {"workspace_id": policy.workspace_id}
            ) from e
        return policy


class SQLAlchemyInstanceRepository(IApprovalInstanceRepository):
    """SQLAlchemy implementation of the approval instance repository."""

    def __init__(self, session_factory: SessionFactory = get_session_context):
        self._session_factory = session_factory

    async def get(self, instance_id: str) -> Optional[ApprovalInstance]:
        async with self._session_factory() as session:
            model = await session.get(ApprovalInstanceModel, instance_id)
            return ApprovalInstance.from_dict(_row_to_dict(model)) if model else None

    async def add(self, instance: ApprovalInstance) -> bool:
        try:
            async with self._session_factory() as session:
                session.add(ApprovalInstanceModel(**_instance_values(instance)))
                await session.flush()
        except IntegrityError:
            logger.info(
                "Active approval instance already exists",
                extra={"work_item_id": instance.work_item_id}
            )
            return False
        return True

    async def save(self, instance: ApprovalInstance, expected_version: int) -> bool:
        stmt = (
            update(ApprovalInstanceModel)
            .where(
                ApprovalInstanceModel.id == instance.id,
                ApprovalInstanceModel.version == expected_version,
            )
            .values(**_instance_values(instance))
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def find_active_for_work_item(self, work_item_id: str) -> Optional[ApprovalInstance]:
        stmt = select(ApprovalInstanceModel).where(
            ApprovalInstanceModel.work_item_id == work_item_id,
            ApprovalInstanceModel.current_stage.not_in(_TERMINAL_STAGE_VALUES),
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            model = result.scalars().first()
            return ApprovalInstance.from_dict(_row_to_dict(model)) if model else None

    async def list_active(self, workspace_id: Optional[str] = None) -> List[ApprovalInstance]:
        stmt = (
            select(ApprovalInstanceModel)
            .where(ApprovalInstanceModel.current_stage.not_in(_TERMINAL_STAGE_VALUES))
            .order_by(ApprovalInstanceModel.created_at)
        )
        if workspace_id is not None:
            stmt = stmt.where(ApprovalInstanceModel.workspace_id == workspace_id)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [ApprovalInstance.from_dict(_row_to_dict(m)) for m in result.scalars().all()]


# ========== In-memory ==========

class InMemoryPolicyRepository(IApprovalPolicyRepository):
    """Process-local policy store. Returns copies, never shared references."""

    def __init__(self, policies: Optional[List[ApprovalPolicy]] = None):
        self._policies: Dict[str, ApprovalPolicy] = {}
        self._lock = threading.Lock()
        for policy in policies or []:
            self._policies[policy.id] = copy.deepcopy(policy)

    async def get(self, policy_id: str) -> Optional[ApprovalPolicy]:
        with self._lock:
            policy = self._policies.get(policy_id)
            return copy.deepcopy(policy) if policy else None

    async def list(self, workspace_id: Optional[str] = None) -> List[ApprovalPolicy]:
        with self._lock:
            policies = [
                copy.deepcopy(p) for p in self._policies.values()
                if workspace_id is None or p.workspace_id == workspace_id
            ]
        return sorted(policies, key=lambda p: (p.created_at, p.id))

    async def save(self, policy: ApprovalPolicy) -> ApprovalPolicy:
        with self._lock:
            self._policies[policy.id] = copy.deepcopy(policy)
        return policy


class InMemoryInstanceRepository(IApprovalInstanceRepository):
    """Process-local instance store with version compare-and-set."""

    def __init__(self):
        self._instances: Dict[str, ApprovalInstance] = {}
        self._lock = threading.Lock()

    async def get(self, instance_id: str) -> Optional[ApprovalInstance]:
        with self._lock:
            instance = self._instances.get(instance_id)
            return copy.deepcopy(instance) if instance else None

    async def add(self, instance: ApprovalInstance) -> bool:
        with self._lock:
            if instance.is_active and any(
                other.is_active and other.work_item_id == instance.work_item_id
                for other in self._instances.values()
            ):
                return False
            self._instances[instance.id] = copy.deepcopy(instance)
            return True

    async def save(self, instance: ApprovalInstance, expected_version: int) -> bool:
        with self._lock:
            current = self._instances.get(instance.id)
            if current is None or current.version != expected_version:
                return False
            self._instances[instance.id] = copy.deepcopy(instance)
            return True

    async def find_active_for_work_item(self, work_item_id: str) -> Optional[ApprovalInstance]:
        with self._lock:
            for instance in self._instances.values():
                if instance.is_active and instance.work_item_id == work_item_id:
                    return copy.deepcopy(instance)
        return None

    async def list_active(self, workspace_id: Optional[str] = None) -> List[ApprovalInstance]:
        with self._lock:
            active = [
                copy.deepcopy(i) for i in self._instances.values()
                if i.is_active and (workspace_id is None or i.workspace_id == workspace_id)
            ]
        return sorted(active, key=lambda i: i.created_at)
