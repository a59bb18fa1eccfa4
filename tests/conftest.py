"""Pytest configuration and shared fixtures."""

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import pytest

from approvalflow.approvals.application import ApprovalChainExecutor, AutoApprovalScheduler, PolicyService
from approvalflow.approvals.domain import ApprovalLevel, ApprovalPolicy, PolicyCriteria
from approvalflow.approvals.infrastructure import InMemoryInstanceRepository, InMemoryPolicyRepository
from approvalflow.config import ApproverType, HierarchyLevel, WorkItemType
from approvalflow.escalation.application import EscalationWatchdog, WorkItemService
from approvalflow.escalation.infrastructure import EscalationConfigManager, InMemoryWorkItemRepository
from approvalflow.shared.domain import INotifier, NotificationIntent, WorkItem
from approvalflow.shared.infrastructure.hierarchy import InMemoryHierarchyResolver

FIXTURES_DIR = Path(__file__).parent / "fixtures"

# Fixed clock for every time-dependent test
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class RecordingNotifier(INotifier):
    """Collects notification intents instead of sending them."""

    def __init__(self):
        self.intents: List[NotificationIntent] = []

    async def notify(self, intent: NotificationIntent) -> bool:
        self.intents.append(intent)
        return True

    def of_type(self, event_type: str) -> List[NotificationIntent]:
        return [i for i in self.intents if i.event_type == event_type]


class YieldingHierarchyResolver(InMemoryHierarchyResolver):
    """Gives up the event loop on every lookup so concurrent actions interleave."""

    async def resolve_approvers(self, workspace_id, role=None, hierarchy_level=None):
        await asyncio.sleep(0)
        return await super().resolve_approvers(workspace_id, role=role, hierarchy_level=hierarchy_level)


def role_level(number: int, role: str, anyone_at_level: bool = True) -> ApprovalLevel:
    return ApprovalLevel(
        level=number,
        approver_type=ApproverType.ROLE,
        required_role=role,
        anyone_at_level=anyone_at_level,
    )


def hierarchy_level(number: int, level: HierarchyLevel, anyone_at_level: bool = True) -> ApprovalLevel:
    return ApprovalLevel(
        level=number,
        approver_type=ApproverType.HIERARCHY,
        hierarchy_level=level,
        anyone_at_level=anyone_at_level,
    )


@pytest.fixture
def now() -> datetime:
    return T0


@pytest.fixture
def hierarchy() -> InMemoryHierarchyResolver:
    return InMemoryHierarchyResolver.from_yaml(FIXTURES_DIR / "hierarchy.yaml")


@pytest.fixture
def yielding_hierarchy() -> YieldingHierarchyResolver:
    return YieldingHierarchyResolver.from_yaml(FIXTURES_DIR / "hierarchy.yaml")


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def policy_repository() -> InMemoryPolicyRepository:
    return InMemoryPolicyRepository()


@pytest.fixture
def instance_repository() -> InMemoryInstanceRepository:
    return InMemoryInstanceRepository()


@pytest.fixture
def work_item_repository() -> InMemoryWorkItemRepository:
    return InMemoryWorkItemRepository()


@pytest.fixture
def escalation_config() -> EscalationConfigManager:
    return EscalationConfigManager()


@pytest.fixture
def work_item_service(work_item_repository, escalation_config) -> WorkItemService:
    return WorkItemService(work_item_repository, escalation_config, breach_threshold_hours=24)


@pytest.fixture
def policy_service(policy_repository) -> PolicyService:
    return PolicyService(policy_repository)


@pytest.fixture
def executor(policy_repository, instance_repository, hierarchy, notifier, work_item_service) -> ApprovalChainExecutor:
    return ApprovalChainExecutor(
        policy_repository,
        instance_repository,
        hierarchy,
        notifier=notifier,
        work_item_tracker=work_item_service,
        approval_sla_hours=48,
    )


@pytest.fixture
def auto_approval(executor, policy_repository, instance_repository) -> AutoApprovalScheduler:
    return AutoApprovalScheduler(executor, policy_repository, instance_repository)


@pytest.fixture
def watchdog(work_item_repository, hierarchy, escalation_config, notifier) -> EscalationWatchdog:
    return EscalationWatchdog(
        work_item_repository,
        hierarchy,
        escalation_config,
        notifier=notifier,
        breach_threshold_hours=24,
    )


@pytest.fixture
def make_policy(policy_repository):
    """Build a policy and store it; returns the stored policy."""

    async def _make(
        policy_id: str,
        chain: List[ApprovalLevel],
        workspace_id: str = "events",
        categories: Optional[List[str]] = None,
        priorities: Optional[List[str]] = None,
        created_at: datetime = T0,
        **kwargs,
    ) -> ApprovalPolicy:
        policy = ApprovalPolicy(
            id=policy_id,
            workspace_id=workspace_id,
            name=policy_id,
            chain=chain,
            criteria=PolicyCriteria(
                categories=frozenset(categories or []),
                priorities=frozenset(priorities or []),
            ),
            created_at=created_at,
            updated_at=created_at,
            **kwargs,
        )
        return await policy_repository.save(policy)

    return _make


@pytest.fixture
def make_item():
    def _make(item_id: str = "item-1", workspace_id: str = "events", **kwargs) -> WorkItem:
        values = {
            "type": WorkItemType.TASK,
            "title": f"Work item {item_id}",
            "created_at": T0,
        }
        values.update(kwargs)
        return WorkItem(id=item_id, workspace_id=workspace_id, **values)

    return _make
