"""
Approval Application Services
=============================

Application services orchestrate policy matching, chain execution and
timed auto-approval, coordinating domain entities with repositories and
the organizational hierarchy.

Following SOLID principles:
- Single Responsibility: Each service has one clear purpose
- Dependency Inversion: Depend on abstractions (repositories, hierarchy
  port, notifier), not concrete implementations
"""

import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, FrozenSet, List, Optional

from approvalflow.approvals.domain import (
    ApprovalInstance,
    ApprovalLevel,
    ApprovalPolicy,
    CommittedLevelState,
    PolicyMatcher,
    PolicySelection,
    StageMap,
    VotingLevelState,
)
from approvalflow.config import (
    APPROVER_ACTIONS,
    SYSTEM_ACTOR,
    ApprovalAction,
    ApprovalStage,
    ApproverType,
)
from approvalflow.core import (
    AlreadyDecided,
    ActiveInstanceExists,
    ApplicationException,
    ConcurrencyConflict,
    HierarchyResolutionFailed,
    InstanceNotFound,
    InvalidTransition,
    PermissionDeniedException,
    PolicyNotFound,
    SelfApprovalForbidden,
    UnauthorizedApprover,
    ValidationException,
    WithdrawalNotAllowed,
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

class IApprovalPolicyRepository(ABC):
    """Interface for approval policy data access."""

    @abstractmethod
    async def get(self, policy_id: str) -> Optional[ApprovalPolicy]:
        """Get policy by ID."""

    @abstractmethod
    async def list(self, workspace_id: Optional[str] = None) -> List[ApprovalPolicy]:
        """List policies, optionally for a single workspace."""

    @abstractmethod
    async def save(self, policy: ApprovalPolicy) -> ApprovalPolicy:
        """Insert or replace a policy."""


class IApprovalInstanceRepository(ABC):
    """Interface for approval instance data access."""

    @abstractmethod
    async def get(self, instance_id: str) -> Optional[ApprovalInstance]:
        """Get instance by ID."""

    @abstractmethod
    async def add(self, instance: ApprovalInstance) -> bool:
        """
        Insert a new instance.

        Returns:
            False if the work item already has an active instance
        """

    @abstractmethod
    async def save(self, instance: ApprovalInstance, expected_version: int) -> bool:
        """
        Compare-and-set update.

        Returns:
            False if the stored version no longer equals ``expected_version``
        """

    @abstractmethod
    async def find_active_for_work_item(self, work_item_id: str) -> Optional[ApprovalInstance]:
        """Get the non-terminal instance of a work item, if any."""

    @abstractmethod
    async def list_active(self, workspace_id: Optional[str] = None) -> List[ApprovalInstance]:
        """List non-terminal instances."""


# ========== Application Services ==========

class PolicyService:
    """Creates, updates and looks up approval policies."""

    def __init__(self, policy_repository: IApprovalPolicyRepository):
        self._policies = policy_repository

    async def create_or_update_policy(
        self,
        policy: ApprovalPolicy,
        now: Optional[datetime] = None
    ) -> ApprovalPolicy:
        """
        Persist a policy after workspace-level validation.

        Raises:
            ValidationException: a second enabled default policy, or a policy
                moved between workspaces
        """
        now = now or _utcnow()

        existing = await self._policies.get(policy.id)
        if existing is not None:
            if existing.workspace_id != policy.workspace_id:
                raise ValidationException(
                    f"Policy {policy.id} belongs to workspace {existing.workspace_id}",
                    {"policy_id": policy.id}
                )
            policy.created_at = existing.created_at
        policy.updated_at = now

        if policy.is_default and policy.is_enabled:
            for other in await self._policies.list(policy.workspace_id):
                if other.id != policy.id and other.is_default and other.is_enabled:
                    raise ValidationException(
                        f"Workspace {policy.workspace_id} already has enabled default policy {other.id}",
                        {"workspace_id": policy.workspace_id, "default_policy_id": other.id}
                    )

        saved = await self._policies.save(policy)
        logger.info(
            "Approval policy saved",
            extra={
                "policy_id": saved.id,
                "workspace_id": saved.workspace_id,
                "is_default": saved.is_default,
                "levels": saved.depth,
                "is_new": existing is None,
            }
        )
        return saved

    async def get_policy(self, policy_id: str) -> ApprovalPolicy:
        policy = await self._policies.get(policy_id)
        if policy is None:
            raise PolicyNotFound(policy_id)
        return policy

    async def list_policies(self, workspace_id: Optional[str] = None) -> List[ApprovalPolicy]:
        return await self._policies.list(workspace_id)

    async def select_policy(self, work_item: WorkItem) -> PolicySelection:
        """Which policy would govern ``work_item`` right now."""
        policies = await self._policies.list(work_item.workspace_id)
        return PolicyMatcher.select_policy(work_item, policies)


TransitionFn = Callable[[ApprovalInstance, Optional[ApprovalPolicy], bool], Awaitable[Optional[str]]]


class ApprovalChainExecutor:
    """
    Walks approval instances through their policy's chain.

    Every change is applied to a freshly loaded copy and committed with a
    compare-and-set on ``version``. A writer that loses re-reads and
    re-applies; if the level it acted on is no longer open it gets
    ``AlreadyDecided`` instead.
    """

    def __init__(
        self,
        policy_repository: IApprovalPolicyRepository,
        instance_repository: IApprovalInstanceRepository,
        hierarchy: HierarchyResolver,
        notifier: Optional[INotifier] = None,
        work_item_tracker: Optional[IWorkItemTracker] = None,
        default_revision_stage: ApprovalStage = ApprovalStage.CONTENT_REVIEW,
        approval_sla_hours: int = 48,
        max_commit_attempts: int = 5,
    ):
        self._policies = policy_repository
        self._instances = instance_repository
        self._hierarchy = hierarchy
        self._notifier = notifier
        self._tracker = work_item_tracker
        self._default_revision_stage = ApprovalStage(default_revision_stage)
        self._approval_sla_hours = approval_sla_hours
        self._max_attempts = max_commit_attempts

    # ---------- Queries ----------

    async def get_instance(self, instance_id: str) -> ApprovalInstance:
        instance = await self._instances.get(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        return instance

    async def list_pending_for_approver(self, workspace_id: str, user_id: str) -> List[ApprovalInstance]:
        """Active instances of a workspace waiting on ``user_id``."""
        pending = []
        for instance in await self._instances.list_active(workspace_id):
            if instance.awaiting_resubmission:
                continue
            policy = await self._policy_for(instance)
            if user_id == instance.submitter_id and not policy.allow_self_approval:
                continue
            for number in self._open_level_numbers(instance, policy):
                state = instance.level_states.get(number)
                if state is None or state.is_decided or state.has_acted(user_id):
                    continue
                if await self._is_eligible(instance, policy, number, user_id):
                    pending.append(instance)
                    break
        return pending

    # ---------- Commands ----------

    async def submit(
        self,
        work_item: WorkItem,
        submitter_id: str,
        policy_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ApprovalInstance:
        """
        Bind a work item to a policy and open the first level.

        When no policy applies the instance is returned already approved.

        Raises:
            ActiveInstanceExists: the work item is already under approval
            PolicyNotFound: an explicit ``policy_id`` is unknown or disabled
            HierarchyResolutionFailed: voting approvers could not be resolved
        """
        now = now or _utcnow()

        if await self._instances.find_active_for_work_item(work_item.id) is not None:
            raise ActiveInstanceExists(work_item.id)

        policy = await self._select_policy(work_item, policy_id)

        instance = ApprovalInstance(
            id=str(uuid.uuid4()),
            work_item_id=work_item.id,
            workspace_id=work_item.workspace_id,
            submitter_id=submitter_id,
            policy_id=policy.id if policy else None,
            current_level=1,
            current_stage=ApprovalStage.SUBMITTED,
            level_entered_at=now,
            created_at=now,
        )

        if policy is None:
            instance.append_history(
                SYSTEM_ACTOR, ApprovalAction.AUTO_PASS, now, notes="No approval policy applies"
            )
            instance.complete(ApprovalStage.APPROVED, now)
            event_type = "approval.auto_passed"
        else:
            instance.current_stage = StageMap.stage_for_level(1, policy.depth)
            instance.append_history(submitter_id, ApprovalAction.SUBMIT, now)
            await self._open_levels(instance, policy, 1)
            event_type = "approval.submitted"

        if not await self._instances.add(instance):
            raise ActiveInstanceExists(work_item.id)

        logger.info(
            "Work item submitted for approval",
            extra={
                "instance_id": instance.id,
                "work_item_id": work_item.id,
                "policy_id": instance.policy_id,
                "stage": instance.current_stage.value,
            }
        )
        await self._after_commit(instance, policy, event_type, now)
        return instance

    async def act(
        self,
        instance_id: str,
        actor_id: str,
        action: ApprovalAction,
        notes: Optional[str] = None,
        level: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ApprovalInstance:
        """
        Record an approve, reject or request_revision.

        ``level`` pins the level the caller is acting on. Without it the
        current level is used (or, when the policy does not require every
        level, the first open level the actor is eligible for).

        Raises:
            AlreadyDecided: the targeted level was decided first
            SelfApprovalForbidden: submitter acting on their own request
            UnauthorizedApprover: actor is not eligible at the level, or
                claims the reserved SYSTEM identity
            InvalidTransition: instance is terminal or awaiting resubmission
        """
        action = ApprovalAction(action)
        if action not in APPROVER_ACTIONS:
            raise ValidationException(f"Unsupported approver action: {action.value}")
        if actor_id == SYSTEM_ACTOR:
            raise UnauthorizedApprover(instance_id, actor_id, level)
        return await self._act(instance_id, actor_id, action, notes, level, now or _utcnow(), system=False)

    async def system_approve(
        self,
        instance_id: str,
        level: int,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ApprovalInstance:
        """
        Approve ``level`` as SYSTEM, bypassing eligibility and self-approval
        and force-committing voting levels. Only the auto-approval sweep
        calls this; it is not reachable over HTTP.
        """
        return await self._act(
            instance_id, SYSTEM_ACTOR, ApprovalAction.APPROVE, notes, level, now or _utcnow(), system=True
        )

    async def _act(
        self,
        instance_id: str,
        actor_id: str,
        action: ApprovalAction,
        notes: Optional[str],
        level: Optional[int],
        now: datetime,
        system: bool,
    ) -> ApprovalInstance:
        pinned = level

        async def apply(instance, policy, retrying):
            nonlocal pinned
            target = await self._target_level(instance, policy, actor_id, pinned, retrying, system)
            pinned = target
            return await self._apply_action(instance, policy, target, actor_id, action, notes, now, system)

        instance = await self._commit(instance_id, apply, now)
        logger.info(
            "Approver action committed",
            extra={
                "instance_id": instance.id,
                "actor_id": actor_id,
                "action": action.value,
                "level": pinned,
                "stage": instance.current_stage.value,
            }
        )
        return instance

    async def resubmit(
        self,
        instance_id: str,
        actor_id: str,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ApprovalInstance:
        """Re-enter the revision target level after a requested revision."""
        now = now or _utcnow()

        async def apply(instance, policy, retrying):
            if not instance.awaiting_resubmission:
                raise InvalidTransition(
                    f"Approval instance {instance.id} is not awaiting revision",
                    {"instance_id": instance.id, "stage": instance.current_stage.value}
                )
            if actor_id != instance.submitter_id:
                raise PermissionDeniedException(
                    f"Only the submitter may resubmit instance {instance.id}",
                    {"instance_id": instance.id, "actor_id": actor_id}
                )
            instance.current_stage = StageMap.stage_for_level(instance.current_level, policy.depth)
            instance.level_entered_at = now
            instance.append_history(actor_id, ApprovalAction.RESUBMIT, now, notes=notes)
            await self._open_levels(instance, policy, instance.current_level)
            return "approval.resubmitted"

        return await self._commit(instance_id, apply, now)

    async def withdraw(
        self,
        instance_id: str,
        actor_id: str,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ApprovalInstance:
        """Cancel a request before anyone has approved any level of it."""
        now = now or _utcnow()

        async def apply(instance, policy, retrying):
            if instance.is_terminal:
                raise InvalidTransition(
                    f"Approval instance {instance.id} is already {instance.current_stage.value}",
                    {"instance_id": instance.id}
                )
            if actor_id != instance.submitter_id:
                raise PermissionDeniedException(
                    f"Only the submitter may withdraw instance {instance.id}",
                    {"instance_id": instance.id, "actor_id": actor_id}
                )
            if instance.has_approvals():
                raise WithdrawalNotAllowed(instance.id)
            instance.append_history(actor_id, ApprovalAction.WITHDRAW, now, notes=notes)
            instance.complete(ApprovalStage.WITHDRAWN, now)
            return "approval.withdrawn"

        return await self._commit(instance_id, apply, now)

    # ---------- Internals ----------

    async def _select_policy(self, work_item: WorkItem, policy_id: Optional[str]) -> Optional[ApprovalPolicy]:
        if policy_id is not None:
            policy = await self._policies.get(policy_id)
            if policy is None or not policy.is_enabled or policy.workspace_id != work_item.workspace_id:
                raise PolicyNotFound(policy_id)
            return policy

        selection = PolicyMatcher.select_policy(work_item, await self._policies.list(work_item.workspace_id))
        logger.info(
            "Approval policy matched",
            extra={
                "work_item_id": work_item.id,
                "policy_id": selection.policy.id if selection.policy else None,
                "score": selection.score,
                "is_fallback": selection.is_fallback,
            }
        )
        return selection.policy

    async def _policy_for(self, instance: ApprovalInstance) -> Optional[ApprovalPolicy]:
        if instance.policy_id is None:
            return None
        policy = await self._policies.get(instance.policy_id)
        if policy is None:
            raise PolicyNotFound(instance.policy_id)
        return policy

    async def _commit(self, instance_id: str, apply: TransitionFn, now: datetime) -> ApprovalInstance:
        retrying = False
        for attempt in range(1, self._max_attempts + 1):
            instance = await self.get_instance(instance_id)
            policy = await self._policy_for(instance)
            expected_version = instance.version

            event_type = await apply(instance, policy, retrying)
            instance.version = expected_version + 1

            if await self._instances.save(instance, expected_version):
                await self._after_commit(instance, policy, event_type, now)
                return instance

            logger.info(
                "Approval instance changed concurrently, retrying",
                extra={"instance_id": instance_id, "attempt": attempt}
            )
            retrying = True

        raise ConcurrencyConflict(instance_id, self._max_attempts)

    @staticmethod
    def _open_level_numbers(instance: ApprovalInstance, policy: ApprovalPolicy) -> List[int]:
        if policy.require_all_levels:
            return [instance.current_level]
        return list(range(instance.current_level, policy.depth + 1))

    async def _resolve_approvers(self, workspace_id: str, level: ApprovalLevel) -> FrozenSet[str]:
        if level.approver_type == ApproverType.ROLE:
            return await self._hierarchy.resolve_approvers(workspace_id, role=level.required_role)
        return await self._hierarchy.resolve_approvers(
            workspace_id, hierarchy_level=int(level.hierarchy_level)
        )

    async def _is_eligible(
        self,
        instance: ApprovalInstance,
        policy: ApprovalPolicy,
        number: int,
        actor_id: str,
    ) -> bool:
        state = instance.level_states.get(number)
        if isinstance(state, VotingLevelState):
            return actor_id in state.eligible
        approvers = await self._resolve_approvers(instance.workspace_id, policy.get_level(number))
        return actor_id in approvers

    async def _open_levels(self, instance: ApprovalInstance, policy: ApprovalPolicy, start: int) -> None:
        """Create fresh level states; voting levels freeze their voters here."""
        numbers = [start] if policy.require_all_levels else range(start, policy.depth + 1)
        for number in numbers:
            level = policy.get_level(number)
            if level.anyone_at_level:
                instance.level_states[number] = CommittedLevelState()
                continue

            eligible = await self._resolve_approvers(instance.workspace_id, level)
            if not policy.allow_self_approval:
                eligible = eligible - {instance.submitter_id}
            instance.level_states[number] = VotingLevelState(eligible=frozenset(eligible))
            if not eligible:
                logger.warning(
                    "Voting level has no eligible approvers",
                    extra={"instance_id": instance.id, "level": number}
                )

    async def _target_level(
        self,
        instance: ApprovalInstance,
        policy: Optional[ApprovalPolicy],
        actor_id: str,
        pinned: Optional[int],
        retrying: bool,
        system: bool = False,
    ) -> int:
        if instance.is_terminal or instance.awaiting_resubmission:
            if retrying:
                raise AlreadyDecided(instance.id, pinned)
            raise InvalidTransition(
                f"Approval instance {instance.id} is {instance.current_stage.value}",
                {"instance_id": instance.id, "stage": instance.current_stage.value}
            )

        if not system and actor_id == instance.submitter_id and not policy.allow_self_approval:
            raise SelfApprovalForbidden(instance.id, actor_id)

        if pinned is not None and not 1 <= pinned <= policy.depth:
            raise ValidationException(f"Level {pinned} is outside the approval chain")

        if system or policy.require_all_levels:
            target = instance.current_level
            if pinned is not None and pinned != target:
                if pinned < target:
                    raise AlreadyDecided(instance.id, pinned)
                raise InvalidTransition(
                    f"Level {pinned} of instance {instance.id} is not open yet",
                    {"instance_id": instance.id, "level": pinned}
                )
            if not system and not await self._is_eligible(instance, policy, target, actor_id):
                raise UnauthorizedApprover(instance.id, actor_id, target)
        else:
            candidates = [pinned] if pinned is not None else self._open_level_numbers(instance, policy)
            target = None
            for number in candidates:
                if await self._is_eligible(instance, policy, number, actor_id):
                    target = number
                    break
            if target is None:
                raise UnauthorizedApprover(instance.id, actor_id, pinned)

        state = instance.level_states[target]
        if state.is_decided or (not system and state.has_acted(actor_id)):
            raise AlreadyDecided(instance.id, target)
        return target

    async def _apply_action(
        self,
        instance: ApprovalInstance,
        policy: ApprovalPolicy,
        number: int,
        actor_id: str,
        action: ApprovalAction,
        notes: Optional[str],
        now: datetime,
        system: bool = False,
    ) -> Optional[str]:
        if action == ApprovalAction.REQUEST_REVISION:
            target = min(
                StageMap.revision_level(policy, self._default_revision_stage),
                instance.current_level,
            )
            instance.append_history(actor_id, action, now, level=number, notes=notes)
            instance.current_level = target
            instance.current_stage = ApprovalStage.REVISION_REQUESTED
            for reopened in [n for n in instance.level_states if n >= target]:
                del instance.level_states[reopened]
            return "approval.revision_requested"

        state = instance.level_states[number]
        if system and action == ApprovalAction.APPROVE:
            state.force_approve(actor_id, now)
        else:
            state.record(actor_id, action, now)
        instance.append_history(actor_id, action, now, level=number, notes=notes)

        if action == ApprovalAction.REJECT:
            instance.complete(ApprovalStage.REJECTED, now)
            return "approval.rejected"

        if not state.is_approved:
            # vote recorded, level still waiting on other voters
            return None

        if not policy.require_all_levels or number == policy.depth:
            instance.complete(ApprovalStage.APPROVED, now)
            return "approval.approved"

        next_level = number + 1
        instance.current_level = next_level
        instance.current_stage = StageMap.stage_for_level(next_level, policy.depth)
        instance.level_entered_at = now
        await self._open_levels(instance, policy, next_level)
        return "approval.stage_changed"

    async def _after_commit(
        self,
        instance: ApprovalInstance,
        policy: Optional[ApprovalPolicy],
        event_type: Optional[str],
        now: datetime,
    ) -> None:
        if event_type is None:
            return

        if self._tracker is not None:
            try:
                await self._sync_work_item(instance, now)
            except Exception as e:
                logger.error(
                    "Failed to publish approval work item",
                    extra={"instance_id": instance.id, "error": str(e)}
                )

        if self._notifier is None:
            return

        payload = {
            "instance_id": instance.id,
            "work_item_id": instance.work_item_id,
            "workspace_id": instance.workspace_id,
            "policy_id": instance.policy_id,
            "stage": instance.current_stage.value,
            "level": instance.current_level,
        }
        recipients = [instance.submitter_id]
        if not instance.is_terminal and not instance.awaiting_resubmission:
            recipients.append(instance.workspace_id)

        for recipient in recipients:
            intent = NotificationIntent(
                event_type=event_type, recipient=recipient, occurred_at=now, payload=payload
            )
            try:
                await self._notifier.notify(intent)
            except Exception as e:
                logger.error(
                    "Notification dispatch failed",
                    extra={"instance_id": instance.id, "event_type": event_type, "error": str(e)}
                )

    async def _sync_work_item(self, instance: ApprovalInstance, now: datetime) -> None:
        if instance.is_terminal or instance.awaiting_resubmission:
            await self._tracker.close(instance.id, now)
            return

        await self._tracker.track(WorkItemTrackingRequest(
            item_id=instance.id,
            workspace_id=instance.workspace_id,
            title=f"Approval of {instance.work_item_id} ({instance.current_stage.value})",
            due_at=instance.level_entered_at + timedelta(hours=self._approval_sla_hours),
            created_at=instance.created_at,
            metadata={"work_item_id": instance.work_item_id, "level": instance.current_level},
        ))


class AutoApprovalScheduler:
    """
    Approves levels left open longer than the policy's
    ``auto_approve_after_hours``, acting as SYSTEM through the executor.

    A rerun at the same ``now`` is a no-op: the advanced level was entered
    at ``now`` and has not timed out yet.
    """

    def __init__(
        self,
        executor: ApprovalChainExecutor,
        policy_repository: IApprovalPolicyRepository,
        instance_repository: IApprovalInstanceRepository,
    ):
        self._executor = executor
        self._policies = policy_repository
        self._instances = instance_repository

    async def sweep(self, now: Optional[datetime] = None) -> List[str]:
        """
        Returns:
            IDs of instances that advanced or completed in this sweep
        """
        now = now or _utcnow()
        advanced: List[str] = []
        policies = {}

        instances = await self._instances.list_active()
        with log_latency(logger, "auto_approval_sweep", candidates=len(instances)):
            for instance in instances:
                if instance.awaiting_resubmission or instance.policy_id is None:
                    continue

                if instance.policy_id not in policies:
                    policies[instance.policy_id] = await self._policies.get(instance.policy_id)
                policy = policies[instance.policy_id]
                if policy is None or policy.auto_approve_after_hours is None:
                    continue

                if now - instance.level_entered_at < timedelta(hours=policy.auto_approve_after_hours):
                    continue

                try:
                    await self._executor.system_approve(
                        instance.id,
                        notes=f"Auto-approved after {policy.auto_approve_after_hours}h without a decision",
                        level=instance.current_level,
                        now=now,
                    )
                    advanced.append(instance.id)
                except AlreadyDecided:
                    logger.info(
                        "Level decided before auto-approval",
                        extra={"instance_id": instance.id, "level": instance.current_level}
                    )
                except HierarchyResolutionFailed as e:
                    logger.warning(
                        "Hierarchy unavailable, auto-approval deferred",
                        extra={"instance_id": instance.id, "error": str(e)}
                    )
                except ApplicationException as e:
                    logger.error(
                        "Auto-approval failed",
                        extra={"instance_id": instance.id, "error_type": type(e).__name__, "error": e.message}
                    )

        if advanced:
            logger.info("Auto-approval sweep advanced instances", extra={"count": len(advanced)})
        return advanced
