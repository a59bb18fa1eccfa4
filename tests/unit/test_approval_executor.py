"""Tests for the approval chain executor."""

import asyncio
from datetime import timedelta

import pytest

from approvalflow.approvals.application import ApprovalChainExecutor
from approvalflow.approvals.domain import ApprovalPolicy, VotingLevelState
from approvalflow.config import (
    SYSTEM_ACTOR,
    ApprovalAction,
    ApprovalStage,
    HierarchyLevel,
    WorkItemStatus,
    WorkItemType,
)
from approvalflow.core import (
    ActiveInstanceExists,
    AlreadyDecided,
    InvalidTransition,
    PermissionDeniedException,
    PolicyNotFound,
    SelfApprovalForbidden,
    UnauthorizedApprover,
    ValidationException,
    WithdrawalNotAllowed,
)

from conftest import T0, hierarchy_level, role_level


@pytest.fixture
async def two_level_policy(make_policy):
    """Manager sign-off, then finance."""
    return await make_policy(
        "two-level",
        [hierarchy_level(1, HierarchyLevel.MANAGER), role_level(2, "FINANCE_LEAD")],
        is_default=True,
    )


@pytest.fixture
async def three_level_policy(make_policy):
    return await make_policy(
        "three-level",
        [
            hierarchy_level(1, HierarchyLevel.MANAGER),
            role_level(2, "FINANCE_LEAD"),
            role_level(3, "DESIGNER"),
        ],
        is_default=True,
    )


class TestSubmit:
    """Test binding work items to policies."""

    async def test_no_policy_auto_passes(self, executor, make_item, notifier):
        instance = await executor.submit(make_item(), "sam", now=T0)

        assert instance.current_stage == ApprovalStage.APPROVED
        assert instance.policy_id is None
        assert instance.completed_at == T0
        assert [(h.actor_id, h.action) for h in instance.history] == [(SYSTEM_ACTOR, ApprovalAction.AUTO_PASS)]
        assert notifier.of_type("approval.auto_passed")

    async def test_finance_item_routes_to_finance_policy(self, executor, make_policy, make_item):
        await make_policy("P1", [role_level(1, "FINANCE_LEAD")], categories=["FINANCE"])
        await make_policy("P2", [hierarchy_level(1, HierarchyLevel.MANAGER)], is_default=True)

        finance = await executor.submit(make_item("budget", category="FINANCE"), "sam", now=T0)
        general = await executor.submit(make_item("party", category="GENERAL"), "sam", now=T0)

        assert finance.policy_id == "P1"
        assert general.policy_id == "P2"
        assert finance.current_stage == ApprovalStage.SUBMITTED
        assert finance.current_level == 1

    async def test_explicit_policy_bypasses_matching(self, executor, make_policy, make_item):
        await make_policy("P1", [role_level(1, "FINANCE_LEAD")], categories=["FINANCE"])
        await make_policy("P2", [hierarchy_level(1, HierarchyLevel.MANAGER)], is_default=True)

        instance = await executor.submit(make_item(category="FINANCE"), "sam", policy_id="P2", now=T0)
        assert instance.policy_id == "P2"

    async def test_unknown_explicit_policy(self, executor, make_item):
        with pytest.raises(PolicyNotFound):
            await executor.submit(make_item(), "sam", policy_id="missing", now=T0)

    async def test_one_active_instance_per_work_item(self, executor, two_level_policy, make_item):
        await executor.submit(make_item(), "sam", now=T0)
        with pytest.raises(ActiveInstanceExists):
            await executor.submit(make_item(), "sam", now=T0)

    async def test_submission_notifies_submitter_and_workspace(self, executor, two_level_policy, make_item, notifier):
        await executor.submit(make_item(), "sam", now=T0)

        recipients = {i.recipient for i in notifier.of_type("approval.submitted")}
        assert recipients == {"sam", "events"}

    async def test_submission_is_tracked_as_work_item(self, executor, two_level_policy, make_item, work_item_service):
        instance = await executor.submit(make_item(), "sam", now=T0)

        tracked = await work_item_service.get_work_item(instance.id)
        assert tracked.type == WorkItemType.APPROVAL
        assert tracked.workspace_id == "events"
        assert tracked.due_at == T0 + timedelta(hours=48)
        assert tracked.is_open


class TestApproverActions:
    """Test approve, reject and eligibility rules."""

    async def test_chain_advances_then_completes(self, executor, two_level_policy, make_item, work_item_service):
        instance = await executor.submit(make_item(), "sam", now=T0)

        t1 = T0 + timedelta(hours=2)
        instance = await executor.act(instance.id, "mark", ApprovalAction.APPROVE, now=t1)
        assert instance.current_level == 2
        assert instance.current_stage == ApprovalStage.FINAL_APPROVAL
        assert instance.level_entered_at == t1
        assert (await work_item_service.get_work_item(instance.id)).due_at == t1 + timedelta(hours=48)

        t2 = T0 + timedelta(hours=3)
        instance = await executor.act(instance.id, "fin", ApprovalAction.APPROVE, now=t2)
        assert instance.current_stage == ApprovalStage.APPROVED
        assert instance.completed_at == t2
        assert [h.action for h in instance.history] == [
            ApprovalAction.SUBMIT, ApprovalAction.APPROVE, ApprovalAction.APPROVE
        ]
        assert (await work_item_service.get_work_item(instance.id)).status == WorkItemStatus.RESOLVED

    async def test_system_identity_is_reserved(self, executor, make_policy, make_item):
        await make_policy("finance", [role_level(1, "FINANCE_LEAD")], is_default=True)
        instance = await executor.submit(make_item(), "sam", now=T0)

        with pytest.raises(UnauthorizedApprover):
            await executor.act(instance.id, SYSTEM_ACTOR, ApprovalAction.APPROVE, now=T0)

        stored = await executor.get_instance(instance.id)
        assert stored.current_stage == ApprovalStage.SUBMITTED
        assert stored.version == 0

    async def test_system_approve_bypasses_eligibility(self, executor, make_policy, make_item):
        await make_policy("finance", [role_level(1, "FINANCE_LEAD")], is_default=True)
        instance = await executor.submit(make_item(), "sam", now=T0)

        instance = await executor.system_approve(instance.id, level=1, now=T0)

        assert instance.current_stage == ApprovalStage.APPROVED
        assert instance.history[-1].actor_id == SYSTEM_ACTOR

    async def test_reject_terminates(self, executor, two_level_policy, make_item, notifier):
        instance = await executor.submit(make_item(), "sam", now=T0)
        instance = await executor.act(instance.id, "mia", ApprovalAction.REJECT, notes="Over budget", now=T0)

        assert instance.current_stage == ApprovalStage.REJECTED
        assert instance.history[-1].notes == "Over budget"
        assert notifier.of_type("approval.rejected")

    async def test_ineligible_actor_is_refused(self, executor, two_level_policy, make_item):
        instance = await executor.submit(make_item(), "sam", now=T0)
        with pytest.raises(UnauthorizedApprover):
            await executor.act(instance.id, "lena", ApprovalAction.APPROVE, now=T0)

    async def test_submitter_cannot_approve_own_request(self, executor, two_level_policy, make_item):
        instance = await executor.submit(make_item(), "mark", now=T0)
        with pytest.raises(SelfApprovalForbidden):
            await executor.act(instance.id, "mark", ApprovalAction.APPROVE, now=T0)

    async def test_self_approval_when_policy_allows(self, executor, make_policy, make_item):
        await make_policy(
            "self-ok", [hierarchy_level(1, HierarchyLevel.MANAGER)], is_default=True, allow_self_approval=True
        )
        instance = await executor.submit(make_item(), "mark", now=T0)
        instance = await executor.act(instance.id, "mark", ApprovalAction.APPROVE, now=T0)
        assert instance.current_stage == ApprovalStage.APPROVED

    async def test_acting_on_finished_instance_is_invalid(self, executor, two_level_policy, make_item):
        instance = await executor.submit(make_item(), "sam", now=T0)
        await executor.act(instance.id, "mark", ApprovalAction.REJECT, now=T0)
        with pytest.raises(InvalidTransition):
            await executor.act(instance.id, "mia", ApprovalAction.APPROVE, now=T0)

    async def test_pinned_level_already_passed(self, executor, two_level_policy, make_item):
        instance = await executor.submit(make_item(), "sam", now=T0)
        await executor.act(instance.id, "mark", ApprovalAction.APPROVE, level=1, now=T0)

        with pytest.raises(AlreadyDecided) as exc_info:
            await executor.act(instance.id, "mia", ApprovalAction.APPROVE, level=1, now=T0)
        assert exc_info.value.level == 1

    async def test_pinned_level_not_open_yet(self, executor, two_level_policy, make_item):
        instance = await executor.submit(make_item(), "sam", now=T0)
        with pytest.raises(InvalidTransition):
            await executor.act(instance.id, "fin", ApprovalAction.APPROVE, level=2, now=T0)

    async def test_pinned_level_outside_chain(self, executor, two_level_policy, make_item):
        instance = await executor.submit(make_item(), "sam", now=T0)
        with pytest.raises(ValidationException):
            await executor.act(instance.id, "mark", ApprovalAction.APPROVE, level=5, now=T0)

    async def test_submit_is_not_an_approver_action(self, executor, two_level_policy, make_item):
        instance = await executor.submit(make_item(), "sam", now=T0)
        with pytest.raises(ValidationException):
            await executor.act(instance.id, "mark", ApprovalAction.SUBMIT, now=T0)


class TestConcurrentActions:
    """Test the atomic level commit."""

    async def test_two_approvers_race_on_one_level(
        self, policy_repository, instance_repository, yielding_hierarchy, make_policy, make_item
    ):
        await make_policy("managers", [hierarchy_level(1, HierarchyLevel.MANAGER)], is_default=True)
        executor = ApprovalChainExecutor(policy_repository, instance_repository, yielding_hierarchy)
        instance = await executor.submit(make_item(), "sam", now=T0)

        results = await asyncio.gather(
            executor.act(instance.id, "mark", ApprovalAction.APPROVE, now=T0),
            executor.act(instance.id, "mia", ApprovalAction.APPROVE, now=T0),
            return_exceptions=True,
        )

        decided = [r for r in results if isinstance(r, AlreadyDecided)]
        committed = [r for r in results if not isinstance(r, Exception)]
        assert len(decided) == 1
        assert len(committed) == 1

        stored = await executor.get_instance(instance.id)
        assert stored.current_stage == ApprovalStage.APPROVED
        assert stored.version == 1
        assert [h.action for h in stored.history].count(ApprovalAction.APPROVE) == 1

    async def test_race_on_first_of_two_levels(
        self, policy_repository, instance_repository, yielding_hierarchy, make_policy, make_item
    ):
        await make_policy(
            "two-level",
            [hierarchy_level(1, HierarchyLevel.MANAGER), role_level(2, "FINANCE_LEAD")],
            is_default=True,
        )
        executor = ApprovalChainExecutor(policy_repository, instance_repository, yielding_hierarchy)
        instance = await executor.submit(make_item(), "sam", now=T0)

        results = await asyncio.gather(
            executor.act(instance.id, "mark", ApprovalAction.APPROVE, now=T0),
            executor.act(instance.id, "mia", ApprovalAction.REJECT, now=T0),
            return_exceptions=True,
        )

        assert sum(isinstance(r, AlreadyDecided) for r in results) == 1
        stored = await executor.get_instance(instance.id)
        assert len(stored.history) == 2


class TestShortCircuitChains:
    """Test policies that do not require every level."""

    @pytest.fixture
    async def any_level_policy(self, make_policy):
        return await make_policy(
            "any-level",
            [
                role_level(1, "DESIGNER"),
                role_level(2, "FINANCE_LEAD"),
                hierarchy_level(3, HierarchyLevel.OWNER),
            ],
            is_default=True,
            require_all_levels=False,
        )

    async def test_all_levels_open_at_submit(self, executor, any_level_policy, make_item):
        instance = await executor.submit(make_item(), "sam", now=T0)
        assert sorted(instance.level_states) == [1, 2, 3]

    async def test_reject_at_level_two_terminates(self, executor, any_level_policy, make_item):
        instance = await executor.submit(make_item(), "sam", now=T0)
        instance = await executor.act(instance.id, "fin", ApprovalAction.REJECT, now=T0)

        assert instance.current_stage == ApprovalStage.REJECTED
        assert instance.history[-1].level == 2
        assert not instance.level_states[3].is_decided

    async def test_any_level_approval_completes(self, executor, any_level_policy, make_item):
        instance = await executor.submit(make_item(), "sam", now=T0)
        instance = await executor.act(instance.id, "fin", ApprovalAction.APPROVE, now=T0)

        assert instance.current_stage == ApprovalStage.APPROVED
        assert instance.history[-1].level == 2


class TestVotingLevels:
    """Test levels where every eligible approver must vote."""

    @pytest.fixture
    async def voting_policy(self, make_policy):
        return await make_policy(
            "all-managers",
            [hierarchy_level(1, HierarchyLevel.MANAGER, anyone_at_level=False)],
            is_default=True,
        )

    async def test_level_waits_for_every_voter(self, executor, voting_policy, make_item):
        instance = await executor.submit(make_item(), "sam", now=T0)

        instance = await executor.act(instance.id, "mark", ApprovalAction.APPROVE, now=T0)
        state = instance.level_states[1]
        assert isinstance(state, VotingLevelState)
        assert instance.current_stage == ApprovalStage.SUBMITTED
        assert state.pending_voters == frozenset({"mia"})

        instance = await executor.act(instance.id, "mia", ApprovalAction.APPROVE, now=T0)
        assert instance.current_stage == ApprovalStage.APPROVED

    async def test_voter_cannot_vote_twice(self, executor, voting_policy, make_item):
        instance = await executor.submit(make_item(), "sam", now=T0)
        await executor.act(instance.id, "mark", ApprovalAction.APPROVE, now=T0)
        with pytest.raises(AlreadyDecided):
            await executor.act(instance.id, "mark", ApprovalAction.APPROVE, now=T0)

    async def test_submitter_is_not_a_voter(self, executor, voting_policy, make_item):
        instance = await executor.submit(make_item(), "mark", now=T0)
        assert instance.level_states[1].eligible == frozenset({"mia"})

    async def test_single_reject_decides(self, executor, voting_policy, make_item):
        instance = await executor.submit(make_item(), "sam", now=T0)
        instance = await executor.act(instance.id, "mia", ApprovalAction.REJECT, now=T0)
        assert instance.current_stage == ApprovalStage.REJECTED


class TestRevisionAndResubmission:
    """Test request_revision and resubmit."""

    async def test_revision_returns_to_content_review(self, executor, three_level_policy, make_item):
        instance = await executor.submit(make_item(), "sam", now=T0)
        await executor.act(instance.id, "mark", ApprovalAction.APPROVE, now=T0)
        instance = await executor.act(
            instance.id, "fin", ApprovalAction.REQUEST_REVISION, notes="Add quotes", now=T0
        )

        assert instance.current_stage == ApprovalStage.REVISION_REQUESTED
        assert instance.current_level == 2
        assert sorted(instance.level_states) == [1]
        assert instance.history[-1].notes == "Add quotes"

    async def test_no_actions_while_awaiting_revision(self, executor, three_level_policy, make_item):
        instance = await executor.submit(make_item(), "sam", now=T0)
        await executor.act(instance.id, "mark", ApprovalAction.REQUEST_REVISION, now=T0)
        with pytest.raises(InvalidTransition):
            await executor.act(instance.id, "mia", ApprovalAction.APPROVE, now=T0)

    async def test_revision_never_moves_forward(self, executor, three_level_policy, make_item):
        """At level 1 the default content_review target would be ahead; stay at 1."""
        instance = await executor.submit(make_item(), "sam", now=T0)
        instance = await executor.act(instance.id, "mark", ApprovalAction.REQUEST_REVISION, now=T0)
        assert instance.current_level == 1

    async def test_policy_revision_stage(self, executor, make_policy, make_item):
        await make_policy(
            "back-to-start",
            [hierarchy_level(1, HierarchyLevel.MANAGER), role_level(2, "FINANCE_LEAD"), role_level(3, "DESIGNER")],
            is_default=True,
            revision_target_stage=ApprovalStage.SUBMITTED,
        )
        instance = await executor.submit(make_item(), "sam", now=T0)
        await executor.act(instance.id, "mark", ApprovalAction.APPROVE, now=T0)
        await executor.act(instance.id, "fin", ApprovalAction.APPROVE, now=T0)
        instance = await executor.act(instance.id, "dora", ApprovalAction.REQUEST_REVISION, now=T0)

        assert instance.current_level == 1
        assert instance.level_states == {}

    async def test_resubmit_reopens_level_and_resets_timer(
        self, executor, three_level_policy, make_item, work_item_service
    ):
        instance = await executor.submit(make_item(), "sam", now=T0)
        await executor.act(instance.id, "mark", ApprovalAction.APPROVE, now=T0)
        await executor.act(instance.id, "fin", ApprovalAction.REQUEST_REVISION, now=T0)
        assert not (await work_item_service.get_work_item(instance.id)).is_open

        t1 = T0 + timedelta(hours=5)
        instance = await executor.resubmit(instance.id, "sam", notes="Quotes attached", now=t1)

        assert instance.current_stage == ApprovalStage.CONTENT_REVIEW
        assert instance.level_entered_at == t1
        assert not instance.level_states[2].is_decided
        assert (await work_item_service.get_work_item(instance.id)).is_open

        instance = await executor.act(instance.id, "fin", ApprovalAction.APPROVE, now=t1)
        assert instance.current_stage == ApprovalStage.FINAL_APPROVAL

    async def test_only_submitter_may_resubmit(self, executor, three_level_policy, make_item):
        instance = await executor.submit(make_item(), "sam", now=T0)
        await executor.act(instance.id, "mark", ApprovalAction.REQUEST_REVISION, now=T0)
        with pytest.raises(PermissionDeniedException):
            await executor.resubmit(instance.id, "mark", now=T0)

    async def test_resubmit_requires_revision_state(self, executor, three_level_policy, make_item):
        instance = await executor.submit(make_item(), "sam", now=T0)
        with pytest.raises(InvalidTransition):
            await executor.resubmit(instance.id, "sam", now=T0)


class TestWithdrawal:
    """Test submitter withdrawal."""

    async def test_withdraw_before_any_approval(self, executor, two_level_policy, make_item, notifier):
        instance = await executor.submit(make_item(), "sam", now=T0)
        instance = await executor.withdraw(instance.id, "sam", now=T0)

        assert instance.current_stage == ApprovalStage.WITHDRAWN
        assert notifier.of_type("approval.withdrawn")

    async def test_no_withdrawal_after_approval(self, executor, two_level_policy, make_item):
        instance = await executor.submit(make_item(), "sam", now=T0)
        await executor.act(instance.id, "mark", ApprovalAction.APPROVE, now=T0)
        with pytest.raises(WithdrawalNotAllowed):
            await executor.withdraw(instance.id, "sam", now=T0)

    async def test_only_submitter_may_withdraw(self, executor, two_level_policy, make_item):
        instance = await executor.submit(make_item(), "sam", now=T0)
        with pytest.raises(PermissionDeniedException):
            await executor.withdraw(instance.id, "mark", now=T0)

    async def test_work_item_can_be_resubmitted_after_withdrawal(self, executor, two_level_policy, make_item):
        instance = await executor.submit(make_item(), "sam", now=T0)
        await executor.withdraw(instance.id, "sam", now=T0)

        again = await executor.submit(make_item(), "sam", now=T0)
        assert again.id != instance.id


class TestPendingForApprover:
    """Test the approver inbox."""

    async def test_pending_lists_only_eligible_approvers(self, executor, two_level_policy, make_item):
        instance = await executor.submit(make_item(), "sam", now=T0)

        assert [i.id for i in await executor.list_pending_for_approver("events", "mark")] == [instance.id]
        assert await executor.list_pending_for_approver("events", "fin") == []
        assert await executor.list_pending_for_approver("events", "sam") == []

    async def test_voter_drops_out_after_voting(self, executor, make_policy, make_item):
        await make_policy(
            "all-managers", [hierarchy_level(1, HierarchyLevel.MANAGER, anyone_at_level=False)], is_default=True
        )
        instance = await executor.submit(make_item(), "sam", now=T0)
        await executor.act(instance.id, "mark", ApprovalAction.APPROVE, now=T0)

        assert await executor.list_pending_for_approver("events", "mark") == []
        assert [i.id for i in await executor.list_pending_for_approver("events", "mia")] == [instance.id]


class TestPolicyService:
    """Test policy upserts."""

    async def test_second_enabled_default_rejected(self, policy_service, make_policy):
        await make_policy("first", [role_level(1, "FINANCE_LEAD")], is_default=True)
        second = ApprovalPolicy(
            id="second",
            workspace_id="events",
            name="second",
            chain=[role_level(1, "DESIGNER")],
            created_at=T0,
            updated_at=T0,
            is_default=True,
        )
        with pytest.raises(ValidationException):
            await policy_service.create_or_update_policy(second)

    async def test_update_keeps_created_at(self, policy_service, make_policy):
        original = await make_policy("p", [role_level(1, "FINANCE_LEAD")])
        changed = await policy_service.get_policy("p")
        changed.created_at = T0 + timedelta(days=3)
        changed.name = "renamed"

        saved = await policy_service.create_or_update_policy(changed, now=T0 + timedelta(days=3))

        assert saved.created_at == original.created_at
        assert saved.updated_at == T0 + timedelta(days=3)
        assert (await policy_service.get_policy("p")).name == "renamed"

    async def test_missing_policy(self, policy_service):
        with pytest.raises(PolicyNotFound):
            await policy_service.get_policy("nope")
