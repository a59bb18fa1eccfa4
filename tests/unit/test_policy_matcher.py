"""Tests for policy matching, stage mapping and policy validation."""

import random
from datetime import timedelta

import pytest

from approvalflow.approvals.domain import (
    ApprovalLevel,
    ApprovalPolicy,
    PolicyCriteria,
    PolicyMatcher,
    StageMap,
)
from approvalflow.config import ApprovalStage, ApproverType, HierarchyLevel
from approvalflow.core import ValidationException

from conftest import T0, hierarchy_level, role_level


def _policy(policy_id, chain=None, created_at=T0, categories=(), priorities=(), min_hours=None, **kwargs):
    return ApprovalPolicy(
        id=policy_id,
        workspace_id=kwargs.pop("workspace_id", "events"),
        name=policy_id,
        chain=chain if chain is not None else [role_level(1, "FINANCE_LEAD")],
        criteria=PolicyCriteria(
            categories=frozenset(categories),
            priorities=frozenset(priorities),
            min_estimated_hours=min_hours,
        ),
        created_at=created_at,
        updated_at=created_at,
        **kwargs,
    )


class TestPolicyMatcher:
    """Test policy selection."""

    def test_category_match_beats_default(self, make_item):
        """A FINANCE item selects the finance policy, anything else the default."""
        p1 = _policy("P1", chain=[role_level(1, "FINANCE_LEAD")], categories=["FINANCE"])
        p2 = _policy("P2", chain=[hierarchy_level(1, HierarchyLevel.MANAGER)], is_default=True)

        finance = PolicyMatcher.select_policy(make_item(category="FINANCE"), [p1, p2])
        general = PolicyMatcher.select_policy(make_item(category="GENERAL"), [p1, p2])

        assert finance.policy.id == "P1"
        assert finance.score == 1
        assert not finance.is_fallback
        assert general.policy.id == "P2"
        assert general.is_fallback

    def test_no_policy_means_no_approval(self, make_item):
        selection = PolicyMatcher.select_policy(make_item(category="FINANCE"), [])
        assert selection.policy is None
        assert not selection.requires_approval

    def test_zero_score_never_matches(self, make_item):
        """Without a default, a non-matching policy is not used."""
        p1 = _policy("P1", categories=["FINANCE"])
        assert PolicyMatcher.select_policy(make_item(category="GENERAL"), [p1]).policy is None

    def test_higher_specificity_wins(self, make_item):
        broad = _policy("broad", categories=["FINANCE"])
        narrow = _policy("narrow", categories=["FINANCE"], priorities=["high"], min_hours=10)
        item = make_item(category="FINANCE", priority="high", estimated_hours=12)

        selection = PolicyMatcher.select_policy(item, [broad, narrow])

        assert selection.policy.id == "narrow"
        assert selection.score == 3

    def test_estimated_hours_below_minimum_does_not_score(self, make_item):
        policy = _policy("big-jobs", min_hours=10)
        assert PolicyMatcher.specificity(policy.criteria, make_item(estimated_hours=4)) == 0
        assert PolicyMatcher.specificity(policy.criteria, make_item(estimated_hours=None)) == 0

    def test_tie_goes_to_earliest_created(self, make_item):
        older = _policy("zz-older", categories=["FINANCE"], created_at=T0)
        newer = _policy("aa-newer", categories=["FINANCE"], created_at=T0 + timedelta(hours=1))

        selection = PolicyMatcher.select_policy(make_item(category="FINANCE"), [newer, older])
        assert selection.policy.id == "zz-older"

    def test_tie_on_created_at_goes_to_smallest_id(self, make_item):
        a = _policy("policy-a", categories=["FINANCE"])
        b = _policy("policy-b", categories=["FINANCE"])

        selection = PolicyMatcher.select_policy(make_item(category="FINANCE"), [b, a])
        assert selection.policy.id == "policy-a"

    def test_selection_is_independent_of_input_order(self, make_item):
        policies = [
            _policy(f"p{i}", categories=["FINANCE"], created_at=T0 + timedelta(minutes=i % 3))
            for i in range(8)
        ]
        item = make_item(category="FINANCE")
        expected = PolicyMatcher.select_policy(item, policies).policy.id

        rng = random.Random(7)
        for _ in range(10):
            rng.shuffle(policies)
            assert PolicyMatcher.select_policy(item, policies).policy.id == expected

    def test_disabled_and_foreign_policies_are_ignored(self, make_item):
        disabled = _policy("disabled", categories=["FINANCE"], is_enabled=False)
        foreign = _policy("foreign", categories=["FINANCE"], workspace_id="org")
        default = _policy("default", is_default=True)

        selection = PolicyMatcher.select_policy(make_item(category="FINANCE"), [disabled, foreign, default])
        assert selection.policy.id == "default"


class TestStageMap:
    """Test level to stage mapping."""

    def test_single_level_chain(self):
        assert StageMap.stage_for_level(1, 1) == ApprovalStage.SUBMITTED

    def test_three_level_chain(self):
        assert StageMap.stage_for_level(1, 3) == ApprovalStage.SUBMITTED
        assert StageMap.stage_for_level(2, 3) == ApprovalStage.CONTENT_REVIEW
        assert StageMap.stage_for_level(3, 3) == ApprovalStage.FINAL_APPROVAL

    def test_middle_levels_are_design_review(self):
        assert StageMap.stage_for_level(3, 5) == ApprovalStage.DESIGN_REVIEW
        assert StageMap.stage_for_level(4, 5) == ApprovalStage.DESIGN_REVIEW
        assert StageMap.stage_for_level(5, 5) == ApprovalStage.FINAL_APPROVAL

    def test_revision_level_uses_default_stage(self):
        policy = _policy("p", chain=[role_level(1, "A"), role_level(2, "B"), role_level(3, "C")])
        assert StageMap.revision_level(policy, ApprovalStage.CONTENT_REVIEW) == 2

    def test_revision_level_falls_back_to_first_level(self):
        policy = _policy("p", chain=[role_level(1, "A")])
        assert StageMap.revision_level(policy, ApprovalStage.CONTENT_REVIEW) == 1

    def test_policy_revision_stage_overrides_default(self):
        policy = _policy(
            "p",
            chain=[role_level(1, "A"), role_level(2, "B"), role_level(3, "C")],
            revision_target_stage=ApprovalStage.SUBMITTED,
        )
        assert StageMap.revision_level(policy, ApprovalStage.CONTENT_REVIEW) == 1


class TestPolicyValidation:
    """Test policy invariants enforced at construction."""

    def test_chain_must_not_be_empty(self):
        with pytest.raises(ValidationException):
            _policy("p", chain=[])

    def test_chain_must_be_contiguous(self):
        with pytest.raises(ValidationException):
            _policy("p", chain=[role_level(1, "A"), role_level(3, "B")])

    def test_chain_is_sorted_by_level(self):
        policy = _policy("p", chain=[role_level(2, "B"), role_level(1, "A")])
        assert [lvl.level for lvl in policy.chain] == [1, 2]

    def test_role_level_needs_role(self):
        with pytest.raises(ValidationException):
            ApprovalLevel(level=1, approver_type=ApproverType.ROLE)

    def test_hierarchy_level_needs_seniority(self):
        with pytest.raises(ValidationException):
            ApprovalLevel(level=1, approver_type=ApproverType.HIERARCHY)

    def test_revision_stage_must_be_a_review_stage(self):
        with pytest.raises(ValidationException):
            _policy("p", revision_target_stage=ApprovalStage.APPROVED)

    def test_round_trip_through_dict(self):
        policy = _policy(
            "p",
            chain=[hierarchy_level(1, HierarchyLevel.MANAGER), role_level(2, "FINANCE_LEAD", False)],
            categories=["FINANCE"],
            auto_approve_after_hours=48,
        )
        restored = ApprovalPolicy.from_dict(policy.to_dict())
        assert restored.chain == policy.chain
        assert restored.criteria == policy.criteria
        assert restored.auto_approve_after_hours == 48
