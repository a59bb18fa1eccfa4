"""
Approval Value Objects
======================

Stateless policy matching and stage mapping.

Value objects are defined by their attributes rather than an identity.
They are immutable and can be freely shared.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from approvalflow.approvals.domain.entities import ApprovalPolicy, PolicyCriteria
from approvalflow.config import ApprovalStage
from approvalflow.shared.domain import WorkItem


@dataclass(frozen=True)
class PolicySelection:
    """
    Outcome of policy matching.

    ``policy is None`` means no approval is required for the item.
    """

    policy: Optional[ApprovalPolicy]
    score: int = 0
    is_fallback: bool = False

    @property
    def requires_approval(self) -> bool:
        return self.policy is not None


class PolicyMatcher:
    """
    Pure functions selecting the policy that governs a work item.

    Selection order:
    1. enabled non-default policies of the item's workspace, scored by the
       number of declared criteria dimensions the item satisfies; score 0
       never matches
    2. highest score wins, ties go to the earliest ``created_at`` then the
       smallest ``id``
    3. otherwise the workspace's enabled default policy
    4. otherwise no approval is required
    """

    @staticmethod
    def specificity(criteria: PolicyCriteria, item: WorkItem) -> int:
        """Number of declared dimensions the item satisfies."""
        score = 0
        if criteria.categories and item.category in criteria.categories:
            score += 1
        if criteria.priorities and item.priority in criteria.priorities:
            score += 1
        if (
            criteria.min_estimated_hours is not None
            and item.estimated_hours is not None
            and item.estimated_hours >= criteria.min_estimated_hours
        ):
            score += 1
        return score

    @staticmethod
    def select_policy(item: WorkItem, policies: Iterable[ApprovalPolicy]) -> PolicySelection:
        candidates = [
            p for p in policies
            if p.is_enabled and p.workspace_id == item.workspace_id
        ]

        scored: List[Tuple[int, ApprovalPolicy]] = []
        for policy in candidates:
            if policy.is_default:
                continue
            score = PolicyMatcher.specificity(policy.criteria, item)
            if score > 0:
                scored.append((score, policy))

        if scored:
            score, best = min(
                scored,
                key=lambda sp: (-sp[0], sp[1].created_at, sp[1].id),
            )
            return PolicySelection(policy=best, score=score)

        defaults = sorted(
            (p for p in candidates if p.is_default),
            key=lambda p: (p.created_at, p.id),
        )
        if defaults:
            return PolicySelection(policy=defaults[0], is_fallback=True)

        return PolicySelection(policy=None)


class StageMap:
    """
    Maps chain levels to review stages.

    For a chain of depth N: level 1 is ``submitted``, level 2 is
    ``content_review``, levels 3..N-1 are ``design_review`` and level N
    (when N > 1) is ``final_approval``.
    """

    @staticmethod
    def stage_for_level(level: int, depth: int) -> ApprovalStage:
        if depth > 1 and level == depth:
            return ApprovalStage.FINAL_APPROVAL
        if level == 1:
            return ApprovalStage.SUBMITTED
        if level == 2:
            return ApprovalStage.CONTENT_REVIEW
        return ApprovalStage.DESIGN_REVIEW

    @staticmethod
    def level_for_stage(stage: ApprovalStage, depth: int) -> int:
        """First level sitting in ``stage``; level 1 when no level does."""
        for level in range(1, depth + 1):
            if StageMap.stage_for_level(level, depth) == stage:
                return level
        return 1

    @staticmethod
    def revision_level(policy: ApprovalPolicy, default_stage: ApprovalStage) -> int:
        stage = policy.revision_target_stage or default_stage
        return StageMap.level_for_stage(stage, policy.depth)
