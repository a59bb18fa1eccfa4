"""
Approvals Domain Layer
======================

Contains:
- Entities: ApprovalPolicy, ApprovalLevel, ApprovalInstance, level states
- Value Objects: PolicySelection
- Domain Services: PolicyMatcher, StageMap

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from approvalflow.approvals.domain.entities import (
    ApprovalInstance,
    ApprovalLevel,
    ApprovalPolicy,
    CommittedLevelState,
    HistoryEntry,
    LevelState,
    PolicyCriteria,
    VotingLevelState,
)
from approvalflow.approvals.domain.value_objects import (
    PolicyMatcher,
    PolicySelection,
    StageMap,
)

__all__ = [
    # Entities
    "ApprovalInstance",
    "ApprovalLevel",
    "ApprovalPolicy",
    "CommittedLevelState",
    "HistoryEntry",
    "LevelState",
    "PolicyCriteria",
    "VotingLevelState",
    # Value Objects & Services
    "PolicyMatcher",
    "PolicySelection",
    "StageMap",
]
