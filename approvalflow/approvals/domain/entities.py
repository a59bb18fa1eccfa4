"""
Approval Domain Entities
========================

Policies, chain levels, per-level decision state and approval instances.

Pure Python, no infrastructure. Every entity round-trips through a plain
dict (``to_dict``/``from_dict``) which is what the repositories persist.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Dict, FrozenSet, List, Optional

from approvalflow.config import (
    ApprovalAction,
    ApprovalStage,
    ApproverType,
    HierarchyLevel,
    REVIEW_STAGES,
    TERMINAL_STAGES,
)
from approvalflow.core import ValidationException


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ========== Policy ==========

@dataclass(frozen=True)
class PolicyCriteria:
    """
    Closed set of matching dimensions.

    An empty set or None means the dimension is not declared and does not
    count toward specificity.
    """

    categories: FrozenSet[str] = frozenset()
    priorities: FrozenSet[str] = frozenset()
    min_estimated_hours: Optional[float] = None

    def __post_init__(self):
        object.__setattr__(self, "categories", frozenset(self.categories or ()))
        object.__setattr__(self, "priorities", frozenset(self.priorities or ()))
        if self.min_estimated_hours is not None and self.min_estimated_hours < 0:
            raise ValidationException("min_estimated_hours cannot be negative")

    @property
    def declared_dimensions(self) -> int:
        return sum((
            bool(self.categories),
            bool(self.priorities),
            self.min_estimated_hours is not None,
        ))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "categories": sorted(self.categories),
            "priorities": sorted(self.priorities),
            "min_estimated_hours": self.min_estimated_hours,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PolicyCriteria":
        data = data or {}
        return cls(
            categories=frozenset(data.get("categories") or ()),
            priorities=frozenset(data.get("priorities") or ()),
            min_estimated_hours=data.get("min_estimated_hours"),
        )


@dataclass(frozen=True)
class ApprovalLevel:
    """One step of an approval chain."""

    level: int
    approver_type: ApproverType
    required_role: Optional[str] = None
    hierarchy_level: Optional[HierarchyLevel] = None
    anyone_at_level: bool = True

    def __post_init__(self):
        object.__setattr__(self, "approver_type", ApproverType(self.approver_type))
        if self.hierarchy_level is not None:
            object.__setattr__(self, "hierarchy_level", HierarchyLevel(self.hierarchy_level))

        if self.level < 1:
            raise ValidationException(f"Chain level must be >= 1, got {self.level}")
        if self.approver_type == ApproverType.ROLE and not self.required_role:
            raise ValidationException(f"Level {self.level}: ROLE approver needs required_role")
        if self.approver_type == ApproverType.HIERARCHY and self.hierarchy_level is None:
            raise ValidationException(f"Level {self.level}: HIERARCHY approver needs hierarchy_level")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level,
            "approver_type": self.approver_type.value,
            "required_role": self.required_role,
            "hierarchy_level": self.hierarchy_level.name if self.hierarchy_level else None,
            "anyone_at_level": self.anyone_at_level,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalLevel":
        hierarchy_level = data.get("hierarchy_level")
        if isinstance(hierarchy_level, str):
            hierarchy_level = HierarchyLevel[hierarchy_level]
        return cls(
            level=data["level"],
            approver_type=ApproverType(data["approver_type"]),
            required_role=data.get("required_role"),
            hierarchy_level=hierarchy_level,
            anyone_at_level=data.get("anyone_at_level", True),
        )


@dataclass
class ApprovalPolicy:
    """
    Approval policy entity.

    Binds a criteria-matched set of work items to an ordered approval chain.
    """

    id: str
    workspace_id: str
    name: str
    chain: List[ApprovalLevel]
    created_at: datetime
    updated_at: datetime

    is_default: bool = False
    criteria: PolicyCriteria = field(default_factory=PolicyCriteria)
    require_all_levels: bool = True
    allow_self_approval: bool = False
    auto_approve_after_hours: Optional[int] = None
    revision_target_stage: Optional[ApprovalStage] = None
    is_enabled: bool = True

    def __post_init__(self):
        """Validate chain shape on initialization."""
        if not self.chain:
            raise ValidationException("Approval chain must contain at least one level")

        self.chain = sorted(self.chain, key=lambda lvl: lvl.level)
        numbers = [lvl.level for lvl in self.chain]
        if numbers != list(range(1, len(numbers) + 1)):
            raise ValidationException(
                f"Chain levels must be numbered 1..{len(numbers)} without gaps, got {numbers}"
            )

        if self.auto_approve_after_hours is not None and self.auto_approve_after_hours < 0:
            raise ValidationException("auto_approve_after_hours cannot be negative")

        if self.revision_target_stage is not None:
            self.revision_target_stage = ApprovalStage(self.revision_target_stage)
            if self.revision_target_stage not in REVIEW_STAGES:
                raise ValidationException(
                    f"revision_target_stage must be a review stage, got {self.revision_target_stage.value}"
                )

    @property
    def depth(self) -> int:
        return len(self.chain)

    def get_level(self, level: int) -> ApprovalLevel:
        return self.chain[level - 1]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "name": self.name,
            "is_default": self.is_default,
            "criteria": self.criteria.to_dict(),
            "chain": [lvl.to_dict() for lvl in self.chain],
            "require_all_levels": self.require_all_levels,
            "allow_self_approval": self.allow_self_approval,
            "auto_approve_after_hours": self.auto_approve_after_hours,
            "revision_target_stage": (
                self.revision_target_stage.value if self.revision_target_stage else None
            ),
            "is_enabled": self.is_enabled,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalPolicy":
        return cls(
            id=data["id"],
            workspace_id=data["workspace_id"],
            name=data["name"],
            is_default=data.get("is_default", False),
            criteria=PolicyCriteria.from_dict(data.get("criteria")),
            chain=[ApprovalLevel.from_dict(lvl) for lvl in data["chain"]],
            require_all_levels=data.get("require_all_levels", True),
            allow_self_approval=data.get("allow_self_approval", False),
            auto_approve_after_hours=data.get("auto_approve_after_hours"),
            revision_target_stage=data.get("revision_target_stage"),
            is_enabled=data.get("is_enabled", True),
            created_at=_parse_dt(data["created_at"]),
            updated_at=_parse_dt(data["updated_at"]),
        )


# ========== Level state ==========

class LevelState(ABC):
    """Decision state of one open chain level."""

    kind: ClassVar[str]

    @property
    @abstractmethod
    def is_decided(self) -> bool:
        """No further approver action is accepted at this level."""

    @property
    @abstractmethod
    def is_approved(self) -> bool:
        """The level is satisfied and the chain may move on."""

    @abstractmethod
    def has_acted(self, actor_id: str) -> bool:
        """Actor already left a decision at this level."""

    @abstractmethod
    def record(self, actor_id: str, action: ApprovalAction, timestamp: datetime) -> None:
        """Record an approve or reject by an eligible actor."""

    @abstractmethod
    def force_approve(self, actor_id: str, timestamp: datetime) -> None:
        """Satisfy the level regardless of who has voted."""

    @abstractmethod
    def to_dict(self) -> Dict[str, Any]:
        pass

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "LevelState":
        kind = data.get("kind")
        if kind == CommittedLevelState.kind:
            return CommittedLevelState(
                by=data.get("by"),
                action=ApprovalAction(data["action"]) if data.get("action") else None,
                decided_at=_parse_dt(data.get("decided_at")),
            )
        if kind == VotingLevelState.kind:
            return VotingLevelState(
                eligible=frozenset(data.get("eligible", ())),
                votes=frozenset(data.get("votes", ())),
                rejected_by=data.get("rejected_by"),
                forced_by=data.get("forced_by"),
                decided_at=_parse_dt(data.get("decided_at")),
            )
        raise ValueError(f"Unknown level state kind: {kind!r}")


@dataclass
class CommittedLevelState(LevelState):
    """Any single eligible approver decides the level."""

    kind: ClassVar[str] = "committed"

    by: Optional[str] = None
    action: Optional[ApprovalAction] = None
    decided_at: Optional[datetime] = None

    @property
    def is_decided(self) -> bool:
        return self.by is not None

    @property
    def is_approved(self) -> bool:
        return self.action == ApprovalAction.APPROVE

    def has_acted(self, actor_id: str) -> bool:
        return self.by == actor_id

    def record(self, actor_id: str, action: ApprovalAction, timestamp: datetime) -> None:
        self.by = actor_id
        self.action = action
        self.decided_at = timestamp

    def force_approve(self, actor_id: str, timestamp: datetime) -> None:
        self.record(actor_id, ApprovalAction.APPROVE, timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "by": self.by,
            "action": self.action.value if self.action else None,
            "decided_at": _iso(self.decided_at),
        }


@dataclass
class VotingLevelState(LevelState):
    """
    Every approver frozen at level entry must approve; one reject rejects.

    An empty ``eligible`` set can only be satisfied by ``force_approve``.
    """

    kind: ClassVar[str] = "voting"

    eligible: FrozenSet[str] = frozenset()
    votes: FrozenSet[str] = frozenset()
    rejected_by: Optional[str] = None
    forced_by: Optional[str] = None
    decided_at: Optional[datetime] = None

    @property
    def is_approved(self) -> bool:
        if self.rejected_by is not None:
            return False
        return self.forced_by is not None or (bool(self.eligible) and self.eligible <= self.votes)

    @property
    def is_decided(self) -> bool:
        return self.rejected_by is not None or self.is_approved

    @property
    def pending_voters(self) -> FrozenSet[str]:
        return self.eligible - self.votes

    def has_acted(self, actor_id: str) -> bool:
        return actor_id in self.votes or actor_id == self.rejected_by

    def record(self, actor_id: str, action: ApprovalAction, timestamp: datetime) -> None:
        if action == ApprovalAction.REJECT:
            self.rejected_by = actor_id
        else:
            self.votes = self.votes | {actor_id}
        if self.is_decided:
            self.decided_at = timestamp

    def force_approve(self, actor_id: str, timestamp: datetime) -> None:
        self.forced_by = actor_id
        self.decided_at = timestamp

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "eligible": sorted(self.eligible),
            "votes": sorted(self.votes),
            "rejected_by": self.rejected_by,
            "forced_by": self.forced_by,
            "decided_at": _iso(self.decided_at),
        }


# ========== Instance ==========

@dataclass(frozen=True)
class HistoryEntry:
    level: int
    actor_id: str
    action: ApprovalAction
    stage: ApprovalStage
    timestamp: datetime
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level,
            "actor_id": self.actor_id,
            "action": self.action.value,
            "stage": self.stage.value,
            "notes": self.notes,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        return cls(
            level=data["level"],
            actor_id=data["actor_id"],
            action=ApprovalAction(data["action"]),
            stage=ApprovalStage(data["stage"]),
            notes=data.get("notes"),
            timestamp=_parse_dt(data["timestamp"]),
        )


@dataclass
class ApprovalInstance:
    """
    A work item travelling through an approval chain.

    ``version`` is bumped on every committed change; repositories only
    accept a save whose expected version still matches.
    """

    id: str
    work_item_id: str
    workspace_id: str
    submitter_id: str
    policy_id: Optional[str]
    current_level: int
    current_stage: ApprovalStage
    level_entered_at: datetime
    created_at: datetime

    level_states: Dict[int, LevelState] = field(default_factory=dict)
    history: List[HistoryEntry] = field(default_factory=list)
    version: int = 0
    completed_at: Optional[datetime] = None

    def __post_init__(self):
        self.current_stage = ApprovalStage(self.current_stage)

    @property
    def is_terminal(self) -> bool:
        return self.current_stage in TERMINAL_STAGES

    @property
    def is_active(self) -> bool:
        return not self.is_terminal

    @property
    def awaiting_resubmission(self) -> bool:
        return self.current_stage == ApprovalStage.REVISION_REQUESTED

    def has_approvals(self) -> bool:
        """True once any approver (or SYSTEM) has approved at any level."""
        return any(entry.action == ApprovalAction.APPROVE for entry in self.history)

    def append_history(
        self,
        actor_id: str,
        action: ApprovalAction,
        timestamp: datetime,
        level: Optional[int] = None,
        notes: Optional[str] = None,
        stage: Optional[ApprovalStage] = None,
    ) -> HistoryEntry:
        entry = HistoryEntry(
            level=level if level is not None else self.current_level,
            actor_id=actor_id,
            action=action,
            stage=stage or self.current_stage,
            notes=notes,
            timestamp=timestamp,
        )
        self.history.append(entry)
        return entry

    def complete(self, stage: ApprovalStage, timestamp: datetime) -> None:
        self.current_stage = stage
        self.completed_at = timestamp

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "work_item_id": self.work_item_id,
            "workspace_id": self.workspace_id,
            "submitter_id": self.submitter_id,
            "policy_id": self.policy_id,
            "current_level": self.current_level,
            "current_stage": self.current_stage.value,
            "level_entered_at": _iso(self.level_entered_at),
            "level_states": {str(k): v.to_dict() for k, v in sorted(self.level_states.items())},
            "history": [entry.to_dict() for entry in self.history],
            "version": self.version,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalInstance":
        return cls(
            id=data["id"],
            work_item_id=data["work_item_id"],
            workspace_id=data["workspace_id"],
            submitter_id=data["submitter_id"],
            policy_id=data.get("policy_id"),
            current_level=data["current_level"],
            current_stage=ApprovalStage(data["current_stage"]),
            level_entered_at=_parse_dt(data["level_entered_at"]),
            level_states={
                int(k): LevelState.from_dict(v) for k, v in (data.get("level_states") or {}).items()
            },
            history=[HistoryEntry.from_dict(h) for h in data.get("history") or []],
            version=data.get("version", 0),
            created_at=_parse_dt(data["created_at"]),
            completed_at=_parse_dt(data.get("completed_at")),
        )
