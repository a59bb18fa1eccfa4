"""
Configuration Module
====================

Application settings and domain constants for the approval routing engine
and the escalation watchdog.
"""

from enum import Enum, IntEnum
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Every field can be overridden with an upper-cased environment variable
    of the same name (``BREACH_THRESHOLD_HOURS=12``) or through ``.env``.
    """

    # ========== Application ==========
    app_name: str = Field(default="approvalflow", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Storage ==========
    storage_backend: str = Field(
        default="database",
        description="Where policies, instances and work items live: 'database' or 'memory'"
    )
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/approvals",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== Approval Engine ==========
    default_revision_stage: str = Field(
        default="content_review",
        description="Stage an instance returns to on request_revision when the policy sets none"
    )
    approval_sla_hours: int = Field(
        default=48,
        description="Hours an approval level may stay open before the watchdog treats it as overdue",
        ge=1
    )
    auto_approval_sweep_interval: int = Field(
        default=600,
        description="Seconds between auto-approval sweeps",
        ge=10
    )
    max_commit_attempts: int = Field(
        default=5,
        description="Optimistic-concurrency retries per approver action",
        ge=1
    )

    # ========== Escalation Watchdog ==========
    breach_threshold_hours: int = Field(
        default=24,
        description="Overdue hours after which a work item counts as breached",
        ge=0
    )
    escalation_sweep_interval: int = Field(
        default=600,
        description="Seconds between escalation sweeps",
        ge=10
    )
    escalation_config_path: Path = Field(
        default=Path("escalation_rules.yaml"),
        description="Path to per-item-type escalation rules (hot-reloaded)"
    )
    scheduler_enabled: bool = Field(
        default=True,
        description="Run both sweeps in the background"
    )

    # ========== Organizational Hierarchy ==========
    hierarchy_service_url: Optional[str] = Field(
        default=None,
        description="Base URL of the organizational hierarchy service"
    )
    hierarchy_seed_path: Optional[Path] = Field(
        default=None,
        description="YAML directory used instead of the hierarchy service"
    )
    hierarchy_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for hierarchy lookups",
        ge=0.1,
        le=30
    )

    # ========== Notifications ==========
    notification_webhook_url: Optional[str] = Field(
        default=None,
        description="Webhook receiving notification intents"
    )
    notification_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for webhook calls",
        ge=0.1,
        le=30
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production", "test"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("storage_backend")
    @classmethod
    def validate_storage_backend(cls, v: str) -> str:
        allowed = {"database", "memory"}
        if v not in allowed:
            raise ValueError(f"storage_backend must be one of {allowed}")
        return v

    @field_validator("default_revision_stage")
    @classmethod
    def validate_revision_stage(cls, v: str) -> str:
        """Revision can only target a stage an open level can sit in."""
        if v not in {stage.value for stage in REVIEW_STAGES}:
            raise ValueError(f"default_revision_stage must be a review stage, got {v!r}")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# ========== Constants ==========

SYSTEM_ACTOR = "SYSTEM"


class ApproverType(str, Enum):
    """How approvers of a chain level are resolved."""
    ROLE = "ROLE"
    HIERARCHY = "HIERARCHY"


class HierarchyLevel(IntEnum):
    """Organizational levels; a lower number is more senior."""
    OWNER = 1
    MANAGER = 2
    LEAD = 3
    COORDINATOR = 4


class ApprovalStage(str, Enum):
    """Lifecycle stages of an approval instance."""
    SUBMITTED = "submitted"
    CONTENT_REVIEW = "content_review"
    DESIGN_REVIEW = "design_review"
    FINAL_APPROVAL = "final_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    REVISION_REQUESTED = "revision_requested"
    WITHDRAWN = "withdrawn"


class ApprovalAction(str, Enum):
    """Actions recorded in approval history."""
    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_REVISION = "request_revision"
    SUBMIT = "submit"
    RESUBMIT = "resubmit"
    WITHDRAW = "withdraw"
    AUTO_PASS = "auto_pass"


class SLAState(str, Enum):
    """Overdue classification of a work item."""
    ON_TRACK = "on_track"
    AT_RISK = "at_risk"
    BREACHED = "breached"


class WorkItemType(str, Enum):
    """Kinds of work the watchdog keeps an eye on."""
    TASK = "task"
    APPROVAL = "approval"
    TICKET = "ticket"
    ISSUE = "issue"
    BUDGET_REQUEST = "budget_request"
    RESOURCE_REQUEST = "resource_request"


class WorkItemStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class EscalationTarget(str, Enum):
    """Where a breached item is escalated to."""
    PARENT = "parent"
    ROOT = "root"


# ========== Stage groups ==========

TERMINAL_STAGES = frozenset({
    ApprovalStage.APPROVED,
    ApprovalStage.REJECTED,
    ApprovalStage.WITHDRAWN,
})
REVIEW_STAGES = (
    ApprovalStage.SUBMITTED,
    ApprovalStage.CONTENT_REVIEW,
    ApprovalStage.DESIGN_REVIEW,
    ApprovalStage.FINAL_APPROVAL,
)
APPROVER_ACTIONS = frozenset({
    ApprovalAction.APPROVE,
    ApprovalAction.REJECT,
    ApprovalAction.REQUEST_REVISION,
})


# Global settings instance
settings = get_settings()
