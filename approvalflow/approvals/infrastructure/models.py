"""
Approval Infrastructure Models
==============================

SQLAlchemy ORM models for the approvals module.

Chains, criteria, level states and history are stored as JSON documents;
the columns the engine filters on are stored flat.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from approvalflow.infrastructure.database import Base

_ACTIVE_STAGE_FILTER = text("current_stage NOT IN ('approved', 'rejected', 'withdrawn')")
_ENABLED_DEFAULT_FILTER = text("is_default AND is_enabled")


class ApprovalPolicyModel(Base):
    """Maps to the 'approval_policies' table."""
    __tablename__ = "approval_policies"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    require_all_levels: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    allow_self_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_approve_after_hours: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    revision_target_stage: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    criteria: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    chain: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # At most one enabled default per workspace
    __table_args__ = (
        Index(
            "uq_approval_policies_enabled_default",
            "workspace_id",
            unique=True,
            postgresql_where=_ENABLED_DEFAULT_FILTER,
            sqlite_where=_ENABLED_DEFAULT_FILTER,
        ),
    )


class ApprovalInstanceModel(Base):
    """Maps to the 'approval_instances' table."""
    __tablename__ = "approval_instances"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    work_item_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    workspace_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    submitter_id: Mapped[str] = mapped_column(String(255), nullable=False)
    policy_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    current_level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    current_stage: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    level_entered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    level_states: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    history: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)

    # Optimistic concurrency token
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # One active instance per work item
    __table_args__ = (
        Index(
            "uq_approval_instances_active_work_item",
            "work_item_id",
            unique=True,
            postgresql_where=_ACTIVE_STAGE_FILTER,
            sqlite_where=_ACTIVE_STAGE_FILTER,
        ),
    )
