"""
Escalation Infrastructure Models
================================

SQLAlchemy ORM models for the escalation module.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from approvalflow.infrastructure.database import Base


class WorkItemModel(Base):
    """Maps to the 'work_items' table."""
    __tablename__ = "work_items"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    workspace_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    parent_workspace_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    priority: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    estimated_hours: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    assignee_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    due_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    sla_threshold_hours: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open", index=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    escalated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    escalated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    escalated_to_workspace_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class EscalationEventModel(Base):
    """Maps to the 'escalation_events' table. Rows are never updated."""
    __tablename__ = "escalation_events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    item_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("work_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    item_type: Mapped[str] = mapped_column(String(50), nullable=False)
    escalated_from: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    escalated_to: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    overdue_hours_at_escalation: Mapped[float] = mapped_column(Float, nullable=False)
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
