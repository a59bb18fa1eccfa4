"""
Approvals Infrastructure Layer
==============================

- Models: SQLAlchemy ORM models
- Repositories: SQLAlchemy and in-memory data access
"""

from approvalflow.approvals.infrastructure.models import ApprovalInstanceModel, ApprovalPolicyModel
from approvalflow.approvals.infrastructure.repositories import (
    InMemoryInstanceRepository,
    InMemoryPolicyRepository,
    SQLAlchemyInstanceRepository,
    SQLAlchemyPolicyRepository,
)

__all__ = [
    "ApprovalInstanceModel",
    "ApprovalPolicyModel",
    "InMemoryInstanceRepository",
    "InMemoryPolicyRepository",
    "SQLAlchemyInstanceRepository",
    "SQLAlchemyPolicyRepository",
]
