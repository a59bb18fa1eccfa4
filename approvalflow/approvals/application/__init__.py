"""
Approvals Application Layer
===========================

Contains:
- Services: PolicyService, ApprovalChainExecutor, AutoApprovalScheduler
- Repository interfaces
- DTOs: Pydantic models for the API

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from approvalflow.approvals.application.services import (
    ApprovalChainExecutor,
    AutoApprovalScheduler,
    IApprovalInstanceRepository,
    IApprovalPolicyRepository,
    PolicyService,
)

__all__ = [
    "ApprovalChainExecutor",
    "AutoApprovalScheduler",
    "IApprovalInstanceRepository",
    "IApprovalPolicyRepository",
    "PolicyService",
]
