"""
Core Module
============

Shared core utilities and abstractions used across the application.

This module contains framework-agnostic code that defines the fundamental
building blocks of the system.
"""

from approvalflow.core.exceptions import (
    ApplicationException,
    DomainException,
    RepositoryException,
    ValidationException,
    ResourceNotFoundException,
    ConfigurationException,
    ExternalServiceException,
    PolicyNotFound,
    InstanceNotFound,
    WorkItemNotFound,
    AlreadyDecided,
    PermissionDeniedException,
    SelfApprovalForbidden,
    UnauthorizedApprover,
    InvalidTransition,
    ActiveInstanceExists,
    WithdrawalNotAllowed,
    ConcurrencyConflict,
    HierarchyResolutionFailed,
)

__all__ = [
    "ApplicationException",
    "DomainException",
    "RepositoryException",
    "ValidationException",
    "ResourceNotFoundException",
    "ConfigurationException",
    "ExternalServiceException",
    "PolicyNotFound",
    "InstanceNotFound",
    "WorkItemNotFound",
    "AlreadyDecided",
    "PermissionDeniedException",
    "SelfApprovalForbidden",
    "UnauthorizedApprover",
    "InvalidTransition",
    "ActiveInstanceExists",
    "WithdrawalNotAllowed",
    "ConcurrencyConflict",
    "HierarchyResolutionFailed",
]
