"""
Core Exceptions
================

Custom exceptions for the application following clean architecture principles.

Domain services raise these; the HTTP layer translates them into status
codes in one place (see ``shared.api.middleware``).
"""

from typing import Optional


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class DomainException(ApplicationException):
    """Base exception for domain logic violations."""


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class ValidationException(ApplicationException):
    """Exception for validation errors."""


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type}"
        if resource_id:
            message += f" with id '{resource_id}'"
        message += " not found"
        super().__init__(message, details)


class ConfigurationException(ApplicationException):
    """Exception for configuration errors."""


class ExternalServiceException(ApplicationException):
    """Base exception for external service failures."""

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


# ========== Not found ==========

class PolicyNotFound(ResourceNotFoundException):
    def __init__(self, policy_id: Optional[str] = None, details: Optional[dict] = None):
        super().__init__("ApprovalPolicy", policy_id, details)


class InstanceNotFound(ResourceNotFoundException):
    def __init__(self, instance_id: Optional[str] = None, details: Optional[dict] = None):
        super().__init__("ApprovalInstance", instance_id, details)


class WorkItemNotFound(ResourceNotFoundException):
    def __init__(self, item_id: Optional[str] = None, details: Optional[dict] = None):
        super().__init__("WorkItem", item_id, details)


# ========== Approval flow ==========

class AlreadyDecided(DomainException):
    """
    The level the caller acted on was already decided.

    Benign: the caller lost a race or repeated a vote, and the instance is
    already past the point the action targeted.
    """

    def __init__(self, instance_id: str, level: Optional[int] = None):
        self.instance_id = instance_id
        self.level = level
        message = f"Approval instance {instance_id}"
        if level is not None:
            message += f" level {level}"
        super().__init__(
            message + " is already decided",
            {"instance_id": instance_id, "level": level}
        )


class PermissionDeniedException(DomainException):
    """Actor is not allowed to perform the requested action."""


class SelfApprovalForbidden(PermissionDeniedException):
    def __init__(self, instance_id: str, actor_id: str):
        super().__init__(
            f"Submitter {actor_id} may not act on their own request {instance_id}",
            {"instance_id": instance_id, "actor_id": actor_id}
        )


class UnauthorizedApprover(PermissionDeniedException):
    def __init__(self, instance_id: str, actor_id: str, level: Optional[int] = None):
        super().__init__(
            f"{actor_id} is not an eligible approver for instance {instance_id}",
            {"instance_id": instance_id, "actor_id": actor_id, "level": level}
        )


class InvalidTransition(DomainException):
    """Action is not valid in the instance's current stage."""


class ActiveInstanceExists(InvalidTransition):
    def __init__(self, work_item_id: str):
        self.work_item_id = work_item_id
        super().__init__(
            f"Work item {work_item_id} already has an active approval instance",
            {"work_item_id": work_item_id}
        )


class WithdrawalNotAllowed(InvalidTransition):
    def __init__(self, instance_id: str):
        super().__init__(
            f"Approval instance {instance_id} can no longer be withdrawn",
            {"instance_id": instance_id}
        )


class ConcurrencyConflict(RepositoryException):
    """Optimistic update kept losing to concurrent writers."""

    def __init__(self, resource_id: str, attempts: int):
        super().__init__(
            f"Gave up updating {resource_id} after {attempts} concurrent modifications",
            {"resource_id": resource_id, "attempts": attempts}
        )


# ========== Collaborators ==========

class HierarchyResolutionFailed(ExternalServiceException):
    """The organizational hierarchy could not answer a lookup."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("Hierarchy Service", message, details)
