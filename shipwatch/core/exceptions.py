"""
Core Exceptions
================

Error taxonomy of the escalation engine.

Operator-facing calls let these propagate to the API boundary, where they are
mapped to HTTP status codes. Batch jobs catch them per item and log.
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


class InvalidStateException(DomainException):
    """
    The requested transition is not allowed from the current chain state.

    Raised when opening while a chain is active, advancing or acknowledging
    when none is, or advancing past the last ladder contact.
    """

    def __init__(
        self,
        message: str,
        shipment_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.shipment_id = shipment_id
        if shipment_id and details is None:
            details = {"shipment_id": shipment_id}
        super().__init__(message, details)


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class TransientStoreException(RepositoryException):
    """The persistence layer could not be reached; the call may be retried."""


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


class NotificationException(ExternalServiceException):
    """A notification sink failed to deliver a message."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("Notification Sink", message, details)
