"""
Core Module
============

Framework-agnostic building blocks shared by every layer of the service.
"""

from shipwatch.core.exceptions import (
    ApplicationException,
    DomainException,
    InvalidStateException,
    RepositoryException,
    TransientStoreException,
    ResourceNotFoundException,
    ConfigurationException,
    ExternalServiceException,
    NotificationException,
)

__all__ = [
    "ApplicationException",
    "DomainException",
    "InvalidStateException",
    "RepositoryException",
    "TransientStoreException",
    "ResourceNotFoundException",
    "ConfigurationException",
    "ExternalServiceException",
    "NotificationException",
]
