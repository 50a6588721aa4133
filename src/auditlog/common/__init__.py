"""Common utilities - logging, config, exceptions."""

from auditlog.common.logging.logger import get_logger
from auditlog.common.config import Settings, get_settings, reset_settings
from auditlog.common.exceptions import (
    AuditLogException,
    ConfigurationError,
    UnknownAdapterError,
    EventValidationError,
    InvalidFilterError,
    AdapterError,
    AuditLogIntegrityError,
)

__all__ = [
    # Logging
    "get_logger",
    # Config
    "Settings",
    "get_settings",
    "reset_settings",
    # Exceptions
    "AuditLogException",
    "ConfigurationError",
    "UnknownAdapterError",
    "EventValidationError",
    "InvalidFilterError",
    "AdapterError",
    "AuditLogIntegrityError",
]
