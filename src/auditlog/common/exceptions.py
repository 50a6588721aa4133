"""Custom exceptions for auditlog.

Provides a hierarchy of exceptions for different error types.
All auditlog exceptions inherit from AuditLogException.
"""

from typing import Any, Dict, Optional


class AuditLogException(Exception):
    """Base exception for all auditlog errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: str = "AUDIT_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(AuditLogException):
    """Raised when configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: str = "CONFIG_ERROR",
    ):
        super().__init__(message, code=code, details=details)


class UnknownAdapterError(ConfigurationError):
    """Raised when an adapter kind outside the supported set is requested."""

    def __init__(self, kind: Any, supported: Optional[list] = None):
        details = {"kind": str(kind)}
        if supported:
            details["supported"] = list(supported)
        super().__init__(
            f"Unknown audit adapter kind: {kind}",
            details=details,
            code="UNKNOWN_ADAPTER",
        )


class EventValidationError(AuditLogException):
    """Raised when a submitted audit event fails schema validation."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="EVENT_VALIDATION_ERROR", details=details)


class InvalidFilterError(AuditLogException):
    """Raised when a query filter is malformed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="INVALID_FILTER", details=details)


class AdapterError(AuditLogException):
    """Raised when a storage adapter operation fails."""

    def __init__(
        self,
        message: str,
        adapter: str,
        operation: str,
        details: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        details["adapter"] = adapter
        details["operation"] = operation
        super().__init__(message, code="ADAPTER_ERROR", details=details)
        self.adapter = adapter
        self.operation = operation


class AuditLogIntegrityError(AuditLogException):
    """Raised when audit log integrity check fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="INTEGRITY_ERROR", details=details)
