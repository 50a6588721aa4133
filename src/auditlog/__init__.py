"""auditlog - In-process audit event logging engine."""

__version__ = "0.1.0"
__author__ = "auditlog maintainers"

from auditlog.audit.logger import ActorAuditLogger, AuditLogger, ResourceAuditLogger
from auditlog.audit.schemas import (
    ActorType,
    AuditAction,
    AuditEvent,
    AuditEventInput,
    AuditLevel,
    AuditLoggerConfig,
    EventFilter,
)
from auditlog.audit.config import (
    AdapterKind,
    create_audit_adapter,
    create_audit_logger,
    create_audit_logger_from_env,
)

__all__ = [
    "AuditLogger",
    "ResourceAuditLogger",
    "ActorAuditLogger",
    "AuditEvent",
    "AuditEventInput",
    "AuditAction",
    "AuditLevel",
    "ActorType",
    "AuditLoggerConfig",
    "EventFilter",
    "AdapterKind",
    "create_audit_adapter",
    "create_audit_logger",
    "create_audit_logger_from_env",
]
