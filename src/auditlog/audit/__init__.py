"""Audit engine - event model, storage adapters and the batching logger."""

from auditlog.audit.schemas import (
    ActorType,
    AuditAction,
    AuditContext,
    AuditEvent,
    AuditEventInput,
    AuditLevel,
    AuditLoggerConfig,
    AuditStats,
    EventFilter,
    PaginatedResult,
)
from auditlog.audit.store import AuditAdapter, FileAuditAdapter
from auditlog.audit.logger import (
    ActorAuditLogger,
    AuditLogger,
    EngineState,
    ResourceAuditLogger,
)
from auditlog.audit.sanitizer import sanitize_data
from auditlog.audit.context import create_audit_context, extract_ip_address
from auditlog.audit.config import (
    AdapterKind,
    create_audit_adapter,
    create_audit_logger,
    create_audit_logger_from_env,
    load_logger_config,
)
from auditlog.audit.lifecycle import install_shutdown_handlers

__all__ = [
    "ActorType",
    "AuditAction",
    "AuditContext",
    "AuditEvent",
    "AuditEventInput",
    "AuditLevel",
    "AuditLoggerConfig",
    "AuditStats",
    "EventFilter",
    "PaginatedResult",
    "AuditAdapter",
    "FileAuditAdapter",
    "AuditLogger",
    "ActorAuditLogger",
    "ResourceAuditLogger",
    "EngineState",
    "sanitize_data",
    "create_audit_context",
    "extract_ip_address",
    "AdapterKind",
    "create_audit_adapter",
    "create_audit_logger",
    "create_audit_logger_from_env",
    "load_logger_config",
    "install_shutdown_handlers",
]
