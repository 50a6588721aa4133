"""Audit Layer Configuration and Initialization.

Provides factory methods for storage adapters and fully wired loggers.
Adapter kinds form a closed set; anything else is rejected when the
adapter is built, not when it is first used.

Environment variables (see ``auditlog.common.config.Settings``):
- AUDIT_STORAGE_TYPE: "sqlite" (default), "postgresql", "mysql", "dynamodb" or "file"
- AUDIT_ENABLED, AUDIT_LEVEL, AUDIT_BATCH_SIZE, AUDIT_FLUSH_INTERVAL,
  AUDIT_MAX_RETRIES, AUDIT_RETRY_DELAY
- AUDIT_SANITIZE_ENABLED, AUDIT_SANITIZE_FIELDS, AUDIT_SANITIZE_REPLACEMENT
- AUDIT_ENVIRONMENT, SERVICE_NAME, SERVICE_VERSION
"""

import logging
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional, Union

import yaml
from pydantic import ValidationError

from auditlog.audit.logger import AuditLogger
from auditlog.audit.schemas import AuditLoggerConfig
from auditlog.audit.store import AuditAdapter, FileAuditAdapter
from auditlog.common.config import Settings, StorageType, get_settings
from auditlog.common.exceptions import ConfigurationError, UnknownAdapterError


logger = logging.getLogger(__name__)


class AdapterKind(str, Enum):
    """Supported storage backends."""
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    DYNAMODB = "dynamodb"
    FILE = "file"


def _resolve_kind(kind: Union[AdapterKind, StorageType, str]) -> AdapterKind:
    raw = kind.value if isinstance(kind, Enum) else kind
    try:
        return AdapterKind(str(raw).lower())
    except ValueError:
        raise UnknownAdapterError(kind, supported=[k.value for k in AdapterKind]) from None


def create_audit_adapter(kind: Union[AdapterKind, str], **options: Any) -> AuditAdapter:
    """Factory method to create a storage adapter.

    Args:
        kind: One of ``AdapterKind``
        **options: Constructor arguments for the chosen adapter

    Returns:
        Configured AuditAdapter instance

    Raises:
        UnknownAdapterError: If ``kind`` is not a supported backend
    """
    kind = _resolve_kind(kind)

    # Backends import their drivers lazily so unused ones need not be installed
    if kind is AdapterKind.SQLITE:
        from auditlog.audit.sqlite_store import SQLiteAuditAdapter
        return SQLiteAuditAdapter(**options)

    if kind is AdapterKind.POSTGRESQL:
        from auditlog.audit.postgres_store import PostgresAuditAdapter
        return PostgresAuditAdapter(**options)

    if kind is AdapterKind.MYSQL:
        from auditlog.audit.mysql_store import MySQLAuditAdapter
        return MySQLAuditAdapter(**options)

    if kind is AdapterKind.DYNAMODB:
        from auditlog.audit.dynamodb_store import DynamoDBAuditAdapter
        return DynamoDBAuditAdapter(**options)

    return FileAuditAdapter(**options)


def load_logger_config(path: Union[str, Path]) -> AuditLoggerConfig:
    """Load engine options from a YAML file.

    The file may hold the options at the top level or under an ``audit`` key.

    Raises:
        ConfigurationError: If the file is missing or its contents are invalid
    """
    path = Path(path)
    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read audit config {path}: {e}") from e

    if isinstance(raw, dict) and "audit" in raw:
        raw = raw["audit"]
    return _validate_config(raw, source=str(path))


def _validate_config(raw: Any, source: str) -> AuditLoggerConfig:
    try:
        return AuditLoggerConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid audit logger config from {source}",
            details={"errors": e.errors(include_url=False, include_context=False)},
        ) from e


def logger_config_from_settings(settings: Settings) -> AuditLoggerConfig:
    """Translate environment settings into engine options."""
    return _validate_config(
        {
            "enabled": settings.enabled,
            "level": settings.level,
            "batch_size": settings.batch_size,
            "flush_interval_ms": settings.flush_interval_ms,
            "max_retries": settings.max_retries,
            "retry_delay_ms": settings.retry_delay_ms,
            "sanitize": {
                "enabled": settings.sanitize_enabled,
                "fields": settings.sanitize_fields,
                "replacement": settings.sanitize_replacement,
            },
            "metadata": settings.default_metadata,
        },
        source="environment",
    )


def adapter_options_from_settings(settings: Settings) -> dict:
    """Constructor arguments for the adapter selected by ``settings``."""
    kind = settings.storage_type
    if kind == StorageType.SQLITE:
        return {"database": settings.sqlite_path, "table_name": settings.table_name}
    if kind == StorageType.POSTGRESQL:
        return {"conninfo": settings.database_url, "table_name": settings.table_name}
    if kind == StorageType.MYSQL:
        return {
            "host": settings.mysql_host,
            "port": settings.mysql_port,
            "user": settings.mysql_user,
            "password": settings.mysql_password,
            "database": settings.mysql_database,
            "table_name": settings.table_name,
        }
    if kind == StorageType.DYNAMODB:
        return {
            "table_name": settings.dynamodb_table,
            "region": settings.aws_region,
            "aws_profile": settings.aws_profile,
        }
    return {"file_path": settings.log_file}


def create_audit_logger(
    kind: Union[AdapterKind, str],
    config: Union[AuditLoggerConfig, Mapping[str, Any], None] = None,
    error_logger: Optional[logging.Logger] = None,
    **adapter_options: Any,
) -> AuditLogger:
    """Factory method to create a logger with a freshly built adapter.

    Args:
        kind: Storage backend
        config: Engine options
        error_logger: Sink for dropped events and flush failures
        **adapter_options: Constructor arguments for the adapter

    Returns:
        Configured AuditLogger instance
    """
    adapter = create_audit_adapter(kind, **adapter_options)
    return AuditLogger(adapter, config=config, error_logger=error_logger)


def create_audit_logger_from_env(
    settings: Optional[Settings] = None,
    config_file: Optional[Union[str, Path]] = None,
) -> AuditLogger:
    """Build adapter and engine from environment settings.

    Args:
        settings: Settings to use; read from the environment when omitted
        config_file: Optional YAML file whose options replace the
            environment-derived engine options

    Returns:
        Configured AuditLogger instance
    """
    settings = settings or get_settings()
    config = load_logger_config(config_file) if config_file else logger_config_from_settings(settings)
    adapter = create_audit_adapter(settings.storage_type, **adapter_options_from_settings(settings))
    logger.info(
        f"Audit logger created from environment: storage={settings.storage_type.value}, "
        f"batch_size={config.batch_size}, enabled={config.enabled}"
    )
    return AuditLogger(adapter, config=config)


__all__ = [
    "AdapterKind",
    "create_audit_adapter",
    "create_audit_logger",
    "create_audit_logger_from_env",
    "load_logger_config",
    "logger_config_from_settings",
    "adapter_options_from_settings",
]
