"""Configuration management - Centralized settings for auditlog.

Provides environment-aware configuration with sensible defaults.
All settings are loaded from environment variables with fallbacks.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from auditlog.common.constants import AuditConstants, SanitizeConstants, StorageConstants
from auditlog.common.exceptions import ConfigurationError, UnknownAdapterError


class Environment(str, Enum):
    """Application environment."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class StorageType(str, Enum):
    """Audit storage backend types."""
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    DYNAMODB = "dynamodb"
    FILE = "file"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(
            f"{name} must be an integer, got {raw!r}",
            details={"variable": name},
        ) from e


def _env_storage_type(name: str, default: str) -> "StorageType":
    raw = os.getenv(name, default).strip().lower() or default
    try:
        return StorageType(raw)
    except ValueError:
        raise UnknownAdapterError(raw, supported=[s.value for s in StorageType]) from None


def _env_list(name: str, default) -> List[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return list(default)
    return [part.strip() for part in raw.split(",") if part.strip()]


@dataclass
class Settings:
    """Central settings object for auditlog.

    Every value can be overridden through environment variables,
    most of them prefixed with AUDIT_.

    Example:
        AUDIT_STORAGE_TYPE=postgresql
        AUDIT_DATABASE_URL=postgresql://audit:secret@db/audit
        AUDIT_BATCH_SIZE=50
    """

    # Engine settings
    enabled: bool = field(
        default_factory=lambda: _env_bool("AUDIT_ENABLED", "true")
    )
    level: str = field(
        default_factory=lambda: os.getenv("AUDIT_LEVEL", AuditConstants.DEFAULT_MIN_LEVEL)
    )
    batch_size: int = field(
        default_factory=lambda: _env_int("AUDIT_BATCH_SIZE", AuditConstants.DEFAULT_BATCH_SIZE)
    )
    flush_interval_ms: int = field(
        default_factory=lambda: _env_int("AUDIT_FLUSH_INTERVAL", AuditConstants.DEFAULT_FLUSH_INTERVAL_MS)
    )
    max_retries: int = field(
        default_factory=lambda: _env_int("AUDIT_MAX_RETRIES", AuditConstants.DEFAULT_MAX_RETRIES)
    )
    retry_delay_ms: int = field(
        default_factory=lambda: _env_int("AUDIT_RETRY_DELAY", AuditConstants.DEFAULT_RETRY_DELAY_MS)
    )

    # Sanitization
    sanitize_enabled: bool = field(
        default_factory=lambda: _env_bool("AUDIT_SANITIZE_ENABLED", "true")
    )
    sanitize_fields: List[str] = field(
        default_factory=lambda: _env_list("AUDIT_SANITIZE_FIELDS", SanitizeConstants.DEFAULT_FIELDS)
    )
    sanitize_replacement: str = field(
        default_factory=lambda: os.getenv("AUDIT_SANITIZE_REPLACEMENT", SanitizeConstants.DEFAULT_REPLACEMENT)
    )

    # Default metadata stamped on every event
    environment: Environment = field(
        default_factory=lambda: Environment(os.getenv("AUDIT_ENVIRONMENT", "development"))
    )
    service_name: Optional[str] = field(
        default_factory=lambda: os.getenv("SERVICE_NAME")
    )
    service_version: Optional[str] = field(
        default_factory=lambda: os.getenv("SERVICE_VERSION")
    )

    # Storage selection
    storage_type: StorageType = field(
        default_factory=lambda: _env_storage_type("AUDIT_STORAGE_TYPE", "sqlite")
    )
    table_name: str = field(
        default_factory=lambda: os.getenv("AUDIT_TABLE_NAME", StorageConstants.DEFAULT_TABLE_NAME)
    )
    sqlite_path: str = field(
        default_factory=lambda: os.getenv("AUDIT_SQLITE_PATH", "./data/audit.db")
    )
    database_url: Optional[str] = field(
        default_factory=lambda: os.getenv("AUDIT_DATABASE_URL")
    )
    mysql_host: str = field(
        default_factory=lambda: os.getenv("AUDIT_MYSQL_HOST", "localhost")
    )
    mysql_port: int = field(
        default_factory=lambda: _env_int("AUDIT_MYSQL_PORT", StorageConstants.MYSQL_PORT)
    )
    mysql_user: Optional[str] = field(
        default_factory=lambda: os.getenv("AUDIT_MYSQL_USER")
    )
    mysql_password: Optional[str] = field(
        default_factory=lambda: os.getenv("AUDIT_MYSQL_PASSWORD")
    )
    mysql_database: Optional[str] = field(
        default_factory=lambda: os.getenv("AUDIT_MYSQL_DATABASE")
    )
    dynamodb_table: Optional[str] = field(
        default_factory=lambda: os.getenv("AUDIT_DYNAMODB_TABLE")
    )
    aws_region: str = field(
        default_factory=lambda: os.getenv("AWS_REGION", StorageConstants.DYNAMODB_REGION)
    )
    aws_profile: Optional[str] = field(
        default_factory=lambda: os.getenv("AWS_PROFILE")
    )
    log_file: str = field(
        default_factory=lambda: os.getenv("AUDIT_LOG_FILE", "./logs/audit/audit.jsonl")
    )

    def __post_init__(self):
        """Validate settings after initialization."""
        if self.storage_type == StorageType.POSTGRESQL and not self.database_url:
            raise ConfigurationError(
                "AUDIT_DATABASE_URL must be set when using PostgreSQL audit storage"
            )
        if self.storage_type == StorageType.MYSQL and not self.mysql_database:
            raise ConfigurationError(
                "AUDIT_MYSQL_DATABASE must be set when using MySQL audit storage"
            )
        if self.storage_type == StorageType.DYNAMODB and not self.dynamodb_table:
            raise ConfigurationError(
                "AUDIT_DYNAMODB_TABLE must be set when using DynamoDB audit storage"
            )

    @property
    def default_metadata(self) -> dict:
        """Metadata merged under every event's caller-supplied metadata."""
        metadata = {"environment": self.environment.value}
        if self.service_name:
            metadata["service"] = self.service_name
        if self.service_version:
            metadata["version"] = self.service_version
        return metadata


# Singleton instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance.

    Returns:
        Settings: The global settings singleton.
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset the global settings (for testing)."""
    global _settings
    _settings = None
