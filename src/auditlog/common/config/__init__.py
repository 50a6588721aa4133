"""Configuration module - environment-driven settings."""

from auditlog.common.config.settings import (
    Settings,
    Environment,
    StorageType,
    get_settings,
    reset_settings,
)

__all__ = [
    "Settings",
    "Environment",
    "StorageType",
    "get_settings",
    "reset_settings",
]
