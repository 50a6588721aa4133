"""Centralized constants for auditlog configuration."""


# ===== ENGINE =====
class AuditConstants:
    DEFAULT_BATCH_SIZE = 100
    MAX_BATCH_SIZE = 1000
    DEFAULT_FLUSH_INTERVAL_MS = 5000
    DEFAULT_MAX_RETRIES = 3
    MAX_RETRIES_CEILING = 10
    DEFAULT_RETRY_DELAY_MS = 1000
    DEFAULT_MIN_LEVEL = "low"
    SIGNAL_DRAIN_TIMEOUT_SECONDS = 30.0
    ID_PREFIX = "aud_"


# ===== SANITIZATION =====
class SanitizeConstants:
    DEFAULT_FIELDS = ("password", "token", "secret", "key", "authorization")
    DEFAULT_REPLACEMENT = "[REDACTED]"


# ===== QUERY LIMITS =====
class QueryConstants:
    DEFAULT_LIMIT = 100
    MAX_LIMIT = 1000
    DEFAULT_SORT_FIELD = "timestamp"
    DEFAULT_SORT_ORDER = "DESC"


# ===== STORAGE =====
class StorageConstants:
    DEFAULT_TABLE_NAME = "audit_events"
    SQLITE_CACHE_SIZE_KIB = 64000
    FILE_MAX_BYTES = 100 * 1024 * 1024
    FILE_MAX_FILES = 10
    FILE_NAME = "audit.jsonl"
    HASH_ALGORITHM = "sha256"
    POSTGRES_POOL_MIN = 1
    POSTGRES_POOL_MAX = 10
    MYSQL_PORT = 3306
    DYNAMODB_REGION = "us-east-1"


# ===== HTTP =====
class HTTPConstants:
    AUDITED_METHODS = ("POST", "PUT", "PATCH", "DELETE")
    EXCLUDED_PATHS = ("/health", "/metrics", "/favicon.ico")
    IP_HEADERS = (
        "x-forwarded-for",
        "x-real-ip",
        "x-client-ip",
        "cf-connecting-ip",
        "x-cluster-client-ip",
        "forwarded-for",
        "forwarded",
    )
