"""Audit schemas - type definitions for audit events, queries and configuration.
"""

import ipaddress
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from auditlog.common.constants import (
    AuditConstants,
    QueryConstants,
    SanitizeConstants,
)


class AuditAction(str, Enum):
    """Verbs an audit event can record."""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    LOGIN = "login"
    LOGOUT = "logout"
    LOGIN_FAILED = "login_failed"
    PASSWORD_CHANGE = "password_change"
    PASSWORD_RESET = "password_reset"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_UNLOCKED = "account_unlocked"
    PERMISSION_GRANTED = "permission_granted"
    PERMISSION_DENIED = "permission_denied"
    ACCESS_GRANTED = "access_granted"
    ACCESS_DENIED = "access_denied"
    SESSION_START = "session_start"
    SESSION_END = "session_end"
    DATA_EXPORT = "data_export"
    DATA_IMPORT = "data_import"
    BACKUP_CREATED = "backup_created"
    BACKUP_RESTORED = "backup_restored"
    SYSTEM_START = "system_start"
    SYSTEM_STOP = "system_stop"
    CONFIG_CHANGE = "config_change"
    CUSTOM = "custom"
    REGISTER = "register"
    EMAIL_VERIFY = "email_verify"
    ROLE_CHANGE = "role_change"
    PERMISSION_GRANT = "permission_grant"
    PERMISSION_REVOKE = "permission_revoke"
    API_CALL = "api_call"
    FILE_UPLOAD = "file_upload"
    FILE_DOWNLOAD = "file_download"
    EXPORT = "export"
    IMPORT = "import"
    BACKUP = "backup"
    RESTORE = "restore"
    MAINTENANCE = "maintenance"
    OTHER = "other"


class AuditLevel(str, Enum):
    """Severity of an audit event.

    The low..critical scale is used for business events; the
    debug..error scale is used for request-level auditing.
    """
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ActorType(str, Enum):
    """Kinds of principal that can perform an action."""
    USER = "user"
    SYSTEM = "system"
    SERVICE = "service"
    ADMIN = "admin"
    ANONYMOUS = "anonymous"
    API = "api"


class SortField(str, Enum):
    """Columns a query may be ordered by."""
    ID = "id"
    TIMESTAMP = "timestamp"
    ACTION = "action"
    RESOURCE = "resource"
    LEVEL = "level"
    ACTOR_ID = "actor_id"
    SUCCESS = "success"


class SortOrder(str, Enum):
    """Query sort direction."""
    ASC = "ASC"
    DESC = "DESC"


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to timezone-aware UTC; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


_CAMEL = {"alias_generator": to_camel, "populate_by_name": True}


class TraceContext(BaseModel):
    """Distributed tracing identifiers."""
    trace_id: Optional[str] = Field(default=None, description="Trace identifier")
    span_id: Optional[str] = Field(default=None, description="Span identifier")
    parent_span_id: Optional[str] = Field(default=None, description="Parent span identifier")

    model_config = {**_CAMEL, "extra": "forbid", "frozen": True}


class AuditContext(BaseModel):
    """Request-shaped metadata attached to an event."""
    request_id: Optional[str] = Field(default=None, description="Request identifier")
    session_id: Optional[str] = Field(default=None, description="Session identifier")
    ip_address: Optional[str] = Field(default=None, description="Client IP address")
    user_agent: Optional[str] = Field(default=None, description="Client user agent")
    location: Optional[str] = Field(default=None, description="Geographic location")
    endpoint: Optional[str] = Field(default=None, description="Request path")
    method: Optional[str] = Field(default=None, description="HTTP method")
    status_code: Optional[int] = Field(default=None, ge=100, le=599, description="HTTP status code")
    duration_ms: Optional[float] = Field(default=None, ge=0, description="Request duration in milliseconds")
    device_id: Optional[str] = Field(default=None, description="Client device identifier")
    referrer: Optional[str] = Field(default=None, description="HTTP referrer")
    trace: Optional[TraceContext] = Field(default=None, description="Tracing identifiers")
    custom: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Caller-defined payload, sanitized before storage",
    )

    model_config = {**_CAMEL, "extra": "forbid", "frozen": True}

    @field_validator("ip_address")
    @classmethod
    def _valid_ip(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        ipaddress.ip_address(v)
        return v

    @field_validator("method")
    @classmethod
    def _upper_method(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v


class AuditErrorInfo(BaseModel):
    """Error details for a failed action."""
    code: Optional[str] = Field(default=None, description="Machine-readable error code")
    message: str = Field(..., min_length=1, description="Error message")
    stack: Optional[str] = Field(default=None, description="Stack trace")

    model_config = {**_CAMEL, "extra": "forbid", "frozen": True}


class AuditEventInput(BaseModel):
    """Partial event supplied by a call site.

    ``id`` and ``timestamp`` are owned by the engine; supplying either is a
    schema violation.
    """
    action: AuditAction = Field(..., description="Verb being audited")
    resource: str = Field(..., min_length=1, description="Logical object class")
    resource_id: Optional[str] = Field(default=None, description="Object instance identifier")
    actor_id: Optional[str] = Field(default=None, description="Who performed the action")
    actor_type: Optional[ActorType] = Field(default=None, description="Kind of actor")
    target_id: Optional[str] = Field(default=None, description="Secondary object identifier")
    target_type: Optional[str] = Field(default=None, description="Secondary object class")
    level: Optional[AuditLevel] = Field(default=None, description="Severity; derived when omitted")
    success: bool = Field(default=True, description="Outcome of the action")
    description: Optional[str] = Field(default=None, min_length=1, description="Human-readable summary")
    old_values: Optional[Dict[str, Any]] = Field(default=None, description="State before the action")
    new_values: Optional[Dict[str, Any]] = Field(default=None, description="State after the action")
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="Free-form augmentation")
    context: Optional[AuditContext] = Field(default=None, description="Request context")
    error: Optional[AuditErrorInfo] = Field(default=None, description="Failure details")
    correlation_id: Optional[str] = Field(default=None, description="Links related events")

    model_config = {
        **_CAMEL,
        "extra": "forbid",
        "json_schema_extra": {
            "example": {
                "action": "delete",
                "resource": "note",
                "resourceId": "note_42",
                "actorId": "user_7",
                "actorType": "user",
                "success": True,
            }
        },
    }


class AuditEvent(BaseModel):
    """A fully resolved audit event.

    Immutable. Created by the engine at admission time and never modified
    after it is handed to an adapter.
    """
    id: str = Field(..., description="Globally unique event identifier")
    timestamp: datetime = Field(..., description="Admission time (UTC wall clock)")
    action: AuditAction = Field(..., description="Verb being audited")
    resource: str = Field(..., min_length=1, description="Logical object class")
    resource_id: Optional[str] = Field(default=None, description="Object instance identifier")
    actor_id: Optional[str] = Field(default=None, description="Who performed the action")
    actor_type: Optional[ActorType] = Field(default=None, description="Kind of actor")
    target_id: Optional[str] = Field(default=None, description="Secondary object identifier")
    target_type: Optional[str] = Field(default=None, description="Secondary object class")
    level: AuditLevel = Field(..., description="Resolved severity")
    success: bool = Field(..., description="Outcome of the action")
    description: str = Field(..., min_length=1, description="Human-readable summary")
    old_values: Optional[Dict[str, Any]] = Field(default=None, description="State before the action")
    new_values: Optional[Dict[str, Any]] = Field(default=None, description="State after the action")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Free-form augmentation")
    context: Optional[AuditContext] = Field(default=None, description="Request context")
    error: Optional[AuditErrorInfo] = Field(default=None, description="Failure details")
    correlation_id: Optional[str] = Field(default=None, description="Links related events")

    model_config = {**_CAMEL, "extra": "ignore", "frozen": True}

    @field_validator("timestamp")
    @classmethod
    def _utc_timestamp(cls, v: datetime) -> datetime:
        return as_utc(v)

    def to_record(self) -> Dict[str, Any]:
        """JSON-compatible dict with unset optional fields dropped."""
        return self.model_dump(mode="json", exclude_none=True)


class EventFilter(BaseModel):
    """Query filter shared by query, count and purge-adjacent reads.

    Date bounds are half-open: ``start_date <= timestamp < end_date``.
    """
    actor_id: Optional[str] = None
    actor_type: Optional[ActorType] = None
    resource: Optional[str] = None
    resource_id: Optional[str] = None
    action: Optional[AuditAction] = None
    level: Optional[AuditLevel] = None
    correlation_id: Optional[str] = None
    success: Optional[bool] = None
    actions: Optional[List[AuditAction]] = None
    resources: Optional[List[str]] = None
    levels: Optional[List[AuditLevel]] = None
    actor_ids: Optional[List[str]] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    search: Optional[str] = Field(default=None, description="Free text matched against description")
    limit: int = Field(default=QueryConstants.DEFAULT_LIMIT, ge=1, le=QueryConstants.MAX_LIMIT)
    offset: int = Field(default=0, ge=0)
    sort_by: SortField = SortField.TIMESTAMP
    sort_order: SortOrder = SortOrder.DESC

    model_config = {**_CAMEL, "extra": "forbid"}

    @field_validator("start_date", "end_date")
    @classmethod
    def _utc_bounds(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    @field_validator("search")
    @classmethod
    def _blank_search(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @field_validator("sort_order", mode="before")
    @classmethod
    def _upper_order(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @field_validator("sort_by", mode="before")
    @classmethod
    def _snake_sort(cls, v: Any) -> Any:
        if v == "actorId":
            return "actor_id"
        return v

    @model_validator(mode="after")
    def _ordered_range(self) -> "EventFilter":
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class PaginatedResult(BaseModel):
    """One page of query results."""
    items: List[AuditEvent] = Field(default_factory=list)
    total: int = Field(..., ge=0, description="Matches across all pages")
    offset: int = Field(..., ge=0)
    limit: int = Field(..., ge=1)
    has_more: bool = Field(..., description="Whether a later page exists")

    model_config = _CAMEL

    @classmethod
    def build(cls, items: List[AuditEvent], total: int, event_filter: EventFilter) -> "PaginatedResult":
        return cls(
            items=items,
            total=total,
            offset=event_filter.offset,
            limit=event_filter.limit,
            has_more=event_filter.offset + len(items) < total,
        )


class TimeRange(BaseModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class AuditStats(BaseModel):
    """Aggregate statistics over a date range."""
    total_events: int = Field(default=0, ge=0)
    events_by_action: Dict[str, int] = Field(default_factory=dict)
    events_by_resource: Dict[str, int] = Field(default_factory=dict)
    events_by_level: Dict[str, int] = Field(default_factory=dict)
    success_rate: float = Field(default=0.0, ge=0, le=100, description="Percentage of successful events")
    time_range: TimeRange = Field(default_factory=TimeRange)

    model_config = _CAMEL


# ===== ENGINE CONFIGURATION =====

class SanitizeConfig(BaseModel):
    enabled: bool = True
    fields: List[str] = Field(default_factory=lambda: list(SanitizeConstants.DEFAULT_FIELDS))
    replacement: str = SanitizeConstants.DEFAULT_REPLACEMENT

    model_config = {**_CAMEL, "extra": "forbid"}


class FilterRule(BaseModel):
    """Match criteria used by include/exclude filters.

    Criteria are OR-ed across categories: an event matches when its
    action, its resource or its actor appears in the corresponding list.
    An include rule of ``resources=["note"]`` plus ``actors=["admin"]``
    therefore admits every note event and every admin event, not only
    admin events on notes. Use two loggers, or an exclude rule, when
    every category must match.
    """
    actions: List[AuditAction] = Field(default_factory=list)
    resources: List[str] = Field(default_factory=list)
    actors: List[str] = Field(default_factory=list)

    model_config = {**_CAMEL, "extra": "forbid"}

    @property
    def is_empty(self) -> bool:
        return not (self.actions or self.resources or self.actors)

    def matches(self, event: AuditEvent) -> bool:
        """True if the event hits any criterion of this rule."""
        if event.action in self.actions:
            return True
        if event.resource in self.resources:
            return True
        return event.actor_id is not None and event.actor_id in self.actors


class FilterConfig(BaseModel):
    include: FilterRule = Field(default_factory=FilterRule)
    exclude: FilterRule = Field(default_factory=FilterRule)

    model_config = {**_CAMEL, "extra": "forbid"}


class AuditLoggerConfig(BaseModel):
    """Options recognized by the audit logger engine."""
    enabled: bool = True
    level: AuditLevel = Field(
        default=AuditLevel(AuditConstants.DEFAULT_MIN_LEVEL),
        description="Minimum severity admitted",
    )
    batch_size: int = Field(
        default=AuditConstants.DEFAULT_BATCH_SIZE, ge=1, le=AuditConstants.MAX_BATCH_SIZE
    )
    flush_interval_ms: int = Field(
        default=AuditConstants.DEFAULT_FLUSH_INTERVAL_MS,
        ge=0,
        description="Background flush period; 0 disables periodic flushing",
    )
    max_retries: int = Field(
        default=AuditConstants.DEFAULT_MAX_RETRIES, ge=0, le=AuditConstants.MAX_RETRIES_CEILING
    )
    retry_delay_ms: int = Field(
        default=AuditConstants.DEFAULT_RETRY_DELAY_MS,
        ge=0,
        description="Base delay for exponential backoff",
    )
    sanitize: SanitizeConfig = Field(default_factory=SanitizeConfig)
    filters: FilterConfig = Field(default_factory=FilterConfig)
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Defaults merged into every event")

    model_config = {**_CAMEL, "extra": "forbid"}
