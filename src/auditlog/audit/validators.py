"""Event validation and normalization helpers.

Everything the engine needs to turn a caller's partial event into a fully
resolved ``AuditEvent``: identifiers, timestamps, severity derivation and
schema validation.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional, Union
from uuid import uuid4

from pydantic import ValidationError

from auditlog.audit.schemas import AuditAction, AuditEventInput, AuditLevel
from auditlog.common.constants import AuditConstants
from auditlog.common.exceptions import EventValidationError


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MICROSECOND = timedelta(microseconds=1)

LEVEL_PRIORITY: Dict[AuditLevel, int] = {
    AuditLevel.DEBUG: 0,
    AuditLevel.INFO: 1,
    AuditLevel.WARN: 2,
    AuditLevel.ERROR: 3,
    AuditLevel.LOW: 1,
    AuditLevel.MEDIUM: 2,
    AuditLevel.HIGH: 3,
    AuditLevel.CRITICAL: 4,
}

# Checked in order; the first matching rule decides the level.
CRITICAL_ON_FAILURE = frozenset({
    AuditAction.LOGIN,
    AuditAction.LOGIN_FAILED,
    AuditAction.PERMISSION_DENIED,
    AuditAction.ACCESS_DENIED,
})
HIGH_ACTIONS = frozenset({
    AuditAction.DELETE,
    AuditAction.ACCOUNT_LOCKED,
    AuditAction.PASSWORD_CHANGE,
    AuditAction.PERMISSION_GRANTED,
})
MEDIUM_ACTIONS = frozenset({
    AuditAction.CREATE,
    AuditAction.UPDATE,
    AuditAction.CONFIG_CHANGE,
    AuditAction.SYSTEM_START,
    AuditAction.SYSTEM_STOP,
})


def generate_audit_id() -> str:
    """Generate a collision-resistant event identifier."""
    return f"{AuditConstants.ID_PREFIX}{uuid4().hex}"


def create_timestamp() -> datetime:
    """Current UTC wall-clock time."""
    return datetime.now(timezone.utc)


def to_epoch_micros(value: datetime) -> int:
    """Exact integer microseconds since the Unix epoch for an aware datetime."""
    return (value - EPOCH) // _MICROSECOND


def from_epoch_micros(value: int) -> datetime:
    return EPOCH + timedelta(microseconds=int(value))


def calculate_audit_level(action: AuditAction, resource: str, success: bool = True) -> AuditLevel:
    """Derive a severity from the action and its outcome.

    ``resource`` is accepted so callers can pass the full triple; no
    current rule depends on it.
    """
    action = AuditAction(action)
    if not success and action in CRITICAL_ON_FAILURE:
        return AuditLevel.CRITICAL
    if action in HIGH_ACTIONS:
        return AuditLevel.HIGH
    if action in MEDIUM_ACTIONS:
        return AuditLevel.MEDIUM
    return AuditLevel.LOW


def level_priority(level: Union[AuditLevel, str]) -> int:
    return LEVEL_PRIORITY[AuditLevel(level)]


def default_description(action: AuditAction, resource: str, resource_id: Optional[str] = None) -> str:
    """Summary used when the caller does not supply a description."""
    text = f"{AuditAction(action).value} {resource}"
    if resource_id:
        text = f"{text} {resource_id}"
    return text


def validate_event_input(data: Union[AuditEventInput, Mapping[str, Any]]) -> AuditEventInput:
    """Validate a caller-supplied partial event.

    Raises:
        EventValidationError: If the payload does not match the event schema
    """
    if isinstance(data, AuditEventInput):
        return data
    if not isinstance(data, Mapping):
        raise EventValidationError(
            f"Audit event must be a mapping, got {type(data).__name__}"
        )
    try:
        return AuditEventInput.model_validate(dict(data))
    except ValidationError as e:
        raise EventValidationError(
            "Invalid audit event",
            details={"errors": e.errors(include_url=False, include_context=False)},
        ) from e
