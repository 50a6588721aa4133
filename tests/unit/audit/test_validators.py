"""Tests for audit schemas and validation helpers."""

import pytest
from datetime import datetime, timedelta, timezone

from pydantic import ValidationError

from auditlog.audit.schemas import (
    AuditAction,
    AuditContext,
    AuditEvent,
    AuditLevel,
    AuditLoggerConfig,
    EventFilter,
    FilterRule,
    PaginatedResult,
    SortField,
    SortOrder,
    as_utc,
)
from auditlog.audit.validators import (
    calculate_audit_level,
    default_description,
    from_epoch_micros,
    generate_audit_id,
    level_priority,
    to_epoch_micros,
    validate_event_input,
)
from auditlog.common.exceptions import EventValidationError


def make_event(**overrides) -> AuditEvent:
    data = {
        "id": "aud_1",
        "timestamp": datetime(2026, 1, 1, tzinfo=timezone.utc),
        "action": "create",
        "resource": "note",
        "level": "medium",
        "success": True,
        "description": "Created note",
    }
    data.update(overrides)
    return AuditEvent(**data)


class TestCalculateAuditLevel:
    """Test severity derivation."""

    @pytest.mark.parametrize("action", ["login", "login_failed", "permission_denied", "access_denied"])
    def test_failed_sensitive_actions_are_critical(self, action):
        """Test that failed authentication-type actions are critical."""
        assert calculate_audit_level(action, "session", success=False) == AuditLevel.CRITICAL

    @pytest.mark.parametrize("action", ["delete", "account_locked", "password_change", "permission_granted"])
    def test_high_actions(self, action):
        """Test destructive and privilege actions are high."""
        assert calculate_audit_level(action, "user") == AuditLevel.HIGH

    @pytest.mark.parametrize("action", ["create", "update", "config_change", "system_start", "system_stop"])
    def test_medium_actions(self, action):
        """Test mutations are medium."""
        assert calculate_audit_level(action, "note") == AuditLevel.MEDIUM

    def test_everything_else_is_low(self):
        """Test the fallback level."""
        assert calculate_audit_level(AuditAction.READ, "note") == AuditLevel.LOW
        assert calculate_audit_level(AuditAction.LOGIN, "session") == AuditLevel.LOW

    def test_failed_delete_is_high(self):
        """Test that failure only escalates the listed actions."""
        assert calculate_audit_level(AuditAction.DELETE, "note", success=False) == AuditLevel.HIGH

    def test_unknown_action_rejected(self):
        """Test that actions outside the closed set raise."""
        with pytest.raises(ValueError):
            calculate_audit_level("explode", "note")


class TestHelpers:
    """Test identifier, time and description helpers."""

    def test_generate_audit_id_unique(self):
        """Test ids are prefixed and unique."""
        ids = {generate_audit_id() for _ in range(1000)}
        assert len(ids) == 1000
        assert all(i.startswith("aud_") for i in ids)

    def test_epoch_micros_exact(self):
        """Test microsecond conversion keeps full precision."""
        ts = datetime(2026, 3, 4, 5, 6, 7, 891011, tzinfo=timezone.utc)
        micros = to_epoch_micros(ts)
        assert isinstance(micros, int)
        assert from_epoch_micros(micros) == ts

    def test_level_priority_ordering(self):
        """Test both level scales share one ordering."""
        assert level_priority("debug") < level_priority("low") == level_priority("info")
        assert level_priority("medium") == level_priority("warn") < level_priority("high")
        assert level_priority("high") < level_priority("critical")

    def test_default_description(self):
        """Test generated description."""
        assert default_description(AuditAction.DELETE, "note", "5") == "delete note 5"
        assert default_description(AuditAction.READ, "note") == "read note"

    def test_as_utc(self):
        """Test naive values are taken as UTC and aware ones converted."""
        naive = datetime(2026, 1, 1, 12, 0)
        assert as_utc(naive) == datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        plus_two = datetime(2026, 1, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
        assert as_utc(plus_two).hour == 12
        assert as_utc(None) is None


class TestValidateEventInput:
    """Test caller input validation."""

    def test_valid_mapping(self):
        """Test a minimal valid event."""
        data = validate_event_input({"action": "create", "resource": "note"})
        assert data.action == AuditAction.CREATE
        assert data.success is True
        assert data.level is None

    def test_camel_case_accepted(self):
        """Test camelCase field names are accepted."""
        data = validate_event_input({"action": "read", "resource": "note", "resourceId": "n1"})
        assert data.resource_id == "n1"

    def test_missing_resource(self):
        """Test required fields are enforced."""
        with pytest.raises(EventValidationError) as exc_info:
            validate_event_input({"action": "create"})
        assert exc_info.value.details["errors"]

    def test_unknown_action(self):
        """Test actions outside the enum are rejected."""
        with pytest.raises(EventValidationError):
            validate_event_input({"action": "explode", "resource": "note"})

    def test_engine_owned_fields_rejected(self):
        """Test callers cannot supply id or timestamp."""
        with pytest.raises(EventValidationError):
            validate_event_input({"action": "create", "resource": "note", "id": "x"})

    def test_non_mapping_rejected(self):
        """Test non-mapping payloads are rejected."""
        with pytest.raises(EventValidationError, match="mapping"):
            validate_event_input(["create", "note"])

    def test_invalid_ip_rejected(self):
        """Test that context IP addresses are validated."""
        with pytest.raises(EventValidationError):
            validate_event_input({
                "action": "create",
                "resource": "note",
                "context": {"ip_address": "not-an-ip"},
            })


class TestSchemas:
    """Test schema behaviors."""

    def test_event_is_frozen(self):
        """Test events cannot be mutated after construction."""
        event = make_event()
        with pytest.raises(ValidationError):
            event.description = "changed"

    def test_event_timestamp_normalized(self):
        """Test timestamps are stored as UTC."""
        event = make_event(timestamp=datetime(2026, 1, 1, 3, 0, tzinfo=timezone(timedelta(hours=3))))
        assert event.timestamp == datetime(2026, 1, 1, 0, 0, tzinfo=timezone.utc)
        assert event.timestamp.utcoffset() == timedelta(0)

    def test_to_record_drops_none(self):
        """Test record serialization omits unset optionals."""
        record = make_event().to_record()
        assert "resource_id" not in record
        assert record["action"] == "create"
        assert record["metadata"] == {}

    def test_context_method_uppercased(self):
        """Test HTTP method normalization."""
        assert AuditContext(method="post").method == "POST"

    def test_filter_defaults(self):
        """Test EventFilter defaults."""
        f = EventFilter()
        assert f.limit == 100
        assert f.offset == 0
        assert f.sort_by == SortField.TIMESTAMP
        assert f.sort_order == SortOrder.DESC

    def test_filter_limit_bounds(self):
        """Test limit is capped."""
        with pytest.raises(ValidationError):
            EventFilter(limit=0)
        with pytest.raises(ValidationError):
            EventFilter(limit=1001)

    def test_filter_rejects_inverted_range(self):
        """Test start after end is invalid."""
        with pytest.raises(ValidationError):
            EventFilter(
                start_date=datetime(2026, 2, 1, tzinfo=timezone.utc),
                end_date=datetime(2026, 1, 1, tzinfo=timezone.utc),
            )

    def test_filter_normalizes_inputs(self):
        """Test sort and search normalization."""
        f = EventFilter(sort_by="actorId", sort_order="asc", search="   ")
        assert f.sort_by == SortField.ACTOR_ID
        assert f.sort_order == SortOrder.ASC
        assert f.search is None

    def test_filter_unknown_field(self):
        """Test unknown criteria are rejected."""
        with pytest.raises(ValidationError):
            EventFilter(colour="red")

    def test_paginated_result_has_more(self):
        """Test has_more computation."""
        f = EventFilter(limit=2, offset=2)
        result = PaginatedResult.build([make_event(), make_event(id="aud_2")], 5, f)
        assert result.has_more is True
        result = PaginatedResult.build([make_event()], 3, f)
        assert result.has_more is False

    def test_filter_rule_matches_any(self):
        """Test that a rule matches when any criterion hits."""
        rule = FilterRule(actions=["delete"], resources=["note"])
        assert rule.matches(make_event(action="create", resource="note"))
        assert rule.matches(make_event(action="delete", resource="user"))
        assert not rule.matches(make_event(action="create", resource="user"))
        assert FilterRule().is_empty

    def test_logger_config_bounds(self):
        """Test engine option validation."""
        assert AuditLoggerConfig().level == AuditLevel.LOW
        with pytest.raises(ValidationError):
            AuditLoggerConfig(batch_size=0)
        with pytest.raises(ValidationError):
            AuditLoggerConfig(max_retries=11)
        with pytest.raises(ValidationError):
            AuditLoggerConfig(flush_interval_ms=-1)
