"""Unit tests for the AuditLogger engine.

Tests admission, batching, retries, requeueing, filtering, sanitization,
the scoped wrappers and shutdown behavior against an in-memory adapter.
"""

import logging
import threading
import time
from datetime import datetime, timezone

import pytest

from auditlog.audit.logger import AuditLogger, EngineState
from auditlog.audit.matching import compute_stats, matches_filter, paginate
from auditlog.audit.schemas import AuditAction, AuditLevel, ActorType, EventFilter
from auditlog.audit.store import AuditAdapter
from auditlog.common.exceptions import AdapterError, InvalidFilterError

SINK_NAME = "auditlog.tests.sink"


class RecordingAdapter(AuditAdapter):
    """In-memory adapter that records calls and can fail on demand."""

    name = "memory"

    def __init__(self, fail_times=0, write_delay=0.0):
        self.fail_times = fail_times
        self.write_delay = write_delay
        self.batches = []
        self.calls = []
        self.write_attempts = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.purged_before = None
        self.stats_range = None
        self._guard = threading.Lock()

    @property
    def events(self):
        return [e for batch in self.batches for e in batch]

    def write_batch(self, events):
        with self._guard:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.write_delay:
                time.sleep(self.write_delay)
            self.write_attempts += 1
            self.calls.append("write")
            if self.write_attempts <= self.fail_times:
                raise AdapterError("storage unavailable", adapter=self.name, operation="write_batch")
            self.batches.append(list(events))
        finally:
            with self._guard:
                self.in_flight -= 1

    def query(self, event_filter):
        return paginate(self.events, event_filter)

    def count(self, event_filter):
        return sum(1 for e in self.events if matches_filter(e, event_filter))

    def get_stats(self, start_date=None, end_date=None):
        self.stats_range = (start_date, end_date)
        return compute_stats(self.events, start_date, end_date)

    def purge(self, older_than):
        self.purged_before = older_than
        return 0

    def health_check(self):
        return "close" not in self.calls

    def close(self):
        self.calls.append("close")


def make_logger(adapter, **config):
    options = {"flush_interval_ms": 0, "retry_delay_ms": 0}
    options.update(config)
    return AuditLogger(
        adapter,
        config=options,
        error_logger=logging.getLogger(SINK_NAME),
        sleep=lambda seconds: None,
    )


def sink_records(caplog, level):
    return [r for r in caplog.records if r.name == SINK_NAME and r.levelno == level]


def wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            return False
        time.sleep(0.01)
    return True


@pytest.fixture
def adapter():
    return RecordingAdapter()


class TestAdmission:
    """Test event resolution and admission."""

    def test_resolves_defaults(self, adapter):
        """Test id, timestamp, level and description are filled in."""
        audit = make_logger(adapter, batch_size=1)
        audit.log({"action": "delete", "resource": "note", "resource_id": "n1"})

        event = adapter.events[0]
        assert event.id.startswith("aud_")
        assert event.timestamp.tzinfo is not None
        assert event.level == AuditLevel.HIGH
        assert event.description == "delete note n1"
        assert event.success is True

    def test_keyword_fields(self, adapter):
        """Test events can be submitted as keyword arguments."""
        audit = make_logger(adapter, batch_size=1)
        audit.log(action="read", resource="note", actor_id="u1")
        assert adapter.events[0].actor_id == "u1"
        assert adapter.events[0].level == AuditLevel.LOW

    def test_explicit_level_wins(self, adapter):
        """Test caller-supplied level is kept."""
        audit = make_logger(adapter, batch_size=1)
        audit.log({"action": "read", "resource": "note", "level": "critical"})
        assert adapter.events[0].level == AuditLevel.CRITICAL

    def test_invalid_event_dropped_with_warning(self, adapter, caplog):
        """Test invalid input is logged and never raised."""
        caplog.set_level(logging.WARNING, logger=SINK_NAME)
        audit = make_logger(adapter)

        audit.log({"action": "explode", "resource": "note"})
        audit.log({"resource": "note"})

        assert audit.pending_count == 0
        warnings = sink_records(caplog, logging.WARNING)
        assert len(warnings) == 2
        assert "Dropped invalid audit event" in warnings[0].getMessage()

    def test_metadata_merge_caller_wins(self, adapter):
        """Test configured metadata is merged under the event's own."""
        audit = make_logger(adapter, batch_size=1, metadata={"environment": "test", "service": "a"})
        audit.log({"action": "create", "resource": "note", "metadata": {"service": "b", "x": 1}})
        assert adapter.events[0].metadata == {"environment": "test", "service": "b", "x": 1}

    def test_sanitizes_values_and_custom_context(self, adapter):
        """Test snapshots and custom context are redacted before queueing."""
        audit = make_logger(adapter, batch_size=1)
        old = {"email": "a@example.com", "password": "hunter2"}
        audit.log({
            "action": "update",
            "resource": "user",
            "old_values": old,
            "new_values": {"profile": {"api_token": "t"}},
            "context": {"custom": {"secret": "s", "plan": "pro"}},
        })

        event = adapter.events[0]
        assert event.old_values == {"email": "a@example.com", "password": "[REDACTED]"}
        assert event.new_values == {"profile": {"api_token": "[REDACTED]"}}
        assert event.context.custom == {"secret": "[REDACTED]", "plan": "pro"}
        assert old["password"] == "hunter2"

    def test_sanitize_disabled(self, adapter):
        """Test sanitization can be switched off."""
        audit = make_logger(adapter, batch_size=1, sanitize={"enabled": False})
        audit.log({"action": "update", "resource": "user", "new_values": {"password": "p"}})
        assert adapter.events[0].new_values == {"password": "p"}

    def test_disabled_is_noop(self, adapter):
        """Test a disabled engine admits nothing."""
        audit = make_logger(adapter, enabled=False, batch_size=1)
        audit.log({"action": "create", "resource": "note"})
        audit.flush()
        assert audit.pending_count == 0
        assert adapter.write_attempts == 0

    def test_log_batch(self, adapter):
        """Test several events are admitted individually."""
        audit = make_logger(adapter, batch_size=10)
        audit.log_batch([
            {"action": "create", "resource": "note"},
            {"action": "bogus", "resource": "note"},
            {"action": "update", "resource": "note"},
        ])
        assert audit.pending_count == 2


class TestFiltering:
    """Test minimum level and include/exclude filters."""

    def test_exclude_read_admits_no_reads(self, adapter):
        """Test excluded actions never reach the queue."""
        audit = make_logger(adapter, filters={"exclude": {"actions": ["read"]}})
        for i in range(5):
            audit.log({"action": "read", "resource": "note", "resource_id": str(i)})
        assert audit.pending_count == 0
        audit.log({"action": "create", "resource": "note"})
        assert audit.pending_count == 1

    def test_include_any_match(self, adapter):
        """Test include rules admit events matching any criterion."""
        audit = make_logger(adapter, filters={"include": {"resources": ["note"], "actors": ["admin"]}})
        audit.log({"action": "create", "resource": "note"})
        audit.log({"action": "create", "resource": "user", "actor_id": "admin"})
        audit.log({"action": "create", "resource": "user", "actor_id": "bob"})
        assert audit.pending_count == 2

    def test_exclude_beats_include(self, adapter):
        """Test exclusion is applied before inclusion."""
        audit = make_logger(adapter, filters={
            "include": {"resources": ["note"]},
            "exclude": {"actions": ["delete"]},
        })
        audit.log({"action": "delete", "resource": "note"})
        assert audit.pending_count == 0

    def test_minimum_level(self, adapter):
        """Test events below the configured level are dropped."""
        audit = make_logger(adapter, level="high")
        audit.log({"action": "create", "resource": "note"})
        audit.log({"action": "delete", "resource": "note"})
        audit.log({"action": "login", "resource": "session", "success": False})
        assert audit.pending_count == 2


class TestFlushing:
    """Test batching, retry and requeue."""

    def test_batch_size_one_writes_each_event(self, adapter):
        """Test reaching the batch size triggers exactly one write."""
        audit = make_logger(adapter, batch_size=1)
        audit.log({"action": "create", "resource": "note"})
        assert adapter.write_attempts == 1
        assert len(adapter.batches[0]) == 1
        assert audit.pending_count == 0

    def test_below_batch_size_waits(self, adapter):
        """Test nothing is written until the threshold, then the flusher writes once."""
        audit = make_logger(adapter, batch_size=3)
        audit.log({"action": "create", "resource": "note"})
        audit.log({"action": "create", "resource": "note"})
        assert adapter.write_attempts == 0
        audit.log({"action": "create", "resource": "note"})
        assert wait_until(lambda: adapter.batches)
        assert adapter.write_attempts == 1
        assert len(adapter.batches[0]) == 3
        audit.shutdown()

    def test_log_does_not_block_while_storage_down(self, caplog):
        """Test threshold flushes run off the caller's thread during an outage."""
        caplog.set_level(logging.ERROR, logger=SINK_NAME)
        adapter = RecordingAdapter(fail_times=1000)
        audit = AuditLogger(
            adapter,
            config={"flush_interval_ms": 0, "batch_size": 2, "max_retries": 3, "retry_delay_ms": 100},
            error_logger=logging.getLogger(SINK_NAME),
        )
        audit.log({"action": "create", "resource": "note"})

        durations = []
        for i in range(3):
            started = time.monotonic()
            audit.log({"action": "create", "resource": "note", "resource_id": str(i)})
            durations.append(time.monotonic() - started)

        assert max(durations) < 0.2
        audit.shutdown()
        messages = [r.getMessage() for r in sink_records(caplog, logging.ERROR)]
        assert any("4 unpersisted events" in m for m in messages)

    def test_flush_empty_queue_is_noop(self, adapter):
        """Test flushing nothing makes no adapter call."""
        audit = make_logger(adapter)
        audit.flush()
        assert adapter.write_attempts == 0

    def test_retry_then_success(self, caplog):
        """Test transient failures are retried with warnings only."""
        caplog.set_level(logging.WARNING, logger=SINK_NAME)
        adapter = RecordingAdapter(fail_times=2)
        audit = make_logger(adapter, batch_size=1, max_retries=3)

        audit.log({"action": "create", "resource": "note"})

        assert adapter.write_attempts == 3
        assert len(adapter.events) == 1
        assert len(sink_records(caplog, logging.WARNING)) == 2
        assert sink_records(caplog, logging.ERROR) == []

    def test_exponential_backoff(self):
        """Test backoff delays double from the base delay."""
        adapter = RecordingAdapter(fail_times=3)
        sleeps = []
        audit = AuditLogger(
            adapter,
            config={"flush_interval_ms": 0, "retry_delay_ms": 100, "max_retries": 3, "batch_size": 1},
            sleep=sleeps.append,
        )
        audit.log({"action": "create", "resource": "note"})
        assert sleeps == pytest.approx([0.1, 0.2, 0.4])
        assert len(adapter.events) == 1

    def test_requeue_after_exhausted_retries(self, caplog):
        """Test a failed batch goes back ahead of newer events."""
        caplog.set_level(logging.WARNING, logger=SINK_NAME)
        adapter = RecordingAdapter(fail_times=2)
        audit = make_logger(adapter, batch_size=10, max_retries=1)

        audit.log({"action": "create", "resource": "note", "resource_id": "1"})
        audit.log({"action": "create", "resource": "note", "resource_id": "2"})
        audit.flush()

        assert adapter.write_attempts == 2
        assert audit.pending_count == 2
        errors = sink_records(caplog, logging.ERROR)
        assert len(errors) == 1
        assert "2 events requeued" in errors[0].getMessage()

        audit.log({"action": "create", "resource": "note", "resource_id": "3"})
        audit.flush()

        assert [e.resource_id for e in adapter.events] == ["1", "2", "3"]
        assert audit.pending_count == 0

    def test_zero_retries(self):
        """Test max_retries=0 makes a single attempt."""
        adapter = RecordingAdapter(fail_times=1)
        audit = make_logger(adapter, batch_size=1, max_retries=0)
        audit.log({"action": "create", "resource": "note"})
        assert adapter.write_attempts == 1
        assert audit.pending_count == 1

    def test_concurrent_flushes_never_overlap(self):
        """Test at most one adapter write is in flight."""
        adapter = RecordingAdapter(write_delay=0.002)
        audit = make_logger(adapter, batch_size=5)

        def worker(n):
            for i in range(50):
                audit.log({"action": "create", "resource": "note", "resource_id": f"{n}-{i}"})
            audit.flush()

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        audit.flush()

        assert adapter.max_in_flight == 1
        assert len(adapter.events) == 400
        assert len({e.id for e in adapter.events}) == 400

    def test_timer_flush(self, adapter):
        """Test the periodic timer drains the queue."""
        audit = AuditLogger(adapter, config={"flush_interval_ms": 20, "batch_size": 100})
        try:
            audit.log({"action": "create", "resource": "note"})
            deadline = time.monotonic() + 2.0
            while not adapter.batches and time.monotonic() < deadline:
                time.sleep(0.01)
            assert len(adapter.events) == 1
        finally:
            audit.shutdown()


class TestShutdown:
    """Test lifecycle transitions."""

    def test_shutdown_flushes_then_closes(self, adapter):
        """Test pending events are written once before close."""
        audit = make_logger(adapter, batch_size=5)
        for _ in range(3):
            audit.log({"action": "create", "resource": "note"})

        audit.shutdown()

        assert adapter.calls == ["write", "close"]
        assert len(adapter.batches[0]) == 3
        assert audit.state == EngineState.CLOSED

    def test_shutdown_idempotent(self, adapter):
        """Test repeated shutdown closes the adapter once."""
        audit = make_logger(adapter)
        audit.shutdown()
        audit.shutdown()
        assert adapter.calls.count("close") == 1

    def test_log_after_shutdown_ignored(self, adapter):
        """Test admissions stop after shutdown."""
        audit = make_logger(adapter, batch_size=1)
        audit.shutdown()
        audit.log({"action": "create", "resource": "note"})
        assert adapter.write_attempts == 0
        assert audit.pending_count == 0

    def test_event_admitted_during_shutdown_is_dropped(self, adapter, caplog):
        """Test an event racing shutdown is reported instead of stranded."""
        caplog.set_level(logging.WARNING, logger=SINK_NAME)
        audit = make_logger(adapter, batch_size=10)
        admit = audit.should_log_event

        def shut_down_then_admit(event):
            audit.shutdown()
            return admit(event)

        audit.should_log_event = shut_down_then_admit
        audit.log({"action": "create", "resource": "note"})

        assert audit.pending_count == 0
        assert adapter.write_attempts == 0
        warnings = [r.getMessage() for r in sink_records(caplog, logging.WARNING)]
        assert any("shutting down" in m for m in warnings)

    def test_shutdown_reports_unpersisted(self, caplog):
        """Test events that could not be written are reported."""
        caplog.set_level(logging.ERROR, logger=SINK_NAME)
        adapter = RecordingAdapter(fail_times=100)
        audit = make_logger(adapter, batch_size=10, max_retries=0)
        audit.log({"action": "create", "resource": "note"})

        audit.shutdown()

        messages = [r.getMessage() for r in sink_records(caplog, logging.ERROR)]
        assert any("1 unpersisted events" in m for m in messages)
        assert "close" in adapter.calls

    def test_context_manager(self, adapter):
        """Test with-statement shuts the engine down."""
        with make_logger(adapter, batch_size=10) as audit:
            audit.log({"action": "create", "resource": "note"})
        assert len(adapter.events) == 1
        assert audit.state == EngineState.CLOSED


class TestScopedLoggers:
    """Test resource and actor wrappers."""

    def test_resource_create(self, adapter):
        """Test create helper."""
        audit = make_logger(adapter, batch_size=1)
        audit.for_resource("note").create("n1", new_values={"title": "t"}, actor_id="u1")
        event = adapter.events[0]
        assert event.action == AuditAction.CREATE
        assert event.resource == "note"
        assert event.resource_id == "n1"
        assert event.level == AuditLevel.MEDIUM
        assert event.description == "Created note n1"
        assert event.new_values == {"title": "t"}
        assert event.actor_id == "u1"

    def test_resource_update_delete_read(self, adapter):
        """Test remaining resource helpers."""
        audit = make_logger(adapter, batch_size=1)
        notes = audit.for_resource("note")
        notes.update("n1", old_values={"a": 1}, new_values={"a": 2})
        notes.delete("n1", old_values={"a": 2})
        notes.read("n1")

        update, delete, read = adapter.events
        assert (update.action, update.level, update.description) == (
            AuditAction.UPDATE, AuditLevel.MEDIUM, "Updated note n1")
        assert (delete.action, delete.level, delete.description) == (
            AuditAction.DELETE, AuditLevel.HIGH, "Deleted note n1")
        assert (read.action, read.level, read.description) == (
            AuditAction.READ, AuditLevel.LOW, "Read note n1")

    def test_resource_caller_overrides(self, adapter):
        """Test caller fields override wrapper defaults."""
        audit = make_logger(adapter, batch_size=1)
        audit.for_resource("note").delete("n1", level="critical", description="Purged note")
        assert adapter.events[0].level == AuditLevel.CRITICAL
        assert adapter.events[0].description == "Purged note"

    def test_actor_login(self, adapter):
        """Test successful and failed login helpers."""
        audit = make_logger(adapter, batch_size=1)
        user = audit.for_actor("u1")
        user.login()
        user.login(success=False)

        ok, failed = adapter.events
        assert ok.action == AuditAction.LOGIN
        assert ok.level == AuditLevel.MEDIUM
        assert ok.resource == "session"
        assert ok.actor_type == ActorType.USER
        assert failed.action == AuditAction.LOGIN_FAILED
        assert failed.level == AuditLevel.CRITICAL
        assert failed.success is False
        assert failed.description == "Failed login attempt"

    def test_actor_logout_and_access_denied(self, adapter):
        """Test logout and access_denied helpers."""
        audit = make_logger(adapter, batch_size=1)
        admin = audit.for_actor("svc", actor_type="service")
        admin.logout()
        admin.access_denied("billing", resource_id="inv_1", reason="missing role")

        logout, denied = adapter.events
        assert logout.level == AuditLevel.LOW
        assert logout.actor_type == ActorType.SERVICE
        assert denied.action == AuditAction.ACCESS_DENIED
        assert denied.level == AuditLevel.HIGH
        assert denied.success is False
        assert denied.description == "Access denied to billing inv_1: missing role"

    def test_actor_generic_log(self, adapter):
        """Test the generic actor log binds the actor."""
        audit = make_logger(adapter, batch_size=1)
        audit.for_actor("u9").log("data_export", "report", resource_id="r1")
        event = adapter.events[0]
        assert event.actor_id == "u9"
        assert event.action == AuditAction.DATA_EXPORT


class TestReadSide:
    """Test query, count, stats, purge and health pass-through."""

    def test_query_with_criteria(self, adapter):
        """Test keyword criteria build a filter."""
        audit = make_logger(adapter, batch_size=1)
        audit.log({"action": "create", "resource": "note", "actor_id": "u1"})
        audit.log({"action": "create", "resource": "note", "actor_id": "u2"})

        result = audit.query(actor_id="u1")
        assert result.total == 1
        assert audit.count({"resource": "note"}) == 2
        assert audit.count(EventFilter(actor_id="u2")) == 1
        assert audit.count(EventFilter(resource="note"), actor_id="u1") == 1

    def test_invalid_filter_raises(self, adapter):
        """Test malformed filters surface as InvalidFilterError."""
        audit = make_logger(adapter)
        with pytest.raises(InvalidFilterError):
            audit.query(limit=0)
        with pytest.raises(InvalidFilterError):
            audit.count({"nonsense": 1})

    def test_stats_and_purge_normalize_dates(self, adapter):
        """Test naive datetimes are passed on as UTC."""
        audit = make_logger(adapter)
        audit.get_stats(datetime(2026, 1, 1), None)
        audit.purge(datetime(2026, 1, 1))
        assert adapter.stats_range[0] == datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert adapter.purged_before == datetime(2026, 1, 1, tzinfo=timezone.utc)

    def test_health_check_never_raises(self, adapter):
        """Test health check errors become False."""
        audit = make_logger(adapter)
        assert audit.health_check() is True

        def broken():
            raise RuntimeError("down")

        adapter.health_check = broken
        assert audit.health_check() is False
