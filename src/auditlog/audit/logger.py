"""Audit Logger - batching engine between call sites and a storage adapter.

Events pass through validation, level resolution, include/exclude
filtering and sanitization before they join an in-memory queue. A
background flusher thread drains the queue when it reaches the batch
size and on a recurring interval; callers can also flush on demand, and
shutdown flushes once more. With ``batch_size=1`` every event is written
in the calling thread. Failed flushes are retried with exponential
backoff and, when retries run out, the batch goes back to the front of
the queue.
"""

import logging
import threading
import time
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import ValidationError
from tenacity import RetryCallState, Retrying, stop_after_attempt, wait_exponential

from auditlog.audit.sanitizer import sanitize_data
from auditlog.audit.schemas import (
    ActorType,
    AuditAction,
    AuditEvent,
    AuditEventInput,
    AuditLevel,
    AuditLoggerConfig,
    AuditStats,
    EventFilter,
    PaginatedResult,
    as_utc,
)
from auditlog.audit.store import AuditAdapter
from auditlog.audit.validators import (
    calculate_audit_level,
    create_timestamp,
    default_description,
    generate_audit_id,
    level_priority,
    validate_event_input,
)
from auditlog.common.exceptions import EventValidationError, InvalidFilterError

logger = logging.getLogger(__name__)

EventLike = Union[AuditEventInput, Mapping[str, Any]]
FilterLike = Union[EventFilter, Mapping[str, Any], None]


class EngineState(str, Enum):
    """Engine lifecycle; transitions only move forward."""
    ACTIVE = "active"
    DRAINING = "draining"
    CLOSED = "closed"


class AuditLogger:
    """Batches audit events and hands them to an ``AuditAdapter``.

    ``log()`` never raises and never waits on storage unless
    ``batch_size`` is 1. Admission appends to a deque under the state
    lock; ``flush()`` holds the flush lock for the whole drain-and-persist
    step so at most one adapter write is in flight.
    """

    def __init__(
        self,
        adapter: AuditAdapter,
        config: Union[AuditLoggerConfig, Mapping[str, Any], None] = None,
        error_logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the engine and start the background flusher.

        Args:
            adapter: Storage backend; owned by this engine from now on.
            config: Engine options, as a model or a plain mapping.
            error_logger: Sink for dropped events and flush failures.
                Defaults to this module's logger.
            sleep: Backoff sleep function (injectable for tests).
        """
        if isinstance(config, AuditLoggerConfig):
            self._config = config
        else:
            self._config = AuditLoggerConfig.model_validate(dict(config or {}))

        self._adapter = adapter
        self._sink = error_logger or logger
        self._sleep = sleep

        self._queue: Deque[AuditEvent] = deque()
        self._flush_lock = threading.Lock()
        self._flush_owner: Optional[int] = None
        self._state_lock = threading.Lock()
        self._state = EngineState.ACTIVE

        self._wakeup = threading.Event()
        self._flusher: Optional[threading.Thread] = None
        self._start_flusher()

    # ----- introspection -----

    @property
    def config(self) -> AuditLoggerConfig:
        return self._config

    @property
    def adapter(self) -> AuditAdapter:
        return self._adapter

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def pending_count(self) -> int:
        """Events admitted but not yet persisted."""
        return len(self._queue)

    def is_flushing_in_current_thread(self) -> bool:
        """True while the calling thread is inside ``flush()``.

        Signal handlers run on the main thread between bytecodes, possibly
        in the middle of a flush; they use this to avoid waiting on a lock
        their own thread holds.
        """
        return self._flush_owner == threading.get_ident()

    # ----- admission -----

    def log(self, event: Optional[EventLike] = None, **fields: Any) -> None:
        """Submit one event. Fire-and-forget; never raises.

        Accepts an ``AuditEventInput``, a mapping, or keyword fields.
        """
        if not self._config.enabled or self._state is not EngineState.ACTIVE:
            return

        try:
            resolved = self._resolve(event if event is not None else fields)
        except EventValidationError as e:
            self._sink.warning(f"Dropped invalid audit event: {e.message} {e.details}")
            return
        except Exception as e:
            self._sink.error(f"Dropped audit event after unexpected error: {e}")
            return

        if not self.should_log_event(resolved):
            return

        with self._state_lock:
            # shutdown() may have started draining since the check above
            if self._state is not EngineState.ACTIVE:
                self._sink.warning(f"Dropped audit event {resolved.id}: logger is shutting down")
                return
            self._queue.append(resolved)
            pending = len(self._queue)

        if self._config.batch_size == 1:
            self.flush()
        elif pending >= self._config.batch_size:
            self._wakeup.set()

    def log_batch(self, events: Iterable[EventLike]) -> None:
        """Submit events one at a time; no atomicity across the batch."""
        for event in events:
            self.log(event)

    def should_log_event(self, event: AuditEvent) -> bool:
        """Apply the minimum level and the include/exclude filters."""
        if level_priority(event.level) < level_priority(self._config.level):
            return False

        exclude = self._config.filters.exclude
        if not exclude.is_empty and exclude.matches(event):
            return False

        include = self._config.filters.include
        if not include.is_empty and not include.matches(event):
            return False

        return True

    def _sanitize(self, value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        settings = self._config.sanitize
        if value is None or not settings.enabled:
            return value
        return sanitize_data(value, settings.fields, settings.replacement)

    def _resolve(self, raw: EventLike) -> AuditEvent:
        """Turn caller input into a complete, immutable ``AuditEvent``."""
        data = validate_event_input(raw)

        level = data.level or calculate_audit_level(data.action, data.resource, data.success)
        description = data.description or default_description(
            data.action, data.resource, data.resource_id
        )
        metadata = {**self._config.metadata, **(data.metadata or {})}

        context = data.context
        if context is not None and context.custom is not None:
            context = context.model_copy(update={"custom": self._sanitize(context.custom)})

        fields = data.model_dump(
            exclude_none=True,
            exclude={"level", "description", "metadata", "old_values", "new_values", "context"},
        )
        try:
            return AuditEvent(
                id=generate_audit_id(),
                timestamp=create_timestamp(),
                level=level,
                description=description,
                metadata=metadata,
                old_values=self._sanitize(data.old_values),
                new_values=self._sanitize(data.new_values),
                context=context,
                **fields,
            )
        except ValidationError as e:
            raise EventValidationError(
                "Invalid audit event",
                details={"errors": e.errors(include_url=False, include_context=False)},
            ) from e

    # ----- flushing -----

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        self._sink.warning(
            f"Audit flush attempt {retry_state.attempt_number} failed, "
            f"retrying in {delay:.3f}s: {exc}"
        )

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self._config.max_retries + 1),
            wait=wait_exponential(multiplier=self._config.retry_delay_ms / 1000.0, exp_base=2, min=0),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )

    def _drain(self) -> List[AuditEvent]:
        # Only flush() removes items and it holds the flush lock, so at
        # least ``n`` items are present for the whole loop.
        n = len(self._queue)
        return [self._queue.popleft() for _ in range(n)]

    def flush(self) -> None:
        """Persist everything queued so far. Never raises.

        Concurrent callers wait for the in-flight flush. On exhausted
        retries the batch is put back ahead of newer events.
        """
        with self._flush_lock:
            self._flush_owner = threading.get_ident()
            try:
                if self._state is EngineState.CLOSED:
                    return
                batch = self._drain()
                if not batch:
                    return

                try:
                    self._retrying()(self._adapter.write_batch, batch)
                except Exception as e:
                    self._queue.extendleft(reversed(batch))
                    self._sink.error(
                        f"Audit flush failed after {self._config.max_retries + 1} attempts; "
                        f"{len(batch)} events requeued: {e}"
                    )
                    return
            finally:
                self._flush_owner = None

        logger.debug(f"Flushed {len(batch)} audit events")

    def _start_flusher(self) -> None:
        if not self._config.enabled:
            return
        if self._config.batch_size == 1 and self._config.flush_interval_ms <= 0:
            return
        self._flusher = threading.Thread(
            target=self._flusher_loop,
            name="AuditFlusher",
            daemon=True,
        )
        self._flusher.start()

    def _flusher_loop(self) -> None:
        """Flush on every wakeup and every ``flush_interval_ms``."""
        interval_ms = self._config.flush_interval_ms
        timeout = interval_ms / 1000.0 if interval_ms > 0 else None
        while True:
            self._wakeup.wait(timeout)
            self._wakeup.clear()
            if self._state is not EngineState.ACTIVE:
                break
            try:
                self.flush()
            except Exception as e:
                self._sink.error(f"Unexpected error in audit flusher: {e}")

    # ----- lifecycle -----

    def shutdown(self) -> None:
        """Stop admissions, flush once more and close the adapter.

        Safe to call more than once; later calls return immediately.
        """
        with self._state_lock:
            if self._state is not EngineState.ACTIVE:
                return
            self._state = EngineState.DRAINING

        logger.info("Shutting down audit logger...")
        self._wakeup.set()
        flusher = self._flusher
        if flusher is not None and flusher is not threading.current_thread():
            flusher.join()
        self.flush()
        remaining = len(self._queue)
        if remaining:
            self._sink.error(f"Audit logger shut down with {remaining} unpersisted events")

        try:
            self._adapter.close()
        except Exception as e:
            self._sink.error(f"Failed to close audit adapter: {e}")
        finally:
            with self._flush_lock:
                self._state = EngineState.CLOSED
        logger.info("Audit logger shutdown complete")

    def __enter__(self) -> "AuditLogger":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    # ----- scoped loggers -----

    def for_resource(self, resource: str) -> "ResourceAuditLogger":
        return ResourceAuditLogger(self, resource)

    def for_actor(
        self,
        actor_id: str,
        actor_type: Union[ActorType, str] = ActorType.USER,
    ) -> "ActorAuditLogger":
        return ActorAuditLogger(self, actor_id, ActorType(actor_type))

    # ----- read side -----

    @staticmethod
    def _coerce_filter(event_filter: FilterLike, criteria: Dict[str, Any]) -> EventFilter:
        if isinstance(event_filter, EventFilter) and not criteria:
            return event_filter
        if isinstance(event_filter, EventFilter):
            base = event_filter.model_dump(exclude_unset=True)
        else:
            base = dict(event_filter or {})
        try:
            return EventFilter.model_validate({**base, **criteria})
        except ValidationError as e:
            raise InvalidFilterError(
                "Invalid audit event filter",
                details={"errors": e.errors(include_url=False, include_context=False)},
            ) from e

    def query(self, event_filter: FilterLike = None, **criteria: Any) -> PaginatedResult:
        return self._adapter.query(self._coerce_filter(event_filter, criteria))

    def count(self, event_filter: FilterLike = None, **criteria: Any) -> int:
        return self._adapter.count(self._coerce_filter(event_filter, criteria))

    def get_stats(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> AuditStats:
        return self._adapter.get_stats(as_utc(start_date), as_utc(end_date))

    def purge(self, older_than: datetime) -> int:
        return self._adapter.purge(as_utc(older_than))

    def health_check(self) -> bool:
        try:
            return bool(self._adapter.health_check())
        except Exception as e:
            self._sink.warning(f"Audit adapter health check raised: {e}")
            return False


class ResourceAuditLogger:
    """Logger bound to one resource kind."""

    def __init__(self, parent: AuditLogger, resource: str):
        self.parent = parent
        self.resource = resource

    def log(self, action: Union[AuditAction, str], **fields: Any) -> None:
        self.parent.log({**fields, "action": action, "resource": self.resource})

    def create(self, resource_id: str, new_values: Optional[Dict[str, Any]] = None, **fields: Any) -> None:
        self.log(
            AuditAction.CREATE,
            **{
                "level": AuditLevel.MEDIUM,
                "description": f"Created {self.resource} {resource_id}",
                **fields,
                "resource_id": resource_id,
                "new_values": new_values,
            },
        )

    def update(
        self,
        resource_id: str,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        **fields: Any,
    ) -> None:
        self.log(
            AuditAction.UPDATE,
            **{
                "level": AuditLevel.MEDIUM,
                "description": f"Updated {self.resource} {resource_id}",
                **fields,
                "resource_id": resource_id,
                "old_values": old_values,
                "new_values": new_values,
            },
        )

    def delete(self, resource_id: str, old_values: Optional[Dict[str, Any]] = None, **fields: Any) -> None:
        self.log(
            AuditAction.DELETE,
            **{
                "level": AuditLevel.HIGH,
                "description": f"Deleted {self.resource} {resource_id}",
                **fields,
                "resource_id": resource_id,
                "old_values": old_values,
            },
        )

    def read(self, resource_id: str, **fields: Any) -> None:
        self.log(
            AuditAction.READ,
            **{
                "level": AuditLevel.LOW,
                "description": f"Read {self.resource} {resource_id}",
                **fields,
                "resource_id": resource_id,
            },
        )


class ActorAuditLogger:
    """Logger bound to one actor."""

    def __init__(self, parent: AuditLogger, actor_id: str, actor_type: ActorType = ActorType.USER):
        self.parent = parent
        self.actor_id = actor_id
        self.actor_type = actor_type

    def log(self, action: Union[AuditAction, str], resource: str, **fields: Any) -> None:
        self.parent.log({
            **fields,
            "action": action,
            "resource": resource,
            "actor_id": self.actor_id,
            "actor_type": self.actor_type,
        })

    def login(self, success: bool = True, **fields: Any) -> None:
        if success:
            defaults = {"level": AuditLevel.MEDIUM, "description": "User logged in"}
            action = AuditAction.LOGIN
        else:
            defaults = {"level": AuditLevel.CRITICAL, "description": "Failed login attempt"}
            action = AuditAction.LOGIN_FAILED
        self.log(action, "session", **{**defaults, **fields, "success": success})

    def logout(self, **fields: Any) -> None:
        self.log(
            AuditAction.LOGOUT,
            "session",
            **{"level": AuditLevel.LOW, "description": "User logged out", **fields},
        )

    def access_denied(
        self,
        resource: str,
        resource_id: Optional[str] = None,
        reason: Optional[str] = None,
        **fields: Any,
    ) -> None:
        description = f"Access denied to {resource}"
        if resource_id:
            description = f"{description} {resource_id}"
        if reason:
            description = f"{description}: {reason}"
        self.log(
            AuditAction.ACCESS_DENIED,
            resource,
            **{
                "level": AuditLevel.HIGH,
                "description": description,
                **fields,
                "resource_id": resource_id,
                "success": False,
            },
        )
