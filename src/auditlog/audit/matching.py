"""In-process filtering, ordering and aggregation of audit events.

Used by adapters whose backend cannot evaluate an ``EventFilter`` natively
(JSONL files, DynamoDB scans).
"""

import re
from collections import Counter
from datetime import datetime
from typing import Iterable, List, Optional

from auditlog.audit.schemas import (
    AuditEvent,
    AuditStats,
    EventFilter,
    PaginatedResult,
    SortOrder,
    TimeRange,
    as_utc,
)


def in_range(timestamp: datetime, start: Optional[datetime], end: Optional[datetime]) -> bool:
    """Half-open range check: ``start <= timestamp < end``."""
    if start is not None and timestamp < start:
        return False
    if end is not None and timestamp >= end:
        return False
    return True


_WORD = re.compile(r"\w+")


def search_terms(search: Optional[str]) -> List[str]:
    """Lower-cased words, split the way the full-text indexes split them."""
    if not search:
        return []
    return _WORD.findall(search.lower())


def matches_filter(event: AuditEvent, event_filter: EventFilter) -> bool:
    """Evaluate every populated criterion of ``event_filter`` against ``event``."""
    f = event_filter
    exact = (
        ("actor_id", f.actor_id),
        ("actor_type", f.actor_type),
        ("resource", f.resource),
        ("resource_id", f.resource_id),
        ("action", f.action),
        ("level", f.level),
        ("correlation_id", f.correlation_id),
        ("success", f.success),
    )
    for name, expected in exact:
        if expected is not None and getattr(event, name) != expected:
            return False

    if f.actions and event.action not in f.actions:
        return False
    if f.resources and event.resource not in f.resources:
        return False
    if f.levels and event.level not in f.levels:
        return False
    if f.actor_ids and event.actor_id not in f.actor_ids:
        return False

    if not in_range(event.timestamp, f.start_date, f.end_date):
        return False

    terms = search_terms(f.search)
    if terms:
        words = set(search_terms(event.description))
        if not all(t in words for t in terms):
            return False

    return True


def sort_events(events: Iterable[AuditEvent], event_filter: EventFilter) -> List[AuditEvent]:
    field = event_filter.sort_by.value
    reverse = event_filter.sort_order == SortOrder.DESC

    def key(event: AuditEvent):
        value = getattr(event, field)
        if hasattr(value, "value"):
            value = value.value
        # None sorts after every value in ascending order
        return (value is None, value if value is not None else "")

    return sorted(events, key=key, reverse=reverse)


def paginate(events: Iterable[AuditEvent], event_filter: EventFilter) -> PaginatedResult:
    """Filter, order and slice ``events`` into one result page."""
    matched = sort_events(
        (e for e in events if matches_filter(e, event_filter)), event_filter
    )
    start = event_filter.offset
    page = matched[start:start + event_filter.limit]
    return PaginatedResult.build(page, len(matched), event_filter)


def compute_stats(
    events: Iterable[AuditEvent],
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> AuditStats:
    start_date, end_date = as_utc(start_date), as_utc(end_date)
    by_action: Counter = Counter()
    by_resource: Counter = Counter()
    by_level: Counter = Counter()
    total = 0
    succeeded = 0
    earliest: Optional[datetime] = None
    latest: Optional[datetime] = None

    for event in events:
        if not in_range(event.timestamp, start_date, end_date):
            continue
        total += 1
        if event.success:
            succeeded += 1
        by_action[event.action.value] += 1
        by_resource[event.resource] += 1
        by_level[event.level.value] += 1
        if earliest is None or event.timestamp < earliest:
            earliest = event.timestamp
        if latest is None or event.timestamp > latest:
            latest = event.timestamp

    return build_stats(
        total, succeeded, dict(by_action), dict(by_resource), dict(by_level),
        start_date or earliest, end_date or latest,
    )


def build_stats(
    total: int,
    succeeded: int,
    by_action: dict,
    by_resource: dict,
    by_level: dict,
    start: Optional[datetime],
    end: Optional[datetime],
) -> AuditStats:
    """Assemble an ``AuditStats``; success rate is 0 when there are no events."""
    rate = round(succeeded / total * 100, 2) if total else 0.0
    return AuditStats(
        total_events=total,
        events_by_action=by_action,
        events_by_resource=by_resource,
        events_by_level=by_level,
        success_rate=rate,
        time_range=TimeRange(start=start, end=end),
    )
