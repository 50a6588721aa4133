"""Shared plumbing for relational audit adapters.

``SQLAuditAdapter`` turns an ``EventFilter`` into a parameterised WHERE
clause and implements query, count, stats and purge on top of a small set
of driver hooks. Concrete adapters supply the connection handling, the
placeholder style, the timestamp/JSON column encodings and the full-text
search clause.
"""

from abc import abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple
import json
import re

from auditlog.audit.matching import build_stats
from auditlog.audit.schemas import (
    AuditEvent,
    AuditStats,
    EventFilter,
    PaginatedResult,
    SortField,
    as_utc,
)
from auditlog.audit.store import AuditAdapter
from auditlog.common.constants import StorageConstants


COLUMNS: Tuple[str, ...] = (
    "id",
    "timestamp",
    "action",
    "resource",
    "resource_id",
    "level",
    "actor_id",
    "actor_type",
    "target_id",
    "target_type",
    "success",
    "description",
    "context",
    "old_values",
    "new_values",
    "error",
    "metadata",
    "correlation_id",
)

JSON_COLUMNS = frozenset({"context", "old_values", "new_values", "error", "metadata"})

SORT_COLUMNS: Dict[SortField, str] = {field: field.value for field in SortField}

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")

# Alias used for the events table in every SELECT
ALIAS = "e"


def validate_identifier(name: str) -> str:
    """Reject table names that could not be interpolated safely."""
    if not _IDENTIFIER.match(name or ""):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


class SQLAuditAdapter(AuditAdapter):
    """Base class for adapters backed by a SQL database."""

    placeholder = "%s"

    def __init__(self, table_name: str = StorageConstants.DEFAULT_TABLE_NAME):
        self.table_name = validate_identifier(table_name)

    # ----- driver hooks -----

    @abstractmethod
    def _fetchall(self, operation: str, sql: str, params: Sequence[Any]) -> List[tuple]:
        """Run a SELECT and return all rows; driver errors become AdapterError."""
        pass

    @abstractmethod
    def _execute(self, operation: str, sql: str, params: Sequence[Any]) -> int:
        """Run a statement in its own transaction and return the affected row count."""
        pass

    def _to_db_time(self, value: datetime) -> Any:
        return value

    def _from_db_time(self, value: Any) -> datetime:
        return as_utc(value)

    def _to_db_json(self, value: Any) -> Any:
        if value is None:
            return None
        return json.dumps(value, ensure_ascii=False)

    def _from_db_json(self, value: Any) -> Any:
        if value is None or isinstance(value, (dict, list)):
            return value
        if isinstance(value, (bytes, bytearray)):
            value = value.decode("utf-8")
        return json.loads(value)

    @abstractmethod
    def _search_clause(self, text: str) -> Tuple[str, str, List[Any]]:
        """Return ``(join_sql, condition_sql, params)`` for a free-text search."""
        pass

    # ----- row mapping -----

    def _row_values(self, event: AuditEvent) -> tuple:
        record = event.model_dump(mode="json", exclude_none=True)
        values = []
        for column in COLUMNS:
            if column == "timestamp":
                values.append(self._to_db_time(event.timestamp))
            elif column == "success":
                values.append(event.success)
            elif column in JSON_COLUMNS:
                values.append(self._to_db_json(record.get(column)))
            else:
                values.append(record.get(column))
        return tuple(values)

    def _row_to_event(self, row: Sequence[Any]) -> AuditEvent:
        data = {}
        for column, value in zip(COLUMNS, row):
            if value is None:
                continue
            if column == "timestamp":
                value = self._from_db_time(value)
            elif column == "success":
                value = bool(value)
            elif column in JSON_COLUMNS:
                value = self._from_db_json(value)
            data[column] = value
        return AuditEvent.model_validate(data)

    # ----- SQL builders -----

    def _select_columns(self) -> str:
        return ", ".join(f"{ALIAS}.{c}" for c in COLUMNS)

    def _insert_sql(self) -> str:
        marks = ", ".join([self.placeholder] * len(COLUMNS))
        return f"INSERT INTO {self.table_name} ({', '.join(COLUMNS)}) VALUES ({marks})"

    def _where(self, event_filter: EventFilter) -> Tuple[str, str, List[Any]]:
        """Build ``(join_sql, where_sql, params)`` for a filter."""
        f = event_filter
        p = self.placeholder
        clauses: List[str] = []
        params: List[Any] = []

        exact = (
            ("actor_id", f.actor_id),
            ("actor_type", f.actor_type.value if f.actor_type else None),
            ("resource", f.resource),
            ("resource_id", f.resource_id),
            ("action", f.action.value if f.action else None),
            ("level", f.level.value if f.level else None),
            ("correlation_id", f.correlation_id),
        )
        for column, value in exact:
            if value is not None:
                clauses.append(f"{ALIAS}.{column} = {p}")
                params.append(value)

        if f.success is not None:
            clauses.append(f"{ALIAS}.success = {p}")
            params.append(f.success)

        lists = (
            ("action", [a.value for a in f.actions or []]),
            ("resource", list(f.resources or [])),
            ("level", [lv.value for lv in f.levels or []]),
            ("actor_id", list(f.actor_ids or [])),
        )
        for column, values in lists:
            if values:
                clauses.append(f"{ALIAS}.{column} IN ({', '.join([p] * len(values))})")
                params.extend(values)

        range_sql, range_params = self._range(f.start_date, f.end_date)
        clauses.extend(range_sql)
        params.extend(range_params)

        join = ""
        if f.search:
            join, condition, search_params = self._search_clause(f.search)
            clauses.append(condition)
            params.extend(search_params)

        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return join, where, params

    def _range(self, start: Optional[datetime], end: Optional[datetime]) -> Tuple[List[str], List[Any]]:
        clauses, params = [], []
        if start is not None:
            clauses.append(f"{ALIAS}.timestamp >= {self.placeholder}")
            params.append(self._to_db_time(as_utc(start)))
        if end is not None:
            clauses.append(f"{ALIAS}.timestamp < {self.placeholder}")
            params.append(self._to_db_time(as_utc(end)))
        return clauses, params

    # ----- contract -----

    def query(self, event_filter: EventFilter) -> PaginatedResult:
        join, where, params = self._where(event_filter)
        column = SORT_COLUMNS[event_filter.sort_by]
        direction = event_filter.sort_order.value
        p = self.placeholder
        sql = (
            f"SELECT {self._select_columns()} FROM {self.table_name} AS {ALIAS}{join}{where} "
            f"ORDER BY {ALIAS}.{column} {direction}, {ALIAS}.id {direction} "
            f"LIMIT {p} OFFSET {p}"
        )
        rows = self._fetchall("query", sql, [*params, event_filter.limit, event_filter.offset])
        items = [self._row_to_event(row) for row in rows]
        return PaginatedResult.build(items, self.count(event_filter), event_filter)

    def count(self, event_filter: EventFilter) -> int:
        join, where, params = self._where(event_filter)
        sql = f"SELECT COUNT(*) FROM {self.table_name} AS {ALIAS}{join}{where}"
        rows = self._fetchall("count", sql, params)
        return int(rows[0][0]) if rows else 0

    def get_stats(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> AuditStats:
        clauses, params = self._range(start_date, end_date)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        source = f"FROM {self.table_name} AS {ALIAS}{where}"

        totals = self._fetchall(
            "get_stats",
            f"SELECT COUNT(*), SUM(CASE WHEN {ALIAS}.success THEN 1 ELSE 0 END), "
            f"MIN({ALIAS}.timestamp), MAX({ALIAS}.timestamp) {source}",
            params,
        )
        total, succeeded, earliest, latest = totals[0] if totals else (0, 0, None, None)

        grouped = {}
        for column in ("action", "resource", "level"):
            rows = self._fetchall(
                "get_stats",
                f"SELECT {ALIAS}.{column}, COUNT(*) {source} GROUP BY {ALIAS}.{column}",
                params,
            )
            grouped[column] = {str(key): int(n) for key, n in rows}

        return build_stats(
            int(total or 0),
            int(succeeded or 0),
            grouped["action"],
            grouped["resource"],
            grouped["level"],
            as_utc(start_date) or (self._from_db_time(earliest) if earliest is not None else None),
            as_utc(end_date) or (self._from_db_time(latest) if latest is not None else None),
        )

    def purge(self, older_than: datetime) -> int:
        sql = f"DELETE FROM {self.table_name} WHERE timestamp < {self.placeholder}"
        return self._execute("purge", sql, [self._to_db_time(as_utc(older_than))])
