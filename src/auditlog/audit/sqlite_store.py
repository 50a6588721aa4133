"""SQLite audit adapter - the reference embedded-storage backend.

Schema layout:
- One append-mostly table keyed by event id, typed columns for every
  filterable field and JSON text columns for context, snapshots, error
  and metadata. Timestamps are integer microseconds since the epoch so
  they sort natively and round-trip without precision loss.
- Single-column indexes on timestamp, action, level and correlation id;
  composite (actor_id, timestamp) and (resource, timestamp) indexes for
  the two common drill-downs.
- An FTS5 external-content table mirrors ``description``. Insert, delete
  and update triggers keep it in step inside the writing transaction;
  free-text queries join against it.
- WAL journaling with ``synchronous=NORMAL`` and a 64 MB page cache.
"""

from datetime import datetime
from pathlib import Path
from typing import Any, List, Sequence, Tuple
import logging
import sqlite3
import threading

from auditlog.audit.schemas import AuditEvent
from auditlog.audit.sql import ALIAS, SQLAuditAdapter
from auditlog.audit.validators import from_epoch_micros, to_epoch_micros
from auditlog.common.constants import StorageConstants


logger = logging.getLogger(__name__)


class SQLiteAuditAdapter(SQLAuditAdapter):
    """Audit adapter backed by a local SQLite database file."""

    name = "sqlite"
    placeholder = "?"

    def __init__(
        self,
        database: str = ":memory:",
        table_name: str = StorageConstants.DEFAULT_TABLE_NAME,
        cache_size_kib: int = StorageConstants.SQLITE_CACHE_SIZE_KIB,
        timeout: float = 5.0,
    ):
        """Open (and if needed create) the audit database.

        Args:
            database: File path, or ":memory:" for a private in-memory store.
            table_name: Name of the events table; the search table is
                ``<table_name>_fts``.
            cache_size_kib: Page cache size in KiB.
            timeout: Seconds to wait on a locked database.
        """
        super().__init__(table_name)
        self.database = database
        self.fts_table = f"{self.table_name}_fts"

        if database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)

        # The flusher thread and caller threads share this connection
        self._conn = sqlite3.connect(database, timeout=timeout, check_same_thread=False)
        self._lock = threading.RLock()
        self._closed = False

        self._configure(cache_size_kib)
        self._create_schema()
        logger.info(f"SQLite audit store initialized: {database} ({self.table_name})")

    def _configure(self, cache_size_kib: int) -> None:
        with self._lock:
            self._conn.execute("PRAGMA journal_mode = WAL")
            self._conn.execute("PRAGMA synchronous = NORMAL")
            self._conn.execute(f"PRAGMA cache_size = -{int(cache_size_kib)}")
            self._conn.execute("PRAGMA temp_store = MEMORY")

    def _create_schema(self) -> None:
        t = self.table_name
        fts = self.fts_table
        statements = [
            f"""
            CREATE TABLE IF NOT EXISTS {t} (
                id TEXT PRIMARY KEY,
                timestamp INTEGER NOT NULL,
                action TEXT NOT NULL,
                resource TEXT NOT NULL,
                resource_id TEXT,
                level TEXT NOT NULL,
                actor_id TEXT,
                actor_type TEXT,
                target_id TEXT,
                target_type TEXT,
                success INTEGER NOT NULL,
                description TEXT NOT NULL,
                context TEXT,
                old_values TEXT,
                new_values TEXT,
                error TEXT,
                metadata TEXT,
                correlation_id TEXT
            )
            """,
            f"CREATE INDEX IF NOT EXISTS idx_{t}_timestamp ON {t}(timestamp)",
            f"CREATE INDEX IF NOT EXISTS idx_{t}_action ON {t}(action)",
            f"CREATE INDEX IF NOT EXISTS idx_{t}_level ON {t}(level)",
            f"CREATE INDEX IF NOT EXISTS idx_{t}_correlation_id ON {t}(correlation_id)",
            f"CREATE INDEX IF NOT EXISTS idx_{t}_actor_timestamp ON {t}(actor_id, timestamp)",
            f"CREATE INDEX IF NOT EXISTS idx_{t}_resource_timestamp ON {t}(resource, timestamp)",
            f"""
            CREATE VIRTUAL TABLE IF NOT EXISTS {fts} USING fts5(
                description, content='{t}', content_rowid='rowid'
            )
            """,
            f"""
            CREATE TRIGGER IF NOT EXISTS {t}_ai AFTER INSERT ON {t} BEGIN
                INSERT INTO {fts}(rowid, description) VALUES (new.rowid, new.description);
            END
            """,
            f"""
            CREATE TRIGGER IF NOT EXISTS {t}_ad AFTER DELETE ON {t} BEGIN
                INSERT INTO {fts}({fts}, rowid, description)
                VALUES ('delete', old.rowid, old.description);
            END
            """,
            f"""
            CREATE TRIGGER IF NOT EXISTS {t}_au AFTER UPDATE ON {t} BEGIN
                INSERT INTO {fts}({fts}, rowid, description)
                VALUES ('delete', old.rowid, old.description);
                INSERT INTO {fts}(rowid, description) VALUES (new.rowid, new.description);
            END
            """,
        ]
        with self._lock, self._conn:
            for statement in statements:
                self._conn.execute(statement)

    # ----- encodings -----

    def _to_db_time(self, value: datetime) -> int:
        return to_epoch_micros(value)

    def _from_db_time(self, value: Any) -> datetime:
        return from_epoch_micros(value)

    def _search_clause(self, text: str) -> Tuple[str, str, List[Any]]:
        # Each whitespace token becomes a quoted FTS5 string; adjacent
        # strings are implicitly AND-ed.
        match = " ".join('"' + token.replace('"', '""') + '"' for token in text.split())
        join = f" JOIN {self.fts_table} ON {self.fts_table}.rowid = {ALIAS}.rowid"
        return join, f"{self.fts_table} MATCH ?", [match]

    def _insert_sql(self) -> str:
        # Redelivered events keep their first stored copy
        return super()._insert_sql().replace("INSERT INTO", "INSERT OR IGNORE INTO", 1)

    # ----- driver hooks -----

    def _check_open(self, operation: str) -> None:
        if self._closed:
            raise self._error(operation, sqlite3.ProgrammingError("database is closed"))

    def _fetchall(self, operation: str, sql: str, params: Sequence[Any]) -> List[tuple]:
        with self._lock:
            self._check_open(operation)
            try:
                return self._conn.execute(sql, list(params)).fetchall()
            except sqlite3.Error as e:
                raise self._error(operation, e) from e

    def _execute(self, operation: str, sql: str, params: Sequence[Any]) -> int:
        with self._lock:
            self._check_open(operation)
            try:
                with self._conn:
                    return self._conn.execute(sql, list(params)).rowcount
            except sqlite3.Error as e:
                raise self._error(operation, e) from e

    # ----- contract -----

    def write_batch(self, events: Sequence[AuditEvent]) -> None:
        if not events:
            return
        sql = self._insert_sql()
        with self._lock:
            self._check_open("write_batch")
            try:
                # One transaction: either every row lands or none do
                with self._conn:
                    self._conn.executemany(sql, (self._row_values(e) for e in events))
            except sqlite3.Error as e:
                raise self._error("write_batch", e) from e

    def health_check(self) -> bool:
        try:
            with self._lock:
                if self._closed:
                    return False
                self._conn.execute("SELECT 1").fetchone()
            return True
        except Exception as e:
            logger.warning(f"SQLite audit store health check failed: {e}")
            return False

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._conn.close()
        logger.info(f"SQLite audit store closed: {self.database}")
