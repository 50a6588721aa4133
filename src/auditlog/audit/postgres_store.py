"""PostgreSQL audit adapter.

JSONB columns for the free-form payloads, TIMESTAMPTZ for event time and a
GIN full-text index over ``description``. Connections come from a
``psycopg_pool.ConnectionPool``.
"""

from typing import Any, List, Optional, Sequence, Tuple
import logging

from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from auditlog.audit.schemas import AuditEvent
from auditlog.audit.sql import ALIAS, SQLAuditAdapter
from auditlog.common.constants import StorageConstants


logger = logging.getLogger(__name__)


class PostgresAuditAdapter(SQLAuditAdapter):
    """Audit adapter backed by PostgreSQL via psycopg 3."""

    name = "postgresql"

    def __init__(
        self,
        conninfo: Optional[str] = None,
        table_name: str = StorageConstants.DEFAULT_TABLE_NAME,
        pool: Optional[ConnectionPool] = None,
        min_size: int = StorageConstants.POSTGRES_POOL_MIN,
        max_size: int = StorageConstants.POSTGRES_POOL_MAX,
        create_schema: bool = True,
    ):
        """Initialize the adapter.

        Args:
            conninfo: libpq connection string; ignored when ``pool`` is given.
            table_name: Events table name.
            pool: Existing pool to use. The adapter closes only pools it created.
            min_size: Minimum pooled connections.
            max_size: Maximum pooled connections.
            create_schema: Create the table and indexes if missing.
        """
        super().__init__(table_name)
        if pool is None and not conninfo:
            raise ValueError("conninfo or pool is required")

        self._owns_pool = pool is None
        self._pool = pool or ConnectionPool(
            conninfo, min_size=min_size, max_size=max_size, open=True
        )
        self._closed = False

        if create_schema:
            self._create_schema()
        logger.info(f"PostgreSQL audit store initialized ({self.table_name})")

    def _create_schema(self) -> None:
        t = self.table_name
        statements = [
            f"""
            CREATE TABLE IF NOT EXISTS {t} (
                id TEXT PRIMARY KEY,
                timestamp TIMESTAMPTZ NOT NULL,
                action TEXT NOT NULL,
                resource TEXT NOT NULL,
                resource_id TEXT,
                level TEXT NOT NULL,
                actor_id TEXT,
                actor_type TEXT,
                target_id TEXT,
                target_type TEXT,
                success BOOLEAN NOT NULL,
                description TEXT NOT NULL,
                context JSONB,
                old_values JSONB,
                new_values JSONB,
                error JSONB,
                metadata JSONB,
                correlation_id TEXT
            )
            """,
            f"CREATE INDEX IF NOT EXISTS idx_{t}_timestamp ON {t}(timestamp)",
            f"CREATE INDEX IF NOT EXISTS idx_{t}_action ON {t}(action)",
            f"CREATE INDEX IF NOT EXISTS idx_{t}_level ON {t}(level)",
            f"CREATE INDEX IF NOT EXISTS idx_{t}_correlation_id ON {t}(correlation_id)",
            f"CREATE INDEX IF NOT EXISTS idx_{t}_actor_timestamp ON {t}(actor_id, timestamp)",
            f"CREATE INDEX IF NOT EXISTS idx_{t}_resource_timestamp ON {t}(resource, timestamp)",
            f"CREATE INDEX IF NOT EXISTS idx_{t}_description_fts "
            f"ON {t} USING GIN (to_tsvector('simple', description))",
        ]
        try:
            with self._pool.connection() as conn:
                with conn.transaction():
                    for statement in statements:
                        conn.execute(statement)
        except Exception as e:
            raise self._error("create_schema", e) from e

    # ----- encodings -----

    def _to_db_json(self, value: Any) -> Any:
        return None if value is None else Jsonb(value)

    def _search_clause(self, text: str) -> Tuple[str, str, List[Any]]:
        return (
            "",
            f"to_tsvector('simple', {ALIAS}.description) @@ plainto_tsquery('simple', %s)",
            [text],
        )

    def _insert_sql(self) -> str:
        return super()._insert_sql() + " ON CONFLICT (id) DO NOTHING"

    # ----- driver hooks -----

    def _check_open(self, operation: str) -> None:
        if self._closed:
            raise self._error(operation, RuntimeError("adapter is closed"))

    def _fetchall(self, operation: str, sql: str, params: Sequence[Any]) -> List[tuple]:
        self._check_open(operation)
        try:
            with self._pool.connection() as conn:
                return conn.execute(sql, list(params)).fetchall()
        except Exception as e:
            logger.warning(f"PostgreSQL audit {operation} failed: {e}")
            raise self._error(operation, e) from e

    def _execute(self, operation: str, sql: str, params: Sequence[Any]) -> int:
        self._check_open(operation)
        try:
            with self._pool.connection() as conn:
                with conn.transaction():
                    return conn.execute(sql, list(params)).rowcount
        except Exception as e:
            logger.warning(f"PostgreSQL audit {operation} failed: {e}")
            raise self._error(operation, e) from e

    # ----- contract -----

    def write_batch(self, events: Sequence[AuditEvent]) -> None:
        if not events:
            return
        self._check_open("write_batch")
        sql = self._insert_sql()
        try:
            with self._pool.connection() as conn:
                with conn.transaction():
                    with conn.cursor() as cur:
                        cur.executemany(sql, [self._row_values(e) for e in events])
        except Exception as e:
            raise self._error("write_batch", e) from e

    def health_check(self) -> bool:
        if self._closed:
            return False
        try:
            with self._pool.connection() as conn:
                conn.execute("SELECT 1").fetchone()
            return True
        except Exception as e:
            logger.warning(f"PostgreSQL audit store health check failed: {e}")
            return False

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._owns_pool:
            self._pool.close()
