"""MySQL audit adapter.

JSON columns for the free-form payloads, DATETIME(6) holding naive UTC
for event time and a FULLTEXT index over ``description``.
"""

from datetime import datetime, timezone
from typing import Any, List, Optional, Sequence, Tuple
import logging
import re
import threading

import pymysql

from auditlog.audit.schemas import AuditEvent, as_utc
from auditlog.audit.sql import ALIAS, SQLAuditAdapter
from auditlog.common.constants import StorageConstants


logger = logging.getLogger(__name__)

# Characters with meaning in MySQL boolean full-text mode
_BOOLEAN_OPERATORS = re.compile(r'[+\-<>()~*"@]')


class MySQLAuditAdapter(SQLAuditAdapter):
    """Audit adapter backed by MySQL via PyMySQL."""

    name = "mysql"

    def __init__(
        self,
        host: str = "localhost",
        port: int = StorageConstants.MYSQL_PORT,
        user: Optional[str] = None,
        password: Optional[str] = None,
        database: Optional[str] = None,
        table_name: str = StorageConstants.DEFAULT_TABLE_NAME,
        connection: Optional[Any] = None,
        create_schema: bool = True,
        connect_timeout: int = 10,
    ):
        """Initialize the adapter.

        Args:
            host, port, user, password, database: Connection parameters.
            table_name: Events table name.
            connection: Existing PyMySQL connection to use instead of connecting.
            create_schema: Create the table and indexes if missing.
            connect_timeout: Seconds to wait for the server.
        """
        super().__init__(table_name)
        self._conn = connection or pymysql.connect(
            host=host,
            port=port,
            user=user,
            password=password or "",
            database=database,
            charset="utf8mb4",
            autocommit=False,
            connect_timeout=connect_timeout,
        )
        # A PyMySQL connection is not safe for concurrent use
        self._lock = threading.RLock()
        self._closed = False

        if create_schema:
            self._create_schema()
        logger.info(f"MySQL audit store initialized ({self.table_name})")

    def _create_schema(self) -> None:
        t = self.table_name
        ddl = f"""
            CREATE TABLE IF NOT EXISTS {t} (
                id VARCHAR(64) NOT NULL PRIMARY KEY,
                timestamp DATETIME(6) NOT NULL,
                action VARCHAR(64) NOT NULL,
                resource VARCHAR(255) NOT NULL,
                resource_id VARCHAR(255),
                level VARCHAR(16) NOT NULL,
                actor_id VARCHAR(255),
                actor_type VARCHAR(32),
                target_id VARCHAR(255),
                target_type VARCHAR(255),
                success TINYINT(1) NOT NULL,
                description TEXT NOT NULL,
                context JSON,
                old_values JSON,
                new_values JSON,
                error JSON,
                metadata JSON,
                correlation_id VARCHAR(255),
                INDEX idx_{t}_timestamp (timestamp),
                INDEX idx_{t}_action (action),
                INDEX idx_{t}_level (level),
                INDEX idx_{t}_correlation_id (correlation_id),
                INDEX idx_{t}_actor_timestamp (actor_id, timestamp),
                INDEX idx_{t}_resource_timestamp (resource, timestamp),
                FULLTEXT INDEX idx_{t}_description (description)
            ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
        """
        self._execute("create_schema", ddl, [])

    # ----- encodings -----

    def _to_db_time(self, value: datetime) -> datetime:
        return as_utc(value).replace(tzinfo=None)

    def _from_db_time(self, value: Any) -> datetime:
        return value.replace(tzinfo=timezone.utc)

    def _search_clause(self, text: str) -> Tuple[str, str, List[Any]]:
        terms = _BOOLEAN_OPERATORS.sub(" ", text).split()
        match = " ".join(f"+{term}" for term in terms)
        return "", f"MATCH({ALIAS}.description) AGAINST (%s IN BOOLEAN MODE)", [match]

    def _insert_sql(self) -> str:
        return super()._insert_sql().replace("INSERT INTO", "INSERT IGNORE INTO", 1)

    # ----- driver hooks -----

    def _check_open(self, operation: str) -> None:
        if self._closed:
            raise self._error(operation, RuntimeError("adapter is closed"))

    def _fetchall(self, operation: str, sql: str, params: Sequence[Any]) -> List[tuple]:
        with self._lock:
            self._check_open(operation)
            try:
                with self._conn.cursor() as cur:
                    cur.execute(sql, list(params))
                    rows = list(cur.fetchall())
                self._conn.commit()
                return rows
            except pymysql.MySQLError as e:
                logger.warning(f"MySQL audit {operation} failed: {e}")
                raise self._error(operation, e) from e

    def _execute(self, operation: str, sql: str, params: Sequence[Any]) -> int:
        with self._lock:
            self._check_open(operation)
            try:
                with self._conn.cursor() as cur:
                    affected = cur.execute(sql, list(params) or None)
                self._conn.commit()
                return int(affected or 0)
            except pymysql.MySQLError as e:
                self._conn.rollback()
                logger.warning(f"MySQL audit {operation} failed: {e}")
                raise self._error(operation, e) from e

    # ----- contract -----

    def write_batch(self, events: Sequence[AuditEvent]) -> None:
        if not events:
            return
        sql = self._insert_sql()
        with self._lock:
            self._check_open("write_batch")
            try:
                with self._conn.cursor() as cur:
                    cur.executemany(sql, [self._row_values(e) for e in events])
                self._conn.commit()
            except pymysql.MySQLError as e:
                self._conn.rollback()
                raise self._error("write_batch", e) from e

    def health_check(self) -> bool:
        try:
            with self._lock:
                if self._closed:
                    return False
                self._conn.ping(reconnect=True)
            return True
        except Exception as e:
            logger.warning(f"MySQL audit store health check failed: {e}")
            return False

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._conn.close()
