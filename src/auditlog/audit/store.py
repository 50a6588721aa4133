"""Audit Store - Abstraction for audit event persistence.

This module provides the interface every storage backend implements,
decoupling the logger engine from specific persistence mechanisms, plus
the JSONL file backend.

Design principles:
- ABC-based interface for testability and extensibility
- Write failures surface as AdapterError so the engine can retry them
- Read and maintenance failures propagate to the caller
- Health checks never raise
"""

from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence
import fcntl
import hashlib
import json
import logging
import os
import threading

from pydantic import ValidationError

from auditlog.audit.matching import compute_stats, matches_filter, paginate
from auditlog.audit.schemas import AuditEvent, AuditStats, EventFilter, PaginatedResult, as_utc
from auditlog.common.constants import StorageConstants
from auditlog.common.exceptions import AdapterError, AuditLogIntegrityError


logger = logging.getLogger(__name__)


class AuditAdapter(ABC):
    """Abstract base class for audit storage backends.

    Implementations persist events without ever mutating them. A single
    adapter instance is owned by one logger engine.
    """

    name: str = "adapter"

    def write(self, event: AuditEvent) -> None:
        """Persist one event.

        Raises:
            AdapterError: If the write fails
        """
        self.write_batch([event])

    @abstractmethod
    def write_batch(self, events: Sequence[AuditEvent]) -> None:
        """Persist a batch of events atomically where the backend allows.

        An empty batch is a no-op.

        Raises:
            AdapterError: If the write fails
        """
        pass

    @abstractmethod
    def query(self, event_filter: EventFilter) -> PaginatedResult:
        """Return one page of events matching the filter."""
        pass

    @abstractmethod
    def count(self, event_filter: EventFilter) -> int:
        """Count events matching the filter, ignoring pagination."""
        pass

    @abstractmethod
    def get_stats(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> AuditStats:
        """Aggregate counts over ``start_date <= timestamp < end_date``."""
        pass

    @abstractmethod
    def purge(self, older_than: datetime) -> int:
        """Delete events with timestamp strictly before ``older_than``.

        Returns:
            Number of events removed
        """
        pass

    @abstractmethod
    def health_check(self) -> bool:
        """Cheap liveness probe. Must not raise."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release connections and handles. Idempotent."""
        pass

    def _error(self, operation: str, exc: Exception) -> AdapterError:
        return AdapterError(
            f"{self.name} {operation} failed: {exc}",
            adapter=self.name,
            operation=operation,
        )


class FileAuditAdapter(AuditAdapter):
    """File-based audit adapter with JSONL format and hash chain integrity.

    Features:
    - Append-only JSONL with size-based rotation (audit.jsonl, audit.jsonl.1, ...)
    - Hash chain across rotated files for tamper detection
    - Atomic batch appends with file locking
    - Queries evaluated by scanning every retained file
    """

    name = "file"

    def __init__(
        self,
        file_path: str,
        max_file_size: int = StorageConstants.FILE_MAX_BYTES,
        max_files: int = StorageConstants.FILE_MAX_FILES,
        enable_hash_chain: bool = True,
        hash_algorithm: str = StorageConstants.HASH_ALGORITHM,
        fsync_on_write: bool = False,
    ):
        """Initialize file audit adapter.

        Args:
            file_path: Path of the active log file.
            max_file_size: Rotate once the active file reaches this many bytes.
            max_files: Total files kept, active file included.
            enable_hash_chain: Whether to enable hash chain integrity.
            hash_algorithm: Hash algorithm for integrity checks.
            fsync_on_write: Whether to fsync after each batch (slower but safer).
        """
        if max_files < 1:
            raise ValueError("max_files must be at least 1")
        self.file_path = Path(file_path)
        self.max_file_size = max_file_size
        self.max_files = max_files
        self.enable_hash_chain = enable_hash_chain
        self.hash_algorithm = hash_algorithm
        self.fsync_on_write = fsync_on_write

        self._lock = threading.RLock()
        self._closed = False

        self.file_path.parent.mkdir(parents=True, exist_ok=True)

        self._last_hash: Optional[str] = None
        if self.enable_hash_chain:
            self._last_hash = self._scan_for_last_hash()

    # ----- file layout -----

    def _rotated_path(self, index: int) -> Path:
        return self.file_path.with_name(f"{self.file_path.name}.{index}")

    def get_log_files(self) -> List[Path]:
        """Retained log files, oldest first."""
        files = [
            self._rotated_path(i)
            for i in range(self.max_files - 1, 0, -1)
            if self._rotated_path(i).exists()
        ]
        if self.file_path.exists():
            files.append(self.file_path)
        return files

    def _rotate_if_needed(self) -> None:
        try:
            size = self.file_path.stat().st_size
        except FileNotFoundError:
            return
        if size < self.max_file_size:
            return

        if self.max_files == 1:
            self.file_path.unlink()
            return

        oldest = self._rotated_path(self.max_files - 1)
        if oldest.exists():
            oldest.unlink()
        for i in range(self.max_files - 2, 0, -1):
            src = self._rotated_path(i)
            if src.exists():
                src.rename(self._rotated_path(i + 1))
        self.file_path.rename(self._rotated_path(1))
        logger.info(f"Rotated audit log {self.file_path}")

    # ----- hash chain -----

    def _compute_hash(self, content: str) -> str:
        """Compute hash of content using configured algorithm."""
        hasher = hashlib.new(self.hash_algorithm)
        hasher.update(content.encode("utf-8"))
        return hasher.hexdigest()

    def _serialize_for_hash(self, record: Dict[str, Any]) -> str:
        """Serialize a record canonically for hash computation."""
        return json.dumps(record, sort_keys=True, ensure_ascii=False)

    def _seal(self, record: Dict[str, Any], previous_hash: Optional[str]) -> Dict[str, Any]:
        record = dict(record)
        record["previous_hash"] = previous_hash
        record["entry_hash"] = None
        record["entry_hash"] = self._compute_hash(self._serialize_for_hash(record))
        return record

    def _scan_for_last_hash(self) -> Optional[str]:
        last_hash = None
        for _, record in self._iter_records():
            last_hash = record.get("entry_hash", last_hash)
        return last_hash

    def get_last_hash(self) -> Optional[str]:
        return self._last_hash

    def verify_integrity(self) -> bool:
        """Verify the hash chain across every retained file.

        The first retained entry may point at a hash from a file that
        rotation already discarded; every later link must match.

        Raises:
            AuditLogIntegrityError: If the chain is broken or an entry was altered
        """
        if not self.enable_hash_chain:
            return True

        previous_hash = None
        first = True
        for path in self.get_log_files():
            with open(path, "r") as f:
                for line_number, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        record = json.loads(line)
                    except json.JSONDecodeError as e:
                        raise AuditLogIntegrityError(
                            f"Malformed JSON in {path.name} at line {line_number}: {e}"
                        )

                    if not first and record.get("previous_hash") != previous_hash:
                        raise AuditLogIntegrityError(
                            f"Hash chain broken in {path.name} at line {line_number}. "
                            f"Expected previous_hash={previous_hash}, "
                            f"got {record.get('previous_hash')}",
                            details={"file": path.name, "line": line_number},
                        )

                    stored_hash = record.get("entry_hash")
                    record["entry_hash"] = None
                    if self._compute_hash(self._serialize_for_hash(record)) != stored_hash:
                        raise AuditLogIntegrityError(
                            f"Entry hash mismatch in {path.name} at line {line_number}. "
                            f"Entry may have been tampered with.",
                            details={"file": path.name, "line": line_number},
                        )

                    previous_hash = stored_hash
                    first = False

        return True

    # ----- writes -----

    def _append_lines(self, lines: List[str]) -> None:
        fd = os.open(
            str(self.file_path),
            os.O_WRONLY | os.O_CREAT | os.O_APPEND,
            0o600
        )
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            try:
                os.write(fd, "".join(lines).encode("utf-8"))
                if self.fsync_on_write:
                    os.fsync(fd)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def write_batch(self, events: Sequence[AuditEvent]) -> None:
        if not events:
            return
        with self._lock:
            if self._closed:
                raise AdapterError(
                    "File adapter is closed", adapter=self.name, operation="write_batch"
                )
            last_hash = self._last_hash
            lines = []
            for event in events:
                record = event.to_record()
                if self.enable_hash_chain:
                    record = self._seal(record, last_hash)
                    last_hash = record["entry_hash"]
                lines.append(json.dumps(record, ensure_ascii=False) + "\n")

            try:
                self._rotate_if_needed()
                self._append_lines(lines)
            except OSError as e:
                raise self._error("write_batch", e) from e

            self._last_hash = last_hash

    # ----- reads -----

    def _iter_records(self) -> Iterator[tuple]:
        for path in self.get_log_files():
            with open(path, "r") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        yield path, json.loads(line)
                    except json.JSONDecodeError as e:
                        logger.warning(f"Skipped malformed audit line in {path.name}: {e}")

    def _iter_events(self) -> Iterator[AuditEvent]:
        for path, record in self._iter_records():
            try:
                yield AuditEvent.model_validate(record)
            except ValidationError as e:
                logger.warning(f"Skipped invalid audit record in {path.name}: {e}")

    def _read_all(self, operation: str) -> List[AuditEvent]:
        with self._lock:
            try:
                return list(self._iter_events())
            except OSError as e:
                raise self._error(operation, e) from e

    def query(self, event_filter: EventFilter) -> PaginatedResult:
        return paginate(self._read_all("query"), event_filter)

    def count(self, event_filter: EventFilter) -> int:
        return sum(1 for e in self._read_all("count") if matches_filter(e, event_filter))

    def get_stats(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> AuditStats:
        return compute_stats(self._read_all("get_stats"), start_date, end_date)

    def purge(self, older_than: datetime) -> int:
        """Rewrite the log keeping only events at or after ``older_than``.

        Retained events are consolidated into the active file and the
        hash chain is re-sealed from the first kept entry.
        """
        older_than = as_utc(older_than)
        with self._lock:
            try:
                kept = []
                removed = 0
                for _, record in self._iter_records():
                    record.pop("previous_hash", None)
                    record.pop("entry_hash", None)
                    timestamp = AuditEvent.model_validate(record).timestamp
                    if timestamp < older_than:
                        removed += 1
                    else:
                        kept.append(record)

                if removed == 0:
                    return 0

                last_hash = None
                lines = []
                for record in kept:
                    if self.enable_hash_chain:
                        record = self._seal(record, last_hash)
                        last_hash = record["entry_hash"]
                    lines.append(json.dumps(record, ensure_ascii=False) + "\n")

                tmp_path = self.file_path.with_name(self.file_path.name + ".tmp")
                with open(tmp_path, "w") as f:
                    f.writelines(lines)
                for path in self.get_log_files():
                    if path != self.file_path:
                        path.unlink()
                os.replace(tmp_path, self.file_path)
                self._last_hash = last_hash
            except (OSError, ValidationError) as e:
                raise self._error("purge", e) from e

        logger.info(f"Purged {removed} audit events older than {older_than.isoformat()}")
        return removed

    # ----- lifecycle -----

    def health_check(self) -> bool:
        probe = self.file_path.with_name(".healthcheck")
        try:
            probe.write_text("ok")
            probe.unlink()
            return True
        except OSError as e:
            logger.warning(f"File audit adapter health check failed: {e}")
            return False

    def close(self) -> None:
        with self._lock:
            self._closed = True
