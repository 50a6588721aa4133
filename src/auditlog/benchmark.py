"""Adapter benchmark - throughput and latency percentiles for a storage adapter.

Runs health check, single writes, batch writes, reads and filtered queries
against an ``AuditAdapter`` from a thread pool and summarizes the latency
distribution with numpy.
"""

import concurrent.futures
import logging
import time
import tracemalloc
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from auditlog.audit.schemas import (
    ActorType,
    AuditAction,
    AuditContext,
    AuditEvent,
    AuditLevel,
    EventFilter,
)
from auditlog.audit.store import AuditAdapter
from auditlog.audit.validators import create_timestamp, generate_audit_id

logger = logging.getLogger(__name__)

BENCH_ACTIONS = [
    AuditAction.LOGIN, AuditAction.LOGOUT, AuditAction.REGISTER, AuditAction.UPDATE,
    AuditAction.CREATE, AuditAction.READ, AuditAction.DELETE, AuditAction.API_CALL,
    AuditAction.SYSTEM_START, AuditAction.SYSTEM_STOP,
]
BENCH_ACTOR_TYPES = [ActorType.USER, ActorType.SYSTEM, ActorType.SERVICE, ActorType.ADMIN]
BENCH_RESOURCES = ["document", "user", "api_endpoint", "system"]
BENCH_LEVELS = [AuditLevel.LOW, AuditLevel.MEDIUM, AuditLevel.HIGH, AuditLevel.CRITICAL]


@dataclass
class OperationResult:
    """Timings for one kind of operation."""
    count: int = 0
    total_time_ms: float = 0.0
    latencies_ms: List[float] = field(default_factory=list)
    success_count: int = 0
    error_count: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def average_ms(self) -> float:
        return self.total_time_ms / self.count if self.count else 0.0

    @property
    def success_rate(self) -> float:
        return 100.0 * self.success_count / self.count if self.count else 0.0


@dataclass
class BenchmarkResults:
    total_time_ms: float = 0.0
    events_per_second: float = 0.0
    average_latency_ms: float = 0.0
    p95_latency_ms: float = 0.0
    p99_latency_ms: float = 0.0
    peak_memory_bytes: int = 0
    healthy: bool = False
    health_response_ms: float = 0.0
    operations: Dict[str, OperationResult] = field(default_factory=dict)


def percentile(latencies: Sequence[float], q: float) -> float:
    """Nearest-rank percentile; 0.0 for an empty sample."""
    if len(latencies) == 0:
        return 0.0
    return float(np.percentile(np.asarray(latencies, dtype=float), q, method="higher"))


class AuditBenchmark:
    """Performance benchmark for an audit storage adapter."""

    def __init__(
        self,
        adapter: AuditAdapter,
        event_count: int = 1000,
        concurrency: int = 10,
        batch_size: int = 50,
        include_reads: bool = True,
        include_queries: bool = True,
        event_generator: Optional[Callable[[], AuditEvent]] = None,
        seed: Optional[int] = None,
    ):
        self.adapter = adapter
        self.event_count = event_count
        self.concurrency = concurrency
        self.batch_size = batch_size
        self.include_reads = include_reads
        self.include_queries = include_queries
        self.event_generator = event_generator
        self._rng = np.random.default_rng(seed)

    def run(self) -> BenchmarkResults:
        """Run every enabled phase and aggregate the results."""
        logger.info(
            f"Starting audit adapter benchmark: adapter={self.adapter.name}, "
            f"events={self.event_count}, concurrency={self.concurrency}"
        )
        results = BenchmarkResults()
        tracemalloc.start()
        start = time.perf_counter()
        try:
            results.healthy, results.health_response_ms = self._benchmark_health()
            results.operations["write"] = self._benchmark_writes()
            results.operations["batch_write"] = self._benchmark_batch_writes()
            if self.include_reads:
                results.operations["read"] = self._benchmark_reads()
            if self.include_queries:
                results.operations["query"] = self._benchmark_queries()
        finally:
            _, peak = tracemalloc.get_traced_memory()
            tracemalloc.stop()

        results.total_time_ms = (time.perf_counter() - start) * 1000
        results.peak_memory_bytes = peak
        written = self.event_count * 2
        if results.total_time_ms > 0:
            results.events_per_second = written / (results.total_time_ms / 1000)

        latencies = [lat for op in results.operations.values() for lat in op.latencies_ms]
        results.average_latency_ms = float(np.mean(latencies)) if latencies else 0.0
        results.p95_latency_ms = percentile(latencies, 95)
        results.p99_latency_ms = percentile(latencies, 99)

        logger.info("Benchmark completed")
        return results

    # ----- phases -----

    def _benchmark_health(self):
        start = time.perf_counter()
        healthy = bool(self.adapter.health_check())
        return healthy, (time.perf_counter() - start) * 1000

    def _benchmark_writes(self) -> OperationResult:
        logger.info(f"Benchmarking {self.event_count} individual writes...")
        events = self.generate_events(self.event_count)
        return self._timed([lambda e=e: self.adapter.write(e) for e in events])

    def _benchmark_batch_writes(self) -> OperationResult:
        logger.info(f"Benchmarking batch writes (batch size: {self.batch_size})...")
        events = self.generate_events(self.event_count)
        batches = [events[i:i + self.batch_size] for i in range(0, len(events), self.batch_size)]
        return self._timed([lambda b=b: self.adapter.write_batch(b) for b in batches])

    def _benchmark_reads(self) -> OperationResult:
        logger.info("Benchmarking read operations...")
        read_count = max(1, min(100, self.event_count // 10))
        page = EventFilter(limit=10)
        return self._timed([lambda: self.adapter.query(page) for _ in range(read_count)])

    def _benchmark_queries(self) -> OperationResult:
        logger.info("Benchmarking query operations...")
        now = create_timestamp()
        filters = [
            EventFilter(actions=[AuditAction.LOGIN], limit=20),
            EventFilter(levels=[AuditLevel.HIGH, AuditLevel.CRITICAL], limit=20),
            EventFilter(actor_ids=["user_123"], limit=20),
            EventFilter(success=False, limit=20),
            EventFilter(start_date=now - timedelta(days=1), end_date=now + timedelta(minutes=1), limit=20),
        ]
        calls = [lambda f=f: self.adapter.query(f) for f in filters for _ in range(5)]
        return self._timed(calls)

    def _timed(self, calls: List[Callable[[], object]]) -> OperationResult:
        result = OperationResult(count=len(calls))

        def _run(call):
            start = time.perf_counter()
            try:
                call()
                return (time.perf_counter() - start) * 1000, None
            except Exception as e:
                return (time.perf_counter() - start) * 1000, str(e)

        start = time.perf_counter()
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.concurrency) as executor:
            for latency, error in executor.map(_run, calls):
                result.latencies_ms.append(latency)
                if error is None:
                    result.success_count += 1
                else:
                    result.error_count += 1
                    result.errors.append(error)
        result.total_time_ms = (time.perf_counter() - start) * 1000
        return result

    # ----- data -----

    def generate_events(self, count: int) -> List[AuditEvent]:
        """Synthetic events with a 90% success rate."""
        if self.event_generator is not None:
            return [self.event_generator() for _ in range(count)]

        rng = self._rng
        events = []
        for _ in range(count):
            actor_type = BENCH_ACTOR_TYPES[rng.integers(len(BENCH_ACTOR_TYPES))]
            resource = BENCH_RESOURCES[rng.integers(len(BENCH_RESOURCES))]
            action = BENCH_ACTIONS[rng.integers(len(BENCH_ACTIONS))]
            events.append(AuditEvent(
                id=generate_audit_id(),
                timestamp=create_timestamp(),
                action=action,
                level=BENCH_LEVELS[rng.integers(len(BENCH_LEVELS))],
                resource=resource,
                resource_id=f"{resource}_{rng.integers(1000)}",
                actor_id=f"{actor_type.value}_{rng.integers(1000)}",
                actor_type=actor_type,
                success=bool(rng.random() > 0.1),
                description=f"Benchmark {action.value} {resource}",
                context=AuditContext(user_agent="Benchmark/1.0", ip_address="127.0.0.1"),
                metadata={"benchmark": True, "iteration": int(rng.integers(count))},
            ))
        return events


def format_results(results: BenchmarkResults) -> str:
    """Human-readable report."""
    lines = [
        "=== Audit Adapter Benchmark Results ===",
        f"  Total Time:      {results.total_time_ms:.2f} ms",
        f"  Events/Second:   {results.events_per_second:.2f}",
        f"  Average Latency: {results.average_latency_ms:.2f} ms",
        f"  P95:             {results.p95_latency_ms:.2f} ms",
        f"  P99:             {results.p99_latency_ms:.2f} ms",
        f"  Peak Memory:     {results.peak_memory_bytes / 1024 / 1024:.2f} MB",
        f"  Health:          {'healthy' if results.healthy else 'unhealthy'} "
        f"({results.health_response_ms:.2f} ms)",
    ]
    for name, op in results.operations.items():
        lines.append(f"  {name}:")
        lines.append(f"    Count: {op.count}  Average: {op.average_ms:.2f} ms  Success: {op.success_rate:.1f}%")
        if op.error_count:
            lines.append(f"    Errors: {op.error_count} ({', '.join(op.errors[:3])})")
    lines.append("-" * 40)
    return "\n".join(lines)
