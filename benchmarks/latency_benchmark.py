import argparse
import tempfile

from auditlog.audit.config import create_audit_adapter
from auditlog.benchmark import AuditBenchmark, format_results
from auditlog.common.logging import get_logger

logger = get_logger(__name__)


def run_adapter_benchmark(kind="sqlite", event_count=1000, concurrency=10, batch_size=50, **options):
    adapter = create_audit_adapter(kind, **options)
    try:
        results = AuditBenchmark(
            adapter,
            event_count=event_count,
            concurrency=concurrency,
            batch_size=batch_size,
        ).run()
    finally:
        adapter.close()
    print(format_results(results))
    return results


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Benchmark an audit storage adapter")
    parser.add_argument("--adapter", default="sqlite", choices=["sqlite", "file"])
    parser.add_argument("--events", type=int, default=1000)
    parser.add_argument("--concurrency", type=int, default=10)
    parser.add_argument("--batch-size", type=int, default=50)
    args = parser.parse_args()

    workdir = tempfile.mkdtemp(prefix="audit_bench_")
    if args.adapter == "sqlite":
        options = {"database": f"{workdir}/bench.db"}
    else:
        options = {"file_path": f"{workdir}/audit.jsonl"}
    run_adapter_benchmark(args.adapter, args.events, args.concurrency, args.batch_size, **options)
