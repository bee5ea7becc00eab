"""
Benchmark workloads for the transaction engine.

Runs transaction workloads through a TransactionExecutor from several threads,
profiling each workload and persisting the results.

Usage (example from CLI):
    from txengine.bench import run_workloads

    results = run_workloads(workload_names=["point_select", "transfer"], transactions=5_000)

Outputs are saved to `results/` by default:
- `results/latest.json` (last run)
- `results/run-<timestamp>.json` (timestamped archive)
"""

from __future__ import annotations

import json
import random
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Protocol, TypedDict

from pydantic import BaseModel

from txengine.config import get_settings
from txengine.domain.models import PoolSettings, Statement
from txengine.errors import EngineError
from txengine.infrastructure.pool import ConnectionPool
from txengine.infrastructure.postgres import PsycopgDriver
from txengine.transaction import (
    AdminTransaction,
    Insert,
    ReadTransaction,
    Select,
    TransactionExecutor,
    WriteTransaction,
)
from txengine.utils.logging import get_logger
from txengine.utils.profiler import ProfileStats, profile_block

log = get_logger(__name__)

BENCH_TABLE = "txengine_bench"
DEFAULT_TABLE_ROWS = 10_000
SCAN_WIDTH = 100


class Account(BaseModel):
    id: int
    balance: int

    model_config = {"frozen": True}


class WorkloadResult(TypedDict, total=False):
    workload: str
    transactions: int
    errors: int
    rows: int
    duration_seconds: float
    transactions_per_sec: float
    peak_rss_bytes: Optional[int]
    cpu_percent: Optional[float]


class Workload(Protocol):
    """
    One benchmark scenario.

    ``run_one`` executes a single unit of work and returns the rows it
    touched.
    """

    name: str
    description: str

    def run_one(self, executor: TransactionExecutor, rng: random.Random) -> int:
        ...


class PointSelectWorkload:
    name = "point_select"
    description = "Single-row select by primary key (direct, no transaction)."

    def __init__(self, table_rows: int) -> None:
        self.table_rows = table_rows

    def run_one(self, executor: TransactionExecutor, rng: random.Random) -> int:
        statement = Statement(
            f"SELECT id, balance FROM {BENCH_TABLE} WHERE id = $1",
            (rng.randint(1, self.table_rows),),
        )
        return len(executor.read(Select(statement, into=Account)))


class StreamScanWorkload:
    name = "stream_scan"
    description = "Range scan consumed through a result stream in a read transaction."

    def __init__(self, table_rows: int) -> None:
        self.table_rows = table_rows

    def run_one(self, executor: TransactionExecutor, rng: random.Random) -> int:
        low = rng.randint(1, max(1, self.table_rows - SCAN_WIDTH))
        statement = Statement(
            f"SELECT id, balance FROM {BENCH_TABLE} WHERE id BETWEEN $1 AND $2 ORDER BY id",
            (low, low + SCAN_WIDTH - 1),
        )

        def scan(tx: ReadTransaction) -> int:
            return sum(1 for _ in tx.select(statement, into=Account))

        return executor.read(scan)


class TransferWorkload:
    name = "transfer"
    description = "Two updates in a serializable write transaction (retried on conflict)."

    def __init__(self, table_rows: int) -> None:
        self.table_rows = table_rows

    def run_one(self, executor: TransactionExecutor, rng: random.Random) -> int:
        source, target = rng.sample(range(1, self.table_rows + 1), 2)
        debit = Statement(f"UPDATE {BENCH_TABLE} SET balance = balance - $1 WHERE id = $2", (1, source))
        credit = Statement(f"UPDATE {BENCH_TABLE} SET balance = balance + $1 WHERE id = $2", (1, target))

        def transfer(tx: WriteTransaction) -> int:
            return tx.update(debit) + tx.update(credit)

        return executor.write(transfer)


def _workload_factories(table_rows: int) -> Dict[str, Callable[[], Workload]]:
    """Registry of available workloads."""
    return {
        "point_select": lambda: PointSelectWorkload(table_rows),
        "stream_scan": lambda: StreamScanWorkload(table_rows),
        "transfer": lambda: TransferWorkload(table_rows),
    }


def available_workloads() -> List[str]:
    """List available workload names."""
    return sorted(_workload_factories(DEFAULT_TABLE_ROWS).keys())


def _resolve_workload(name: str, table_rows: int) -> Workload:
    factories = _workload_factories(table_rows)
    if name not in factories:
        raise ValueError(f"Unknown workload '{name}'. Available: {', '.join(factories)}")
    return factories[name]()


def seed_table(executor: TransactionExecutor, table_rows: int) -> None:
    """(Re)create the benchmark table with ``table_rows`` accounts."""

    def seed(tx: AdminTransaction) -> None:
        tx.create(Statement(f"DROP TABLE IF EXISTS {BENCH_TABLE}"))
        tx.create(
            Statement(f"CREATE TABLE {BENCH_TABLE} (id BIGINT PRIMARY KEY, balance BIGINT NOT NULL)")
        )

    executor.admin(seed)
    executor.write(
        Insert(
            Statement(
                f"INSERT INTO {BENCH_TABLE} (id, balance) SELECT g, 1000 FROM generate_series(1, $1) AS g",
                (table_rows,),
            )
        )
    )
    log.info("Benchmark table seeded", extra={"table": BENCH_TABLE, "rows": table_rows})


def _run_workload(
    workload: Workload, executor: TransactionExecutor, transactions: int, concurrency: int
) -> WorkloadResult:
    counts = {"rows": 0, "errors": 0}
    lock = threading.Lock()

    def worker(seed: int) -> None:
        rng = random.Random(seed)
        try:
            rows = workload.run_one(executor, rng)
        except EngineError:
            log.exception(f"[WORKLOAD ERROR] {workload.name}", extra={"workload": workload.name})
            with lock:
                counts["errors"] += 1
        else:
            with lock:
                counts["rows"] += rows

    with profile_block(workload.name) as stats:
        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix=workload.name) as pool:
            list(pool.map(worker, range(transactions)))

    return _merge_result(workload.name, transactions, counts["rows"], counts["errors"], stats)


def _merge_result(
    name: str, transactions: int, rows: int, errors: int, stats: ProfileStats
) -> WorkloadResult:
    """Combine workload counters with profiler stats, rounding floats for readability."""
    duration = stats.duration_seconds
    completed = transactions - errors
    return WorkloadResult(
        workload=name,
        transactions=transactions,
        errors=errors,
        rows=rows,
        duration_seconds=round(duration, 3),
        transactions_per_sec=round(completed / duration, 2) if duration > 0 else 0.0,
        peak_rss_bytes=stats.peak_rss_bytes,
        cpu_percent=round(stats.cpu_percent, 1) if stats.cpu_percent is not None else None,
    )


def _persist_results(payload: dict, results_dir: Path) -> None:
    results_dir.mkdir(parents=True, exist_ok=True)
    latest_path = results_dir / "latest.json"
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    archive_path = results_dir / f"run-{timestamp}.json"

    for path in (latest_path, archive_path):
        with path.open("w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, sort_keys=True)

    log.info("Results persisted", extra={"latest": str(latest_path), "archive": str(archive_path)})


def build_executor() -> TransactionExecutor:
    """Executor over a PostgreSQL pool configured from settings."""
    settings = get_settings()
    pool = ConnectionPool(PsycopgDriver.from_settings(settings), PoolSettings.from_settings(settings))
    return TransactionExecutor(
        pool,
        fetch_batch_size=settings.fetch_batch_size,
        conflict_retry_limit=settings.conflict_retry_limit,
    )


def run_workloads(
    workload_names: Optional[Iterable[str]] = None,
    transactions: Optional[int] = None,
    concurrency: Optional[int] = None,
    table_rows: int = DEFAULT_TABLE_ROWS,
    executor: Optional[TransactionExecutor] = None,
    seed: bool = True,
    results_dir: Path | str = "results",
    persist: bool = True,
) -> List[WorkloadResult]:
    """
    Run one or more workloads and optionally persist the results.

    Parameters
    ----------
    workload_names : iterable[str] | None
        Workloads to execute. If None or ["all"], executes all available.
    transactions : int | None
        Units of work per workload. Defaults to settings.bench_transactions.
    concurrency : int | None
        Worker threads. Defaults to settings.bench_concurrency.
    table_rows : int
        Size of the benchmark table.
    executor : TransactionExecutor | None
        Executor to use; one is built from settings (and shut down afterwards)
        when omitted.
    seed : bool
        Whether to (re)create the benchmark table first.
    results_dir : Path | str
        Directory to store JSON artifacts.
    persist : bool
        Whether to write results to disk.
    """
    settings = get_settings()
    transactions = transactions or settings.bench_transactions
    concurrency = concurrency or settings.bench_concurrency

    names = list(workload_names) if workload_names is not None else ["all"]
    if len(names) == 1 and names[0] == "all":
        names = available_workloads()
    workloads = [_resolve_workload(name, table_rows) for name in names]

    owned = executor is None
    executor = executor or build_executor()
    results: List[WorkloadResult] = []
    try:
        if seed:
            seed_table(executor, table_rows)
        for workload in workloads:
            log.info(f"[WORKLOAD START] {workload.name}", extra={"workload": workload.name})
            result = _run_workload(workload, executor, transactions, concurrency)
            results.append(result)
            log.info(
                f"[WORKLOAD COMPLETE] {workload.name}",
                extra={
                    "workload": workload.name,
                    "tps": result["transactions_per_sec"],
                    "errors": result["errors"],
                },
            )
    finally:
        if owned:
            executor.pool.shutdown()

    if persist:
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "transactions": transactions,
            "concurrency": concurrency,
            "workloads": names,
            "results": results,
        }
        _persist_results(payload, Path(results_dir))

    return results


__all__ = [
    "Account",
    "WorkloadResult",
    "available_workloads",
    "build_executor",
    "run_workloads",
    "seed_table",
]
