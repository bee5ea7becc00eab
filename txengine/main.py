from __future__ import annotations

import sys
from typing import Optional

import typer

from txengine.bench import available_workloads, build_executor, run_workloads
from txengine.config import get_settings
from txengine.domain.models import Statement
from txengine.errors import EngineError
from txengine.reporter import print_results
from txengine.transaction import Select
from txengine.utils.logging import configure_logging

app = typer.Typer(help="txengine: pooled, retrying transaction engine for PostgreSQL.")


@app.command()
def info() -> None:
    """
    Show effective configuration values.
    """
    settings = get_settings()
    retries = settings.conflict_retry_limit or "unbounded"
    typer.echo(
        f"DB={settings.db_user}@{settings.db_host}:{settings.db_port}/{settings.db_name} | "
        f"pool={settings.pool_stripes}x{settings.pool_stripe_size} "
        f"idle_timeout={settings.pool_idle_timeout}s | "
        f"isolation={settings.isolation_level} conflict_retries={retries}"
    )


@app.command()
def check() -> None:
    """
    Run a trivial query through the pool and executor.
    """
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)
    executor = build_executor()
    try:
        rows = executor.read(Select(Statement("SELECT 1"), into=int))
    except EngineError as exc:
        typer.echo(f"Database check failed: {exc}", err=True)
        raise typer.Exit(code=1)
    finally:
        executor.pool.shutdown()
    typer.echo(f"Database reachable (SELECT 1 -> {rows[0]}).")


@app.command()
def bench(
    workload: str = typer.Option(
        "all",
        "--workload",
        "--workloads",
        "-w",
        help="Workload to run (point_select, stream_scan, transfer, all, or 'list').",
    ),
    transactions: Optional[int] = typer.Option(
        None,
        "--transactions",
        "-n",
        help="Units of work per workload (default from settings).",
    ),
    concurrency: Optional[int] = typer.Option(
        None,
        "--concurrency",
        "-c",
        help="Worker threads (default from settings).",
    ),
) -> None:
    """
    Run benchmark workloads through the executor and persist results.
    """
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)

    if workload == "list":
        typer.echo("Available workloads: " + ", ".join(available_workloads()))
        return

    names = ["all"] if workload == "all" else [workload]
    results = run_workloads(
        workload_names=names,
        transactions=transactions,
        concurrency=concurrency,
        persist=True,
    )
    print_results(list(results))


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
