from __future__ import annotations

from typing import Any, Dict, List

from rich import box
from rich.console import Console
from rich.table import Table


def print_results(results: List[Dict[str, Any]], console: Console | None = None) -> None:
    """
    Render workload results as a rich table, best throughput first.
    """
    console = console or Console()

    if not results:
        console.print("[yellow]No results to display.[/yellow]")
        return

    table = Table(
        title="txengine Benchmark Results",
        box=box.ROUNDED,
        caption="Sorted by Throughput (descending)",
    )

    table.add_column("Workload", style="cyan", no_wrap=True)
    table.add_column("Transactions", justify="right", style="magenta")
    table.add_column("Errors", justify="right", style="red")
    table.add_column("Rows", justify="right", style="magenta")
    table.add_column("Duration (s)", justify="right", style="green")
    table.add_column("Throughput (tx/s)", justify="right", style="bold green")
    table.add_column("Peak Memory (MB)", justify="right", style="yellow")
    table.add_column("CPU %", justify="right", style="red")

    sorted_results = sorted(
        results, key=lambda r: r.get("transactions_per_sec", 0.0), reverse=True
    )

    for res in sorted_results:
        mem_bytes = res.get("peak_rss_bytes") or 0
        cpu = res.get("cpu_percent") or 0.0
        table.add_row(
            res.get("workload", "Unknown"),
            f"{res.get('transactions', 0):,}",
            f"{res.get('errors', 0):,}",
            f"{res.get('rows', 0):,}",
            f"{res.get('duration_seconds', 0.0):.2f}",
            f"{res.get('transactions_per_sec', 0.0):,.2f}",
            f"{mem_bytes / (1024 * 1024):.2f}",
            f"{cpu:.1f}",
        )

    console.print(table)


__all__ = ["print_results"]
