from __future__ import annotations

from typing import Any, Dict, List, Optional

from rich import box
from rich.console import Console
from rich.table import Table


def print_results(results: List[Dict[str, Any]], console: Optional[Console] = None) -> None:
    """
    Render phase results as a rich table, one row per environment and phase.
    """
    console = console or Console()

    if not results:
        console.print("[yellow]No phases were run.[/yellow]")
        return

    table = Table(title="Account History Migration", box=box.ROUNDED)
    table.add_column("Env", style="cyan", no_wrap=True)
    table.add_column("Phase", style="blue")
    table.add_column("Rows", justify="right", style="magenta")
    table.add_column("Duration (s)", justify="right", style="green")
    table.add_column("Speed (rows/min)", justify="right", style="bold green")
    table.add_column("Peak Memory (MB)", justify="right", style="yellow")
    table.add_column("Status")

    for res in results:
        mem_bytes = res.get("peak_rss_bytes") or 0
        error = res.get("error")
        table.add_row(
            res.get("env", "?"),
            res.get("phase", "?"),
            f"{res.get('rows', 0):,}",
            f"{res.get('duration_seconds', 0.0):.1f}",
            f"{res.get('throughput_rows_per_min', 0.0):,.2f}",
            f"{mem_bytes / (1024 * 1024):.2f}",
            f"[red]failed: {error}[/red]" if error else "[green]ok[/green]",
        )

    console.print(table)
