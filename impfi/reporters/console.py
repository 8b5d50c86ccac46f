from __future__ import annotations

from rich.console import Console
from rich.table import Table

from impfi.model import ScanReport

console = Console()

def render_console(report: ScanReport) -> None:
    t = Table(title=f"Import Finder: {report.root} (*{report.extension}, {report.target_machine})")
    t.add_column("#", justify="right")
    t.add_column("Path", overflow="fold")
    t.add_column("Size (KB)", justify="right")
    t.add_column("Imports found", justify="right")
    t.add_column("Names", overflow="fold")
    for m in report.matches:
        t.add_row(
            str(m.index),
            m.path,
            f"{m.file_size / 1024:.2f}",
            str(m.import_count),
            "\n".join(m.matched),
        )
    if report.matches:
        console.print(t)
    else:
        console.print("[yellow]No matching files.[/yellow]")
    console.print(
        f"{report.files_considered} file(s) considered, {report.files_parsed} parsed, "
        f"{report.files_skipped} skipped, {len(report.failures)} failed, {len(report.matches)} matched."
    )
