from __future__ import annotations

from importlib import metadata
from pathlib import Path
from typing import List, Optional

import typer

from impfi.config import AppConfig, config_to_snapshot, load_config
from impfi.imports import TERMINATION_MODES
from impfi.log import setup_logging
from impfi.pe import resolve_machine
from impfi.reporters.console import render_console
from impfi.reporters.csv_report import write_matches_csv
from impfi.reporters.json_report import write_report_json
from impfi.scanner import ParseOptions, scan_directory

app = typer.Typer(add_completion=False)


def version_callback(value: bool):
    if value:
        try:
            v = metadata.version("impfi")
        except metadata.PackageNotFoundError:
            v = "0.1.0-dev"
        typer.echo(f"impfi version: {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None, "--version", callback=version_callback, is_eager=True, help="Show version and exit."
    ),
):
    """
    Import Finder: list PE files that import any of the given names.
    """
    pass


def _options_from_cfg(cfg: AppConfig) -> ParseOptions:
    try:
        machine = resolve_machine(cfg.parser.target_machine)
    except ValueError as e:
        raise typer.BadParameter(str(e))

    return ParseOptions(
        target_machine=machine,
        thunk_termination=cfg.parser.thunk_termination,
        name_buffer_size=cfg.parser.name_buffer_size,
        max_file_size_bytes=cfg.limits.max_file_size_bytes,
        max_descriptors=cfg.limits.max_descriptors,
        max_symbols_per_module=cfg.limits.max_symbols_per_module,
    )


@app.command()
def scan(
    directory: str = typer.Argument(..., help="Directory to scan."),
    extension: str = typer.Argument(..., help="File extension including the dot, e.g. .sys"),
    names: List[str] = typer.Argument(..., help="Import names to look for (case-sensitive)."),
    config: str = typer.Option(None, "--config", help="Path to YAML config."),
    recursive: bool = typer.Option(False, "--recursive", "-r", help="Recurse into subdirectories."),
    machine: str = typer.Option(None, "--machine", help="Target machine: auto, i386, amd64, ia64, arm64."),
    termination: str = typer.Option(None, "--termination", help="Thunk termination: documented or hint_sentinel."),
    csv_path: str = typer.Option(None, "--csv", help="Write matches to a CSV file."),
    json_path: str = typer.Option(None, "--json", help="Write the full scan report as JSON."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log progress and skipped files."),
):
    """
    Find all files in DIRECTORY with EXTENSION that import any of NAMES.

    Example: impfi scan "C:\\Windows\\System32\\drivers" .sys IoCreateDevice ZwOpenProcess
    """
    cfg = load_config(config)
    if recursive:
        cfg.scan.recursive = True
    if machine:
        cfg.parser.target_machine = machine
    if termination:
        if termination not in TERMINATION_MODES:
            raise typer.BadParameter(f"Unknown termination mode: {termination}")
        cfg.parser.thunk_termination = termination

    setup_logging("DEBUG" if verbose else cfg.logging.level)

    root = Path(directory).expanduser().resolve()
    if not root.is_dir():
        raise typer.BadParameter(f"Not a directory: {root}")
    if not extension.startswith("."):
        typer.secho(
            f"Warning: extension '{extension}' has no leading '.', nothing will match.",
            fg=typer.colors.YELLOW,
            err=True,
        )

    options = _options_from_cfg(cfg)
    report = scan_directory(root, extension, names, options, recursive=cfg.scan.recursive)
    report.config_snapshot = config_to_snapshot(cfg)

    render_console(report)
    if csv_path:
        write_matches_csv(Path(csv_path), report)
    if json_path:
        write_report_json(Path(json_path), report)


if __name__ == "__main__":
    app()
