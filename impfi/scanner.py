from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from impfi.byte_source import ByteSource
from impfi.errors import PeParseError
from impfi.imports import TERMINATION_DOCUMENTED, ImportedModule, read_import_table
from impfi.lister import iter_candidate_files
from impfi.model import ImportMatch, ScanFailure, ScanReport
from impfi.pe import IMAGE_FILE_MACHINE_AMD64, MACHINE_NAMES, read_headers, read_section_table

log = logging.getLogger(__name__)

STATUS_MATCHED = "matched"
STATUS_NO_MATCH = "no_match"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"


@dataclass(frozen=True)
class ParseOptions:
    target_machine: int = IMAGE_FILE_MACHINE_AMD64
    thunk_termination: str = TERMINATION_DOCUMENTED
    name_buffer_size: int = 32

    # Bounds for corrupt inputs
    max_file_size_bytes: int = 200_000_000
    max_descriptors: int = 4096
    max_symbols_per_module: int = 65536


@dataclass
class FileOutcome:
    path: Path
    status: str
    file_size: int = 0
    modules: List[ImportedModule] = field(default_factory=list)
    match: Optional[ImportMatch] = None
    failure: Optional[ScanFailure] = None


def parse_imports(source: ByteSource, options: ParseOptions = ParseOptions()) -> List[ImportedModule]:
    """Headers, then section table, then import walk. Raises PeParseError on the first failure."""
    _, nt = read_headers(source, target_machine=options.target_machine)
    sections = read_section_table(source, nt)
    return read_import_table(
        source,
        nt,
        sections,
        termination=options.thunk_termination,
        name_buffer_size=options.name_buffer_size,
        max_descriptors=options.max_descriptors,
        max_symbols_per_module=options.max_symbols_per_module,
    )


def match_imports(modules: Iterable[ImportedModule], targets: Iterable[str]) -> Tuple[List[str], int]:
    """
    Returns (matched_names, hit_count).
    matched_names keeps first-seen thunk order without duplicates;
    hit_count counts every occurrence across modules.
    """
    wanted = set(targets)
    matched: List[str] = []
    seen = set()
    hits = 0
    for module in modules:
        for name in module.symbol_names:
            if name in wanted:
                hits += 1
                if name not in seen:
                    seen.add(name)
                    matched.append(name)
    return matched, hits


def _failure(path: Path, err: PeParseError) -> ScanFailure:
    return ScanFailure(path=str(path), code=err.code, kind=err.kind.value, stage=err.stage, message=err.message)


def scan_file(path: Path, targets: Sequence[str], options: ParseOptions = ParseOptions()) -> FileOutcome:
    try:
        with ByteSource.open(path) as source:
            size = source.size
            if size > options.max_file_size_bytes:
                log.warning("%s: skipped, file too large (%d bytes)", path, size)
                return FileOutcome(path=path, status=STATUS_SKIPPED, file_size=size)
            try:
                modules = parse_imports(source, options)
            except PeParseError as e:
                if e.silent:
                    log.debug("%s: skipped (%s)", path, e.message)
                    return FileOutcome(path=path, status=STATUS_SKIPPED, file_size=size)
                log.warning("%s - %s [%s, stage=%s]", path, e.message, e.code, e.stage)
                return FileOutcome(path=path, status=STATUS_FAILED, file_size=size, failure=_failure(path, e))
    except OSError as e:
        log.warning("%s - cannot open: %s", path, e)
        return FileOutcome(
            path=path,
            status=STATUS_FAILED,
            failure=ScanFailure(
                path=str(path), code="E_IO_OPEN_FAILED", kind="io", stage="open", message=f"{type(e).__name__}: {e}"
            ),
        )

    matched, hits = match_imports(modules, targets)
    if not matched:
        return FileOutcome(path=path, status=STATUS_NO_MATCH, file_size=size, modules=modules)

    match = ImportMatch(path=str(path), file_size=size, matched=matched, import_count=hits)
    return FileOutcome(path=path, status=STATUS_MATCHED, file_size=size, modules=modules, match=match)


def scan_directory(
    root: Path,
    extension: str,
    targets: Sequence[str],
    options: ParseOptions = ParseOptions(),
    *,
    recursive: bool = False,
) -> ScanReport:
    if not targets:
        raise ValueError("At least one target import name is required.")

    report = ScanReport(
        root=str(root),
        extension=extension,
        targets=list(targets),
        target_machine=MACHINE_NAMES.get(options.target_machine, hex(options.target_machine)),
        thunk_termination=options.thunk_termination,
    )
    log.info("Scanning %s for *%s importing %s", root, extension, ", ".join(targets))

    for path in iter_candidate_files(root, extension, recursive=recursive):
        report.files_considered += 1
        outcome = scan_file(path, targets, options)

        if outcome.status == STATUS_SKIPPED:
            report.files_skipped += 1
        elif outcome.status == STATUS_FAILED:
            if outcome.failure is not None:
                report.failures.append(outcome.failure)
        else:
            report.files_parsed += 1

        if outcome.match is not None:
            outcome.match.index = len(report.matches)
            report.matches.append(outcome.match)

    log.info(
        "Scan complete: %d considered, %d parsed, %d skipped, %d failed, %d matched",
        report.files_considered,
        report.files_parsed,
        report.files_skipped,
        len(report.failures),
        len(report.matches),
    )
    return report
