from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List

from pydantic import BaseModel, Field


def utc_now_iso() -> str:
    """
    UTC timestamp in ISO-8601 with 'Z' suffix, seconds precision.
    Example: 2026-01-08T17:12:34Z
    """
    return (
        datetime.now(timezone.utc)
        .replace(microsecond=0)
        .isoformat()
        .replace("+00:00", "Z")
    )


class ImportMatch(BaseModel):
    index: int = 0
    path: str
    file_size: int
    matched: List[str]
    import_count: int


class ScanFailure(BaseModel):
    path: str
    code: str
    kind: str
    stage: str
    message: str


class ScanReport(BaseModel):
    schema_version: str = "1.0"
    timestamp_utc: str = Field(default_factory=utc_now_iso)

    root: str
    extension: str
    targets: List[str]
    target_machine: str
    thunk_termination: str
    config_snapshot: Dict[str, Any] = Field(default_factory=dict)

    files_considered: int = 0
    files_parsed: int = 0
    files_skipped: int = 0

    matches: List[ImportMatch] = Field(default_factory=list)
    failures: List[ScanFailure] = Field(default_factory=list)
