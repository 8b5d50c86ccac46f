from __future__ import annotations

import csv
from pathlib import Path

from impfi.model import ScanReport

FIELDNAMES = ["index", "path", "file_size", "import_count", "matched"]


def write_matches_csv(path: Path, report: ScanReport) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=FIELDNAMES)
        writer.writeheader()
        for m in report.matches:
            writer.writerow(
                {
                    "index": m.index,
                    "path": m.path,
                    "file_size": m.file_size,
                    "import_count": m.import_count,
                    "matched": ";".join(m.matched),
                }
            )
