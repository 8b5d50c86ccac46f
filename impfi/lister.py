from __future__ import annotations

from pathlib import Path
from typing import Iterator, Union


def iter_candidate_files(root: Union[str, Path], extension: str, *, recursive: bool = False) -> Iterator[Path]:
    """
    Yield regular files under `root` whose last suffix equals `extension`.

    The match is exact and case-sensitive, leading dot included (".sys").
    """
    root = Path(root)
    if not root.is_dir():
        raise NotADirectoryError(str(root))

    pattern = "**/*" if recursive else "*"
    for p in sorted(root.glob(pattern)):
        if p.suffix == extension and p.is_file():
            yield p
