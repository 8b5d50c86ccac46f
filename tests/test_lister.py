from __future__ import annotations

from pathlib import Path

import pytest

from impfi.lister import iter_candidate_files


def _touch(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_bytes(b"")


def test_exact_suffix_match(tmp_path: Path):
    for name in ["a.sys", "b.SYS", "c.sys.bak", "d.dll", "sys"]:
        _touch(tmp_path / name)
    (tmp_path / "e.sys").mkdir()

    assert [p.name for p in iter_candidate_files(tmp_path, ".sys")] == ["a.sys"]


def test_recursive_toggle(tmp_path: Path):
    _touch(tmp_path / "top.dll")
    _touch(tmp_path / "sub" / "deep.dll")

    assert [p.name for p in iter_candidate_files(tmp_path, ".dll")] == ["top.dll"]
    assert sorted(p.name for p in iter_candidate_files(tmp_path, ".dll", recursive=True)) == ["deep.dll", "top.dll"]


def test_root_must_be_directory(tmp_path: Path):
    with pytest.raises(NotADirectoryError):
        list(iter_candidate_files(tmp_path / "missing", ".dll"))
