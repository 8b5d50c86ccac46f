from __future__ import annotations

import struct

import pytest

from impfi.byte_source import ByteSource
from impfi.errors import (
    CorruptImportDirectory,
    ErrorKind,
    ImportDirectoryNotFound,
    ImportNameNotFound,
    ImportTableLimitExceeded,
    ThunkNotFound,
    TruncatedImportName,
    TruncatedImportTable,
    TruncatedThunk,
)
from impfi.imports import read_import_table
from impfi.pe import IMAGE_FILE_MACHINE_AMD64, IMAGE_FILE_MACHINE_I386, read_headers, read_section_table
from pe_fixtures import AMD64, IDATA_RAW, IDATA_RVA, build_pe


def _walk(data: bytes, *, machine: int = IMAGE_FILE_MACHINE_I386, **kw):
    src = ByteSource.from_bytes(data)
    _, nt = read_headers(src, target_machine=machine)
    sections = read_section_table(src, nt)
    return read_import_table(src, nt, sections, **kw)


def _file_off(data, rva_field_off: int) -> int:
    # RVA stored at rva_field_off, mapped back into .idata
    return struct.unpack_from("<I", data, rva_field_off)[0] - IDATA_RVA + IDATA_RAW


def test_pe_imports_parsed():
    mods = _walk(build_pe([("KERNEL32.dll", ["ExitProcess"])]))
    assert len(mods) == 1
    assert mods[0].name.lower() == "kernel32.dll"
    assert mods[0].symbol_names == ["ExitProcess"]


def test_modules_and_symbols_keep_file_order():
    layout = [
        ("kernel32.dll", ["CreateFileW", "ReadFile", "CloseHandle"]),
        ("user32.dll", ["MessageBoxW"]),
        ("advapi32.dll", ["RegOpenKeyExW", "RegCloseKey"]),
    ]
    mods = _walk(build_pe(layout))
    assert [(m.name, m.symbol_names) for m in mods] == [(dll, list(names)) for dll, names in layout]


def test_pe32plus_imports_parsed():
    layout = [("ntoskrnl.exe", ["IoCreateDevice", "ZwOpenProcess"]), ("hal.dll", ["KeGetCurrentIrql"])]
    mods = _walk(build_pe(layout, machine=AMD64), machine=IMAGE_FILE_MACHINE_AMD64)
    assert [m.name for m in mods] == ["ntoskrnl.exe", "hal.dll"]
    assert mods[0].symbol_names == ["IoCreateDevice", "ZwOpenProcess"]


def test_pe32plus_thunk_with_reserved_bits_is_rejected():
    data = bytearray(build_pe([("kernel32.dll", ["CreateFileW"])], machine=AMD64))
    thunk_off = _file_off(data, IDATA_RAW + 16)
    val = struct.unpack_from("<Q", data, thunk_off)[0]
    struct.pack_into("<Q", data, thunk_off, val | (1 << 40))
    with pytest.raises(ThunkNotFound) as ei:
        _walk(bytes(data), machine=IMAGE_FILE_MACHINE_AMD64)
    assert ei.value.stage == "thunk"


def test_hint_is_recorded():
    mods = _walk(build_pe([("kernel32.dll", [(0x1234, "Sleep")])]))
    assert mods[0].symbols[0].hint == 0x1234
    assert mods[0].symbols[0].by_ordinal is False


def test_zero_size_directory_yields_no_modules():
    mods = _walk(build_pe([("kernel32.dll", ["ExitProcess"])], import_size=0))
    assert mods == []


def test_directory_smaller_than_descriptor_is_corrupt():
    with pytest.raises(CorruptImportDirectory) as ei:
        _walk(build_pe([("kernel32.dll", ["ExitProcess"])], import_size=12))
    assert ei.value.kind is ErrorKind.STRUCTURAL_INCONSISTENCY


def test_unmappable_directory_with_size_is_reported():
    with pytest.raises(ImportDirectoryNotFound) as ei:
        _walk(build_pe([("kernel32.dll", ["ExitProcess"])], import_rva=0x9000))
    assert isinstance(ei.value, CorruptImportDirectory)
    assert ei.value.kind is ErrorKind.OFFSET_UNRESOLVABLE


def test_unmappable_dll_name():
    data = bytearray(build_pe([("kernel32.dll", ["ExitProcess"])]))
    struct.pack_into("<I", data, IDATA_RAW + 12, 0x9000)
    with pytest.raises(ImportNameNotFound) as ei:
        _walk(bytes(data))
    assert ei.value.stage == "import_name"


def test_unmappable_first_thunk():
    data = bytearray(build_pe([("kernel32.dll", ["ExitProcess"])]))
    struct.pack_into("<I", data, IDATA_RAW + 16, 0x9000)
    with pytest.raises(ThunkNotFound):
        _walk(bytes(data))


def test_long_names_are_bounded():
    long_name = "A" * 60
    mods = _walk(build_pe([("kernel32.dll", [long_name])]))
    assert mods[0].symbol_names == ["A" * 31]

    mods = _walk(build_pe([("kernel32.dll", [long_name])]), name_buffer_size=64)
    assert mods[0].symbol_names == [long_name]


def test_descriptor_limit():
    with pytest.raises(ImportTableLimitExceeded):
        _walk(build_pe([("a.dll", ["X"]), ("b.dll", ["Y"])]), max_descriptors=1)


def test_symbol_limit():
    with pytest.raises(ImportTableLimitExceeded) as ei:
        _walk(build_pe([("a.dll", ["X", "Y", "Z"])]), max_symbols_per_module=2)
    assert ei.value.stage == "thunk"


def test_unknown_termination_mode_rejected():
    with pytest.raises(ValueError):
        _walk(build_pe([("a.dll", ["X"])]), termination="bogus")


def test_huge_directory_with_unmappable_rva_is_not_found():
    with pytest.raises(ImportDirectoryNotFound):
        _walk(build_pe([("kernel32.dll", ["ExitProcess"])], import_rva=0x9000, import_size=20 * 100_000))


def test_cut_inside_descriptor_array():
    data = build_pe([("kernel32.dll", ["ExitProcess"]), ("user32.dll", ["MessageBoxW"])])
    with pytest.raises(TruncatedImportTable) as ei:
        _walk(data[: IDATA_RAW + 25])
    assert ei.value.stage == "import_directory"


def test_cut_inside_dll_name_buffer():
    data = build_pe([("kernel32.dll", ["ExitProcess"])])
    name_off = _file_off(data, IDATA_RAW + 12)
    with pytest.raises(TruncatedImportName) as ei:
        _walk(data[: name_off + 5])
    assert ei.value.stage == "import_name"


def test_cut_inside_thunk():
    # Point FirstThunk at the last two bytes of the image so the thunk read comes up short
    data = bytearray(build_pe([("kernel32.dll", ["ExitProcess"])]))
    struct.pack_into("<I", data, IDATA_RAW + 16, IDATA_RVA + (len(data) - IDATA_RAW) - 2)
    with pytest.raises(TruncatedThunk) as ei:
        _walk(bytes(data))
    assert ei.value.stage == "thunk"


def test_cut_inside_hint_name_record():
    # The DLL name buffer ends 18 bytes past the record start; the symbol name buffer 34
    data = build_pe([("kernel32.dll", ["ExitProcessWithAVeryLongNameHere"])])
    thunk_off = _file_off(data, IDATA_RAW + 16)
    ibn_off = _file_off(data, thunk_off)
    with pytest.raises(TruncatedImportName) as ei:
        _walk(data[: ibn_off + 20])
    assert ei.value.stage == "thunk"
