from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import List, Optional

from impfi.byte_source import ByteSource, SeekOutOfRange, ShortRead
from impfi.errors import (
    CorruptImportDirectory,
    ImportDirectoryNotFound,
    ImportNameNotFound,
    ImportTableLimitExceeded,
    ThunkNotFound,
    TruncatedImportName,
    TruncatedImportTable,
    TruncatedThunk,
)
from impfi.pe import DIR_IMPORT, IMAGE_DOS_SIGNATURE, NtHeaders, SectionTable

IMPORT_DESCRIPTOR_SIZE = 20
DEFAULT_NAME_BUFFER_SIZE = 32

TERMINATION_DOCUMENTED = "documented"
TERMINATION_HINT_SENTINEL = "hint_sentinel"
TERMINATION_MODES = (TERMINATION_DOCUMENTED, TERMINATION_HINT_SENTINEL)

ORDINAL_FLAG32 = 0x80000000
ORDINAL_FLAG64 = 0x8000000000000000
NAME_RVA_RESERVED64 = 0x7FFFFFFF80000000


@dataclass(frozen=True)
class ImportDescriptor:
    original_first_thunk: int
    time_date_stamp: int
    forwarder_chain: int
    name_rva: int
    first_thunk: int


@dataclass(frozen=True)
class ImportedSymbol:
    name: Optional[str]
    hint: Optional[int] = None
    ordinal: Optional[int] = None

    @property
    def by_ordinal(self) -> bool:
        return self.name is None


@dataclass
class ImportedModule:
    name: str
    symbols: List[ImportedSymbol] = field(default_factory=list)

    @property
    def symbol_names(self) -> List[str]:
        return [s.name for s in self.symbols if s.name is not None]


def _read_bounded_name(source: ByteSource, buffer_size: int, **context) -> str:
    """Read a fixed-size buffer and cut it at the first NUL; the last byte is always treated as NUL."""
    try:
        raw = source.read_exact(buffer_size)
    except ShortRead as e:
        raise TruncatedImportName("File too small to read import name.", **context) from e
    raw = raw[: buffer_size - 1]
    return raw.split(b"\x00", 1)[0].decode("ascii", errors="replace")


def _seek_name(source: ByteSource, sections: SectionTable, rva: int, *, what: str, **context) -> None:
    off = sections.translate(rva)
    if off is None:
        raise ImportNameNotFound(f"{what} RVA could not be mapped.", name_rva=rva, **context)
    try:
        source.seek(off)
    except SeekOutOfRange as e:
        raise TruncatedImportName(f"{what} lies beyond end of file.", name_rva=rva, offset=off, **context) from e


def _read_descriptors(source: ByteSource, offset: int, count: int) -> List[ImportDescriptor]:
    try:
        source.seek(offset)
    except SeekOutOfRange as e:
        raise TruncatedImportTable("Import descriptor table lies beyond end of file.", offset=offset) from e

    descriptors: List[ImportDescriptor] = []
    for i in range(count):
        try:
            raw = source.read_exact(IMPORT_DESCRIPTOR_SIZE)
        except ShortRead as e:
            raise TruncatedImportTable(
                "File too small to read import descriptor.", descriptor_index=i, offset=offset
            ) from e
        descriptors.append(ImportDescriptor(*struct.unpack("<IIIII", raw)))
    return descriptors


def _walk_thunks_documented(
    source: ByteSource,
    sections: SectionTable,
    module: ImportedModule,
    thunk_off: int,
    *,
    pe32_plus: bool,
    name_buffer_size: int,
    max_symbols: int,
) -> None:
    width = 8 if pe32_plus else 4
    ordinal_flag = ORDINAL_FLAG64 if pe32_plus else ORDINAL_FLAG32
    name_rva_reserved = NAME_RVA_RESERVED64 if pe32_plus else 0

    while True:
        try:
            source.seek(thunk_off)
            val = source.read_u64() if pe32_plus else source.read_u32()
        except (SeekOutOfRange, ShortRead) as e:
            raise TruncatedThunk(
                "File too small to read thunk.", dll=module.name, thunk_off=thunk_off
            ) from e
        if val == 0:
            return

        if len(module.symbols) >= max_symbols:
            raise ImportTableLimitExceeded(
                f"Thunk count exceeded max_symbols_per_module={max_symbols}.", stage="thunk", dll=module.name
            )

        if val & ordinal_flag:
            module.symbols.append(ImportedSymbol(name=None, ordinal=val & 0xFFFF))
        else:
            if val & name_rva_reserved:
                raise ThunkNotFound(
                    "Thunk has reserved bits set; not a hint/name RVA.", dll=module.name, thunk_off=thunk_off, thunk=val
                )
            ibn_rva = val & 0x7FFFFFFF
            ibn_off = sections.translate(ibn_rva)
            if ibn_off is None:
                raise ThunkNotFound("Thunk name not found.", dll=module.name, ibn_rva=ibn_rva)
            try:
                source.seek(ibn_off)
                hint = source.read_u16()
            except (SeekOutOfRange, ShortRead) as e:
                raise TruncatedThunk(
                    "File too small to read thunk hint.", dll=module.name, ibn_rva=ibn_rva
                ) from e
            name = _read_bounded_name(source, name_buffer_size, stage="thunk", dll=module.name, ibn_rva=ibn_rva)
            module.symbols.append(ImportedSymbol(name=name, hint=hint))

        thunk_off += width


def _walk_thunks_hint_sentinel(
    source: ByteSource,
    sections: SectionTable,
    module: ImportedModule,
    thunk_off: int,
    *,
    pe32_plus: bool,
    name_buffer_size: int,
    max_symbols: int,
) -> None:
    # An unmappable AddressOfData resolves to offset 0, where the hint reads
    # back as "MZ". That is what ends the array for zero and ordinal thunks.
    width = 8 if pe32_plus else 4

    while True:
        try:
            source.seek(thunk_off)
            thunk = source.read_exact(width)
        except (SeekOutOfRange, ShortRead) as e:
            raise TruncatedThunk(
                "File too small to read first thunk from import descriptor.", dll=module.name, thunk_off=thunk_off
            ) from e

        address_of_data = struct.unpack_from("<I", thunk, 0)[0]
        ibn_off = sections.translate(address_of_data)
        if ibn_off is None:
            ibn_off = 0
        try:
            source.seek(ibn_off)
            hint = source.read_u16()
        except (SeekOutOfRange, ShortRead) as e:
            raise TruncatedThunk(
                "File too small to read thunk hint from thunk name.", dll=module.name, ibn_rva=address_of_data
            ) from e

        if hint == IMAGE_DOS_SIGNATURE:
            return

        if len(module.symbols) >= max_symbols:
            raise ImportTableLimitExceeded(
                f"Thunk count exceeded max_symbols_per_module={max_symbols}.", stage="thunk", dll=module.name
            )

        name = _read_bounded_name(source, name_buffer_size, stage="thunk", dll=module.name, ibn_rva=address_of_data)
        module.symbols.append(ImportedSymbol(name=name, hint=hint))
        thunk_off += width


def read_import_table(
    source: ByteSource,
    nt: NtHeaders,
    sections: SectionTable,
    *,
    termination: str = TERMINATION_DOCUMENTED,
    name_buffer_size: int = DEFAULT_NAME_BUFFER_SIZE,
    max_descriptors: int = 4096,
    max_symbols_per_module: int = 65536,
) -> List[ImportedModule]:
    """
    Walk the import directory and return modules in descriptor order, each
    with its symbols in thunk order.

    The descriptor count comes from the directory size (Size / 20 - 1, the
    last slot being the zero terminator). A declared size of zero means the
    image has no imports. Any failure inside a thunk chain aborts the walk.
    """
    if termination not in TERMINATION_MODES:
        raise ValueError(f"Unknown thunk termination mode: {termination!r}")
    if name_buffer_size < 2:
        raise ValueError("name_buffer_size must be at least 2")

    directory = nt.optional_header.directory(DIR_IMPORT)
    if directory.size == 0:
        return []
    if directory.size < IMPORT_DESCRIPTOR_SIZE:
        raise CorruptImportDirectory(
            "Import directory smaller than one descriptor.", import_size=directory.size
        )

    count = directory.size // IMPORT_DESCRIPTOR_SIZE - 1
    base_off = sections.translate(directory.virtual_address)
    if base_off is None:
        raise ImportDirectoryNotFound(
            "Import directory RVA could not be mapped to file offset.",
            import_rva=directory.virtual_address,
            import_size=directory.size,
        )

    if count > max_descriptors:
        raise ImportTableLimitExceeded(
            f"Import descriptor count exceeded max_descriptors={max_descriptors}.", count=count
        )

    descriptors = _read_descriptors(source, base_off, count)

    walk = _walk_thunks_documented if termination == TERMINATION_DOCUMENTED else _walk_thunks_hint_sentinel
    pe32_plus = nt.optional_header.is_pe32_plus

    modules: List[ImportedModule] = []
    for idx, desc in enumerate(descriptors):
        _seek_name(source, sections, desc.name_rva, what="Import DLL name", descriptor_index=idx)
        dll_name = _read_bounded_name(source, name_buffer_size, name_rva=desc.name_rva, descriptor_index=idx)
        module = ImportedModule(name=dll_name)

        thunk_off = sections.translate(desc.first_thunk)
        if thunk_off is None:
            raise ThunkNotFound(
                "Import descriptor first thunk not found.", dll=dll_name, first_thunk=desc.first_thunk
            )
        walk(
            source,
            sections,
            module,
            thunk_off,
            pe32_plus=pe32_plus,
            name_buffer_size=name_buffer_size,
            max_symbols=max_symbols_per_module,
        )
        modules.append(module)

    return modules
