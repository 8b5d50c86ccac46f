from __future__ import annotations

import platform
import struct
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

from impfi.byte_source import ByteSource, SeekOutOfRange, ShortRead
from impfi.errors import (
    ArchitectureMismatch,
    CorruptOptionalHeader,
    HeaderNotFound,
    InvalidMagic,
    InvalidSignature,
    TruncatedHeader,
    TruncatedSectionTable,
)

IMAGE_DOS_SIGNATURE = 0x5A4D  # "MZ"
IMAGE_NT_SIGNATURE = 0x00004550  # "PE\0\0"

PE32_MAGIC = 0x10B
PE32P_MAGIC = 0x20B

IMAGE_FILE_MACHINE_I386 = 0x014C
IMAGE_FILE_MACHINE_IA64 = 0x0200
IMAGE_FILE_MACHINE_AMD64 = 0x8664
IMAGE_FILE_MACHINE_ARM64 = 0xAA64

MACHINE_NAMES = {
    IMAGE_FILE_MACHINE_I386: "i386",
    IMAGE_FILE_MACHINE_IA64: "ia64",
    IMAGE_FILE_MACHINE_AMD64: "amd64",
    IMAGE_FILE_MACHINE_ARM64: "arm64",
}
MACHINE_BY_NAME = {v: k for k, v in MACHINE_NAMES.items()}

_HOST_MACHINES = {
    "x86_64": IMAGE_FILE_MACHINE_AMD64,
    "amd64": IMAGE_FILE_MACHINE_AMD64,
    "i386": IMAGE_FILE_MACHINE_I386,
    "i686": IMAGE_FILE_MACHINE_I386,
    "x86": IMAGE_FILE_MACHINE_I386,
    "ia64": IMAGE_FILE_MACHINE_IA64,
    "aarch64": IMAGE_FILE_MACHINE_ARM64,
    "arm64": IMAGE_FILE_MACHINE_ARM64,
}

# Data directory indices
DIR_IMPORT = 1
MAX_DATA_DIRECTORIES = 16

DOS_HEADER_SIZE = 64
E_LFANEW_OFFSET = 0x3C
FILE_HEADER_SIZE = 20
OPT_HEADER_SIZE_PE32 = 0xE0
OPT_HEADER_SIZE_PE32P = 0xF0
SECTION_HEADER_SIZE = 40


@dataclass(frozen=True)
class DosHeader:
    magic: int
    e_lfanew: int


@dataclass(frozen=True)
class FileHeader:
    machine: int
    number_of_sections: int
    time_date_stamp: int
    size_of_optional_header: int
    characteristics: int


@dataclass(frozen=True)
class DataDirectory:
    virtual_address: int
    size: int


@dataclass(frozen=True)
class OptionalHeader:
    magic: int
    number_of_rva_and_sizes: int
    data_directories: Tuple[DataDirectory, ...]

    @property
    def is_pe32_plus(self) -> bool:
        return self.magic == PE32P_MAGIC

    def directory(self, index: int) -> DataDirectory:
        if index < len(self.data_directories):
            return self.data_directories[index]
        return DataDirectory(0, 0)


@dataclass(frozen=True)
class NtHeaders:
    signature: int
    file_header: FileHeader
    optional_header: OptionalHeader
    offset: int

    @property
    def section_table_offset(self) -> int:
        return self.offset + 4 + FILE_HEADER_SIZE + self.file_header.size_of_optional_header


def host_machine() -> Optional[int]:
    return _HOST_MACHINES.get(platform.machine().lower())


def resolve_machine(name: str) -> int:
    """Map 'auto' or a machine name (i386, amd64, ia64, arm64) to IMAGE_FILE_MACHINE_*."""
    key = name.strip().lower()
    if key == "auto":
        m = host_machine()
        if m is None:
            raise ValueError(f"Cannot infer target machine from host '{platform.machine()}'; set it explicitly.")
        return m
    if key not in MACHINE_BY_NAME:
        raise ValueError(f"Unknown machine '{name}'; expected one of: auto, {', '.join(sorted(MACHINE_BY_NAME))}.")
    return MACHINE_BY_NAME[key]


def expected_optional_magic(machine: int) -> int:
    return PE32_MAGIC if machine == IMAGE_FILE_MACHINE_I386 else PE32P_MAGIC


def _u16(data: bytes, off: int) -> int:
    return struct.unpack_from("<H", data, off)[0]


def _u32(data: bytes, off: int) -> int:
    return struct.unpack_from("<I", data, off)[0]


def _parse_optional_header(opt: bytes, *, pe32_plus: bool) -> OptionalHeader:
    magic = _u16(opt, 0)
    num_rva_off = 0x6C if pe32_plus else 0x5C
    dd_off = 0x70 if pe32_plus else 0x60
    num_rva_and_sizes = _u32(opt, num_rva_off)

    dirs: List[DataDirectory] = []
    for i in range(min(num_rva_and_sizes, MAX_DATA_DIRECTORIES)):
        off = dd_off + i * 8
        if off + 8 > len(opt):
            break
        dirs.append(DataDirectory(_u32(opt, off), _u32(opt, off + 4)))
    return OptionalHeader(magic=magic, number_of_rva_and_sizes=num_rva_and_sizes, data_directories=tuple(dirs))


def read_headers(source: ByteSource, *, target_machine: int) -> Tuple[DosHeader, NtHeaders]:
    """
    Read and validate the DOS and NT headers from the start of `source`.

    The magic is checked before anything else is read. A machine other than
    `target_machine` raises ArchitectureMismatch, which callers treat as a
    silent skip; an optional-header magic that disagrees with the machine is
    CorruptOptionalHeader.
    """
    source.seek(0)
    try:
        magic = source.read_u16()
    except ShortRead as e:
        raise TruncatedHeader("Too small to read DOS magic number.", size=source.size) from e
    if magic != IMAGE_DOS_SIGNATURE:
        raise InvalidMagic("Incorrect DOS magic number.", magic=magic)

    try:
        rest = source.read_exact(DOS_HEADER_SIZE - 2)
    except ShortRead as e:
        raise TruncatedHeader("DOS header incomplete after magic number.", size=source.size) from e
    e_lfanew = _u32(rest, E_LFANEW_OFFSET - 2)
    dos = DosHeader(magic=magic, e_lfanew=e_lfanew)

    try:
        source.seek(e_lfanew)
    except SeekOutOfRange as e:
        raise HeaderNotFound("e_lfanew points outside file.", e_lfanew=e_lfanew) from e

    pe32_plus = expected_optional_magic(target_machine) == PE32P_MAGIC
    opt_size = OPT_HEADER_SIZE_PE32P if pe32_plus else OPT_HEADER_SIZE_PE32
    try:
        raw = source.read_exact(4 + FILE_HEADER_SIZE + opt_size)
    except ShortRead as e:
        raise TruncatedHeader("NT headers incomplete.", stage="nt_headers", e_lfanew=e_lfanew) from e

    signature = _u32(raw, 0)
    if signature != IMAGE_NT_SIGNATURE:
        raise InvalidSignature("Incorrect NT header signature.", e_lfanew=e_lfanew, signature=signature)

    machine, number_of_sections, time_date_stamp, _, _, size_opt, characteristics = struct.unpack_from(
        "<HHIIIHH", raw, 4
    )
    fh = FileHeader(
        machine=machine,
        number_of_sections=number_of_sections,
        time_date_stamp=time_date_stamp,
        size_of_optional_header=size_opt,
        characteristics=characteristics,
    )

    if machine != target_machine:
        raise ArchitectureMismatch(
            "Machine type not targeted by this scan.", machine=machine, target_machine=target_machine
        )

    opt = _parse_optional_header(raw[4 + FILE_HEADER_SIZE :], pe32_plus=pe32_plus)
    if opt.magic != expected_optional_magic(target_machine):
        raise CorruptOptionalHeader(
            "Optional header magic number is inconsistent with NT header architecture.",
            machine=machine,
            opt_magic=opt.magic,
        )

    return dos, NtHeaders(signature=signature, file_header=fh, optional_header=opt, offset=e_lfanew)


@dataclass(frozen=True)
class SectionHeader:
    name: str
    virtual_size: int
    virtual_address: int
    size_of_raw_data: int
    pointer_to_raw_data: int
    characteristics: int

    def contains(self, rva: int) -> bool:
        return self.virtual_address <= rva < self.virtual_address + self.virtual_size


class SectionTable:
    """Ordered section headers with RVA to file-offset translation."""

    def __init__(self, sections: List[SectionHeader]):
        self._sections = tuple(sections)

    def __len__(self) -> int:
        return len(self._sections)

    def __iter__(self) -> Iterator[SectionHeader]:
        return iter(self._sections)

    def __getitem__(self, index: int) -> SectionHeader:
        return self._sections[index]

    def translate(self, rva: int) -> Optional[int]:
        # First containing section wins; None means no section maps the RVA.
        for s in self._sections:
            if s.contains(rva):
                return (rva - s.virtual_address) + s.pointer_to_raw_data
        return None


def read_section_table(source: ByteSource, nt: NtHeaders) -> SectionTable:
    try:
        source.seek(nt.section_table_offset)
    except SeekOutOfRange as e:
        raise TruncatedSectionTable(
            "Section table offset outside file.", section_table_offset=nt.section_table_offset
        ) from e

    sections: List[SectionHeader] = []
    for i in range(nt.file_header.number_of_sections):
        try:
            raw = source.read_exact(SECTION_HEADER_SIZE)
        except ShortRead as e:
            raise TruncatedSectionTable(f"Corrupted section {i}.", section_index=i) from e
        name_b, virtual_size, virtual_address, raw_size, raw_ptr = struct.unpack_from("<8sIIII", raw, 0)
        sections.append(
            SectionHeader(
                name=name_b.split(b"\x00", 1)[0].decode("ascii", errors="replace"),
                virtual_size=virtual_size,
                virtual_address=virtual_address,
                size_of_raw_data=raw_size,
                pointer_to_raw_data=raw_ptr,
                characteristics=_u32(raw, 36),
            )
        )
    return SectionTable(sections)
