from __future__ import annotations

from enum import Enum
from typing import Any, Dict


class ErrorKind(str, Enum):
    MALFORMED_HEADER = "malformed_header"
    TRUNCATED = "truncated"
    OFFSET_UNRESOLVABLE = "offset_unresolvable"
    ARCHITECTURE_SKIP = "architecture_skip"
    STRUCTURAL_INCONSISTENCY = "structural_inconsistency"


class PeParseError(Exception):
    """
    Base for every failure raised while walking a PE image.

    Subclasses fix `code` and `kind`; `stage` defaults per class but may be
    overridden where the same failure occurs at more than one stage.
    Extra keyword arguments are kept as diagnostic context.
    """

    code = "E_PE_PARSE_FAILED"
    kind = ErrorKind.STRUCTURAL_INCONSISTENCY
    stage = "unknown"
    silent = False

    def __init__(self, message: str, *, stage: str = "", **context: Any):
        super().__init__(message)
        self.message = message
        if stage:
            self.stage = stage
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        d = {"code": self.code, "kind": self.kind.value, "stage": self.stage, "message": self.message}
        d.update(self.context)
        return d


class InvalidMagic(PeParseError):
    code = "E_PE_BAD_DOS_MAGIC"
    kind = ErrorKind.MALFORMED_HEADER
    stage = "dos_header"


class TruncatedHeader(PeParseError):
    code = "E_PE_HEADER_TRUNCATED"
    kind = ErrorKind.TRUNCATED
    stage = "dos_header"


class HeaderNotFound(PeParseError):
    code = "E_PE_E_LFANEW_OOB"
    kind = ErrorKind.OFFSET_UNRESOLVABLE
    stage = "nt_headers"


class InvalidSignature(PeParseError):
    code = "E_PE_BAD_NT_SIGNATURE"
    kind = ErrorKind.MALFORMED_HEADER
    stage = "nt_headers"


class ArchitectureMismatch(PeParseError):
    code = "E_PE_ARCH_SKIPPED"
    kind = ErrorKind.ARCHITECTURE_SKIP
    stage = "nt_headers"
    silent = True


class CorruptOptionalHeader(PeParseError):
    code = "E_PE_OPT_MAGIC_MISMATCH"
    kind = ErrorKind.STRUCTURAL_INCONSISTENCY
    stage = "nt_headers"


class TruncatedSectionTable(PeParseError):
    code = "E_PE_SECTION_TABLE_TRUNCATED"
    kind = ErrorKind.TRUNCATED
    stage = "section_table"


class CorruptImportDirectory(PeParseError):
    code = "E_PE_IMPORT_DIR_CORRUPT"
    kind = ErrorKind.STRUCTURAL_INCONSISTENCY
    stage = "import_directory"


class ImportDirectoryNotFound(CorruptImportDirectory):
    code = "E_PE_IMPORT_RVA_UNMAPPABLE"
    kind = ErrorKind.OFFSET_UNRESOLVABLE


class ImportTableLimitExceeded(CorruptImportDirectory):
    code = "E_PE_IMPORT_LIMIT_EXCEEDED"


class TruncatedImportTable(PeParseError):
    code = "E_PE_IMPORT_DESC_TRUNCATED"
    kind = ErrorKind.TRUNCATED
    stage = "import_directory"


class ImportNameNotFound(PeParseError):
    code = "E_PE_IMPORT_NAME_UNMAPPABLE"
    kind = ErrorKind.OFFSET_UNRESOLVABLE
    stage = "import_name"


class TruncatedImportName(PeParseError):
    code = "E_PE_IMPORT_NAME_TRUNCATED"
    kind = ErrorKind.TRUNCATED
    stage = "import_name"


class ThunkNotFound(PeParseError):
    code = "E_PE_IMPORT_THUNK_UNMAPPABLE"
    kind = ErrorKind.OFFSET_UNRESOLVABLE
    stage = "thunk"


class TruncatedThunk(PeParseError):
    code = "E_PE_IMPORT_THUNK_TRUNCATED"
    kind = ErrorKind.TRUNCATED
    stage = "thunk"
