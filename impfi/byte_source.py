from __future__ import annotations

import io
import os
import struct
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Iterator, Union


class SeekOutOfRange(Exception):
    def __init__(self, offset: int, size: int):
        super().__init__(f"seek to {offset} outside stream of {size} bytes")
        self.offset = offset
        self.size = size


class ShortRead(Exception):
    def __init__(self, offset: int, wanted: int, got: int):
        super().__init__(f"wanted {wanted} bytes at {offset}, got {got}")
        self.offset = offset
        self.wanted = wanted
        self.got = got


class ByteSource:
    """
    Seek/read view over a binary stream.

    Reads are all-or-nothing: read_exact() either returns the full count or
    raises ShortRead. Seeks past the end of the stream raise SeekOutOfRange.
    """

    def __init__(self, fp: BinaryIO):
        self._fp = fp
        fp.seek(0, os.SEEK_END)
        self.size = fp.tell()
        fp.seek(0, os.SEEK_SET)
        self.bytes_read = 0

    @classmethod
    def from_bytes(cls, data: bytes) -> "ByteSource":
        return cls(io.BytesIO(data))

    @classmethod
    @contextmanager
    def open(cls, path: Union[str, Path]) -> Iterator["ByteSource"]:
        with Path(path).open("rb") as fp:
            yield cls(fp)

    def tell(self) -> int:
        return self._fp.tell()

    def seek(self, offset: int) -> None:
        if offset < 0 or offset > self.size:
            raise SeekOutOfRange(offset, self.size)
        self._fp.seek(offset, os.SEEK_SET)

    def read_exact(self, n: int) -> bytes:
        off = self._fp.tell()
        data = self._fp.read(n)
        self.bytes_read += len(data)
        if len(data) != n:
            raise ShortRead(off, n, len(data))
        return data

    def read_u16(self) -> int:
        return struct.unpack("<H", self.read_exact(2))[0]

    def read_u32(self) -> int:
        return struct.unpack("<I", self.read_exact(4))[0]

    def read_u64(self) -> int:
        return struct.unpack("<Q", self.read_exact(8))[0]
