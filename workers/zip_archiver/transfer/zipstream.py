"""
Streaming zip writer.

Writes a zip archive into a BytePipe without ever seeking. zipfile treats a
sink without tell()/seek() as unseekable: sizes and CRCs are emitted in data
descriptors after each entry, and the central directory is written on close.

Invariants:
    - Entries appear in the archive in add_entry() call order
    - Bytes produced by zipfile are moved into the pipe after every write,
      so at most one source chunk (plus zip framing) is held here
    - Entries without a known size are written with zip64 extensions

How to change safely:
    - Keep ZIP_STORED as the default; archived media is already compressed
    - Other archive formats implement ArchiveWriter and plug into
      StreamingTransfer through its writer_factory
"""

from __future__ import annotations

import time
import zipfile
from abc import abstractmethod
from typing import AsyncIterator, List, Optional, Protocol, runtime_checkable

from .pipe import BytePipe

COMPRESSION_METHODS = {
    "stored": zipfile.ZIP_STORED,
    "deflated": zipfile.ZIP_DEFLATED,
}

# Entries at or above this size need zip64 local headers
_ZIP64_THRESHOLD = zipfile.ZIP64_LIMIT // 2


@runtime_checkable
class ArchiveWriter(Protocol):
    """Streaming archive writer."""

    @abstractmethod
    async def add_entry(
        self,
        name: str,
        chunks: AsyncIterator[bytes],
        size_hint: Optional[int] = None,
    ) -> int:
        """Write one entry from an async chunk stream, returning its size."""
        ...

    @abstractmethod
    async def close(self) -> int:
        """Finish the archive, returning the total archive size."""
        ...


class _ChunkSink:
    """Write-only file object collecting zipfile output between drains."""

    def __init__(self) -> None:
        self._pending: List[bytes] = []

    def write(self, data: bytes) -> int:
        if data:
            self._pending.append(bytes(data))
        return len(data)

    def flush(self) -> None:
        pass

    def close(self) -> None:
        pass

    def take(self) -> bytes:
        data = b"".join(self._pending)
        self._pending.clear()
        return data


class ZipStreamWriter:
    """ArchiveWriter producing a zip into a BytePipe.

    Example:
        >>> writer = ZipStreamWriter(pipe)
        >>> await writer.add_entry("images/a.jpg", reader.chunks(), reader.content_length)
        >>> await writer.close()
    """

    def __init__(self, pipe: BytePipe, compression: str = "stored") -> None:
        if compression not in COMPRESSION_METHODS:
            raise ValueError(f"Unsupported compression '{compression}'")
        self.pipe = pipe
        self.compression = compression
        self._sink = _ChunkSink()
        self._zip = zipfile.ZipFile(
            self._sink,
            mode="w",
            compression=COMPRESSION_METHODS[compression],
            allowZip64=True,
        )
        self._closed = False
        self.entry_count = 0
        self.bytes_out = 0

    async def _drain(self) -> None:
        data = self._sink.take()
        if data:
            self.bytes_out += len(data)
            await self.pipe.write(data)

    async def add_entry(
        self,
        name: str,
        chunks: AsyncIterator[bytes],
        size_hint: Optional[int] = None,
    ) -> int:
        if self._closed:
            raise ValueError("Archive already closed")

        info = zipfile.ZipInfo(filename=name, date_time=time.localtime()[:6])
        info.compress_type = COMPRESSION_METHODS[self.compression]
        info.external_attr = 0o644 << 16
        if size_hint is not None:
            info.file_size = size_hint
        force_zip64 = size_hint is None or size_hint >= _ZIP64_THRESHOLD

        written = 0
        with self._zip.open(info, mode="w", force_zip64=force_zip64) as entry:
            await self._drain()
            async for chunk in chunks:
                entry.write(chunk)
                written += len(chunk)
                await self._drain()
        await self._drain()

        self.entry_count += 1
        return written

    async def close(self) -> int:
        if not self._closed:
            self._closed = True
            self._zip.close()
            await self._drain()
        return self.bytes_out
