"""
Bounded in-memory byte conduit between two asyncio tasks.

Invariants:
    - At most max_buffer_bytes are buffered at any time; larger writes are
      split and wait for the reader
    - close_write(error) makes the reader raise error immediately, buffered
      bytes are discarded
    - close_read(error) makes pending and future writes raise error
    - read() returns b"" only after close_write() without an error
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Deque, Optional

from ..errors import TransferError


class BytePipe:
    """Async pipe with blocking backpressure.

    Example:
        >>> pipe = BytePipe(max_buffer_bytes=1024)
        >>> await pipe.write(b"data")   # blocks while the pipe is full
        >>> await pipe.read()
        b'data'
    """

    def __init__(self, max_buffer_bytes: int) -> None:
        if max_buffer_bytes < 1:
            raise ValueError("max_buffer_bytes must be >= 1")
        self.max_buffer_bytes = max_buffer_bytes
        self._chunks: Deque[bytes] = deque()
        self._buffered = 0
        self._cond = asyncio.Condition()
        self._write_closed = False
        self._write_error: Optional[BaseException] = None
        self._read_error: Optional[BaseException] = None

        self.bytes_written = 0
        self.peak_buffered_bytes = 0

    @property
    def buffered_bytes(self) -> int:
        return self._buffered

    def _check_writable(self) -> None:
        if self._read_error is not None:
            raise self._read_error
        if self._write_closed:
            raise TransferError("Write to a closed pipe")

    async def write(self, data: bytes) -> None:
        """Queue data, waiting while the buffer is full.

        Raises:
            The error passed to close_read(), or TransferError if the write
            side was already closed
        """
        view = memoryview(data)
        async with self._cond:
            self._check_writable()
            while view:
                while self._buffered >= self.max_buffer_bytes:
                    await self._cond.wait()
                    self._check_writable()

                take = min(len(view), self.max_buffer_bytes - self._buffered)
                self._chunks.append(bytes(view[:take]))
                self._buffered += take
                self.bytes_written += take
                self.peak_buffered_bytes = max(self.peak_buffered_bytes, self._buffered)
                view = view[take:]
                self._cond.notify_all()

    async def read(self) -> bytes:
        """Return the next chunk, waiting while the pipe is empty.

        Returns:
            A non-empty chunk, or b"" at end of stream

        Raises:
            The error passed to close_write()
        """
        async with self._cond:
            while True:
                if self._write_error is not None:
                    raise self._write_error
                if self._chunks:
                    chunk = self._chunks.popleft()
                    self._buffered -= len(chunk)
                    self._cond.notify_all()
                    return chunk
                if self._write_closed:
                    return b""
                if self._read_error is not None:
                    raise self._read_error
                await self._cond.wait()

    async def close_write(self, error: Optional[BaseException] = None) -> None:
        """Signal end of stream, or abort the reader with error."""
        async with self._cond:
            if self._write_closed:
                return
            self._write_closed = True
            if error is not None:
                self._write_error = error
                self._chunks.clear()
                self._buffered = 0
            self._cond.notify_all()

    async def close_read(self, error: BaseException) -> None:
        """Abort the writer with error."""
        async with self._cond:
            if self._read_error is not None:
                return
            self._read_error = error
            self._chunks.clear()
            self._buffered = 0
            self._cond.notify_all()
