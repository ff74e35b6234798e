"""
Streaming Transfer: build an archive from object store entries and upload
it while it is being built.

    ┌──────────────────────────┐   BytePipe    ┌──────────────────────────┐
    │ producer                 │  (bounded)    │ consumer                 │
    │  for entry in entries:   │ ────────────▶ │  store.put(destination,  │
    │    get → add_entry →     │               │            pipe)         │
    │    close reader          │ ◀──────────── │                          │
    │  writer.close()          │  close_read   │                          │
    └──────────────────────────┘               └──────────────────────────┘

Invariants:
    - Peak memory is bounded by the pipe size plus one read chunk and one
      upload part, independent of entry count or size
    - Entries are fetched strictly sequentially in caller order
    - First error wins: the failing side closes the pipe with its
      TransferError and the other side terminates with that same object
    - transfer() returns or raises only after both tasks have finished,
      including when the caller is cancelled
    - Every opened read stream is closed

How to change safely:
    - Never fetch entries in parallel inside one transfer; parallelism
      comes from running many transfers in different workers
    - Hooks passed as on_entry_written run on the producer task; an
      exception from a hook fails the transfer
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, List, Optional

from ..errors import TransferError
from ..models import ARCHIVE_CONTENT_TYPE
from .pipe import BytePipe
from .zipstream import ArchiveWriter, ZipStreamWriter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransferEntry:
    """One archive entry.

    Attributes:
        name: Entry name inside the archive
        source_key: Object store key of the entry's bytes
    """

    name: str
    source_key: str


@dataclass
class TransferResult:
    """Result of a successful transfer."""

    destination_key: str
    entry_count: int
    archive_bytes: int
    uploaded_bytes: int
    peak_buffered_bytes: int
    duration_ms: int


EntryHook = Callable[[TransferEntry], Awaitable[None]]
WriterFactory = Callable[[BytePipe], ArchiveWriter]


class _FirstError:
    """Holds the first failure of either transfer side."""

    def __init__(self, destination_key: str) -> None:
        self.destination_key = destination_key
        self.error: Optional[TransferError] = None

    def record(self, exc: BaseException, message: str, source_key: Optional[str] = None) -> TransferError:
        if self.error is None:
            if isinstance(exc, TransferError):
                self.error = exc
            else:
                self.error = TransferError(
                    f"{message}: {exc}" if str(exc) else message,
                    destination_key=self.destination_key,
                    source_key=source_key,
                )
                self.error.__cause__ = exc
        return self.error


class StreamingTransfer:
    """Bounded producer/consumer archive upload.

    Attributes:
        store: ObjectStore used for both fetching and uploading
        buffer_bytes: Pipe capacity
        content_type: Content type of uploaded archives

    Example:
        >>> transfer = StreamingTransfer(store, buffer_bytes=1024 * 1024)
        >>> await transfer.transfer(
        ...     [TransferEntry("images/a.jpg", "images/a.jpg")],
        ...     "archives/e1/archive_1.zip",
        ... )
    """

    def __init__(
        self,
        store: Any,
        buffer_bytes: int = 1024 * 1024,
        content_type: str = ARCHIVE_CONTENT_TYPE,
        compression: str = "stored",
        writer_factory: Optional[WriterFactory] = None,
    ) -> None:
        self.store = store
        self.buffer_bytes = buffer_bytes
        self.content_type = content_type
        self.compression = compression
        self._writer_factory = writer_factory or (
            lambda pipe: ZipStreamWriter(pipe, compression=self.compression)
        )

    async def transfer(
        self,
        entries: Iterable[TransferEntry],
        destination_key: str,
        on_entry_written: Optional[EntryHook] = None,
    ) -> TransferResult:
        """Archive entries into destination_key.

        Args:
            entries: Entries in archive order
            destination_key: Object store key of the archive
            on_entry_written: Awaited after each entry was fully queued

        Returns:
            TransferResult

        Raises:
            TransferError: If fetching, writing or uploading failed
        """
        entry_list: List[TransferEntry] = list(entries)
        pipe = BytePipe(self.buffer_bytes)
        failure = _FirstError(destination_key)
        start = time.monotonic()

        logger.info(
            "Starting transfer",
            extra={"destination_key": destination_key, "entry_count": len(entry_list)},
        )

        producer = asyncio.create_task(
            self._produce(entry_list, pipe, failure, on_entry_written),
            name=f"transfer-producer:{destination_key}",
        )
        consumer = asyncio.create_task(
            self._consume(pipe, destination_key, failure),
            name=f"transfer-consumer:{destination_key}",
        )

        try:
            outcomes = await asyncio.gather(producer, consumer, return_exceptions=True)
        except asyncio.CancelledError:
            producer.cancel()
            consumer.cancel()
            await asyncio.gather(producer, consumer, return_exceptions=True)
            raise

        if failure.error is not None:
            logger.error(
                f"Transfer failed: {failure.error.message}",
                extra={"destination_key": destination_key, "source_key": failure.error.source_key},
            )
            raise failure.error
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        archive_bytes, uploaded_bytes = outcomes

        result = TransferResult(
            destination_key=destination_key,
            entry_count=len(entry_list),
            archive_bytes=archive_bytes,
            uploaded_bytes=uploaded_bytes,
            peak_buffered_bytes=pipe.peak_buffered_bytes,
            duration_ms=int((time.monotonic() - start) * 1000),
        )
        logger.info(
            "Transfer complete",
            extra={
                "destination_key": destination_key,
                "entry_count": result.entry_count,
                "archive_bytes": result.archive_bytes,
                "duration_ms": result.duration_ms,
            },
        )
        return result

    async def _produce(
        self,
        entries: List[TransferEntry],
        pipe: BytePipe,
        failure: _FirstError,
        on_entry_written: Optional[EntryHook],
    ) -> int:
        current: Optional[TransferEntry] = None
        try:
            writer = self._writer_factory(pipe)
            for entry in entries:
                current = entry
                reader = await self.store.get(entry.source_key)
                try:
                    await writer.add_entry(entry.name, reader.chunks(), reader.content_length)
                finally:
                    await reader.close()
                if on_entry_written is not None:
                    await on_entry_written(entry)
            current = None
            archive_bytes = await writer.close()
        except asyncio.CancelledError:
            await pipe.close_write(
                failure.record(asyncio.CancelledError(), "Transfer cancelled")
            )
            raise
        except Exception as e:
            source_key = current.source_key if current else None
            message = f"Failed to archive {source_key}" if source_key else "Failed to finish archive"
            error = failure.record(e, message, source_key)
            await pipe.close_write(error)
            raise error

        await pipe.close_write()
        return archive_bytes

    async def _consume(self, pipe: BytePipe, destination_key: str, failure: _FirstError) -> int:
        try:
            return await self.store.put(destination_key, pipe, self.content_type)
        except asyncio.CancelledError:
            await pipe.close_read(failure.record(asyncio.CancelledError(), "Transfer cancelled"))
            raise
        except Exception as e:
            error = failure.record(e, f"Failed to upload {destination_key}")
            await pipe.close_read(error)
            raise error
