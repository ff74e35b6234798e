"""
Explicit handles shared by the stages of one invocation.

ArchiveRuntime owns the object store, counter store and message channel
clients, connects them on entry and closes them on exit. Stages receive the
handles through their constructors; there is no module-level client state.

Invariants:
    - Clients are connected once per runtime and closed even on failure
    - Injected collaborators (tests) are used as given

How to change safely:
    - Build new stage objects here so every entry point wires them the
      same way
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from .channel import create_message_channel
from .config import ServiceConfig
from .counter import DynamoDbCounterStore
from .jobs import BatchWorker, Finalizer, JobSplitter
from .storage import S3ObjectStore
from .transfer import StreamingTransfer

logger = logging.getLogger(__name__)


class ArchiveRuntime:
    """Connected collaborators plus stage factories.

    Example:
        >>> async with ArchiveRuntime.from_config(config) as runtime:
        ...     await runtime.splitter().split()
    """

    def __init__(
        self,
        config: ServiceConfig,
        store: Any,
        counter: Any,
        channel: Any,
    ) -> None:
        self.config = config
        self.store = store
        self.counter = counter
        self.channel = channel

    @classmethod
    def from_config(cls, config: ServiceConfig) -> ArchiveRuntime:
        """Build production clients from configuration."""
        store = S3ObjectStore(
            config.s3,
            read_chunk_bytes=config.transfer.read_chunk_bytes,
            upload_part_size_bytes=config.transfer.upload_part_size_bytes,
        )
        counter = DynamoDbCounterStore(config.dynamodb)
        channel = create_message_channel(config)
        return cls(config, store, counter, channel)

    async def __aenter__(self) -> ArchiveRuntime:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()

    async def connect(self) -> None:
        try:
            await self.store.connect()
            await self.counter.connect()
            await self.channel.connect()
        except Exception:
            await self.close()
            raise

    async def close(self) -> None:
        for name, client in (("channel", self.channel), ("counter", self.counter), ("store", self.store)):
            try:
                await client.close()
            except Exception as e:
                logger.warning(f"Error closing {name}: {e}")

    def transfer(self) -> StreamingTransfer:
        return StreamingTransfer(
            self.store,
            buffer_bytes=self.config.transfer.buffer_bytes,
            compression=self.config.transfer.compression,
        )

    def splitter(self, batch_size: Optional[int] = None) -> JobSplitter:
        job = self.config.job
        return JobSplitter(
            self.store,
            self.counter,
            self.channel,
            topic=self.config.batch_topic,
            source_prefix=job.source_prefix,
            batch_size=batch_size or job.batch_size,
            allowed_extensions=job.allowed_extensions,
            page_size=job.list_page_size,
            record_ttl_seconds=self.config.dynamodb.record_ttl_seconds,
        )

    def batch_worker(self) -> BatchWorker:
        return BatchWorker(self.transfer(), self.counter, self.channel, topic=self.config.finished_topic)

    def finalizer(self) -> Finalizer:
        return Finalizer(self.transfer(), self.store, self.counter)
