"""
Job Splitter: enumerate source objects, register a run, fan out batches.

Sequence:
    1. Page through the object store under the source prefix
    2. Keep keys whose extension is in the allow-list
    3. Partition them into batches of batch_size, in listing order
    4. create_record(eventId, jobId, B)
    5. Publish BatchMessage i for i = 1..B

Invariants:
    - Listing failure aborts before any record exists
    - Record creation failure aborts before any message is published
    - batch i holds keys [(i-1)*batch_size, i*batch_size) of the filtered list
    - An empty filtered list creates no record and publishes nothing

How to change safely:
    - A publish failure after create_record leaves a run that can never
      complete; only the record TTL cleans it up. Keep create_record
      strictly before the first publish regardless.
"""

from __future__ import annotations

import logging
import posixpath
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..errors import EnumerationError, ObjectStoreError, PublishError
from ..models import BatchMessage

logger = logging.getLogger(__name__)


@dataclass
class SplitResult:
    """Outcome of one split.

    Attributes:
        event_id: Run identifier
        job_id: Job identifier
        object_count: Keys that passed the filter
        batch_count: Batches created (TotalChildCount)
        message_ids: Channel message ids, one per batch
    """

    event_id: str
    job_id: str
    object_count: int
    batch_count: int
    message_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eventId": self.event_id,
            "jobId": self.job_id,
            "objectCount": self.object_count,
            "batchCount": self.batch_count,
        }


def partition(keys: Sequence[str], batch_size: int) -> List[List[str]]:
    """Split keys into consecutive batches of at most batch_size."""
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    return [list(keys[start : start + batch_size]) for start in range(0, len(keys), batch_size)]


class JobSplitter:
    """Turns a snapshot of the source prefix into a run and its batches.

    Attributes:
        store: ObjectStore to enumerate
        counter: CounterStore holding run records
        channel: MessageChannel receiving BatchMessages
        topic: Topic (or ARN) for BatchMessages

    Example:
        >>> splitter = JobSplitter(store, counter, channel, topic="batches", batch_size=10)
        >>> result = await splitter.split()
        >>> result.batch_count
        3
    """

    def __init__(
        self,
        store: Any,
        counter: Any,
        channel: Any,
        topic: str,
        source_prefix: str = "images/",
        batch_size: int = 10,
        allowed_extensions: Iterable[str] = (".jpg", ".jpeg", ".png"),
        page_size: int = 1000,
        record_ttl_seconds: Optional[int] = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.store = store
        self.counter = counter
        self.channel = channel
        self.topic = topic
        self.source_prefix = source_prefix
        self.batch_size = batch_size
        self.allowed_extensions = frozenset(ext.lower() for ext in allowed_extensions)
        self.page_size = page_size
        self.record_ttl_seconds = record_ttl_seconds

    def is_archivable(self, key: str) -> bool:
        """Whether key names an object of an allowed type."""
        if key.endswith("/"):
            return False
        extension = posixpath.splitext(key)[1].lower()
        return extension in self.allowed_extensions

    async def collect_keys(self) -> List[str]:
        """List and filter all keys under the source prefix.

        Raises:
            EnumerationError: If listing fails
        """
        keys: List[str] = []
        scanned = 0
        try:
            async for page in self.store.list_pages(self.source_prefix, self.page_size):
                scanned += len(page)
                keys.extend(key for key in page if self.is_archivable(key))
        except ObjectStoreError as e:
            raise EnumerationError(
                f"Failed to list objects under '{self.source_prefix}': {e.message}",
                prefix=self.source_prefix,
            ) from e

        logger.info(
            "Enumerated source objects",
            extra={"prefix": self.source_prefix, "scanned": scanned, "matched": len(keys)},
        )
        return keys

    async def split(
        self,
        event_id: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> SplitResult:
        """Run one split.

        Args:
            event_id: Run identifier (generated if omitted)
            job_id: Job identifier (generated if omitted)

        Returns:
            SplitResult

        Raises:
            EnumerationError: Listing failed, nothing was created
            PersistenceError: Record creation failed, nothing was published
            PublishError: A publish failed; published_count tells how many
                messages were sent before it
        """
        event_id = event_id or str(uuid.uuid4())
        job_id = job_id or str(uuid.uuid4())

        keys = await self.collect_keys()
        batches = partition(keys, self.batch_size)
        result = SplitResult(event_id, job_id, object_count=len(keys), batch_count=len(batches))

        if not batches:
            logger.info(
                "No archivable objects, nothing to do",
                extra={"event_id": event_id, "prefix": self.source_prefix},
            )
            return result

        await self.counter.create_record(event_id, job_id, len(batches), self.record_ttl_seconds)

        for task_number, batch in enumerate(batches, start=1):
            message = BatchMessage(event_id, job_id, task_number, tuple(batch))
            try:
                message_id = await self.channel.publish(self.topic, message.to_dict(), key=event_id)
            except PublishError as e:
                e.published_count = len(result.message_ids)
                e.details["published_count"] = e.published_count
                logger.error(
                    "Publish failed after run record was created",
                    extra={
                        "event_id": event_id,
                        "job_id": job_id,
                        "task_number": task_number,
                        "published_count": e.published_count,
                        "batch_count": len(batches),
                    },
                )
                raise
            result.message_ids.append(message_id)

        logger.info(
            "Split complete",
            extra={
                "event_id": event_id,
                "job_id": job_id,
                "object_count": result.object_count,
                "batch_count": result.batch_count,
            },
        )
        return result
