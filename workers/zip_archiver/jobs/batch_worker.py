"""
Batch Worker: build one interim archive and count it towards the run.

State machine per BatchMessage:

    Checking ──no record──▶ Stale
        │
        ├──task already counted──▶ Duplicate (or Signaling, see below)
        ▼
    Fetching/Uploading ──ok──▶ Decrementing ──remaining > 0──▶ Idle
            │                       │
          error                     ├──remaining == 0──▶ Signaling
            ▼                       │
      (message fails,               └──task counted meanwhile──▶ Duplicate
       no decrement)

Invariants:
    - The counter is decremented only after the interim archive upload
      completed
    - Each task number is counted at most once per run; a redelivered
      message whose task was counted neither rebuilds nor decrements
    - A message for a finished or expired run is acknowledged without
      building anything, so no interim archive is left behind
    - The worker that observes zero publishes the ZipArchiveRequest with
      totalArchivesCount from the same update, then marks the run signaled.
      A redelivered last batch of a run at zero that is not marked signaled
      publishes it again

How to change safely:
    - Do not catch TransferError or PublishError here; failing the message
      is what triggers redelivery
    - mark_signaled() must run after publish(), never before
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from ..counter import DecrementResult
from ..errors import PersistenceError
from ..models import BatchMessage, ZipArchiveRequest
from ..transfer import StreamingTransfer, TransferEntry, TransferResult

logger = logging.getLogger(__name__)


class BatchOutcome(Enum):
    """Terminal state of one BatchMessage."""

    IDLE = "idle"
    SIGNALED = "signaled"
    DUPLICATE = "duplicate"
    STALE = "stale"


@dataclass
class BatchResult:
    """Result of processing one BatchMessage.

    transfer is None when the message was answered without building the
    interim archive (stale runs and already counted tasks).
    """

    message: BatchMessage
    outcome: BatchOutcome
    remaining: int
    transfer: Optional[TransferResult] = None
    request: Optional[ZipArchiveRequest] = None
    request_message_id: Optional[str] = None


class BatchWorker:
    """Processes BatchMessages.

    Attributes:
        transfer: StreamingTransfer building the interim archive
        counter: CounterStore holding the run record
        channel: MessageChannel receiving the ZipArchiveRequest
        topic: Topic (or ARN) for ZipArchiveRequests
    """

    def __init__(
        self,
        transfer: StreamingTransfer,
        counter: Any,
        channel: Any,
        topic: str,
    ) -> None:
        self.transfer = transfer
        self.counter = counter
        self.channel = channel
        self.topic = topic

    async def process(self, message: BatchMessage) -> BatchResult:
        """Build, upload and count one batch.

        Raises:
            TransferError: The interim archive could not be built
            PersistenceError: The record read or the decrement failed
            PublishError: The ZipArchiveRequest could not be published
        """
        log_extra = {
            "event_id": message.event_id,
            "job_id": message.job_id,
            "task_number": message.task_number,
        }

        record = await self.counter.get_record(message.event_id, message.job_id)
        if record is None:
            logger.warning("Run record not found, run finished or expired; skipping batch", extra=log_extra)
            return BatchResult(message, BatchOutcome.STALE, remaining=0)

        if message.task_number in record.processed_tasks:
            counted = DecrementResult(
                record.remaining, record.total, duplicate=True, signaled=record.signaled
            )
            return await self._duplicate(message, counted, log_extra, None)

        logger.info("Processing batch", extra={**log_extra, "object_count": len(message.object_keys)})

        entries = [TransferEntry(name=key, source_key=key) for key in message.object_keys]
        transfer_result = await self.transfer.transfer(entries, message.archive_key)

        decrement = await self.counter.decrement_and_fetch(
            message.event_id, message.job_id, task_number=message.task_number
        )

        if decrement.duplicate:
            return await self._duplicate(message, decrement, log_extra, transfer_result)

        if not decrement.reached_zero:
            logger.info(
                "Batch complete, waiting for remaining batches",
                extra={**log_extra, "remaining": decrement.remaining, "total": decrement.total},
            )
            return BatchResult(message, BatchOutcome.IDLE, decrement.remaining, transfer_result)

        return await self._signal(message, decrement.total, log_extra, transfer_result)

    async def _duplicate(
        self,
        message: BatchMessage,
        decrement: DecrementResult,
        log_extra: Dict[str, Any],
        transfer_result: Optional[TransferResult],
    ) -> BatchResult:
        if decrement.needs_signal:
            logger.warning(
                "Run is complete but was never signaled, publishing final archive request again",
                extra=log_extra,
            )
            return await self._signal(message, decrement.total, log_extra, transfer_result)

        logger.warning(
            "Batch was already counted, not decrementing again",
            extra={**log_extra, "remaining": decrement.remaining},
        )
        return BatchResult(message, BatchOutcome.DUPLICATE, decrement.remaining, transfer_result)

    async def _signal(
        self,
        message: BatchMessage,
        total: int,
        log_extra: Dict[str, Any],
        transfer_result: Optional[TransferResult],
    ) -> BatchResult:
        request = ZipArchiveRequest(message.event_id, message.job_id, total)
        message_id = await self.channel.publish(self.topic, request.to_dict(), key=message.event_id)

        try:
            await self.counter.mark_signaled(message.event_id, message.job_id)
        except PersistenceError as e:
            # The request is out; a redelivery may publish it once more
            logger.warning(f"Failed to mark run signaled: {e}", extra=log_extra)

        logger.info(
            "Last batch complete, requested final archive",
            extra={**log_extra, "total_archives_count": total, "message_id": message_id},
        )
        return BatchResult(
            message,
            BatchOutcome.SIGNALED,
            0,
            transfer_result,
            request=request,
            request_message_id=message_id,
        )
