"""
Finalizer: merge all interim archives of a run into the final archive.

Each interim archive becomes one opaque entry of the final archive, named by
its interim key. Interim archives are deleted as soon as they have been read
and queued, while the final upload is still running.

Invariants:
    - Entries are archive_1 .. archive_N in task order
    - A failed interim deletion is a DeletionError that is logged and
      collected; it never aborts the merge
    - The run record is deleted only after the final archive was uploaded
    - The final archive key is deterministic, so a repeated request
      overwrites rather than duplicates
    - A repeated request for a run whose record is gone and whose final
      archive exists is acknowledged without touching anything

How to change safely:
    - Deleting interim archives before the final upload completed means a
      failed upload loses them; move deletion after the transfer if
      retries of failed merges must be possible
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from ..errors import DeletionError, ObjectNotFoundError
from ..models import ZipArchiveRequest
from ..transfer import StreamingTransfer, TransferEntry, TransferResult

logger = logging.getLogger(__name__)


@dataclass
class FinalizeResult:
    """Outcome of one merge.

    Attributes:
        request: The request that was processed
        transfer: Result of the final archive transfer
        deleted_keys: Interim archives removed
        cleanup_failures: Non-fatal deletion failures
        already_complete: The run had been merged before; nothing was done
    """

    request: ZipArchiveRequest
    transfer: Optional[TransferResult]
    deleted_keys: List[str] = field(default_factory=list)
    cleanup_failures: List[DeletionError] = field(default_factory=list)
    already_complete: bool = False

    @property
    def archive_key(self) -> str:
        return self.request.archive_key


class Finalizer:
    """Processes ZipArchiveRequests.

    Attributes:
        transfer: StreamingTransfer building the final archive
        store: ObjectStore holding the interim archives
        counter: CounterStore holding the run record
    """

    def __init__(self, transfer: StreamingTransfer, store: Any, counter: Any) -> None:
        self.transfer = transfer
        self.store = store
        self.counter = counter

    async def _already_merged(self, request: ZipArchiveRequest) -> bool:
        if await self.counter.get_record(request.event_id, request.job_id) is not None:
            return False
        try:
            reader = await self.store.get(request.archive_key)
        except ObjectNotFoundError:
            return False
        await reader.close()
        return True

    async def finalize(self, request: ZipArchiveRequest) -> FinalizeResult:
        """Merge, clean up and delete the run record.

        Raises:
            TransferError: The final archive could not be built; the run
                record is kept
            PersistenceError: The run record could not be deleted
        """
        log_extra = {"event_id": request.event_id, "job_id": request.job_id}

        if await self._already_merged(request):
            logger.warning(
                "Final archive exists and run record is gone, skipping repeated request",
                extra={**log_extra, "archive_key": request.archive_key},
            )
            return FinalizeResult(request, None, already_complete=True)

        logger.info(
            "Merging interim archives",
            extra={**log_extra, "total_archives_count": request.total_archives_count},
        )

        deleted: List[str] = []
        failures: List[DeletionError] = []

        async def delete_interim(entry: TransferEntry) -> None:
            try:
                await self.store.delete(entry.source_key)
            except Exception as e:
                error = DeletionError(f"Failed to delete {entry.source_key}: {e}", key=entry.source_key)
                error.__cause__ = e
                failures.append(error)
                logger.warning(error.message, extra={**log_extra, "key": entry.source_key})
                return
            deleted.append(entry.source_key)

        entries = [TransferEntry(name=key, source_key=key) for key in request.interim_keys()]
        transfer_result = await self.transfer.transfer(
            entries, request.archive_key, on_entry_written=delete_interim
        )

        await self.counter.delete_record(request.event_id, request.job_id)

        logger.info(
            "Final archive complete",
            extra={
                **log_extra,
                "archive_key": request.archive_key,
                "entry_count": transfer_result.entry_count,
                "archive_bytes": transfer_result.archive_bytes,
                "cleanup_failures": len(failures),
            },
        )
        return FinalizeResult(request, transfer_result, deleted, failures)
