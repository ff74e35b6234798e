"""
In-memory counter store implementation for testing.

Invariants:
    - All data is lost on process exit
    - Operations are serialized by one asyncio.Lock, mirroring DynamoDB's
      per-item serialization of conditional updates
    - Expired records behave as absent

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the CounterStore protocol
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Tuple

from ..errors import CounterExhaustedError, PersistenceError, RunNotFoundError
from .base import DecrementResult, RunRecord

logger = logging.getLogger(__name__)


class InMemoryCounterStore:
    """In-memory implementation of CounterStore for testing.

    Example:
        >>> store = InMemoryCounterStore()
        >>> await store.connect()
        >>> await store.create_record("evt", "job", 2)
        >>> (await store.decrement_and_fetch("evt", "job")).remaining
        1
    """

    def __init__(
        self,
        default_ttl_seconds: int = 15 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the store.

        Args:
            default_ttl_seconds: Record lifetime when create_record() gets no TTL
            clock: Time source in unix seconds (override to test expiry)
        """
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self._records: Dict[Tuple[str, str], RunRecord] = {}
        self._lock = asyncio.Lock()
        self._connected = False
        self._failures: Dict[str, List[Exception]] = {}

        # Observations
        self.decrement_results: List[DecrementResult] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True

    async def close(self) -> None:
        self._connected = False

    def _check_failure(self, operation: str) -> None:
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _live_record(self, event_id: str, job_id: str) -> Optional[RunRecord]:
        record = self._records.get((event_id, job_id))
        if record is not None and record.is_expired(self._clock()):
            del self._records[(event_id, job_id)]
            logger.debug("Run record expired", extra={"event_id": event_id, "job_id": job_id})
            return None
        return record

    async def create_record(
        self,
        event_id: str,
        job_id: str,
        count: int,
        ttl_seconds: Optional[int] = None,
    ) -> RunRecord:
        async with self._lock:
            self._check_failure("create_record")
            if self._live_record(event_id, job_id) is not None:
                raise PersistenceError(
                    f"Run record already exists for event {event_id}, job {job_id}",
                    event_id=event_id,
                    job_id=job_id,
                )
            expires_at = int(self._clock()) + (ttl_seconds or self.default_ttl_seconds)
            record = RunRecord(event_id, job_id, total=count, remaining=count, expires_at=expires_at)
            self._records[(event_id, job_id)] = record
            return record

    async def decrement_and_fetch(
        self,
        event_id: str,
        job_id: str,
        task_number: Optional[int] = None,
    ) -> DecrementResult:
        async with self._lock:
            self._check_failure("decrement_and_fetch")
            record = self._live_record(event_id, job_id)
            if record is None:
                raise RunNotFoundError(event_id, job_id)

            if task_number is not None and task_number in record.processed_tasks:
                result = DecrementResult(
                    record.remaining, record.total, duplicate=True, signaled=record.signaled
                )
                self.decrement_results.append(result)
                return result

            if record.remaining <= 0:
                raise CounterExhaustedError(event_id, job_id)

            processed = record.processed_tasks
            if task_number is not None:
                processed = processed | {task_number}
            record = replace(record, remaining=record.remaining - 1, processed_tasks=processed)
            self._records[(event_id, job_id)] = record

            result = DecrementResult(record.remaining, record.total)
            self.decrement_results.append(result)
            return result

    async def mark_signaled(self, event_id: str, job_id: str) -> None:
        async with self._lock:
            self._check_failure("mark_signaled")
            record = self._live_record(event_id, job_id)
            if record is not None:
                self._records[(event_id, job_id)] = replace(record, signaled=True)

    async def get_record(self, event_id: str, job_id: str) -> Optional[RunRecord]:
        async with self._lock:
            self._check_failure("get_record")
            return self._live_record(event_id, job_id)

    async def delete_record(self, event_id: str, job_id: str) -> None:
        async with self._lock:
            self._check_failure("delete_record")
            self._records.pop((event_id, job_id), None)

    # Testing helpers

    def fail_next(self, operation: str, error: Exception) -> None:
        """Make the next call to operation raise error.

        Args:
            operation: Method name, e.g. "decrement_and_fetch"
            error: Exception to raise
        """
        self._failures.setdefault(operation, []).append(error)

    def peek(self, event_id: str, job_id: str) -> Optional[RunRecord]:
        """Return a record without expiry handling or locking."""
        return self._records.get((event_id, job_id))

    def clear(self) -> None:
        self._records.clear()
        self.decrement_results.clear()
