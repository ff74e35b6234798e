"""
Base protocol and types for the run counter store.

The counter store is the only state shared by concurrently running batch
workers. One record per run acts as a distributed countdown latch: it is
created with the number of batches and every completed batch subtracts one.
Whoever moves it to zero triggers the merge.

Invariants:
    - 0 <= remaining <= total at all observable times
    - decrement_and_fetch() is linearizable: N decrements on a counter
      created with N return exactly {N-1, ..., 0}, each once
    - A task number is counted at most once per run
    - delete_record() of an absent record is not an error
    - signaled is set only after the ZipArchiveRequest was published, so a
      redelivered last batch can publish it again when that publish failed

How to change safely:
    - The decrement and its dedup check must stay one atomic store
      operation; a read-then-write breaks the exactly-once zero crossing
"""

from __future__ import annotations

import time
from abc import abstractmethod
from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Protocol, runtime_checkable


@dataclass(frozen=True)
class RunRecord:
    """Snapshot of one run's counter record.

    Attributes:
        event_id: Run identifier
        job_id: Job identifier within the run
        total: TotalChildCount, fixed at creation
        remaining: RemainingChildCount
        expires_at: Unix seconds after which the store may reclaim the record
        processed_tasks: Task numbers already counted
        signaled: Whether the ZipArchiveRequest of the run was published
    """

    event_id: str
    job_id: str
    total: int
    remaining: int
    expires_at: int
    processed_tasks: FrozenSet[int] = field(default_factory=frozenset)
    signaled: bool = False

    @property
    def completed(self) -> int:
        return self.total - self.remaining

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at


@dataclass(frozen=True)
class DecrementResult:
    """Outcome of decrement_and_fetch().

    Attributes:
        remaining: Counter value after the call
        total: TotalChildCount read in the same atomic operation
        duplicate: True if the task was already counted and nothing changed
        signaled: For duplicates, whether the run was already signaled
    """

    remaining: int
    total: int
    duplicate: bool = False
    signaled: bool = False

    @property
    def needs_signal(self) -> bool:
        """Whether a duplicate found the run at zero without a published request."""
        return self.duplicate and self.remaining == 0 and not self.signaled

    @property
    def reached_zero(self) -> bool:
        """Whether this call is the one that moved the counter to zero."""
        return self.remaining == 0 and not self.duplicate


@runtime_checkable
class CounterStore(Protocol):
    """Protocol for counter store backends.

    Example:
        >>> store = DynamoDbCounterStore(dynamodb_config)
        >>> await store.connect()
        >>> await store.create_record("evt", "job", 3)
        >>> (await store.decrement_and_fetch("evt", "job", task_number=1)).remaining
        2
    """

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def create_record(
        self,
        event_id: str,
        job_id: str,
        count: int,
        ttl_seconds: Optional[int] = None,
    ) -> RunRecord:
        """Create a run record with total = remaining = count.

        Raises:
            PersistenceError: If the store rejects the write or the record exists
        """
        ...

    @abstractmethod
    async def decrement_and_fetch(
        self,
        event_id: str,
        job_id: str,
        task_number: Optional[int] = None,
    ) -> DecrementResult:
        """Atomically subtract one and return the new value.

        When task_number is given the decrement happens only if that task
        was not counted before; otherwise a duplicate result is returned.

        Raises:
            RunNotFoundError: If the record does not exist
            CounterExhaustedError: If the counter is already zero
            PersistenceError: For other store failures
        """
        ...

    @abstractmethod
    async def mark_signaled(self, event_id: str, job_id: str) -> None:
        """Record that the run's ZipArchiveRequest was published.

        An absent record is not an error; the finalizer may already have
        deleted it.

        Raises:
            PersistenceError: If the write fails
        """
        ...

    @abstractmethod
    async def get_record(self, event_id: str, job_id: str) -> Optional[RunRecord]:
        """Read a run record, or None if absent.

        Raises:
            PersistenceError: If the read fails
        """
        ...

    @abstractmethod
    async def delete_record(self, event_id: str, job_id: str) -> None:
        """Delete a run record. Idempotent.

        Raises:
            PersistenceError: If the delete fails
        """
        ...
