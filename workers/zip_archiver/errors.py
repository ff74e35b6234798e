"""
Error types for the zip archiver.

Every failure raised by a component is one of these kinds:
- EnumerationError: Listing the source prefix failed
- PersistenceError: The counter store rejected a read or write
- TransferError: Fetch, archive write or upload failed inside a transfer
- DeletionError: Cleaning up an interim archive failed (never fatal)
- PublishError: The message channel rejected a publish
- MessageDecodeError: A wire payload could not be decoded

Invariants:
    - All errors inherit from ArchiverError
    - Errors carry a code for programmatic handling and details for logs
    - Backend errors are chained with ``raise ... from e``
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class ArchiverError(Exception):
    """Base exception for all archiver errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "ARCHIVER_ERROR"
        self.details = details or {}


class EnumerationError(ArchiverError):
    """Listing source objects failed.

    Fatal to the splitter. Raised before any run state exists.
    """

    def __init__(self, message: str, prefix: Optional[str] = None) -> None:
        super().__init__(message, code="ENUMERATION_ERROR", details={"prefix": prefix})
        self.prefix = prefix


class PersistenceError(ArchiverError):
    """Counter store read or write failed.

    Fatal to the current step. A batch whose decrement failed must not be
    treated as complete.
    """

    def __init__(
        self,
        message: str,
        event_id: Optional[str] = None,
        job_id: Optional[str] = None,
        code: str = "PERSISTENCE_ERROR",
    ) -> None:
        super().__init__(
            message,
            code=code,
            details={"event_id": event_id, "job_id": job_id},
        )
        self.event_id = event_id
        self.job_id = job_id


class RunNotFoundError(PersistenceError):
    """The run record does not exist (never created, deleted or expired)."""

    def __init__(self, event_id: str, job_id: str) -> None:
        super().__init__(
            f"Run record not found for event {event_id}, job {job_id}",
            event_id=event_id,
            job_id=job_id,
            code="RUN_NOT_FOUND",
        )


class CounterExhaustedError(PersistenceError):
    """A decrement was requested on a counter that already reached zero."""

    def __init__(self, event_id: str, job_id: str) -> None:
        super().__init__(
            f"Counter already at zero for event {event_id}, job {job_id}",
            event_id=event_id,
            job_id=job_id,
            code="COUNTER_EXHAUSTED",
        )


class TransferError(ArchiverError):
    """A streaming transfer failed.

    Raised for fetch failures, archive write failures and upload failures.
    No partial archive is ever reported as valid.
    """

    def __init__(
        self,
        message: str,
        destination_key: Optional[str] = None,
        source_key: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="TRANSFER_ERROR",
            details={"destination_key": destination_key, "source_key": source_key},
        )
        self.destination_key = destination_key
        self.source_key = source_key


class DeletionError(ArchiverError):
    """Deleting an interim artifact failed.

    Non-fatal: logged and collected, never aborts a merge.
    """

    def __init__(self, message: str, key: Optional[str] = None) -> None:
        super().__init__(message, code="DELETION_ERROR", details={"key": key})
        self.key = key


class PublishError(ArchiverError):
    """Publishing to the message channel failed."""

    def __init__(
        self,
        message: str,
        topic: Optional[str] = None,
        published_count: int = 0,
    ) -> None:
        super().__init__(
            message,
            code="PUBLISH_ERROR",
            details={"topic": topic, "published_count": published_count},
        )
        self.topic = topic
        self.published_count = published_count


class MessageDecodeError(ArchiverError):
    """A wire payload is not valid JSON or misses required fields."""

    def __init__(self, message: str, errors: Optional[List[str]] = None) -> None:
        super().__init__(message, code="MESSAGE_DECODE_ERROR", details={"errors": errors or []})
        self.errors = errors or []


class ObjectStoreError(ArchiverError):
    """Raw object store failure.

    Callers translate this into the error kind of the step they are in
    (EnumerationError, TransferError or DeletionError).
    """

    def __init__(self, message: str, key: Optional[str] = None) -> None:
        super().__init__(message, code="OBJECT_STORE_ERROR", details={"key": key})
        self.key = key


class ObjectNotFoundError(ObjectStoreError):
    """The requested object does not exist."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Object not found: {key}", key=key)
        self.code = "OBJECT_NOT_FOUND"


class DeliveryError(ArchiverError):
    """One or more messages of a batched delivery failed.

    Raised so the hosting platform redelivers. Messages that succeeded
    are safe to repeat.
    """

    def __init__(self, message: str, failed_message_ids: Optional[List[str]] = None) -> None:
        super().__init__(
            message,
            code="DELIVERY_ERROR",
            details={"failed_message_ids": failed_message_ids or []},
        )
        self.failed_message_ids = failed_message_ids or []
