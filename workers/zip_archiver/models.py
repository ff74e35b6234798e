"""
Wire payloads and storage key layout for the zip archiver.

Payload field names and archive keys are fixed for compatibility with
already deployed producers and consumers:

    BatchMessage        {"jobId", "objectKeys", "eventId", "taskNumber"}
    ZipArchiveRequest   {"eventId", "jobId", "totalArchivesCount"}

    interim archive     archives/{eventId}/archive_{taskNumber}.zip
    final archive       archives/{eventId}/final_archive.zip

Invariants:
    - taskNumber is 1-based and dense within a run
    - objectKeys of a BatchMessage is never empty
    - totalArchivesCount equals the run's TotalChildCount
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from .errors import MessageDecodeError

ARCHIVE_PREFIX = "archives"
ARCHIVE_CONTENT_TYPE = "application/zip"


def interim_archive_key(event_id: str, task_number: int) -> str:
    """Key of the interim archive built for one batch."""
    return f"{ARCHIVE_PREFIX}/{event_id}/archive_{task_number}.zip"


def final_archive_key(event_id: str) -> str:
    """Key of the merged archive for a run."""
    return f"{ARCHIVE_PREFIX}/{event_id}/final_archive.zip"


def _decode_json(raw: str | bytes) -> dict[str, Any]:
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MessageDecodeError(f"Failed to parse message body as JSON: {e}") from e
    if not isinstance(data, dict):
        raise MessageDecodeError("Message body must be a JSON object")
    return data


def _require(data: dict[str, Any], fields: dict[str, type]) -> None:
    errors = []
    for name, expected in fields.items():
        if name not in data:
            errors.append(f"missing field '{name}'")
        elif expected is int and (isinstance(data[name], bool) or not isinstance(data[name], int)):
            errors.append(f"field '{name}' must be an integer")
        elif not isinstance(data[name], expected):
            errors.append(f"field '{name}' must be of type {expected.__name__}")
    if errors:
        raise MessageDecodeError(f"Invalid message: {'; '.join(errors)}", errors=errors)


@dataclass(frozen=True)
class BatchMessage:
    """One unit of fan-out work: the object keys of a single batch.

    Attributes:
        event_id: Run identifier
        job_id: Job identifier within the run
        task_number: 1-based batch number, unique within the run
        object_keys: Source keys, in archive order

    Example:
        >>> msg = BatchMessage("evt", "job", 1, ("images/a.jpg",))
        >>> msg.to_dict()["taskNumber"]
        1
    """

    event_id: str
    job_id: str
    task_number: int
    object_keys: tuple[str, ...]

    def __post_init__(self) -> None:
        if self.task_number < 1:
            raise MessageDecodeError(f"taskNumber must be >= 1, got {self.task_number}")
        if not self.object_keys:
            raise MessageDecodeError("objectKeys must not be empty")

    @property
    def archive_key(self) -> str:
        return interim_archive_key(self.event_id, self.task_number)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire representation."""
        return {
            "jobId": self.job_id,
            "objectKeys": list(self.object_keys),
            "eventId": self.event_id,
            "taskNumber": self.task_number,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BatchMessage:
        """Create from the wire representation.

        Raises:
            MessageDecodeError: If required fields are missing or mistyped
        """
        _require(data, {"jobId": str, "objectKeys": list, "eventId": str, "taskNumber": int})
        if not all(isinstance(key, str) for key in data["objectKeys"]):
            raise MessageDecodeError("objectKeys must contain only strings")
        return cls(
            event_id=data["eventId"],
            job_id=data["jobId"],
            task_number=data["taskNumber"],
            object_keys=tuple(data["objectKeys"]),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str | bytes) -> BatchMessage:
        return cls.from_dict(_decode_json(raw))


@dataclass(frozen=True)
class ZipArchiveRequest:
    """The single fan-in signal of a run: every batch archive is uploaded.

    Attributes:
        event_id: Run identifier
        job_id: Job identifier within the run
        total_archives_count: Number of interim archives to merge
    """

    event_id: str
    job_id: str
    total_archives_count: int

    def __post_init__(self) -> None:
        if self.total_archives_count < 1:
            raise MessageDecodeError(
                f"totalArchivesCount must be >= 1, got {self.total_archives_count}"
            )

    @property
    def archive_key(self) -> str:
        return final_archive_key(self.event_id)

    def interim_keys(self) -> list[str]:
        """Keys of all interim archives of the run, in task order."""
        return [
            interim_archive_key(self.event_id, task_number)
            for task_number in range(1, self.total_archives_count + 1)
        ]

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire representation."""
        return {
            "eventId": self.event_id,
            "jobId": self.job_id,
            "totalArchivesCount": self.total_archives_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ZipArchiveRequest:
        """Create from the wire representation.

        Raises:
            MessageDecodeError: If required fields are missing or mistyped
        """
        _require(data, {"eventId": str, "jobId": str, "totalArchivesCount": int})
        return cls(
            event_id=data["eventId"],
            job_id=data["jobId"],
            total_archives_count=data["totalArchivesCount"],
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str | bytes) -> ZipArchiveRequest:
        return cls.from_dict(_decode_json(raw))
