"""
DynamoDB counter store implementation.

One item per run, keyed by PK=EVENT#<eventId>, SK=ARCHIVE_JOB#<jobId>:

    CHILD_JOB_COUNT        N   remaining batches
    TOTAL_CHILD_JOB_COUNT  N   batches created by the splitter
    TTL                    N   expiry, unix seconds (table TTL attribute)
    PROCESSED_TASKS        NS  task numbers already counted
    SIGNALED               BOOL set once the ZipArchiveRequest was published

Invariants:
    - Decrement and dedup insertion are a single conditional UpdateItem,
      serialized by DynamoDB per item, which makes the countdown linearizable
    - TOTAL_CHILD_JOB_COUNT is returned by the same UpdateItem (ALL_NEW)
    - Records are reclaimed by DynamoDB TTL if the finalizer never runs

How to change safely:
    - The item layout is shared with already running functions; add
      attributes, never rename existing ones
    - Enable TTL on the TTL attribute when creating the table
"""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from .._aws import client_kwargs, error_code
from ..errors import CounterExhaustedError, PersistenceError, RunNotFoundError
from .base import DecrementResult, RunRecord

logger = logging.getLogger(__name__)

_CONDITION_FAILED = "ConditionalCheckFailedException"


def _key(event_id: str, job_id: str) -> dict[str, Any]:
    return {
        "PK": {"S": f"EVENT#{event_id}"},
        "SK": {"S": f"ARCHIVE_JOB#{job_id}"},
    }


def _parse_item(event_id: str, job_id: str, item: dict[str, Any]) -> RunRecord:
    processed = item.get("PROCESSED_TASKS", {}).get("NS", [])
    return RunRecord(
        event_id=event_id,
        job_id=job_id,
        total=int(item["TOTAL_CHILD_JOB_COUNT"]["N"]),
        remaining=int(item["CHILD_JOB_COUNT"]["N"]),
        expires_at=int(item["TTL"]["N"]),
        processed_tasks=frozenset(int(n) for n in processed),
        signaled=item.get("SIGNALED", {}).get("BOOL", False),
    )


class DynamoDbCounterStore:
    """DynamoDB implementation of the CounterStore protocol.

    Uses aiobotocore for async operations.

    Attributes:
        config: DynamoDbConfig instance
        default_ttl_seconds: Record lifetime when create_record() gets no TTL

    Example:
        >>> store = DynamoDbCounterStore(DynamoDbConfig(table_name="archive-jobs"))
        >>> await store.connect()
        >>> await store.create_record("evt", "job", 4)
    """

    def __init__(self, config: Any) -> None:
        """Initialize the counter store.

        Args:
            config: DynamoDbConfig instance
        """
        self.config = config
        self.default_ttl_seconds = config.record_ttl_seconds
        self._session = None
        self._client = None
        self._client_ctx = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Create the DynamoDB client."""
        if self._client:
            return

        self._session = get_session()
        self._client_ctx = self._session.create_client(
            "dynamodb",
            **client_kwargs(self.config.region, self.config.endpoint_url),
        )
        self._client = await self._client_ctx.__aenter__()
        logger.debug(
            "DynamoDB client created",
            extra={"table": self.config.table_name, "endpoint": self.config.endpoint_url or "AWS"},
        )

    async def close(self) -> None:
        """Close the DynamoDB client."""
        if self._client:
            await self._client_ctx.__aexit__(None, None, None)
            self._client = None
            self._session = None

    def _require_client(self) -> Any:
        if not self._client:
            raise PersistenceError("DynamoDB counter store is not connected")
        return self._client

    async def create_record(
        self,
        event_id: str,
        job_id: str,
        count: int,
        ttl_seconds: Optional[int] = None,
    ) -> RunRecord:
        """Write a new run record with both counters set to count."""
        client = self._require_client()
        expires_at = int(time.time()) + (ttl_seconds or self.default_ttl_seconds)

        item = {
            **_key(event_id, job_id),
            "CHILD_JOB_COUNT": {"N": str(count)},
            "TOTAL_CHILD_JOB_COUNT": {"N": str(count)},
            "TTL": {"N": str(expires_at)},
        }

        try:
            await client.put_item(
                TableName=self.config.table_name,
                Item=item,
                ConditionExpression="attribute_not_exists(PK)",
            )
        except ClientError as e:
            if error_code(e) == _CONDITION_FAILED:
                raise PersistenceError(
                    f"Run record already exists for event {event_id}, job {job_id}",
                    event_id=event_id,
                    job_id=job_id,
                ) from e
            raise PersistenceError(
                f"Failed to create run record: {e}", event_id=event_id, job_id=job_id
            ) from e
        except BotoCoreError as e:
            raise PersistenceError(
                f"Failed to create run record: {e}", event_id=event_id, job_id=job_id
            ) from e

        logger.info(
            "Created run record",
            extra={"event_id": event_id, "job_id": job_id, "count": count, "expires_at": expires_at},
        )
        return RunRecord(event_id, job_id, total=count, remaining=count, expires_at=expires_at)

    async def decrement_and_fetch(
        self,
        event_id: str,
        job_id: str,
        task_number: Optional[int] = None,
    ) -> DecrementResult:
        """Atomically decrement CHILD_JOB_COUNT and return the new value."""
        client = self._require_client()

        values: dict[str, Any] = {
            ":decrement": {"N": "-1"},
            ":zero": {"N": "0"},
        }
        if task_number is None:
            update = "ADD CHILD_JOB_COUNT :decrement"
            condition = "attribute_exists(PK) AND CHILD_JOB_COUNT > :zero"
        else:
            update = "ADD CHILD_JOB_COUNT :decrement, PROCESSED_TASKS :task_set"
            condition = (
                "attribute_exists(PK) AND CHILD_JOB_COUNT > :zero "
                "AND NOT contains(PROCESSED_TASKS, :task_number)"
            )
            values[":task_set"] = {"NS": [str(task_number)]}
            values[":task_number"] = {"N": str(task_number)}

        try:
            response = await client.update_item(
                TableName=self.config.table_name,
                Key=_key(event_id, job_id),
                UpdateExpression=update,
                ConditionExpression=condition,
                ExpressionAttributeValues=values,
                ReturnValues="ALL_NEW",
                ReturnValuesOnConditionCheckFailure="ALL_OLD",
            )
        except ClientError as e:
            if error_code(e) == _CONDITION_FAILED:
                return await self._classify_condition_failure(
                    event_id, job_id, task_number, e.response.get("Item")
                )
            logger.error(f"Error decrementing child job count: {e}")
            raise PersistenceError(
                f"Failed to decrement run counter: {e}", event_id=event_id, job_id=job_id
            ) from e
        except BotoCoreError as e:
            raise PersistenceError(
                f"Failed to decrement run counter: {e}", event_id=event_id, job_id=job_id
            ) from e

        record = _parse_item(event_id, job_id, response["Attributes"])
        return DecrementResult(remaining=record.remaining, total=record.total)

    async def _classify_condition_failure(
        self,
        event_id: str,
        job_id: str,
        task_number: Optional[int],
        old_item: Optional[dict[str, Any]],
    ) -> DecrementResult:
        """Turn a failed decrement condition into a duplicate result or an error."""
        if old_item:
            record = _parse_item(event_id, job_id, old_item)
        else:
            record = await self.get_record(event_id, job_id)

        if record is None:
            raise RunNotFoundError(event_id, job_id)

        if task_number is not None and task_number in record.processed_tasks:
            logger.warning(
                "Task already counted, skipping decrement",
                extra={"event_id": event_id, "job_id": job_id, "task_number": task_number},
            )
            return DecrementResult(
                remaining=record.remaining,
                total=record.total,
                duplicate=True,
                signaled=record.signaled,
            )

        if record.remaining <= 0:
            raise CounterExhaustedError(event_id, job_id)

        raise PersistenceError(
            "Decrement condition failed for an unknown reason",
            event_id=event_id,
            job_id=job_id,
        )

    async def mark_signaled(self, event_id: str, job_id: str) -> None:
        """Set SIGNALED on an existing record."""
        client = self._require_client()
        try:
            await client.update_item(
                TableName=self.config.table_name,
                Key=_key(event_id, job_id),
                UpdateExpression="SET SIGNALED = :signaled",
                ConditionExpression="attribute_exists(PK)",
                ExpressionAttributeValues={":signaled": {"BOOL": True}},
            )
        except ClientError as e:
            if error_code(e) == _CONDITION_FAILED:
                logger.debug(
                    "Run record already gone, not marking signaled",
                    extra={"event_id": event_id, "job_id": job_id},
                )
                return
            raise PersistenceError(
                f"Failed to mark run signaled: {e}", event_id=event_id, job_id=job_id
            ) from e
        except BotoCoreError as e:
            raise PersistenceError(
                f"Failed to mark run signaled: {e}", event_id=event_id, job_id=job_id
            ) from e

    async def get_record(self, event_id: str, job_id: str) -> Optional[RunRecord]:
        """Strongly consistent read of a run record."""
        client = self._require_client()
        try:
            response = await client.get_item(
                TableName=self.config.table_name,
                Key=_key(event_id, job_id),
                ConsistentRead=True,
            )
        except (ClientError, BotoCoreError) as e:
            raise PersistenceError(
                f"Failed to read run record: {e}", event_id=event_id, job_id=job_id
            ) from e

        item = response.get("Item")
        if not item:
            return None
        return _parse_item(event_id, job_id, item)

    async def delete_record(self, event_id: str, job_id: str) -> None:
        """Delete a run record (DeleteItem of an absent key succeeds)."""
        client = self._require_client()
        try:
            await client.delete_item(
                TableName=self.config.table_name,
                Key=_key(event_id, job_id),
            )
        except (ClientError, BotoCoreError) as e:
            raise PersistenceError(
                f"Failed to delete run record: {e}", event_id=event_id, job_id=job_id
            ) from e

        logger.info("Deleted run record", extra={"event_id": event_id, "job_id": job_id})
