"""
Unit tests for the DynamoDB counter store against a stub client.

Tests cover:
- Item layout and conditional expressions
- Decrement result parsing
- Condition failure classification (duplicate, exhausted, missing)
- Error wrapping
"""

import pytest
from botocore.exceptions import ClientError

from workers.zip_archiver.config import DynamoDbConfig
from workers.zip_archiver.counter import DynamoDbCounterStore
from workers.zip_archiver.errors import (
    CounterExhaustedError,
    PersistenceError,
    RunNotFoundError,
)


def client_error(code, operation="UpdateItem", item=None):
    response = {"Error": {"Code": code, "Message": code}}
    if item is not None:
        response["Item"] = item
    return ClientError(response, operation)


def item(remaining, total, processed=None, ttl=1_700_000_900):
    data = {
        "PK": {"S": "EVENT#evt"},
        "SK": {"S": "ARCHIVE_JOB#job"},
        "CHILD_JOB_COUNT": {"N": str(remaining)},
        "TOTAL_CHILD_JOB_COUNT": {"N": str(total)},
        "TTL": {"N": str(ttl)},
    }
    if processed:
        data["PROCESSED_TASKS"] = {"NS": [str(n) for n in processed]}
    return data


class StubDynamoDbClient:
    """Records calls and replays queued responses."""

    def __init__(self):
        self.calls = []
        self.responses = {}

    def queue(self, operation, response):
        self.responses.setdefault(operation, []).append(response)

    async def _call(self, operation, kwargs):
        self.calls.append((operation, kwargs))
        pending = self.responses.get(operation)
        response = pending.pop(0) if pending else {}
        if isinstance(response, Exception):
            raise response
        return response

    async def put_item(self, **kwargs):
        return await self._call("put_item", kwargs)

    async def update_item(self, **kwargs):
        return await self._call("update_item", kwargs)

    async def get_item(self, **kwargs):
        return await self._call("get_item", kwargs)

    async def delete_item(self, **kwargs):
        return await self._call("delete_item", kwargs)


class TestDynamoDbCounterStore:
    """Tests for DynamoDbCounterStore."""

    @pytest.fixture
    def client(self):
        return StubDynamoDbClient()

    @pytest.fixture
    def store(self, client):
        store = DynamoDbCounterStore(DynamoDbConfig(table_name="archive-jobs", record_ttl_seconds=900))
        store._client = client
        return store

    @pytest.mark.asyncio
    async def test_requires_connection(self):
        store = DynamoDbCounterStore(DynamoDbConfig(table_name="archive-jobs"))

        with pytest.raises(PersistenceError):
            await store.get_record("evt", "job")

    @pytest.mark.asyncio
    async def test_create_record_item_layout(self, store, client):
        record = await store.create_record("evt", "job", 4)

        operation, kwargs = client.calls[0]
        assert operation == "put_item"
        assert kwargs["TableName"] == "archive-jobs"
        assert kwargs["ConditionExpression"] == "attribute_not_exists(PK)"
        written = kwargs["Item"]
        assert written["PK"] == {"S": "EVENT#evt"}
        assert written["SK"] == {"S": "ARCHIVE_JOB#job"}
        assert written["CHILD_JOB_COUNT"] == {"N": "4"}
        assert written["TOTAL_CHILD_JOB_COUNT"] == {"N": "4"}
        assert int(written["TTL"]["N"]) == record.expires_at
        assert record.total == record.remaining == 4

    @pytest.mark.asyncio
    async def test_create_existing_record_rejected(self, store, client):
        client.queue("put_item", client_error("ConditionalCheckFailedException", "PutItem"))

        with pytest.raises(PersistenceError, match="already exists"):
            await store.create_record("evt", "job", 4)

    @pytest.mark.asyncio
    async def test_create_failure_wrapped(self, store, client):
        error = client_error("ProvisionedThroughputExceededException", "PutItem")
        client.queue("put_item", error)

        with pytest.raises(PersistenceError) as exc_info:
            await store.create_record("evt", "job", 4)
        assert exc_info.value.__cause__ is error

    @pytest.mark.asyncio
    async def test_decrement_with_task_is_single_conditional_update(self, store, client):
        client.queue("update_item", {"Attributes": item(remaining=2, total=3, processed=[1])})

        result = await store.decrement_and_fetch("evt", "job", task_number=1)

        assert (result.remaining, result.total, result.duplicate) == (2, 3, False)
        operation, kwargs = client.calls[0]
        assert operation == "update_item"
        assert kwargs["Key"] == {"PK": {"S": "EVENT#evt"}, "SK": {"S": "ARCHIVE_JOB#job"}}
        assert kwargs["UpdateExpression"] == "ADD CHILD_JOB_COUNT :decrement, PROCESSED_TASKS :task_set"
        assert "NOT contains(PROCESSED_TASKS, :task_number)" in kwargs["ConditionExpression"]
        assert "CHILD_JOB_COUNT > :zero" in kwargs["ConditionExpression"]
        assert kwargs["ExpressionAttributeValues"][":decrement"] == {"N": "-1"}
        assert kwargs["ExpressionAttributeValues"][":task_set"] == {"NS": ["1"]}
        assert kwargs["ExpressionAttributeValues"][":task_number"] == {"N": "1"}
        assert kwargs["ReturnValues"] == "ALL_NEW"
        assert kwargs["ReturnValuesOnConditionCheckFailure"] == "ALL_OLD"

    @pytest.mark.asyncio
    async def test_decrement_without_task(self, store, client):
        client.queue("update_item", {"Attributes": item(remaining=0, total=1)})

        result = await store.decrement_and_fetch("evt", "job")

        assert result.reached_zero
        _, kwargs = client.calls[0]
        assert kwargs["UpdateExpression"] == "ADD CHILD_JOB_COUNT :decrement"
        assert ":task_set" not in kwargs["ExpressionAttributeValues"]

    @pytest.mark.asyncio
    async def test_condition_failure_on_processed_task_is_duplicate(self, store, client):
        client.queue(
            "update_item",
            client_error("ConditionalCheckFailedException", item=item(remaining=1, total=3, processed=[1, 2])),
        )

        result = await store.decrement_and_fetch("evt", "job", task_number=2)

        assert result.duplicate
        assert result.remaining == 1
        assert not result.reached_zero
        assert [op for op, _ in client.calls] == ["update_item"]

    @pytest.mark.asyncio
    async def test_condition_failure_at_zero_is_exhausted(self, store, client):
        client.queue(
            "update_item",
            client_error("ConditionalCheckFailedException", item=item(remaining=0, total=2, processed=[1, 2])),
        )

        with pytest.raises(CounterExhaustedError):
            await store.decrement_and_fetch("evt", "job", task_number=3)

    @pytest.mark.asyncio
    async def test_condition_failure_without_item_reads_record(self, store, client):
        client.queue("update_item", client_error("ConditionalCheckFailedException"))
        client.queue("get_item", {"Item": item(remaining=1, total=2, processed=[1])})

        result = await store.decrement_and_fetch("evt", "job", task_number=1)

        assert result.duplicate
        operation, kwargs = client.calls[1]
        assert operation == "get_item"
        assert kwargs["ConsistentRead"] is True

    @pytest.mark.asyncio
    async def test_condition_failure_on_missing_record(self, store, client):
        client.queue("update_item", client_error("ConditionalCheckFailedException"))
        client.queue("get_item", {})

        with pytest.raises(RunNotFoundError):
            await store.decrement_and_fetch("evt", "job", task_number=1)

    @pytest.mark.asyncio
    async def test_decrement_other_error_wrapped(self, store, client):
        client.queue("update_item", client_error("InternalServerError"))

        with pytest.raises(PersistenceError) as exc_info:
            await store.decrement_and_fetch("evt", "job", task_number=1)
        assert not isinstance(exc_info.value, (RunNotFoundError, CounterExhaustedError))

    @pytest.mark.asyncio
    async def test_get_record_parses_item(self, store, client):
        client.queue("get_item", {"Item": item(remaining=1, total=3, processed=[2, 3])})

        record = await store.get_record("evt", "job")

        assert record.total == 3
        assert record.remaining == 1
        assert record.completed == 2
        assert record.processed_tasks == frozenset({2, 3})
        assert record.expires_at == 1_700_000_900

    @pytest.mark.asyncio
    async def test_get_missing_record(self, store, client):
        client.queue("get_item", {})

        assert await store.get_record("evt", "job") is None

    @pytest.mark.asyncio
    async def test_delete_record(self, store, client):
        await store.delete_record("evt", "job")

        operation, kwargs = client.calls[0]
        assert operation == "delete_item"
        assert kwargs["Key"]["PK"] == {"S": "EVENT#evt"}

    @pytest.mark.asyncio
    async def test_delete_failure_wrapped(self, store, client):
        client.queue("delete_item", client_error("InternalServerError", "DeleteItem"))

        with pytest.raises(PersistenceError):
            await store.delete_record("evt", "job")

    @pytest.mark.asyncio
    async def test_get_record_reads_signaled(self, store, client):
        data = item(remaining=0, total=1, processed=[1])
        data["SIGNALED"] = {"BOOL": True}
        client.queue("get_item", {"Item": data})

        record = await store.get_record("evt", "job")

        assert record.signaled

    @pytest.mark.asyncio
    async def test_duplicate_at_zero_without_signal_needs_signal(self, store, client):
        client.queue(
            "update_item",
            client_error("ConditionalCheckFailedException", item=item(remaining=0, total=1, processed=[1])),
        )

        result = await store.decrement_and_fetch("evt", "job", task_number=1)

        assert result.duplicate
        assert result.needs_signal

    @pytest.mark.asyncio
    async def test_mark_signaled_request(self, store, client):
        await store.mark_signaled("evt", "job")

        operation, kwargs = client.calls[0]
        assert operation == "update_item"
        assert kwargs["Key"] == {"PK": {"S": "EVENT#evt"}, "SK": {"S": "ARCHIVE_JOB#job"}}
        assert kwargs["UpdateExpression"] == "SET SIGNALED = :signaled"
        assert kwargs["ConditionExpression"] == "attribute_exists(PK)"
        assert kwargs["ExpressionAttributeValues"] == {":signaled": {"BOOL": True}}

    @pytest.mark.asyncio
    async def test_mark_signaled_on_deleted_record_is_ignored(self, store, client):
        client.queue("update_item", client_error("ConditionalCheckFailedException"))

        await store.mark_signaled("evt", "job")

    @pytest.mark.asyncio
    async def test_mark_signaled_failure_wrapped(self, store, client):
        client.queue("update_item", client_error("InternalServerError"))

        with pytest.raises(PersistenceError):
            await store.mark_signaled("evt", "job")
