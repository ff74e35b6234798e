"""
Unit tests for delivery parsing and per-message dispatch.

Tests cover:
- SNS, SQS, SNS-in-SQS and direct event shapes
- Independent processing of each message
- SQS partial batch responses
"""

import json

import pytest

from workers.zip_archiver.channel import (
    SOURCE_DIRECT,
    SOURCE_SNS,
    SOURCE_SQS,
    parse_delivery,
    process_delivery,
)
from workers.zip_archiver.errors import DeliveryError, MessageDecodeError

PAYLOAD = {"eventId": "evt", "jobId": "job", "totalArchivesCount": 2}


def sns_record(message_id, payload):
    return {
        "EventSource": "aws:sns",
        "Sns": {
            "MessageId": message_id,
            "TopicArn": "arn:aws:sns:us-east-1:123:job-finished",
            "Message": json.dumps(payload),
        },
    }


def sqs_record(message_id, body):
    return {
        "eventSource": "aws:sqs",
        "messageId": message_id,
        "eventSourceARN": "arn:aws:sqs:us-east-1:123:batches",
        "body": body,
    }


class TestParseDelivery:
    """Tests for parse_delivery."""

    def test_sns_event(self):
        delivery = parse_delivery({"Records": [sns_record("m-1", PAYLOAD), sns_record("m-2", PAYLOAD)]})

        assert delivery.source == SOURCE_SNS
        assert [m.message_id for m in delivery.messages] == ["m-1", "m-2"]
        assert json.loads(delivery.messages[0].body) == PAYLOAD
        assert delivery.messages[0].topic == "arn:aws:sns:us-east-1:123:job-finished"

    def test_sqs_event(self):
        delivery = parse_delivery({"Records": [sqs_record("q-1", json.dumps(PAYLOAD))]})

        assert delivery.source == SOURCE_SQS
        assert delivery.messages[0].message_id == "q-1"
        assert json.loads(delivery.messages[0].body) == PAYLOAD
        assert delivery.messages[0].attributes["eventSourceARN"] == "arn:aws:sqs:us-east-1:123:batches"

    def test_sqs_body_with_sns_envelope_is_unwrapped(self):
        envelope = json.dumps({"Type": "Notification", "MessageId": "n-1", "Message": json.dumps(PAYLOAD)})

        delivery = parse_delivery({"Records": [sqs_record("q-1", envelope)]})

        assert json.loads(delivery.messages[0].body) == PAYLOAD

    def test_sqs_plain_text_body_kept(self):
        delivery = parse_delivery({"Records": [sqs_record("q-1", "not json")]})

        assert delivery.messages[0].body == "not json"

    def test_direct_event(self):
        delivery = parse_delivery(PAYLOAD)

        assert delivery.source == SOURCE_DIRECT
        assert len(delivery.messages) == 1
        assert delivery.messages[0].message_id == "direct"
        assert json.loads(delivery.messages[0].body) == PAYLOAD

    def test_unknown_record_rejected(self):
        with pytest.raises(MessageDecodeError):
            parse_delivery({"Records": [{"eventSource": "aws:s3"}]})


class TestProcessDelivery:
    """Tests for process_delivery and DeliveryReport."""

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_later_messages(self):
        delivery = parse_delivery(
            {"Records": [sqs_record(f"q-{i}", json.dumps({"n": i})) for i in range(1, 4)]}
        )
        seen = []

        async def handler(message):
            n = json.loads(message.body)["n"]
            seen.append(n)
            if n == 2:
                raise RuntimeError("boom")
            return n * 10

        report = await process_delivery(delivery.messages, handler)

        assert seen == [1, 2, 3]
        assert report.succeeded == ["q-1", "q-3"]
        assert list(report.failures) == ["q-2"]
        assert report.results == [10, 30]
        assert not report.ok

    @pytest.mark.asyncio
    async def test_batch_item_failures(self):
        delivery = parse_delivery({"Records": [sqs_record("q-1", "{}"), sqs_record("q-2", "{}")]})

        async def handler(message):
            if message.message_id == "q-2":
                raise ValueError("bad")

        report = await process_delivery(delivery.messages, handler)

        assert report.batch_item_failures() == {"batchItemFailures": [{"itemIdentifier": "q-2"}]}

    @pytest.mark.asyncio
    async def test_all_succeeded(self):
        delivery = parse_delivery({"Records": [sns_record("m-1", PAYLOAD)]})

        async def handler(message):
            return "ok"

        report = await process_delivery(delivery.messages, handler)

        assert report.ok
        assert report.batch_item_failures() == {"batchItemFailures": []}
        report.raise_for_failures()

    @pytest.mark.asyncio
    async def test_raise_for_failures(self):
        delivery = parse_delivery({"Records": [sns_record("m-1", PAYLOAD), sns_record("m-2", PAYLOAD)]})

        async def handler(message):
            if message.message_id == "m-1":
                raise RuntimeError("boom")

        report = await process_delivery(delivery.messages, handler)

        with pytest.raises(DeliveryError) as exc_info:
            report.raise_for_failures()
        assert exc_info.value.failed_message_ids == ["m-1"]
