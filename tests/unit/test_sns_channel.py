"""
Unit tests for the SNS message channel against a stub client.

Tests cover:
- Publish request shape (raw JSON, no envelope)
- MessageId passthrough
- ClientError and BotoCoreError wrapping
"""

import json

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from workers.zip_archiver.channel import MessageChannel, SnsMessageChannel
from workers.zip_archiver.config import SnsConfig
from workers.zip_archiver.errors import PublishError

TOPIC_ARN = "arn:aws:sns:us-east-1:123456789012:job-finished"


class StubSnsClient:
    """Records publish calls and replays queued responses."""

    def __init__(self):
        self.calls = []
        self.responses = []

    async def publish(self, **kwargs):
        self.calls.append(kwargs)
        response = self.responses.pop(0) if self.responses else {"MessageId": "sns-msg-1"}
        if isinstance(response, Exception):
            raise response
        return response


class TestSnsMessageChannel:
    """Tests for SnsMessageChannel."""

    @pytest.fixture
    def client(self):
        return StubSnsClient()

    @pytest.fixture
    def channel(self, client):
        channel = SnsMessageChannel(SnsConfig(job_finished_topic_arn=TOPIC_ARN))
        channel._client = client
        return channel

    def test_implements_protocol(self):
        assert isinstance(SnsMessageChannel(SnsConfig()), MessageChannel)

    @pytest.mark.asyncio
    async def test_publish_sends_raw_json(self, channel, client):
        payload = {"eventId": "evt", "jobId": "job", "totalArchivesCount": 3}

        await channel.publish(TOPIC_ARN, payload, key="evt")

        assert len(client.calls) == 1
        call = client.calls[0]
        assert set(call) == {"TopicArn", "Message"}
        assert call["TopicArn"] == TOPIC_ARN
        assert json.loads(call["Message"]) == payload

    @pytest.mark.asyncio
    async def test_publish_returns_message_id(self, channel, client):
        client.responses.append({"MessageId": "0f1e2d3c"})

        message_id = await channel.publish(TOPIC_ARN, {"eventId": "evt"})

        assert message_id == "0f1e2d3c"

    @pytest.mark.asyncio
    async def test_client_error_wrapped(self, channel, client):
        error = ClientError({"Error": {"Code": "NotFound", "Message": "Topic does not exist"}}, "Publish")
        client.responses.append(error)

        with pytest.raises(PublishError) as exc_info:
            await channel.publish(TOPIC_ARN, {"eventId": "evt"})

        assert exc_info.value.topic == TOPIC_ARN
        assert "NotFound" in exc_info.value.message
        assert exc_info.value.__cause__ is error

    @pytest.mark.asyncio
    async def test_botocore_error_wrapped(self, channel, client):
        error = EndpointConnectionError(endpoint_url="https://sns.us-east-1.amazonaws.com")
        client.responses.append(error)

        with pytest.raises(PublishError) as exc_info:
            await channel.publish(TOPIC_ARN, {"eventId": "evt"})

        assert exc_info.value.__cause__ is error

    @pytest.mark.asyncio
    async def test_publish_requires_connection(self):
        channel = SnsMessageChannel(SnsConfig())

        with pytest.raises(PublishError, match="not connected"):
            await channel.publish(TOPIC_ARN, {"eventId": "evt"})
