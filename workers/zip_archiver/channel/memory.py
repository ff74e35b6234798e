"""
In-memory message channel implementation for testing.

Invariants:
    - All data is lost on process exit
    - Published payloads are kept per topic in publish order
    - nack() puts a message back at the end of its topic queue

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the SubscribableChannel protocol
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

from ..errors import PublishError
from .base import InboundMessage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishedMessage:
    """A message accepted by the in-memory channel."""

    topic: str
    message_id: str
    payload: Dict[str, Any]
    key: Optional[str] = None


class InMemoryMessageChannel:
    """In-memory implementation of SubscribableChannel for testing.

    Example:
        >>> channel = InMemoryMessageChannel()
        >>> await channel.connect()
        >>> await channel.publish("batches", {"eventId": "e1"})
        >>> channel.payloads("batches")
        [{'eventId': 'e1'}]
    """

    def __init__(self) -> None:
        self._published: Dict[str, List[PublishedMessage]] = defaultdict(list)
        self._queues: Dict[str, asyncio.Queue[InboundMessage]] = defaultdict(asyncio.Queue)
        self._connected = False
        self._next_id = 0

        # Failure injection
        self._publish_failure: Optional[tuple[int, Exception]] = None
        self._publish_attempts = 0

        # Observations
        self.committed: List[InboundMessage] = []
        self.nacked: List[InboundMessage] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True

    async def close(self) -> None:
        self._connected = False

    async def publish(
        self,
        topic: str,
        payload: Dict[str, Any],
        key: Optional[str] = None,
    ) -> str:
        attempt = self._publish_attempts
        self._publish_attempts += 1
        if self._publish_failure is not None and attempt >= self._publish_failure[0]:
            raise self._publish_failure[1]

        # Round-trip through JSON like a real backend
        body = json.dumps(payload)
        self._next_id += 1
        message_id = f"msg-{self._next_id}"
        self._published[topic].append(PublishedMessage(topic, message_id, json.loads(body), key))
        self._queues[topic].put_nowait(InboundMessage(message_id=message_id, body=body, topic=topic))
        logger.debug("Published in-memory message", extra={"topic": topic, "message_id": message_id})
        return message_id

    async def subscribe(self, topic: str, group_id: str) -> AsyncIterator[InboundMessage]:
        queue = self._queues[topic]
        while True:
            message = await queue.get()
            yield message

    async def commit(self, message: InboundMessage) -> None:
        self.committed.append(message)

    async def nack(self, message: InboundMessage) -> None:
        self.nacked.append(message)
        self._queues[message.topic or ""].put_nowait(message)

    # Testing helpers

    def published(self, topic: str) -> List[PublishedMessage]:
        """Messages published to topic, in order (testing helper)."""
        return list(self._published.get(topic, []))

    def payloads(self, topic: str) -> List[Dict[str, Any]]:
        return [message.payload for message in self._published.get(topic, [])]

    def inbound(self, topic: str) -> List[InboundMessage]:
        """Published messages as a consumer would receive them (testing helper)."""
        return [
            InboundMessage(message_id=m.message_id, body=json.dumps(m.payload), topic=topic)
            for m in self._published.get(topic, [])
        ]

    def fail_publish(self, after: int = 0, error: Optional[Exception] = None) -> None:
        """Make publishes fail once `after` more of them have succeeded.

        Args:
            after: Number of publishes that still succeed
            error: Exception to raise (PublishError by default)
        """
        self._publish_failure = (
            self._publish_attempts + after,
            error or PublishError("Injected publish failure"),
        )

    def pending(self, topic: str) -> int:
        """Number of messages not yet consumed from topic."""
        return self._queues[topic].qsize()

    def clear(self) -> None:
        self._published.clear()
        self._queues.clear()
        self.committed.clear()
        self.nacked.clear()
        self._publish_failure = None
