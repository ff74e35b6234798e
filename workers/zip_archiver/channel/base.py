"""
Base protocol and types for the message channel.

The channel carries two kinds of JSON payloads: one BatchMessage per batch
(fan-out) and at most one ZipArchiveRequest per run (fan-in). Delivery is
at-least-once, possibly batched, with no ordering guarantee across messages.

Invariants:
    - publish() returns only after the backend acknowledged the message
    - Payloads are JSON objects; field names are fixed by the wire format
    - Consumers must be safe against redelivery of any message

How to change safely:
    - Add new backends by implementing MessageChannel
    - Keep payload encoding (UTF-8 JSON) identical across backends
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, Optional, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import ServiceConfig


@dataclass(frozen=True)
class InboundMessage:
    """One message received from the channel.

    Attributes:
        message_id: Backend message id (SNS MessageId, SQS messageId,
            or topic:partition:offset for Kafka)
        body: Raw JSON payload
        topic: Source topic, when known
        partition: Kafka partition, when consumed from Kafka
        offset: Kafka offset, when consumed from Kafka
        attributes: Backend-specific metadata
    """

    message_id: str
    body: str
    topic: Optional[str] = None
    partition: Optional[int] = None
    offset: Optional[int] = None
    attributes: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class MessageChannel(Protocol):
    """Protocol for publishing to the message channel.

    Example:
        >>> channel = SnsMessageChannel(sns_config)
        >>> await channel.connect()
        >>> message_id = await channel.publish(topic_arn, {"eventId": "..."})
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the backend.

        Raises:
            PublishError: If the connection cannot be established
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def publish(
        self,
        topic: str,
        payload: Dict[str, Any],
        key: Optional[str] = None,
    ) -> str:
        """Publish one JSON payload.

        Args:
            topic: Topic name or ARN
            payload: JSON-serializable object
            key: Optional partition/grouping key

        Returns:
            Backend message id

        Raises:
            PublishError: If the backend rejects the message
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...


@runtime_checkable
class SubscribableChannel(MessageChannel, Protocol):
    """A channel that can also be consumed in-process (Kafka, in-memory).

    Push-based backends (SNS) deliver to serverless handlers instead.
    """

    @abstractmethod
    def subscribe(self, topic: str, group_id: str) -> AsyncIterator[InboundMessage]:
        """Yield messages from topic for consumer group group_id."""
        ...

    @abstractmethod
    async def commit(self, message: InboundMessage) -> None:
        """Acknowledge a message so it is not redelivered."""
        ...

    @abstractmethod
    async def nack(self, message: InboundMessage) -> None:
        """Reject a message so it is delivered again."""
        ...


def create_message_channel(config: ServiceConfig) -> MessageChannel:
    """Factory function to create a message channel from configuration.

    Args:
        config: Service configuration

    Returns:
        Appropriate MessageChannel implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import ChannelBackend
    from .kafka import KafkaMessageChannel
    from .sns import SnsMessageChannel

    if config.channel_backend == ChannelBackend.SNS:
        return SnsMessageChannel(config.sns)
    elif config.channel_backend == ChannelBackend.KAFKA:
        return KafkaMessageChannel(config.kafka)
    else:
        raise ValueError(f"Unsupported channel backend: {config.channel_backend}")
