"""
Message channel for the zip archiver.

Backends:
- SNS (serverless deployments, push delivery)
- Kafka/Redpanda (consumer service deployments)
- In-memory (for testing)
"""

from .base import InboundMessage, MessageChannel, SubscribableChannel, create_message_channel
from .delivery import (
    SOURCE_DIRECT,
    SOURCE_SNS,
    SOURCE_SQS,
    Delivery,
    DeliveryReport,
    parse_delivery,
    process_delivery,
)
from .kafka import KafkaMessageChannel
from .memory import InMemoryMessageChannel
from .sns import SnsMessageChannel

__all__ = [
    # Protocol and types
    "MessageChannel",
    "SubscribableChannel",
    "InboundMessage",
    "create_message_channel",
    # Delivery dispatch
    "SOURCE_SNS",
    "SOURCE_SQS",
    "SOURCE_DIRECT",
    "Delivery",
    "DeliveryReport",
    "parse_delivery",
    "process_delivery",
    # Implementations
    "SnsMessageChannel",
    "KafkaMessageChannel",
    "InMemoryMessageChannel",
]
