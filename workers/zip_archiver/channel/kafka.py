"""
Kafka/Redpanda message channel implementation.

Used by the long-running consumer service (main.py) as an alternative to
SNS-triggered functions. Works with Apache Kafka, Amazon MSK and Redpanda.

Invariants:
    - Producer waits for acknowledgment (acks from config, 'all' by default)
    - Idempotent producer prevents duplicates on producer retry
    - Consumers use manual commit; a message is committed only after it
      was fully processed
    - nack() seeks back so the same message is consumed again

How to change safely:
    - Test with an actual Kafka/Redpanda cluster before deploying
    - Messages are keyed by eventId so one run's messages share a partition
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError, KafkaError, KafkaTimeoutError
from aiokafka.structs import OffsetAndMetadata, TopicPartition

from ..errors import PublishError
from .base import InboundMessage

logger = logging.getLogger(__name__)


class KafkaMessageChannel:
    """Kafka implementation of the SubscribableChannel protocol.

    Attributes:
        config: KafkaConfig instance

    Example:
        >>> channel = KafkaMessageChannel(KafkaConfig(brokers="localhost:9092"))
        >>> await channel.connect()
        >>> await channel.publish("zip-archiver-batches", {"eventId": "e1"}, key="e1")
    """

    def __init__(self, config: Any) -> None:
        self.config = config
        self._producer: AIOKafkaProducer | None = None
        self._consumers: Dict[str, AIOKafkaConsumer] = {}
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected and self._producer is not None

    def _security_settings(self) -> Dict[str, Any]:
        settings: Dict[str, Any] = {}
        if self.config.security_protocol != "PLAINTEXT":
            settings["security_protocol"] = self.config.security_protocol
        if self.config.sasl_mechanism:
            settings["sasl_mechanism"] = self.config.sasl_mechanism
            settings["sasl_plain_username"] = self.config.sasl_username
            settings["sasl_plain_password"] = self.config.sasl_password
        if self.config.ssl_cafile:
            settings["ssl_cafile"] = self.config.ssl_cafile
        return settings

    async def connect(self) -> None:
        """Start the producer.

        Raises:
            PublishError: If the cluster is unreachable
        """
        if self._connected:
            return

        try:
            self._producer = AIOKafkaProducer(
                bootstrap_servers=self.config.brokers,
                acks=self.config.acks,
                enable_idempotence=True,
                request_timeout_ms=30000,
                retry_backoff_ms=100,
                **self._security_settings(),
            )
            await self._producer.start()
            self._connected = True
            logger.info(
                "Connected to Kafka",
                extra={"brokers": self.config.brokers, "acks": self.config.acks},
            )
        except Exception as e:
            self._connected = False
            raise PublishError(f"Failed to connect to Kafka: {e}") from e

    async def close(self) -> None:
        """Stop all consumers and the producer."""
        for topic, consumer in list(self._consumers.items()):
            try:
                await consumer.stop()
            except Exception as e:
                logger.warning(f"Error closing consumer for {topic}: {e}")
        self._consumers.clear()

        if self._producer:
            try:
                await self._producer.stop()
            except Exception as e:
                logger.warning(f"Error closing producer: {e}")
            self._producer = None

        self._connected = False
        logger.info("Kafka connections closed")

    async def publish(
        self,
        topic: str,
        payload: Dict[str, Any],
        key: Optional[str] = None,
    ) -> str:
        """Send payload and wait for the broker acknowledgment.

        Returns:
            "topic:partition:offset" of the written message
        """
        if not self._producer:
            raise PublishError("Not connected to Kafka", topic=topic)

        try:
            metadata = await self._producer.send_and_wait(
                topic,
                value=json.dumps(payload).encode("utf-8"),
                key=key.encode("utf-8") if key else None,
            )
        except KafkaTimeoutError as e:
            raise PublishError(f"Kafka send timed out: {e}", topic=topic) from e
        except KafkaConnectionError as e:
            self._connected = False
            raise PublishError(f"Kafka connection lost: {e}", topic=topic) from e
        except KafkaError as e:
            raise PublishError(f"Kafka send failed: {e}", topic=topic) from e

        message_id = f"{metadata.topic}:{metadata.partition}:{metadata.offset}"
        logger.debug("Published message to Kafka", extra={"topic": topic, "message_id": message_id})
        return message_id

    async def subscribe(self, topic: str, group_id: str) -> AsyncIterator[InboundMessage]:
        """Consume topic with manual commits.

        Each topic gets its own consumer so that batch and finished topics
        can be consumed concurrently by one service.
        """
        existing = self._consumers.pop(topic, None)
        if existing:
            await existing.stop()

        consumer = AIOKafkaConsumer(
            topic,
            bootstrap_servers=self.config.brokers,
            group_id=group_id,
            auto_offset_reset="earliest",
            enable_auto_commit=False,
            max_poll_records=10,
            session_timeout_ms=30000,
            heartbeat_interval_ms=10000,
            **self._security_settings(),
        )
        await consumer.start()
        self._consumers[topic] = consumer
        logger.info("Subscribed to Kafka topic", extra={"topic": topic, "group_id": group_id})

        try:
            async for msg in consumer:
                yield InboundMessage(
                    message_id=f"{msg.topic}:{msg.partition}:{msg.offset}",
                    body=msg.value.decode("utf-8") if msg.value else "",
                    topic=msg.topic,
                    partition=msg.partition,
                    offset=msg.offset,
                )
        except KafkaError as e:
            raise PublishError(f"Kafka consumer error: {e}", topic=topic) from e

    def _consumer_for(self, message: InboundMessage) -> AIOKafkaConsumer:
        consumer = self._consumers.get(message.topic or "")
        if consumer is None or message.partition is None or message.offset is None:
            raise PublishError(f"No active consumer for message {message.message_id}")
        return consumer

    async def commit(self, message: InboundMessage) -> None:
        """Commit offset + 1 (the next message to consume)."""
        consumer = self._consumer_for(message)
        tp = TopicPartition(message.topic, message.partition)
        try:
            await consumer.commit({tp: OffsetAndMetadata(message.offset + 1, "")})
        except KafkaError as e:
            raise PublishError(f"Failed to commit {message.message_id}: {e}") from e

        logger.debug("Committed offset", extra={"message_id": message.message_id})

    async def nack(self, message: InboundMessage) -> None:
        """Seek back to the message so the next fetch returns it again."""
        consumer = self._consumer_for(message)
        consumer.seek(TopicPartition(message.topic, message.partition), message.offset)
        logger.debug("Seeked back for redelivery", extra={"message_id": message.message_id})
