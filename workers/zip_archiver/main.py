"""
Zip archiver consumer service - main entry point.

Long-running alternative to the serverless handlers. Subscribes to both
channel topics and drives the Batch Worker and the Finalizer:
- batch topic    -> BatchWorker.process()
- finished topic -> Finalizer.finalize()

Usage:
    python -m workers.zip_archiver.main

Configuration is entirely via environment variables (CHANNEL_BACKEND=kafka).
See config.py for all available settings.

Invariants:
    - A message is committed only after it was processed successfully
    - A failed message is sent back for redelivery; undecodable messages
      are logged and committed so they cannot block a partition
    - Graceful shutdown waits for in-flight messages to be cancelled and
      closes every client

How to change safely:
    - Every handler must stay safe to repeat, redelivery is the only retry
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Any, Awaitable, Callable, Dict, Optional

import json_log_formatter

from .channel import InboundMessage, SubscribableChannel
from .config import ServiceConfig
from .errors import MessageDecodeError
from .models import BatchMessage, ZipArchiveRequest
from .runtime import ArchiveRuntime

logger = logging.getLogger(__name__)


def setup_logging(config: ServiceConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Service configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiokafka").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)


MessageHandler = Callable[[InboundMessage], Awaitable[Any]]


class ConsumerService:
    """Consumer service orchestrator.

    Attributes:
        config: Service configuration
        runtime: Connected collaborators
        stats: Processed/failed/dropped message counts

    Example:
        >>> service = ConsumerService(config)
        >>> await service.start()   # runs until request_shutdown()
        >>> await service.stop()
    """

    def __init__(
        self,
        config: ServiceConfig,
        runtime: Optional[ArchiveRuntime] = None,
        retry_backoff_seconds: float = 1.0,
    ) -> None:
        """Initialize the service.

        Args:
            config: Service configuration
            runtime: Collaborators to use (built from config if not provided)
            retry_backoff_seconds: Pause after a failed message
        """
        self.config = config
        self.runtime = runtime or ArchiveRuntime.from_config(config)
        self.retry_backoff_seconds = retry_backoff_seconds
        self.stats: Dict[str, int] = {"processed": 0, "failed": 0, "dropped": 0}
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Connect, start both consumer loops and wait for shutdown."""
        if self._running:
            logger.warning("Consumer service already running")
            return

        logger.info("Starting zip archiver consumer service")
        self.config.log_config()

        try:
            await self.runtime.connect()
            channel = self.runtime.channel
            if not isinstance(channel, SubscribableChannel):
                raise ValueError(
                    f"{type(channel).__name__} cannot be consumed in-process; "
                    "use CHANNEL_BACKEND=kafka or the serverless handlers"
                )

            worker = self.runtime.batch_worker()
            finalizer = self.runtime.finalizer()
            group = self.config.kafka.consumer_group

            async def handle_batch(message: InboundMessage) -> Any:
                return await worker.process(BatchMessage.from_json(message.body))

            async def handle_request(message: InboundMessage) -> Any:
                return await finalizer.finalize(ZipArchiveRequest.from_json(message.body))

            self._tasks.append(
                asyncio.create_task(
                    self._consume(channel, self.config.batch_topic, f"{group}-batches", handle_batch)
                )
            )
            self._tasks.append(
                asyncio.create_task(
                    self._consume(
                        channel, self.config.finished_topic, f"{group}-finalizer", handle_request
                    )
                )
            )

            self._running = True
            logger.info("Consumer service started")

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Consumer service startup failed: {e}", exc_info=True)
            if self._running:
                await self.stop()
            else:
                await self.runtime.close()
            raise

    async def _consume(
        self,
        channel: Any,
        topic: str,
        group_id: str,
        handle: MessageHandler,
    ) -> None:
        try:
            await self._consume_messages(channel, topic, group_id, handle)
        except Exception as e:
            logger.error(f"Consumer loop for {topic} stopped: {e}", exc_info=True)
            self.request_shutdown()
            raise

    async def _consume_messages(
        self,
        channel: Any,
        topic: str,
        group_id: str,
        handle: MessageHandler,
    ) -> None:
        async for message in channel.subscribe(topic, group_id):
            try:
                await handle(message)
            except MessageDecodeError as e:
                self.stats["dropped"] += 1
                logger.error(
                    f"Dropping undecodable message: {e}",
                    extra={"topic": topic, "message_id": message.message_id, "errors": e.errors},
                )
                await channel.commit(message)
                continue
            except Exception as e:
                self.stats["failed"] += 1
                logger.error(
                    f"Message processing failed, will be redelivered: {e}",
                    extra={"topic": topic, "message_id": message.message_id},
                    exc_info=True,
                )
                await channel.nack(message)
                await asyncio.sleep(self.retry_backoff_seconds)
                continue

            await channel.commit(message)
            self.stats["processed"] += 1

    async def stop(self) -> None:
        """Stop the service gracefully."""
        if not self._running:
            return

        logger.info("Stopping consumer service")

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        await self.runtime.close()

        self._running = False
        logger.info("Consumer service stopped", extra=dict(self.stats))

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = ServiceConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    service = ConsumerService(config)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        service.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(service.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(service.stop())
        loop.close()


if __name__ == "__main__":
    main()
