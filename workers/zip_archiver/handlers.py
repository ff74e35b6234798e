"""
Serverless entry points, one per stage.

    split_handler     scheduled/manual invoke  -> JobSplitter.split()
    batch_handler     SNS or SQS delivery      -> BatchWorker.process() per message
    finalize_handler  SNS or SQS delivery      -> Finalizer.finalize() per message

Each invocation loads ServiceConfig from the environment, builds an
ArchiveRuntime (explicit client handles), runs the stage and closes the
clients. The async handle_* functions take a runtime so they can be driven
with in-memory collaborators.

Invariants:
    - Messages of one delivery are processed independently
    - SQS deliveries return a partial batch response; SNS deliveries raise
      DeliveryError if any message failed
    - A rejected split event creates no run record and publishes nothing
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from .channel import InboundMessage, parse_delivery, process_delivery
from .channel.delivery import SOURCE_SQS
from .config import ServiceConfig
from .errors import EnumerationError
from .main import setup_logging
from .models import BatchMessage, ZipArchiveRequest
from .runtime import ArchiveRuntime

logger = logging.getLogger(__name__)


async def handle_split(runtime: ArchiveRuntime, event: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Run the splitter.

    The event may carry "eventId", "jobId" and "batchSize" overrides.
    An invalid batchSize is reported as a 400 response and enumeration
    failures as a 500 response (no state was created in either case);
    every other failure raises.
    """
    event = event or {}
    batch_size = event.get("batchSize")
    if batch_size is not None and (
        isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size < 1
    ):
        logger.error("batchSize must be a positive integer", extra={"batch_size": repr(batch_size)})
        return {"statusCode": 400, "body": "Bad Request"}

    splitter = runtime.splitter(batch_size=batch_size)
    try:
        result = await splitter.split(event_id=event.get("eventId"), job_id=event.get("jobId"))
    except EnumerationError as e:
        logger.error(f"Error retrieving object keys: {e.message}", extra={"prefix": e.prefix})
        return {"statusCode": 500, "body": "Internal Server Error"}
    return {"statusCode": 200, "body": json.dumps(result.to_dict())}


async def _handle_delivery(event: Dict[str, Any], handler: Any) -> Dict[str, Any]:
    delivery = parse_delivery(event)
    report = await process_delivery(delivery.messages, handler)
    if delivery.source == SOURCE_SQS:
        return report.batch_item_failures()
    report.raise_for_failures()
    return {"processed": len(report.succeeded)}


async def handle_batch_delivery(runtime: ArchiveRuntime, event: Dict[str, Any]) -> Dict[str, Any]:
    """Process every BatchMessage of a delivery."""
    worker = runtime.batch_worker()

    async def handle(message: InboundMessage) -> Any:
        return await worker.process(BatchMessage.from_json(message.body))

    return await _handle_delivery(event, handle)


async def handle_finalize_delivery(runtime: ArchiveRuntime, event: Dict[str, Any]) -> Dict[str, Any]:
    """Process every ZipArchiveRequest of a delivery."""
    finalizer = runtime.finalizer()

    async def handle(message: InboundMessage) -> Any:
        return await finalizer.finalize(ZipArchiveRequest.from_json(message.body))

    return await _handle_delivery(event, handle)


def _load_config() -> ServiceConfig:
    config = ServiceConfig.from_env()
    setup_logging(config)
    return config


async def _run(config: ServiceConfig, stage: Any, event: Any) -> Dict[str, Any]:
    async with ArchiveRuntime.from_config(config) as runtime:
        return await stage(runtime, event)


def split_handler(event: Dict[str, Any], context: Any = None) -> Dict[str, Any]:
    return asyncio.run(_run(_load_config(), handle_split, event))


def batch_handler(event: Dict[str, Any], context: Any = None) -> Dict[str, Any]:
    return asyncio.run(_run(_load_config(), handle_batch_delivery, event))


def finalize_handler(event: Dict[str, Any], context: Any = None) -> Dict[str, Any]:
    return asyncio.run(_run(_load_config(), handle_finalize_delivery, event))
