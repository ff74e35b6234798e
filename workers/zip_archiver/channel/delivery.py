"""
Delivery dispatch for push-based channel consumers.

A single serverless invocation may receive several messages at once. This
module turns one delivery event into independent per-message executions so
that one failing message never prevents the others from being processed.

Supported event shapes:
    - SNS:  {"Records": [{"EventSource": "aws:sns", "Sns": {"MessageId", "Message"}}]}
    - SQS:  {"Records": [{"eventSource": "aws:sqs", "messageId", "body"}]}
      (bodies holding an SNS notification envelope are unwrapped)
    - Direct: the payload object itself, e.g. from a manual invoke

Invariants:
    - Messages are processed in delivery order, one at a time
    - Every message is attempted regardless of earlier failures
    - SQS deliveries report failures per message (partial batch response);
      SNS and direct deliveries fail the whole invocation when any message
      failed, and the successful ones are safe to repeat

How to change safely:
    - The SQS event source mapping must enable ReportBatchItemFailures
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List

from ..errors import DeliveryError, MessageDecodeError
from .base import InboundMessage

logger = logging.getLogger(__name__)

SOURCE_SNS = "sns"
SOURCE_SQS = "sqs"
SOURCE_DIRECT = "direct"


@dataclass(frozen=True)
class Delivery:
    """A parsed delivery event.

    Attributes:
        source: One of "sns", "sqs", "direct"
        messages: Messages in delivery order
    """

    source: str
    messages: List[InboundMessage]


def _unwrap_sns_envelope(body: str) -> str:
    """Return the inner message if body is an SNS notification envelope."""
    try:
        envelope = json.loads(body)
    except ValueError:
        return body
    if isinstance(envelope, dict) and envelope.get("Type") == "Notification" and "Message" in envelope:
        return envelope["Message"]
    return body


def parse_delivery(event: Dict[str, Any]) -> Delivery:
    """Parse an SNS, SQS or direct invocation event.

    Raises:
        MessageDecodeError: If a record has neither an SNS nor an SQS shape
    """
    records = event.get("Records") if isinstance(event, dict) else None
    if not records:
        return Delivery(SOURCE_DIRECT, [InboundMessage(message_id="direct", body=json.dumps(event))])

    messages: List[InboundMessage] = []
    source = None
    for index, record in enumerate(records):
        if "Sns" in record:
            sns = record["Sns"]
            source = source or SOURCE_SNS
            messages.append(
                InboundMessage(
                    message_id=sns.get("MessageId", f"sns-{index}"),
                    body=sns.get("Message", ""),
                    topic=sns.get("TopicArn"),
                )
            )
        elif "body" in record:
            source = source or SOURCE_SQS
            messages.append(
                InboundMessage(
                    message_id=record.get("messageId", f"sqs-{index}"),
                    body=_unwrap_sns_envelope(record["body"]),
                    attributes={"eventSourceARN": record.get("eventSourceARN")},
                )
            )
        else:
            raise MessageDecodeError(
                f"Unsupported delivery record at index {index}",
                errors=[f"record keys: {sorted(record)}"],
            )

    return Delivery(source or SOURCE_DIRECT, messages)


@dataclass
class DeliveryReport:
    """Per-message outcome of one delivery.

    Attributes:
        succeeded: Ids of messages handled successfully
        failures: Message id -> exception for failed messages
        results: Handler return values of successful messages, in order
    """

    succeeded: List[str] = field(default_factory=list)
    failures: Dict[str, Exception] = field(default_factory=dict)
    results: List[Any] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def batch_item_failures(self) -> Dict[str, List[Dict[str, str]]]:
        """SQS partial batch response."""
        return {
            "batchItemFailures": [{"itemIdentifier": message_id} for message_id in self.failures]
        }

    def raise_for_failures(self) -> None:
        """Raise DeliveryError if any message failed."""
        if self.failures:
            raise DeliveryError(
                f"{len(self.failures)} of {len(self.failures) + len(self.succeeded)} messages failed",
                failed_message_ids=list(self.failures),
            )


async def process_delivery(
    messages: List[InboundMessage],
    handler: Callable[[InboundMessage], Awaitable[Any]],
) -> DeliveryReport:
    """Run handler once per message, collecting failures.

    Args:
        messages: Messages in delivery order
        handler: Coroutine function processing one message

    Returns:
        DeliveryReport with every message accounted for
    """
    report = DeliveryReport()
    for message in messages:
        try:
            result = await handler(message)
        except Exception as e:
            logger.error(
                f"Message processing failed: {e}",
                extra={"message_id": message.message_id, "error_type": type(e).__name__},
                exc_info=True,
            )
            report.failures[message.message_id] = e
            continue
        report.succeeded.append(message.message_id)
        report.results.append(result)

    logger.info(
        "Delivery processed",
        extra={"succeeded": len(report.succeeded), "failed": len(report.failures)},
    )
    return report
