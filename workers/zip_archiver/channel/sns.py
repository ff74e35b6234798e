"""
SNS message channel implementation.

Publishes JSON payloads to SNS topics. Consumption is push-based: SNS invokes
the serverless handlers directly or through an SQS subscription, see
delivery.py.

Invariants:
    - publish() returns the SNS MessageId only after SNS accepted the message
    - Payloads are sent as the raw JSON text, no envelope

How to change safely:
    - Test with LocalStack before deploying to AWS
    - Topics are ARNs; the create-job and job-finished topics are distinct
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from .._aws import client_kwargs, error_code
from ..errors import PublishError

logger = logging.getLogger(__name__)


class SnsMessageChannel:
    """SNS implementation of the MessageChannel protocol.

    Attributes:
        config: SnsConfig instance

    Example:
        >>> channel = SnsMessageChannel(SnsConfig(create_job_topic_arn="arn:..."))
        >>> await channel.connect()
        >>> await channel.publish("arn:aws:sns:...:create-job", {"eventId": "e1"})
    """

    def __init__(self, config: Any) -> None:
        self.config = config
        self._session = None
        self._client = None
        self._client_ctx = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Create the SNS client."""
        if self._client:
            return

        self._session = get_session()
        self._client_ctx = self._session.create_client(
            "sns",
            **client_kwargs(self.config.region, self.config.endpoint_url),
        )
        self._client = await self._client_ctx.__aenter__()
        logger.debug("SNS client created", extra={"endpoint": self.config.endpoint_url or "AWS"})

    async def close(self) -> None:
        """Close the SNS client."""
        if self._client:
            await self._client_ctx.__aexit__(None, None, None)
            self._client = None
            self._session = None

    async def publish(
        self,
        topic: str,
        payload: Dict[str, Any],
        key: Optional[str] = None,
    ) -> str:
        """Publish payload to the topic ARN.

        key is ignored; standard SNS topics have no ordering key.
        """
        if not self._client:
            raise PublishError("SNS channel is not connected", topic=topic)

        try:
            response = await self._client.publish(
                TopicArn=topic,
                Message=json.dumps(payload),
            )
        except ClientError as e:
            raise PublishError(
                f"SNS publish failed ({error_code(e)}): {e}", topic=topic
            ) from e
        except BotoCoreError as e:
            raise PublishError(f"SNS publish failed: {e}", topic=topic) from e

        message_id = response["MessageId"]
        logger.debug("Published message to SNS", extra={"topic": topic, "message_id": message_id})
        return message_id
