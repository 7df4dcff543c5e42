"""AWS SQS client for the indexing jobs queue."""

import asyncio
import json
import uuid
from collections.abc import Callable
from functools import wraps
from typing import Any, TypeVar

import sqs_extended_client  # noqa: F401 # Required for monkey-patching boto3 SQS client
from botocore.client import BaseClient

from src.clients.aws_base import AWSBaseClient
from src.jobs.lanes import get_indexing_lane
from src.jobs.models import InitialDataFetchMessage, ProcessWebhookEventMessage
from src.utils.config import (
    get_indexing_jobs_queue_arn,
    get_sqs_extended_enabled,
    get_sqs_extended_s3_bucket,
)
from src.utils.logging import get_logger

logger = get_logger(__name__)

SQS_MAX_PAYLOAD_SIZE = 256 * 1024  # 256 KB

T = TypeVar("T")


def run_in_executor(func: Callable[..., T]) -> Callable[..., asyncio.Future[T]]:
    """Decorator to run boto3 calls in a thread pool to avoid blocking the event loop.

    This is critical for long-running operations like SQS long polling.
    """

    @wraps(func)
    async def wrapper(self, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: func(self, *args, **kwargs))

    return wrapper


def require_indexing_jobs_queue_arn() -> str:
    queue_arn = get_indexing_jobs_queue_arn()
    if not queue_arn:
        raise ValueError("INDEXING_JOBS_QUEUE_ARN environment variable is required")
    return queue_arn


class SQSClient(AWSBaseClient):
    """Client for AWS SQS operations on FIFO queues."""

    def __init__(self, region_name: str | None = None):
        super().__init__("sqs", region_name)
        self._extended_client: BaseClient | None = None
        self._extended_client_configured = False
        self._extended_client_s3_bucket: str | None = None

    def _convert_arn_to_url(self, queue_arn: str) -> str:
        """Convert SQS queue ARN to URL format required by boto3.

        Args:
            queue_arn: SQS queue ARN (e.g., arn:aws:sqs:us-east-1:123456789012:my-queue.fifo)

        Returns:
            Queue URL (e.g., https://sqs.us-east-1.amazonaws.com/123456789012/my-queue.fifo)

        Raises:
            ValueError: If ARN format is invalid
        """
        # Already a URL (including local endpoints over plain http)
        if queue_arn.startswith(("https://", "http://")):
            return queue_arn

        # Parse ARN format: arn:aws:sqs:region:account-id:queue-name
        arn_parts = queue_arn.split(":")
        if len(arn_parts) != 6 or arn_parts[0] != "arn" or arn_parts[2] != "sqs":
            raise ValueError(f"Invalid SQS ARN format: {queue_arn}")

        region, account_id, queue_name = arn_parts[3], arn_parts[4], arn_parts[5]
        queue_url = f"https://sqs.{region}.amazonaws.com/{account_id}/{queue_name}"
        logger.debug(f"Converted ARN {queue_arn} to URL {queue_url}")
        return queue_url

    def _get_extended_client(self) -> BaseClient | None:
        """Get or create the extended SQS client, or None if it is not enabled."""
        if not self._extended_client_configured:
            self._extended_client_configured = True
            if get_sqs_extended_enabled():
                self._extended_client_s3_bucket = get_sqs_extended_s3_bucket()
                if not self._extended_client_s3_bucket:
                    logger.warning("SQS Extended Client enabled but no S3 bucket configured")

        if not self._extended_client_s3_bucket:
            return None

        if self._extended_client is None:
            # Reuse the session so credentials, endpoint and region match the standard client
            extended_client = self.session.client("sqs")
            extended_client.large_payload_support = self._extended_client_s3_bucket
            extended_client.use_legacy_attribute = False
            extended_client.delete_payload_from_s3 = True
            logger.info(
                f"Created extended SQS client with bucket: {self._extended_client_s3_bucket}"
            )
            self._extended_client = extended_client
        return self._extended_client

    def _get_client(self) -> BaseClient:
        """Extended client when S3 offload is enabled, standard client otherwise."""
        return self._get_extended_client() or self.client

    @run_in_executor
    def _send_message_sync(self, send_params: dict[str, Any]) -> dict[str, Any]:
        return self._get_client().send_message(**send_params)

    async def send_message(
        self,
        queue_arn: str,
        message_body: str | dict[str, Any],
        message_group_id: str,
        message_attributes: dict[str, Any] | None = None,
        message_deduplication_id: str | None = None,
    ) -> str | None:
        """Send message to a FIFO queue.

        Args:
            queue_arn: SQS queue ARN or URL
            message_body: Message body (string or dict that will be JSON-encoded)
            message_group_id: Lane for the message
            message_attributes: Optional message attributes
            message_deduplication_id: Optional; a random id is generated if omitted

        Returns:
            Message ID

        Raises:
            The underlying boto3 error, after logging
        """
        try:
            queue_url = self._convert_arn_to_url(queue_arn)
            body = json.dumps(message_body) if isinstance(message_body, dict) else message_body

            if len(body) > SQS_MAX_PAYLOAD_SIZE:
                logger.info(
                    f"Large indexing message ({len(body)} bytes)",
                    payload_size=len(body),
                    s3_bucket=self._extended_client_s3_bucket,
                )

            send_params: dict[str, Any] = {
                "QueueUrl": queue_url,
                "MessageBody": body,
                "MessageGroupId": message_group_id,
                "MessageDeduplicationId": message_deduplication_id or str(uuid.uuid4()),
            }
            if message_attributes:
                send_params["MessageAttributes"] = message_attributes

            response = await self._send_message_sync(send_params)
            return response["MessageId"]

        except Exception as e:
            self.handle_aws_error(e, f"send_message to {queue_arn}")
            return None

    async def send_indexing_message(
        self, job_message: InitialDataFetchMessage | ProcessWebhookEventMessage
    ) -> str | None:
        """Send an indexing task to the indexing jobs queue on its lane."""
        message_attributes = {
            "job_id": {"StringValue": job_message.job_id, "DataType": "String"},
            "message_type": {"StringValue": job_message.message_type, "DataType": "String"},
        }
        message_id = await self.send_message(
            queue_arn=require_indexing_jobs_queue_arn(),
            message_body=job_message.model_dump_json(),
            message_group_id=get_indexing_lane(job_message),
            message_attributes=message_attributes,
        )
        logger.info(
            "Queued indexing job",
            job_id=job_message.job_id,
            message_type=job_message.message_type,
            message_id=message_id,
        )
        return message_id

    async def send_initial_data_fetch_message(self, job_id: str) -> str | None:
        return await self.send_indexing_message(InitialDataFetchMessage(job_id=job_id))

    async def send_webhook_event_message(self, job_id: str, payload: Any) -> str | None:
        return await self.send_indexing_message(
            ProcessWebhookEventMessage(job_id=job_id, payload=payload)
        )

    @run_in_executor
    def _receive_messages_sync(self, receive_params: dict[str, Any]) -> dict[str, Any]:
        return self._get_client().receive_message(**receive_params)

    async def receive_messages(
        self,
        queue_arn: str,
        max_messages: int = 1,
        wait_time_seconds: int = 0,
        visibility_timeout_seconds: int | None = None,
    ) -> list[dict[str, Any]]:
        """Receive messages from SQS queue. S3-offloaded payloads are fetched automatically.

        Args:
            queue_arn: SQS queue ARN
            max_messages: Maximum number of messages to receive (1-10)
            wait_time_seconds: Long polling wait time (0-20 seconds)
            visibility_timeout_seconds: How long message is hidden from other consumers
        """
        try:
            receive_params: dict[str, Any] = {
                "QueueUrl": self._convert_arn_to_url(queue_arn),
                "MaxNumberOfMessages": min(max(max_messages, 1), 10),
                "WaitTimeSeconds": max(min(wait_time_seconds, 20), 0),
                "MessageAttributeNames": ["All"],
                "AttributeNames": ["MessageGroupId", "ApproximateReceiveCount"],
            }
            if visibility_timeout_seconds is not None:
                receive_params["VisibilityTimeout"] = visibility_timeout_seconds

            response = await self._receive_messages_sync(receive_params)
            messages = response.get("Messages", [])
            logger.debug(f"Received {len(messages)} messages from queue {queue_arn}")
            return messages

        except Exception as e:
            self.handle_aws_error(e, f"receive_messages from {queue_arn}")
            return []

    @run_in_executor
    def _delete_message_sync(self, queue_url: str, receipt_handle: str) -> None:
        self._get_client().delete_message(QueueUrl=queue_url, ReceiptHandle=receipt_handle)

    async def delete_message(self, queue_arn: str, receipt_handle: str) -> bool:
        """Delete (acknowledge) a message. Also removes any S3-offloaded payload."""
        try:
            await self._delete_message_sync(self._convert_arn_to_url(queue_arn), receipt_handle)
            logger.debug(f"Successfully deleted message from queue {queue_arn}")
            return True

        except Exception as e:
            self.handle_aws_error(e, f"delete_message from {queue_arn}")
            return False

    @run_in_executor
    def _change_message_visibility_sync(
        self, queue_url: str, receipt_handle: str, visibility_timeout: int
    ) -> None:
        self._get_client().change_message_visibility(
            QueueUrl=queue_url, ReceiptHandle=receipt_handle, VisibilityTimeout=visibility_timeout
        )

    async def change_message_visibility(
        self, queue_arn: str, receipt_handle: str, visibility_timeout: int
    ) -> bool:
        """Change the visibility timeout of a message (0 releases it immediately)."""
        try:
            await self._change_message_visibility_sync(
                self._convert_arn_to_url(queue_arn), receipt_handle, visibility_timeout
            )
            logger.debug(
                f"Changed visibility timeout to {visibility_timeout}s for message in queue {queue_arn}"
            )
            return True

        except Exception as e:
            self.handle_aws_error(e, f"change_message_visibility for {queue_arn}")
            return False

    @run_in_executor
    def _get_queue_attributes_sync(
        self, queue_url: str, attribute_names: list[str]
    ) -> dict[str, Any]:
        return self.client.get_queue_attributes(QueueUrl=queue_url, AttributeNames=attribute_names)

    async def get_queue_attributes(self, queue_arn: str) -> dict[str, Any] | None:
        """Get queue attributes for health checking."""
        try:
            response = await self._get_queue_attributes_sync(
                self._convert_arn_to_url(queue_arn), ["QueueArn", "ApproximateNumberOfMessages"]
            )
            attributes = response.get("Attributes", {})
            logger.debug(f"Retrieved attributes for queue {queue_arn}: {attributes}")
            return attributes

        except Exception as e:
            self.handle_aws_error(e, f"get_queue_attributes for {queue_arn}")
            return None
