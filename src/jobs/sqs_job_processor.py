"""
SQS polling for the indexing worker.

SQSJobProcessor runs `concurrency` poll loops against one FIFO queue. Each loop handles one
message at a time and hands it to a processing function; the message is acknowledged
(deleted) only when that function returns.
"""

import asyncio
import json
import random
import signal
from collections.abc import Awaitable, Callable
from typing import Any, TypedDict

import newrelic.agent

from src.clients.sqs import SQSClient
from src.utils.logging import get_logger

logger = get_logger(__name__)

# Upper bound for the jitter applied before each long poll
POLL_JITTER_SECONDS = 0.15
PREFETCH_WAIT_SECONDS = 1


class SQSMessageMetadata(TypedDict):
    """Metadata extracted from SQS messages."""

    message_id: str | None
    receipt_handle: str | None
    approximate_receive_count: str | None


ProcessFunction = Callable[[dict[str, Any], SQSMessageMetadata], Awaitable[None]]


def _message_groups(messages: list[dict[str, Any]]) -> list[str]:
    return [m.get("Attributes", {}).get("MessageGroupId", "N/A") for m in messages]


class SQSJobProcessor:
    """Polls an SQS queue and runs a processing function per message.

    If the processing function raises, the message stays on the queue and is redelivered
    once its visibility timeout expires. On shutdown, messages received but not yet
    finished are released immediately (visibility timeout 0).
    """

    def __init__(
        self,
        queue_arn: str,
        process_function: ProcessFunction,
        max_messages: int = 1,
        wait_time_seconds: int = 20,
        visibility_timeout_seconds: int = 300,
        concurrency: int = 1,
        sqs_client: SQSClient | None = None,
    ):
        """
        Args:
            queue_arn: ARN of the SQS queue to poll
            process_function: Async function called as (message_data, sqs_metadata)
            max_messages: Maximum messages to receive per poll (1-10)
            wait_time_seconds: Long polling wait time (0-20 seconds)
            visibility_timeout_seconds: How long a received message is hidden from other consumers
            concurrency: Number of poll loops; each loop runs one message at a time
            sqs_client: Optional SQS client to use. If None, creates a new one.
        """
        self.queue_arn = queue_arn
        self.process_function = process_function
        self.max_messages = max_messages
        self.wait_time_seconds = wait_time_seconds
        self.visibility_timeout_seconds = visibility_timeout_seconds
        self.concurrency = max(concurrency, 1)

        self.sqs_client = sqs_client or SQSClient()
        self.running = False
        self.shutdown_event = asyncio.Event()
        # receipt_handle -> message, for everything received but not yet finished
        self.in_progress_messages: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    def setup_signal_handlers(self) -> None:
        def signal_handler(signum: int, _frame: Any) -> None:
            logger.info("Received shutdown signal", signal=signum)
            self.shutdown_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    @property
    def _stopping(self) -> bool:
        return not self.running or self.shutdown_event.is_set()

    async def process_message(self, message: dict[str, Any]) -> bool:
        """Run the processing function for one message.

        Returns:
            True if the message should be deleted, False to leave it for redelivery
        """
        receipt_handle = message.get("ReceiptHandle")
        if not receipt_handle:
            logger.warning("SQS message missing ReceiptHandle", message_id=message.get("MessageId"))
            return False

        body = message.get("Body", "")
        if not body:
            logger.warning("Received empty SQS message body", message_id=message.get("MessageId"))
            return False

        try:
            message_data = json.loads(body)
        except json.JSONDecodeError as e:
            # Redelivery cannot fix a malformed body
            logger.error(
                "Dropping SQS message with invalid JSON body",
                message_id=message.get("MessageId"),
                error=str(e),
            )
            return True

        sqs_metadata: SQSMessageMetadata = {
            "message_id": message.get("MessageId"),
            "receipt_handle": receipt_handle,
            "approximate_receive_count": message.get("Attributes", {}).get(
                "ApproximateReceiveCount"
            ),
        }

        try:
            await self.process_function(message_data, sqs_metadata)
        except Exception:
            newrelic.agent.notice_error()
            logger.error(
                "Error processing SQS message, leaving it for redelivery",
                message_id=sqs_metadata["message_id"],
                receive_count=sqs_metadata["approximate_receive_count"],
                exc_info=True,
            )
            return False
        return True

    async def _handle_message(
        self, loop_index: int, message: dict[str, Any], prefetched: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        """Process one message and acknowledge it on success.

        Returns the messages prefetched for this loop's next iteration.
        """
        receipt_handle: str = message["ReceiptHandle"]
        try:
            if not await self.process_message(message):
                return prefetched

            # Receive the next batch before deleting, so this loop is not handed the
            # same message group again while other groups are waiting
            if not prefetched and not self.shutdown_event.is_set():
                try:
                    prefetched = await self.receive_and_track_messages(
                        wait_time_seconds=PREFETCH_WAIT_SECONDS
                    )
                except Exception as e:
                    logger.error("Prefetch poll failed", loop=loop_index, error=str(e))

            if not await self.sqs_client.delete_message(self.queue_arn, receipt_handle):
                logger.error("Failed to delete processed SQS message", loop=loop_index)
            return prefetched
        finally:
            async with self._lock:
                self.in_progress_messages.pop(receipt_handle, None)

    async def poll_and_process(self, loop_index: int = 0) -> None:
        """One poll loop: receive, process each message in turn, repeat until shutdown."""
        logger.info("Starting SQS poll loop", loop=loop_index, queue_arn=self.queue_arn)
        prefetched: list[dict[str, Any]] = []

        while not self._stopping:
            try:
                if prefetched:
                    messages, prefetched = prefetched, []
                else:
                    await asyncio.sleep(random.uniform(0, POLL_JITTER_SECONDS))
                    messages = await self.receive_and_track_messages()

                if not messages:
                    continue

                logger.info(
                    "Received SQS messages",
                    loop=loop_index,
                    count=len(messages),
                    message_groups=_message_groups(messages),
                )

                for message in messages:
                    if not message.get("ReceiptHandle"):
                        logger.warning("SQS message missing ReceiptHandle, skipping")
                        continue
                    if self.shutdown_event.is_set():
                        # Unprocessed messages stay tracked and are released on shutdown
                        break
                    prefetched = await self._handle_message(loop_index, message, prefetched)

            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("Error in SQS poll loop", loop=loop_index, exc_info=True)

        logger.info("SQS poll loop stopped", loop=loop_index)

    async def run(self) -> None:
        """Run the poll loops until shutdown."""
        self.running = True
        await asyncio.gather(*(self.poll_and_process(i) for i in range(self.concurrency)))

    async def start(self) -> None:
        """Run with signal handling, then release anything still in flight."""
        self.setup_signal_handlers()
        try:
            await self.run()
        except KeyboardInterrupt:
            logger.info("Received keyboard interrupt")
        finally:
            await self.shutdown()

    async def receive_and_track_messages(
        self, wait_time_seconds: int | None = None
    ) -> list[dict[str, Any]]:
        """Receive a batch and record it as in progress."""
        messages = await self.sqs_client.receive_messages(
            queue_arn=self.queue_arn,
            max_messages=self.max_messages,
            wait_time_seconds=self.wait_time_seconds
            if wait_time_seconds is None
            else wait_time_seconds,
            visibility_timeout_seconds=self.visibility_timeout_seconds,
        )
        async with self._lock:
            for message in messages:
                handle = message.get("ReceiptHandle")
                if handle:
                    self.in_progress_messages[handle] = message
        return messages

    async def release_in_progress_messages(self) -> None:
        """Make every in-progress message immediately receivable again."""
        async with self._lock:
            if not self.in_progress_messages:
                return

            logger.info(
                "Releasing in-progress SQS messages", count=len(self.in_progress_messages)
            )
            for receipt_handle in list(self.in_progress_messages):
                try:
                    released = await self.sqs_client.change_message_visibility(
                        self.queue_arn, receipt_handle, visibility_timeout=0
                    )
                except Exception as e:
                    logger.error("Error releasing SQS message", error=str(e))
                    continue
                if not released:
                    logger.warning(
                        "Failed to release SQS message", receipt_handle=receipt_handle[:20]
                    )

            self.in_progress_messages.clear()

    async def shutdown(self) -> None:
        logger.info("Shutting down SQS job processor")
        self.running = False
        self.shutdown_event.set()
        await self.release_in_progress_messages()
