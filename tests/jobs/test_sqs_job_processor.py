"""Tests for SQS message handling in the job processor."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.clients.sqs import SQSClient
from src.jobs.sqs_job_processor import SQSJobProcessor

QUEUE_ARN = "arn:aws:sqs:us-east-1:123456789012:indexing-jobs.fifo"


def sqs_message(body, receipt_handle: str | None = "rh-1") -> dict:
    message = {
        "MessageId": "msg-1",
        "Body": body if isinstance(body, str) else json.dumps(body),
        "Attributes": {"ApproximateReceiveCount": "2", "MessageGroupId": "webhook_event_job-1_0"},
    }
    if receipt_handle:
        message["ReceiptHandle"] = receipt_handle
    return message


@pytest.fixture
def sqs_client():
    client = MagicMock(spec=SQSClient)
    client.change_message_visibility.return_value = True
    client.delete_message.return_value = True
    return client


def make_processor(sqs_client, process_function, concurrency: int = 1) -> SQSJobProcessor:
    return SQSJobProcessor(
        queue_arn=QUEUE_ARN,
        process_function=process_function,
        concurrency=concurrency,
        sqs_client=sqs_client,
    )


class TestProcessMessage:
    @pytest.mark.asyncio
    async def test_success_deletes_message(self, sqs_client):
        process_function = AsyncMock()
        processor = make_processor(sqs_client, process_function)

        should_delete = await processor.process_message(
            sqs_message({"message_type": "initial-data-fetch", "job_id": "job-1"})
        )

        assert should_delete is True
        message_data, metadata = process_function.await_args.args
        assert message_data["job_id"] == "job-1"
        assert metadata == {
            "message_id": "msg-1",
            "receipt_handle": "rh-1",
            "approximate_receive_count": "2",
        }

    @pytest.mark.asyncio
    async def test_handler_failure_leaves_message_on_queue(self, sqs_client):
        processor = make_processor(sqs_client, AsyncMock(side_effect=ConnectionError("db down")))

        with patch("src.jobs.sqs_job_processor.newrelic.agent.notice_error") as notice_error:
            should_delete = await processor.process_message(sqs_message({"job_id": "job-1"}))

        assert should_delete is False
        notice_error.assert_called_once()

    @pytest.mark.asyncio
    async def test_malformed_body_is_deleted(self, sqs_client):
        process_function = AsyncMock()
        processor = make_processor(sqs_client, process_function)

        assert await processor.process_message(sqs_message("{not json")) is True
        process_function.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_receipt_handle(self, sqs_client):
        processor = make_processor(sqs_client, AsyncMock())

        assert await processor.process_message(sqs_message({}, receipt_handle=None)) is False


class TestShutdown:
    @pytest.mark.asyncio
    async def test_in_progress_messages_are_released(self, sqs_client):
        sqs_client.receive_messages.return_value = [
            sqs_message({"job_id": "job-1"}, receipt_handle="rh-1"),
            sqs_message({"job_id": "job-2"}, receipt_handle="rh-2"),
        ]
        processor = make_processor(sqs_client, AsyncMock())

        await processor.receive_and_track_messages()
        await processor.shutdown()

        assert processor.shutdown_event.is_set()
        assert processor.in_progress_messages == {}
        released = [c.args[1] for c in sqs_client.change_message_visibility.await_args_list]
        assert released == ["rh-1", "rh-2"]
        for c in sqs_client.change_message_visibility.await_args_list:
            assert c.kwargs["visibility_timeout"] == 0

    def test_concurrency_is_at_least_one(self, sqs_client):
        assert make_processor(sqs_client, AsyncMock(), concurrency=0).concurrency == 1

    @pytest.mark.asyncio
    async def test_poll_loop_deletes_processed_message(self, sqs_client):
        processor = make_processor(sqs_client, AsyncMock())
        message = sqs_message({"job_id": "job-1"})

        async def receive_once(**_kwargs):
            # Stop the loop after the first batch
            if sqs_client.receive_messages.await_count > 1:
                processor.shutdown_event.set()
                return []
            return [message]

        sqs_client.receive_messages.side_effect = receive_once
        processor.running = True

        await processor.poll_and_process()

        sqs_client.delete_message.assert_awaited_once_with(QUEUE_ARN, "rh-1")
        assert processor.in_progress_messages == {}
