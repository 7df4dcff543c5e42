"""Tests for the SQS client: queue URLs and indexing message routing."""

import json
from unittest.mock import AsyncMock, patch

import pytest
from botocore.exceptions import ClientError

from src.clients.sqs import SQSClient

QUEUE_ARN = "arn:aws:sqs:us-east-1:123456789012:indexing-jobs.fifo"


@pytest.fixture
def sqs_client(monkeypatch):
    monkeypatch.setenv("INDEXING_JOBS_QUEUE_ARN", QUEUE_ARN)
    return SQSClient(region_name="us-east-1")


class TestQueueUrls:
    def test_arn_is_converted(self, sqs_client):
        assert (
            sqs_client._convert_arn_to_url(QUEUE_ARN)
            == "https://sqs.us-east-1.amazonaws.com/123456789012/indexing-jobs.fifo"
        )

    def test_local_url_is_used_as_is(self, sqs_client):
        url = "http://localhost:9324/000000000000/indexing-jobs.fifo"
        assert sqs_client._convert_arn_to_url(url) == url

    def test_invalid_arn(self, sqs_client):
        with pytest.raises(ValueError, match="Invalid SQS ARN format"):
            sqs_client._convert_arn_to_url("arn:aws:sns:us-east-1:123:topic")


class TestIndexingMessages:
    @pytest.mark.asyncio
    async def test_initial_data_fetch_lane(self, sqs_client):
        with patch.object(sqs_client, "send_message", AsyncMock(return_value="msg-1")) as send:
            message_id = await sqs_client.send_initial_data_fetch_message("job-1")

        assert message_id == "msg-1"
        kwargs = send.await_args.kwargs
        assert kwargs["queue_arn"] == QUEUE_ARN
        assert kwargs["message_group_id"] == "initial_data_fetch_job-1"
        body = json.loads(kwargs["message_body"])
        assert body["message_type"] == "initial-data-fetch"
        assert body["job_id"] == "job-1"
        assert kwargs["message_attributes"]["job_id"]["StringValue"] == "job-1"

    @pytest.mark.asyncio
    async def test_webhook_event_carries_payload(self, sqs_client, monkeypatch):
        monkeypatch.setenv("WEBHOOK_EVENT_LANE_COUNT", "1")
        payload = [{"type": "NFT_BID", "signature": "sig-1"}]

        with patch.object(sqs_client, "send_message", AsyncMock(return_value="msg-2")) as send:
            await sqs_client.send_webhook_event_message("job-1", payload)

        kwargs = send.await_args.kwargs
        assert kwargs["message_group_id"] == "webhook_event_job-1_0"
        assert json.loads(kwargs["message_body"])["payload"] == payload

    @pytest.mark.asyncio
    async def test_missing_queue(self, sqs_client, monkeypatch):
        monkeypatch.delenv("INDEXING_JOBS_QUEUE_ARN")

        with pytest.raises(ValueError, match="INDEXING_JOBS_QUEUE_ARN"):
            await sqs_client.send_initial_data_fetch_message("job-1")

    @pytest.mark.asyncio
    async def test_send_failure_is_raised(self, sqs_client):
        error = ClientError(
            {"Error": {"Code": "AWS.SimpleQueueService.NonExistentQueue", "Message": "gone"}},
            "SendMessage",
        )

        with patch.object(sqs_client, "_send_message_sync", AsyncMock(side_effect=error)):
            with pytest.raises(ClientError):
                await sqs_client.send_message(QUEUE_ARN, {"job_id": "job-1"}, "lane")

    @pytest.mark.asyncio
    async def test_send_message_params(self, sqs_client):
        sync_send = AsyncMock(return_value={"MessageId": "msg-3"})

        with patch.object(sqs_client, "_send_message_sync", sync_send):
            message_id = await sqs_client.send_message(
                QUEUE_ARN, {"job_id": "job-1"}, "lane-1", message_deduplication_id="dedup-1"
            )

        assert message_id == "msg-3"
        params = sync_send.await_args.args[0]
        assert params["QueueUrl"].endswith("/123456789012/indexing-jobs.fifo")
        assert params["MessageGroupId"] == "lane-1"
        assert params["MessageDeduplicationId"] == "dedup-1"
        assert json.loads(params["MessageBody"]) == {"job_id": "job-1"}
