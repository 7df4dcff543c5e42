"""Tests for audit-first webhook ingestion."""

from unittest.mock import MagicMock, call

import pytest

from src.clients.sqs import SQSClient
from src.database.indexing_jobs import IndexingJobsRepository
from src.database.webhook_events import WebhookEventsRepository
from src.gateway.services.webhook_ingestion import WebhookIngestionService
from src.indexing.models import JobStatus, WebhookEventStatus
from tests.mock_utils import make_job, nft_bid_transaction

PAYLOAD = [nft_bid_transaction()]


@pytest.fixture
def webhook_events():
    repo = MagicMock(spec=WebhookEventsRepository)
    repo.record.return_value = "evt-1"
    return repo


@pytest.fixture
def jobs():
    repo = MagicMock(spec=IndexingJobsRepository)
    repo.get_by_id.return_value = make_job()
    return repo


@pytest.fixture
def sqs_client():
    client = MagicMock(spec=SQSClient)
    client.send_webhook_event_message.return_value = "msg-1"
    return client


@pytest.fixture
def service(webhook_events, jobs, sqs_client):
    return WebhookIngestionService(webhook_events, jobs, sqs_client)


class TestWebhookIngestion:
    @pytest.mark.asyncio
    async def test_active_job_is_recorded_then_queued(self, service, webhook_events, sqs_client):
        response = await service.receive("job-1", PAYLOAD)

        assert response.success is True
        assert response.status is None
        webhook_events.record.assert_awaited_once_with(
            "direct", "job-1", PAYLOAD, WebhookEventStatus.RECEIVED
        )
        sqs_client.send_webhook_event_message.assert_awaited_once_with("job-1", PAYLOAD)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [JobStatus.PAUSED, JobStatus.PENDING, JobStatus.ERROR])
    async def test_inactive_job_is_skipped(self, service, jobs, webhook_events, sqs_client, status):
        jobs.get_by_id.return_value = make_job(status=status)

        response = await service.receive("job-1", PAYLOAD)

        assert response.success is True
        assert response.status == "skipped"
        webhook_events.record.assert_awaited_once()
        sqs_client.send_webhook_event_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_job_records_error_entry(self, service, jobs, webhook_events, sqs_client):
        jobs.get_by_id.return_value = None

        response = await service.receive("missing-job", PAYLOAD)

        assert response.success is False
        assert response.error == "Indexing job not found: missing-job"
        assert webhook_events.record.await_args_list == [
            call("direct", "missing-job", PAYLOAD, WebhookEventStatus.RECEIVED),
            call(
                "direct",
                "missing-job",
                PAYLOAD,
                WebhookEventStatus.ERROR,
                error="Indexing job not found: missing-job",
            ),
        ]
        sqs_client.send_webhook_event_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_queue_failure(self, service, webhook_events, sqs_client):
        sqs_client.send_webhook_event_message.side_effect = RuntimeError("queue unavailable")

        response = await service.receive("job-1", PAYLOAD)

        assert response.success is False
        assert response.error == "queue unavailable"
        assert webhook_events.record.await_count == 2
        assert webhook_events.record.await_args.args[3] == WebhookEventStatus.ERROR

    @pytest.mark.asyncio
    async def test_error_entry_failure_is_swallowed(self, service, webhook_events, jobs):
        webhook_events.record.side_effect = [
            ConnectionError("control db down"),
            ConnectionError("still down"),
        ]

        response = await service.receive("job-1", PAYLOAD)

        assert response.success is False
        assert response.error == "control db down"
        jobs.get_by_id.assert_not_called()
