"""Audit-first webhook ingestion: record, check the job, enqueue."""

from typing import Any

from src.clients.sqs import SQSClient
from src.database.indexing_jobs import IndexingJobsRepository
from src.database.webhook_events import WebhookEventsRepository
from src.gateway.models import WebhookResponse
from src.indexing.errors import UNKNOWN_ERROR_MESSAGE, NotFoundError
from src.indexing.models import DIRECT_WEBHOOK_ID, WebhookEventStatus
from src.utils.logging import get_logger

logger = get_logger(__name__)


class WebhookIngestionService:
    """Receives provider payloads for a job. Never raises to the caller."""

    def __init__(
        self,
        webhook_events: WebhookEventsRepository,
        jobs: IndexingJobsRepository,
        sqs_client: SQSClient,
    ):
        self.webhook_events = webhook_events
        self.jobs = jobs
        self.sqs_client = sqs_client

    async def receive(self, job_id: str, payload: Any) -> WebhookResponse:
        logger.info("Received webhook event", job_id=job_id)
        try:
            await self.webhook_events.record(
                DIRECT_WEBHOOK_ID, job_id, payload, WebhookEventStatus.RECEIVED
            )

            job = await self.jobs.get_by_id(job_id)
            if job is None:
                raise NotFoundError(f"Indexing job not found: {job_id}")

            if not job.is_active:
                logger.info(
                    "Skipping webhook event for inactive job", job_id=job_id, status=job.status.value
                )
                return WebhookResponse(success=True, status="skipped")

            await self.sqs_client.send_webhook_event_message(job_id, payload)
            return WebhookResponse(success=True)

        except Exception as e:
            error = str(e) or UNKNOWN_ERROR_MESSAGE
            logger.error("Error processing webhook", job_id=job_id, error=error)
            await self._record_error(job_id, payload, error)
            return WebhookResponse(success=False, error=error)

    async def _record_error(self, job_id: str, payload: Any, error: str) -> None:
        try:
            await self.webhook_events.record(
                DIRECT_WEBHOOK_ID, job_id, payload, WebhookEventStatus.ERROR, error=error
            )
        except Exception as e:
            logger.error("Failed to record webhook error event", job_id=job_id, error=str(e))
