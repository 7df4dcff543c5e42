"""
Indexing job worker entrypoint.

Processes initial-data-fetch and process-webhook-event tasks from the indexing jobs SQS queue
and writes the resulting records into each job's sink database.
"""

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Literal

import newrelic.agent

from src.clients.helius import HeliusClient, create_helius_client
from src.clients.sqs import SQSClient, require_indexing_jobs_queue_arn
from src.database.database_configs import DatabaseConfigRepository
from src.database.indexing_jobs import IndexingJobsRepository
from src.indexing.errors import NotFoundError, classify_failure
from src.indexing.job_service import IndexingJobService
from src.indexing.job_types import get_job_type_spec
from src.indexing.models import IndexingJob, JobStatus
from src.indexing.sink_writer import SinkWriter
from src.jobs.base_worker import BaseJobWorker
from src.jobs.models import (
    InitialDataFetchMessage,
    ProcessWebhookEventMessage,
    indexing_job_message_adapter,
)
from src.jobs.sqs_job_processor import SQSJobProcessor, SQSMessageMetadata
from src.utils.config import (
    get_chainsink_environment,
    get_indexing_worker_concurrency,
    get_indexing_worker_http_port,
)
from src.utils.job_metrics import record_job_completion
from src.utils.logging import LogContext, get_logger

logger = get_logger(__name__)


@dataclass
class TaskOutcome:
    status: Literal["success", "skipped", "failed"]
    records_written: int = 0
    error_message: str | None = None


def _elapsed_ms(start_time: float) -> float:
    return (time.perf_counter() - start_time) * 1000


class IndexingJobWorker(BaseJobWorker):
    """Worker for indexing tasks. Task failures are recorded on the job, never raised.

    Only a failure to record the outcome in the control database propagates, which leaves
    the SQS message on the queue for redelivery.
    """

    def __init__(
        self,
        sqs_client: SQSClient,
        helius_client: HeliusClient,
        sink_writer: SinkWriter | None = None,
        job_service: IndexingJobService | None = None,
        http_port: int | None = None,
        queue_arn: str | None = None,
    ):
        super().__init__(http_port)
        self.sqs_client = sqs_client
        self.helius_client = helius_client
        self.sink_writer = sink_writer or SinkWriter()
        self.queue_arn = queue_arn
        self._job_service = job_service

    def _get_default_http_port(self) -> int:
        return get_indexing_worker_http_port()

    async def check_components(self) -> dict[str, str]:
        components = await super().check_components()
        try:
            attrs = await self.sqs_client.get_queue_attributes(
                self.queue_arn or require_indexing_jobs_queue_arn()
            )
            components["sqs"] = "healthy" if attrs is not None else "unhealthy: no queue attributes"
        except Exception as e:
            components["sqs"] = f"unhealthy: {e}"
        return components

    async def get_job_service(self) -> IndexingJobService:
        if self._job_service is None:
            pool = await self.control_db_manager.get_pool()
            self._job_service = IndexingJobService(
                IndexingJobsRepository(pool),
                DatabaseConfigRepository(pool),
                self.helius_client,
                self.sqs_client,
            )
        return self._job_service

    async def cleanup(self) -> None:
        await self.helius_client.close()
        await super().cleanup()

    async def _load_job(self, job_id: str) -> IndexingJob | None:
        service = await self.get_job_service()
        try:
            return await service.get_job_for_processing(job_id)
        except NotFoundError:
            logger.warning("Indexing job not found, dropping task", job_id=job_id)
            return None

    async def _record_failure(self, job: IndexingJob, exc: Exception, start_time: float) -> TaskOutcome:
        failure = classify_failure(exc)
        logger.error(
            "Indexing task failed",
            job_id=job.id,
            failure_kind=failure.kind,
            error=failure.message,
            exc_info=failure.kind == "unexpected",
        )
        service = await self.get_job_service()
        try:
            await service.record_statistics(
                job.id, 0, _elapsed_ms(start_time), error=failure.message
            )
        except NotFoundError:
            logger.warning("Indexing job deleted while processing", job_id=job.id)
        return TaskOutcome(status="failed", error_message=failure.message)

    async def process_initial_data_fetch(self, message: InitialDataFetchMessage) -> TaskOutcome:
        """Backfill a new job and activate it.

        An empty dataset activates the job without opening a sink connection.
        """
        job = await self._load_job(message.job_id)
        if job is None:
            return TaskOutcome(status="skipped")
        if job.status != JobStatus.PENDING:
            # Redelivered after the job was already activated
            logger.info(
                "Skipping initial data fetch for non-pending job",
                job_id=job.id,
                status=job.status.value,
            )
            return TaskOutcome(status="skipped")

        service = await self.get_job_service()
        start_time = time.perf_counter()
        try:
            dataset = await self.helius_client.fetch_initial_dataset(job)
            records = get_job_type_spec(job.type).parse_records(dataset) if dataset else []
            if not records:
                logger.info("Initial dataset empty, activating job", job_id=job.id)
                await service.activate(job.id)
                return TaskOutcome(status="success")

            count = await self.sink_writer.write(job, records)
        except Exception as e:
            return await self._record_failure(job, e, start_time)

        await service.record_statistics(job.id, count, _elapsed_ms(start_time))
        await service.activate(job.id)
        return TaskOutcome(status="success", records_written=count)

    async def process_webhook_event(self, message: ProcessWebhookEventMessage) -> TaskOutcome:
        """Transform a webhook payload and upsert it into the job's sink table."""
        job = await self._load_job(message.job_id)
        if job is None:
            return TaskOutcome(status="skipped")
        if not job.is_active:
            logger.info(
                "Skipping webhook event for inactive job", job_id=job.id, status=job.status.value
            )
            return TaskOutcome(status="skipped")

        service = await self.get_job_service()
        start_time = time.perf_counter()
        try:
            records = get_job_type_spec(job.type).transform(message.payload, job.config)
            if not records:
                logger.info("No matching records in webhook payload", job_id=job.id)
                return TaskOutcome(status="skipped")

            count = await self.sink_writer.write(job, records)
        except Exception as e:
            return await self._record_failure(job, e, start_time)

        await service.record_statistics(job.id, count, _elapsed_ms(start_time))
        return TaskOutcome(status="success", records_written=count)

    async def process_message(self, message_data: dict[str, Any]) -> TaskOutcome:
        job_message = indexing_job_message_adapter.validate_python(message_data)
        if isinstance(job_message, InitialDataFetchMessage):
            return await self.process_initial_data_fetch(job_message)
        return await self.process_webhook_event(job_message)


worker: IndexingJobWorker | None = None


@newrelic.agent.background_task(name="IndexingWorker/process_indexing_job")
async def process_indexing_job(
    message_data: dict[str, Any], sqs_metadata: SQSMessageMetadata
) -> None:
    """Process an indexing job message from SQS.

    Args:
        message_data: Parsed message data from SQS
        sqs_metadata: SQS message metadata
    """
    if worker is None:
        raise RuntimeError("Indexing job worker is not initialized")

    start_time = time.perf_counter()

    message_type = message_data.get("message_type")
    job_id = message_data.get("job_id")
    if not message_type or not job_id:
        logger.error("Message missing message_type or job_id", raw_message=json.dumps(message_data))
        raise ValueError("Message missing message_type or job_id field")

    newrelic.agent.add_custom_attribute("indexing.message_type", message_type)
    newrelic.agent.add_custom_attribute("job_id", job_id)
    if sqs_metadata["message_id"]:
        newrelic.agent.add_custom_attribute("sqs.message_id", sqs_metadata["message_id"])
    if sqs_metadata["approximate_receive_count"]:
        newrelic.agent.add_custom_attribute(
            "sqs.receive_count", sqs_metadata["approximate_receive_count"]
        )

    base_fields = {"message_type": message_type, "job_id": job_id}

    try:
        with LogContext(message_type=message_type, job_id=job_id):
            outcome = await worker.process_message(message_data)
            base_fields["records_written"] = outcome.records_written
            record_job_completion(
                logger,
                "Indexing",
                outcome.status,
                base_fields,
                error_message=outcome.error_message,
                sqs_metadata=sqs_metadata,
                duration_seconds=time.perf_counter() - start_time,
            )

    except Exception as e:
        record_job_completion(
            logger,
            "Indexing",
            "failed",
            base_fields,
            error_message=str(e),
            sqs_metadata=sqs_metadata,
            duration_seconds=time.perf_counter() - start_time,
        )
        # Re-raise so the message stays on the queue
        raise


async def main() -> None:
    """Main entry point for the indexing job worker."""
    global worker

    newrelic.agent.initialize(environment=get_chainsink_environment())
    # Background-only process, so register the APM application explicitly
    newrelic.agent.register_application()

    queue_arn = require_indexing_jobs_queue_arn()
    concurrency = get_indexing_worker_concurrency()
    logger.info(f"Starting indexing job worker for queue: {queue_arn}", concurrency=concurrency)

    sqs_client = SQSClient()
    worker = IndexingJobWorker(
        sqs_client=sqs_client, helius_client=create_helius_client(), queue_arn=queue_arn
    )

    async def run_sqs_processor():
        try:
            processor = SQSJobProcessor(
                queue_arn=queue_arn,
                process_function=process_indexing_job,
                max_messages=1,
                wait_time_seconds=20,
                visibility_timeout_seconds=5 * 60,
                concurrency=concurrency,
                sqs_client=sqs_client,
            )
            await processor.start()
        finally:
            await worker.cleanup()

    await worker.run_with_health_server(run_sqs_processor())


if __name__ == "__main__":
    asyncio.run(main())
