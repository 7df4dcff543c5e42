"""Indexing job lifecycle: CRUD, user transitions and the pipeline's status/statistics updates."""

from typing import Any

from src.clients.helius import HeliusClient
from src.clients.sqs import SQSClient
from src.database.database_configs import DatabaseConfigRepository
from src.database.indexing_jobs import IndexingJobsRepository
from src.indexing.errors import ConfigurationError, ConflictError, NotFoundError
from src.indexing.identifiers import validate_table_name
from src.indexing.job_types import get_job_type_spec
from src.indexing.models import (
    CreateIndexingJobRequest,
    IndexingJob,
    JobStatus,
    UpdateIndexingJobRequest,
)
from src.utils.logging import get_logger

logger = get_logger(__name__)


# Allow-list filters read by the payload transforms and the backfill
FILTER_KEYS = ("collections", "marketplaces", "tokens", "platforms")


def validate_job_config(job_type: str, config: dict[str, Any]) -> None:
    """Raises ConfigurationError for an unsupported type, an invalid tableName or a filter
    that is not a list of strings.
    """
    get_job_type_spec(job_type)
    validate_table_name(config.get("tableName"))
    for key in FILTER_KEYS:
        value = config.get(key)
        if value is None:
            continue
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            raise ConfigurationError(f"Indexing job config {key} must be a list of strings")


class IndexingJobService:
    """Job Registry operations.

    User transitions (pause/resume) and pipeline transitions (activate) are compare-and-swap
    updates; record_statistics is the single mutation point for counters, status and error.
    """

    def __init__(
        self,
        jobs_repository: IndexingJobsRepository,
        database_configs_repository: DatabaseConfigRepository,
        helius_client: HeliusClient,
        sqs_client: SQSClient,
    ):
        self.jobs = jobs_repository
        self.database_configs = database_configs_repository
        self.helius = helius_client
        self.sqs = sqs_client

    async def list_jobs(self) -> list[IndexingJob]:
        return await self.jobs.list_all()

    async def get_job(self, job_id: str) -> IndexingJob:
        job = await self.jobs.get_by_id(job_id)
        if job is None:
            raise NotFoundError(f"Indexing job not found: {job_id}")
        return job

    async def get_job_for_processing(self, job_id: str) -> IndexingJob:
        """Load a job with its database config for the sink writer."""
        job = await self.jobs.get_with_database_config(job_id)
        if job is None:
            raise NotFoundError(f"Indexing job not found: {job_id}")
        return job

    async def create_job(self, request: CreateIndexingJobRequest) -> IndexingJob:
        """Create a job, provision its Helius webhook and queue the initial backfill.

        Raises:
            NotFoundError: the database config does not exist
            ConfigurationError: unsupported type or invalid tableName
            ConflictError: the webhook could not be created (the job is left in error)
        """
        db_config = await self.database_configs.get_by_id(request.database_config_id)
        if db_config is None:
            raise NotFoundError(f"Database configuration not found: {request.database_config_id}")
        validate_job_config(request.type, request.config)

        job = await self.jobs.create(
            name=request.name,
            job_type=request.type,
            config=request.config,
            database_config_id=request.database_config_id,
        )
        logger.info("Created indexing job", job_id=job.id, job_type=job.type)

        result = await self.helius.create_subscription(job)
        if not result.success or not result.subscription_id:
            error = f"Failed to create webhook: {result.error}"
            await self.jobs.set_error_status(job.id, error)
            raise ConflictError(error)

        await self.jobs.set_webhook_id(job.id, result.subscription_id)
        job.webhook_id = result.subscription_id

        target = await self.helius.update_subscription_target(result.subscription_id, job.id)
        if not target.success:
            logger.warning(
                "Helius webhook still targets placeholder URL",
                job_id=job.id,
                webhook_id=result.subscription_id,
                error=target.error,
            )

        try:
            await self.sqs.send_initial_data_fetch_message(job.id)
        except Exception as e:
            error = f"Failed to queue initial data fetch: {e}"
            await self.jobs.set_error_status(job.id, error)
            raise ConflictError(error) from e

        return job

    async def update_job(self, job_id: str, request: UpdateIndexingJobRequest) -> IndexingJob:
        existing = await self.get_job(job_id)
        if request.config is not None:
            validate_job_config(existing.type, request.config)

        job = await self.jobs.update(job_id, name=request.name, config=request.config)
        if job is None:
            raise NotFoundError(f"Indexing job not found: {job_id}")
        return job

    async def delete_job(self, job_id: str) -> None:
        """Delete a job from any state. Deregistering the webhook is best effort."""
        job = await self.get_job(job_id)

        if job.webhook_id:
            result = await self.helius.delete_subscription(job.webhook_id)
            if not result.success:
                logger.warning(
                    "Deleting job despite webhook deregistration failure",
                    job_id=job_id,
                    webhook_id=job.webhook_id,
                    error=result.error,
                )

        await self.jobs.delete(job_id)
        logger.info("Deleted indexing job", job_id=job_id)

    async def pause_job(self, job_id: str) -> IndexingJob:
        return await self._transition(job_id, JobStatus.ACTIVE, JobStatus.PAUSED)

    async def resume_job(self, job_id: str) -> IndexingJob:
        return await self._transition(job_id, JobStatus.PAUSED, JobStatus.ACTIVE)

    async def activate(self, job_id: str) -> IndexingJob:
        """pending -> active once the initial backfill is done."""
        job = await self.jobs.transition_status(job_id, JobStatus.PENDING, JobStatus.ACTIVE)
        if job is None:
            current = await self.get_job(job_id)
            raise ConflictError(
                f"Job is not in pending state: {job_id} (status={current.status.value})"
            )
        logger.info("Activated indexing job", job_id=job_id)
        return job

    async def record_statistics(
        self,
        job_id: str,
        records_added: int,
        processing_time_ms: float = 0,
        error: str | None = None,
    ) -> IndexingJob:
        """Add to records_indexed and apply the outcome of a processing attempt."""
        job = await self.jobs.record_statistics(job_id, records_added, error)
        if job is None:
            raise NotFoundError(f"Indexing job not found: {job_id}")

        log_fields = {
            "job_id": job_id,
            "records_added": records_added,
            "records_indexed": job.records_indexed,
            "processing_time_ms": round(processing_time_ms, 1),
            "status": job.status.value,
        }
        if error and job.status == JobStatus.PAUSED:
            logger.warning("Failure on paused job not recorded", error=error, **log_fields)
        elif error:
            logger.error("Recorded indexing failure", error=error, **log_fields)
        else:
            logger.info("Recorded indexing statistics", **log_fields)
        return job

    async def _transition(self, job_id: str, expected: JobStatus, new: JobStatus) -> IndexingJob:
        job = await self.jobs.transition_status(job_id, expected, new)
        if job is None:
            current = await self.get_job(job_id)
            raise ConflictError(f"Job is not {expected.value}: {job_id} (status={current.status.value})")

        if job.webhook_id:
            if new == JobStatus.PAUSED:
                result = await self.helius.pause_subscription(job.webhook_id)
            else:
                result = await self.helius.resume_subscription(job.webhook_id)
            if not result.success:
                logger.warning(
                    "Helius webhook state not updated",
                    job_id=job_id,
                    webhook_id=job.webhook_id,
                    status=new.value,
                    error=result.error,
                )

        logger.info("Indexing job transitioned", job_id=job_id, status=new.value)
        return job
