"""
Utilities for consistent job completion logging and metrics reporting.
"""

import logging
from typing import TYPE_CHECKING, Any

import newrelic.agent
import structlog

if TYPE_CHECKING:
    from src.jobs.sqs_job_processor import SQSMessageMetadata

# Support both standard Logger and structlog BoundLogger
LoggerType = logging.Logger | structlog.BoundLogger


def record_job_completion(
    logger: LoggerType,
    job_type: str,
    job_status: str,
    base_fields: dict[str, Any],
    error_message: str | None = None,
    sqs_metadata: "SQSMessageMetadata | None" = None,
    duration_seconds: float | None = None,
) -> None:
    """
    Record job completion with consistent logging and a New Relic custom event.

    Args:
        logger: Logger instance to use
        job_type: Type of job ("Indexing", ...)
        job_status: Status of the job ("success", "skipped", "failed")
        base_fields: Fields included in both logs and metrics (job_id, message_type, ...)
        error_message: Error message for failed jobs
        sqs_metadata: Optional SQS message metadata for redelivery tracking
        duration_seconds: Optional duration in seconds for processing the job
    """
    event_name = f"{job_type}JobComplete"

    if job_status == "success":
        message = f"{job_type} job completed successfully"
    elif job_status == "skipped":
        message = f"{job_type} job skipped"
    elif job_status == "failed":
        message = f"{job_type} job failed: {error_message}"
    else:
        raise ValueError(f"Unknown job_status: {job_status}")

    fields = {**base_fields, "job_status": job_status}

    if sqs_metadata:
        if sqs_metadata["message_id"]:
            fields["sqs_message_id"] = sqs_metadata["message_id"]
        if sqs_metadata["approximate_receive_count"]:
            fields["sqs_receive_count"] = sqs_metadata["approximate_receive_count"]

    if duration_seconds is not None:
        fields["duration_seconds"] = round(duration_seconds, 3)

    if job_status == "failed":
        logger.error(message, **fields)
    else:
        logger.info(message, **fields)

    event_fields = dict(fields)
    if error_message:
        event_fields["error_message"] = error_message

    newrelic.agent.record_custom_event(event_name, event_fields)
