"""
Lane assignments for indexing jobs via SQS message_group_id.

SQS FIFO delivers one in-flight message per group, so the lane layout decides how much
work for a single job can run concurrently.
"""

import random
from typing import assert_never

from src.jobs.models import InitialDataFetchMessage, ProcessWebhookEventMessage
from src.utils.config import get_webhook_event_lane_count


def get_indexing_lane(job_message: InitialDataFetchMessage | ProcessWebhookEventMessage) -> str:
    """Get the lane for a given indexing job message."""
    job_id = job_message.job_id

    if job_message.message_type == "initial-data-fetch":
        # Backfill = single lane per job
        return f"initial_data_fetch_{job_id}"
    elif job_message.message_type == "process-webhook-event":
        # Webhook events = X lanes per job; ordering within a job is best-effort
        return f"webhook_event_{job_id}_{rand_lane(get_webhook_event_lane_count())}"
    else:
        assert_never(job_message.message_type)


def rand_lane(lane_count: int) -> int:
    return random.randint(0, max(lane_count, 1) - 1)
