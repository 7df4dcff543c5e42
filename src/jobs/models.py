"""
Pydantic models for SQS indexing job messages.

Messages are discriminated by `message_type` so a single queue can carry both task kinds.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter


def _utc_timestamp() -> str:
    return datetime.now(UTC).isoformat()


class InitialDataFetchMessage(BaseModel):
    """Backfill a newly created job from the provider's current state."""

    message_type: Literal["initial-data-fetch"] = "initial-data-fetch"
    job_id: str
    timestamp: str = Field(default_factory=_utc_timestamp)


class ProcessWebhookEventMessage(BaseModel):
    """Transform and write one inbound webhook payload for a job."""

    message_type: Literal["process-webhook-event"] = "process-webhook-event"
    job_id: str
    payload: Any = None
    timestamp: str = Field(default_factory=_utc_timestamp)


IndexingJobMessage = Annotated[
    InitialDataFetchMessage | ProcessWebhookEventMessage,
    Field(discriminator="message_type"),
]

indexing_job_message_adapter: TypeAdapter[IndexingJobMessage] = TypeAdapter(IndexingJobMessage)
