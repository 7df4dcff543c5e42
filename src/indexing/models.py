"""Pydantic models for indexing jobs, sink database configs and the webhook event log."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class JobType(str, Enum):
    """Kinds of blockchain data an indexing job can collect."""

    NFT_BIDS = "nft_bids"
    NFT_PRICES = "nft_prices"
    TOKEN_BORROWING = "token_borrowing"
    TOKEN_PRICES = "token_prices"


class JobStatus(str, Enum):
    """Indexing job lifecycle states."""

    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"


class WebhookEventStatus(str, Enum):
    RECEIVED = "received"
    ERROR = "error"


# Sentinel webhook id for events delivered straight to /webhooks/{job_id}
DIRECT_WEBHOOK_ID = "direct"


class DatabaseConfig(BaseModel):
    """Connection descriptor for a user's external PostgreSQL store."""

    id: str
    name: str = ""
    host: str
    port: int = 5432
    username: str
    password: str = Field(default="", repr=False)
    database_name: str
    ssl: bool = False

    def describe(self) -> str:
        """host:port/database, safe to log."""
        return f"{self.host}:{self.port}/{self.database_name}"


class IndexingJob(BaseModel):
    """A user-defined job describing what data to collect and where to write it."""

    id: str
    name: str
    type: str
    config: dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    database_config_id: str
    webhook_id: str | None = None
    records_indexed: int = 0
    last_sync_at: datetime | None = None
    error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    # Populated when the job is loaded for pipeline processing
    database_config: DatabaseConfig | None = Field(default=None, exclude=True)

    @property
    def table_name(self) -> str | None:
        return self.config.get("tableName")

    @property
    def is_active(self) -> bool:
        return self.status == JobStatus.ACTIVE


class WebhookEvent(BaseModel):
    """Append-only audit record of an inbound webhook payload."""

    id: str
    webhook_id: str
    indexing_job_id: str
    payload: Any = None
    status: WebhookEventStatus
    error: str | None = None
    created_at: datetime | None = None


class CreateIndexingJobRequest(BaseModel):
    name: str = Field(min_length=1)
    database_config_id: str
    type: str
    config: dict[str, Any] = Field(default_factory=dict)


class UpdateIndexingJobRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    config: dict[str, Any] | None = None
