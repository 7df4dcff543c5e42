"""Append-only audit log of inbound webhook payloads."""

import json
from typing import Any

import asyncpg

from src.indexing.models import WebhookEventStatus


class WebhookEventsRepository:
    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def record(
        self,
        webhook_id: str,
        indexing_job_id: str,
        payload: Any,
        status: WebhookEventStatus,
        error: str | None = None,
    ) -> str:
        """Insert an event and return its id. Events are never updated."""
        async with self.db_pool.acquire() as conn:
            return await conn.fetchval(
                """
                INSERT INTO webhook_events (webhook_id, indexing_job_id, payload, status, error)
                VALUES ($1, $2, $3::jsonb, $4, $5)
                RETURNING id
                """,
                webhook_id,
                indexing_job_id,
                json.dumps(payload),
                status.value,
                error,
            )
