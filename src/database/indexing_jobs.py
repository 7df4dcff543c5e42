"""Repository for indexing jobs in the control database."""

import json
from typing import Any

import asyncpg

from src.indexing.models import DatabaseConfig, IndexingJob, JobStatus

JOB_COLUMNS = """
    j.id, j.name, j.type, j.config, j.status, j.database_config_id, j.webhook_id,
    j.records_indexed, j.last_sync_at, j.error, j.created_at, j.updated_at
"""

RETURNING_JOB_COLUMNS = """
    RETURNING id, name, type, config, status, database_config_id, webhook_id,
              records_indexed, last_sync_at, error, created_at, updated_at
"""


def _row_to_job(row: asyncpg.Record) -> IndexingJob:
    return IndexingJob(
        id=row["id"],
        name=row["name"],
        type=row["type"],
        config=row["config"] or {},
        status=JobStatus(row["status"]),
        database_config_id=row["database_config_id"],
        webhook_id=row["webhook_id"],
        records_indexed=row["records_indexed"],
        last_sync_at=row["last_sync_at"],
        error=row["error"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class IndexingJobsRepository:
    """CRUD and state-transition queries for indexing_jobs.

    Every state change is a single UPDATE statement, so concurrent workers never
    lose counter increments or overwrite each other's transitions.
    """

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def list_all(self) -> list[IndexingJob]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {JOB_COLUMNS} FROM indexing_jobs j ORDER BY j.created_at DESC"
            )
            return [_row_to_job(row) for row in rows]

    async def get_by_id(self, job_id: str) -> IndexingJob | None:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {JOB_COLUMNS} FROM indexing_jobs j WHERE j.id = $1", job_id
            )
            return _row_to_job(row) if row else None

    async def get_with_database_config(self, job_id: str) -> IndexingJob | None:
        """Load a job together with the sink database config it writes to."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {JOB_COLUMNS},
                       d.id AS db_id, d.name AS db_name, d.host AS db_host, d.port AS db_port,
                       d.username AS db_username, d.password AS db_password,
                       d.database_name AS db_database_name, d.ssl AS db_ssl
                FROM indexing_jobs j
                LEFT JOIN database_configs d ON d.id = j.database_config_id
                WHERE j.id = $1
                """,
                job_id,
            )
            if not row:
                return None

            job = _row_to_job(row)
            if row["db_id"] is not None:
                job.database_config = DatabaseConfig(
                    id=row["db_id"],
                    name=row["db_name"],
                    host=row["db_host"],
                    port=row["db_port"],
                    username=row["db_username"],
                    password=row["db_password"],
                    database_name=row["db_database_name"],
                    ssl=row["db_ssl"],
                )
            return job

    async def create(
        self, name: str, job_type: str, config: dict[str, Any], database_config_id: str
    ) -> IndexingJob:
        """Insert a new job in pending status."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO indexing_jobs (name, type, config, status, database_config_id)
                VALUES ($1, $2, $3::jsonb, $4, $5)
                {RETURNING_JOB_COLUMNS}
                """,
                name,
                job_type,
                json.dumps(config),
                JobStatus.PENDING.value,
                database_config_id,
            )
            return _row_to_job(row)

    async def update(
        self, job_id: str, name: str | None = None, config: dict[str, Any] | None = None
    ) -> IndexingJob | None:
        """Update name and/or config. Other fields are not user-mutable."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE indexing_jobs
                SET name = COALESCE($2, name),
                    config = COALESCE($3::jsonb, config),
                    updated_at = NOW()
                WHERE id = $1
                {RETURNING_JOB_COLUMNS}
                """,
                job_id,
                name,
                json.dumps(config) if config is not None else None,
            )
            return _row_to_job(row) if row else None

    async def set_webhook_id(self, job_id: str, webhook_id: str) -> None:
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE indexing_jobs SET webhook_id = $2, updated_at = NOW()
                WHERE id = $1
                """,
                job_id,
                webhook_id,
            )

    async def set_error_status(self, job_id: str, error: str) -> None:
        """Unconditionally move a job to error. Used when provisioning fails at creation."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE indexing_jobs SET status = $2, error = $3, updated_at = NOW()
                WHERE id = $1
                """,
                job_id,
                JobStatus.ERROR.value,
                error,
            )

    async def transition_status(
        self, job_id: str, expected: JobStatus, new: JobStatus
    ) -> IndexingJob | None:
        """Compare-and-swap status. Returns None if the job is missing or not in `expected`."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE indexing_jobs
                SET status = $3, error = NULL, updated_at = NOW()
                WHERE id = $1 AND status = $2
                {RETURNING_JOB_COLUMNS}
                """,
                job_id,
                expected.value,
                new.value,
            )
            return _row_to_job(row) if row else None

    async def record_statistics(
        self, job_id: str, records_added: int, error: str | None = None
    ) -> IndexingJob | None:
        """Atomically add to records_indexed, stamp last_sync_at and apply the outcome.

        - error recorded: pending/active/error jobs move to error with the message;
          paused jobs keep their status and error.
        - success: error jobs are restored to active and the error is cleared.
        """
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE indexing_jobs
                SET records_indexed = records_indexed + $2,
                    last_sync_at = NOW(),
                    status = CASE
                        WHEN status = 'paused' THEN status
                        WHEN $3::text IS NOT NULL THEN 'error'
                        WHEN status = 'error' THEN 'active'
                        ELSE status
                    END,
                    error = CASE
                        WHEN status = 'paused' THEN error
                        ELSE $3::text
                    END,
                    updated_at = NOW()
                WHERE id = $1
                {RETURNING_JOB_COLUMNS}
                """,
                job_id,
                records_added,
                error,
            )
            return _row_to_job(row) if row else None

    async def delete(self, job_id: str) -> bool:
        async with self.db_pool.acquire() as conn:
            result = await conn.execute("DELETE FROM indexing_jobs WHERE id = $1", job_id)
            return result == "DELETE 1"
