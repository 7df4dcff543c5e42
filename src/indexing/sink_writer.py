"""Schema-on-demand table creation and idempotent batched upserts into sink databases."""

from collections.abc import Sequence

import asyncpg
from pydantic import BaseModel

from src.clients.sink_db import SINK_DB_ERRORS, open_sink_pool
from src.indexing.errors import ConfigurationError, ExternalStoreError
from src.indexing.identifiers import validate_table_name
from src.indexing.job_types import JobTypeSpec, get_job_type_spec
from src.indexing.models import IndexingJob
from src.utils.logging import get_logger

logger = get_logger(__name__)


async def ensure_table_exists(conn: asyncpg.Connection, spec: JobTypeSpec, table_name: str) -> None:
    """CREATE TABLE IF NOT EXISTS with the type's columns and natural-key constraint."""
    try:
        await conn.execute(spec.create_table_sql(table_name))
    except (asyncpg.UniqueViolationError, asyncpg.DuplicateTableError):
        # Two tasks raced on CREATE TABLE IF NOT EXISTS; the table exists either way
        logger.info("Sink table created concurrently", table_name=table_name)


async def upsert_records(
    conn: asyncpg.Connection,
    spec: JobTypeSpec,
    table_name: str,
    records: Sequence[BaseModel],
) -> int:
    """Upsert a batch in one transaction. Returns the number of rows written."""
    if not records:
        return 0
    rows = spec.to_rows(records)
    async with conn.transaction():
        await conn.executemany(spec.upsert_sql(table_name), rows)
    return len(rows)


class SinkWriter:
    """Writes transformed records for a job into the job's configured sink database."""

    async def write(self, job: IndexingJob, records: Sequence[BaseModel]) -> int:
        """Open a private pool, ensure the table, upsert the batch, close the pool.

        Raises:
            ConfigurationError: unsupported job type, invalid table name or missing database config
            ExternalStoreError: connecting to or writing to the sink failed
        """
        spec = get_job_type_spec(job.type)
        table_name = validate_table_name(job.table_name)
        if job.database_config is None:
            raise ConfigurationError(f"Indexing job {job.id} has no database config")

        async with open_sink_pool(job.database_config) as pool:
            try:
                async with pool.acquire() as conn:
                    await ensure_table_exists(conn, spec, table_name)
                    count = await upsert_records(conn, spec, table_name, records)
            except SINK_DB_ERRORS as e:
                raise ExternalStoreError(
                    f"Failed to write to {table_name} on {job.database_config.describe()}: {e}"
                ) from e

        logger.info(
            "Upserted records into sink table",
            job_id=job.id,
            table_name=table_name,
            record_count=count,
        )
        return count
