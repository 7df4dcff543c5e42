"""Repository for sink database configs in the control database.

Configs are managed elsewhere; this service only reads them and records connection checks.
"""

import asyncpg

from src.clients.sink_db import check_sink_connection
from src.indexing.models import DatabaseConfig


def _row_to_config(row: asyncpg.Record) -> DatabaseConfig:
    return DatabaseConfig(
        id=row["id"],
        name=row["name"],
        host=row["host"],
        port=row["port"],
        username=row["username"],
        password=row["password"],
        database_name=row["database_name"],
        ssl=row["ssl"],
    )


class DatabaseConfigRepository:
    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def get_by_id(self, config_id: str) -> DatabaseConfig | None:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, name, host, port, username, password, database_name, ssl
                FROM database_configs
                WHERE id = $1
                """,
                config_id,
            )
            return _row_to_config(row) if row else None

    async def test_connection(self, config: DatabaseConfig) -> dict[str, object]:
        """Check connectivity to the sink and record the result on the config row."""
        result = await check_sink_connection(config)
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE database_configs
                SET status = $2, error = $3, last_checked_at = NOW()
                WHERE id = $1
                """,
                config.id,
                "connected" if result["success"] else "error",
                result.get("error"),
            )
        return result
