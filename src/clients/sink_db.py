"""Transient connections to user-configured sink databases.

Each pipeline task opens its own single-connection pool and closes it when done. Pools are
never shared between tasks or cached, since credentials can change between tasks.
"""

import asyncio
import contextlib
from collections.abc import AsyncIterator

import asyncpg

from src.indexing.errors import ExternalStoreError
from src.indexing.models import DatabaseConfig
from src.utils.config import get_sink_db_command_timeout, get_sink_db_connect_timeout
from src.utils.logging import get_logger

logger = get_logger(__name__)

# Raised by asyncpg for server errors, by the OS for unreachable hosts, and on timeouts
SINK_DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


def _connection_params(db_config: DatabaseConfig) -> dict:
    return {
        "host": db_config.host,
        "port": db_config.port,
        "user": db_config.username,
        "password": db_config.password,
        "database": db_config.database_name,
        "ssl": "require" if db_config.ssl else "disable",
    }


@contextlib.asynccontextmanager
async def open_sink_pool(db_config: DatabaseConfig) -> AsyncIterator[asyncpg.Pool]:
    """Open a private pool (min_size=0, max_size=1) to a sink database.

    Usage:
        async with open_sink_pool(job.database_config) as pool:
            async with pool.acquire() as conn:
                ...

    The pool is closed on exit even if the body raised. A failure to close is logged only.

    Raises:
        ExternalStoreError: if the pool cannot be created
    """
    try:
        pool = await asyncpg.create_pool(
            **_connection_params(db_config),
            min_size=0,
            max_size=1,
            timeout=get_sink_db_connect_timeout(),
            command_timeout=get_sink_db_command_timeout(),
        )
    except SINK_DB_ERRORS as e:
        raise ExternalStoreError(
            f"Failed to connect to database {db_config.describe()}: {e}"
        ) from e

    logger.info("Opened sink database pool", database=db_config.describe())
    try:
        yield pool
    finally:
        try:
            await pool.close()
        except Exception as e:
            logger.error(
                "Failed to close sink database pool",
                database=db_config.describe(),
                error=str(e),
            )


async def check_sink_connection(db_config: DatabaseConfig) -> dict[str, object]:
    """Connect, run SELECT NOW() and close. Returns {"success": bool, "error"?: str}."""
    try:
        conn = await asyncpg.connect(
            **_connection_params(db_config), timeout=get_sink_db_connect_timeout()
        )
    except SINK_DB_ERRORS as e:
        logger.warning(
            "Sink database connection test failed", database=db_config.describe(), error=str(e)
        )
        return {"success": False, "error": str(e) or type(e).__name__}

    try:
        await conn.fetchval("SELECT NOW()")
        return {"success": True}
    except SINK_DB_ERRORS as e:
        logger.warning(
            "Sink database connection test failed", database=db_config.describe(), error=str(e)
        )
        return {"success": False, "error": str(e) or type(e).__name__}
    finally:
        await conn.close()
