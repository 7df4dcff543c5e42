import asyncio
import contextlib
import json
from collections.abc import AsyncIterator

import asyncpg

from src.utils.config import get_control_database_url
from src.utils.logging import get_logger

logger = get_logger(__name__)

CONTROL_POOL_MAX_SIZE = 10


async def init_connection(conn: asyncpg.Connection) -> None:
    """An initializer run on every new connection from the control DB pool."""
    await conn.set_type_codec(
        "jsonb",
        # Callsites always json.dumps() explicitly so nothing is ever double-encoded.
        encoder=lambda x: x,  # no-op. callsites must explicitly json.dumps() their objects
        decoder=json.loads,
        schema="pg_catalog",
    )


class ControlDBManager:
    """Owns the asyncpg pool for the control database (jobs, configs, webhook events).

    Sink databases never go through this manager; see src.clients.sink_db.
    """

    def __init__(self, max_size: int = CONTROL_POOL_MAX_SIZE) -> None:
        self._max_size = max_size
        # Lazily initialized to avoid event loop binding issues with multiple asyncio.run() calls
        self._lock: asyncio.Lock | None = None
        self.pool: asyncpg.Pool | None = None

    @property
    def _pool_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def get_pool(self) -> asyncpg.Pool:
        """Get the control database pool, initializing it if needed."""
        if self.pool is None:
            async with self._pool_lock:
                # Double-check in case the pool was created while acquiring the lock
                if self.pool is None:
                    self.pool = await asyncpg.create_pool(
                        get_control_database_url(),
                        min_size=0,
                        max_size=self._max_size,
                        timeout=30,  # connection acquisition timeout
                        command_timeout=10,
                        init=init_connection,
                    )
                    logger.info("Control database pool initialized")
        return self.pool

    @contextlib.asynccontextmanager
    async def acquire_connection(self) -> AsyncIterator[asyncpg.Connection]:
        """Usage:
        async with control_db_manager.acquire_connection() as conn:
            ...
        """
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            yield conn

    async def cleanup(self) -> None:
        """Close the pool and reset event-loop-bound state."""
        if self.pool:
            with contextlib.suppress(Exception):
                await self.pool.close()
            self.pool = None
            logger.info("Control database pool closed")
        self._lock = None


control_db_manager = ControlDBManager()
