"""
Shared plumbing for worker processes: control database access and the health HTTP server.

The health server runs on its own thread and event loop. asyncpg pools are bound to the loop
that created them, so readiness checks go through a separate single-connection manager
instead of the worker's control pool.
"""

import asyncio
import threading
from abc import ABC, abstractmethod
from collections.abc import Coroutine
from typing import Any

import uvicorn
from fastapi import FastAPI, HTTPException

from src.clients.control_db import ControlDBManager, control_db_manager
from src.utils.logging import get_logger

logger = get_logger(__name__)

HEALTHY = "healthy"


class BaseJobWorker(ABC):
    def __init__(self, http_port: int | None = None):
        self.control_db_manager = control_db_manager
        self.health_db_manager = ControlDBManager(max_size=1)
        self.http_port = http_port or self._get_default_http_port()
        self._app = self._create_app()

    @abstractmethod
    def _get_default_http_port(self) -> int:
        """Port for the health server when none is passed in."""

    async def check_components(self) -> dict[str, str]:
        """Map each dependency to "healthy" or "unhealthy: <reason>".

        Subclasses extend the result with the dependencies they add.
        """
        components: dict[str, str] = {}
        try:
            async with self.health_db_manager.acquire_connection() as conn:
                await conn.fetchval("SELECT 1")
            components["control_db"] = HEALTHY
        except Exception as e:
            components["control_db"] = f"unhealthy: {e}"
        return components

    async def cleanup(self) -> None:
        await self.control_db_manager.cleanup()

    def _create_app(self) -> FastAPI:
        service = self.__class__.__name__
        app = FastAPI(title=f"{service} health", docs_url=None, redoc_url=None)

        @app.get("/health/live")
        async def liveness():
            return {"status": "alive", "service": service}

        @app.get("/health/ready")
        async def readiness():
            """Ready when the control database and every subclass dependency respond."""
            components = await self.check_components()
            if all(status == HEALTHY for status in components.values()):
                return {"status": "ready", "service": service, "components": components}

            logger.error("Worker readiness check failed", service=service, components=components)
            raise HTTPException(
                status_code=503, detail={"status": "not_ready", "components": components}
            )

        return app

    async def serve_health(self) -> None:
        server = uvicorn.Server(
            uvicorn.Config(self._app, host="0.0.0.0", port=self.http_port, log_level="warning")
        )
        logger.info("Starting worker health server", port=self.http_port)
        await server.serve()

    def _health_thread_main(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(self.serve_health())
        finally:
            loop.run_until_complete(self.health_db_manager.cleanup())
            loop.close()

    async def run_with_health_server(self, main_task: Coroutine[Any, Any, None]) -> None:
        """Await `main_task` while the health server answers from a daemon thread.

        A long indexing task on the main loop cannot delay health responses this way.
        """
        threading.Thread(target=self._health_thread_main, daemon=True, name="health-server").start()
        try:
            await main_task
        finally:
            logger.info("Worker main task finished")
