"""Gateway FastAPI service: webhook ingestion and the indexing jobs API."""

import datetime
from contextlib import asynccontextmanager

import newrelic.agent
from fastapi import FastAPI, HTTPException, Request

from src.clients.control_db import control_db_manager
from src.clients.helius import create_helius_client
from src.clients.sqs import SQSClient, require_indexing_jobs_queue_arn
from src.database.database_configs import DatabaseConfigRepository
from src.database.indexing_jobs import IndexingJobsRepository
from src.database.webhook_events import WebhookEventsRepository
from src.gateway.routes import configs_router, jobs_router, webhook_router
from src.gateway.services.webhook_ingestion import WebhookIngestionService
from src.indexing.job_service import IndexingJobService
from src.utils.config import get_chainsink_environment, get_gateway_port
from src.utils.logging import get_logger, get_uvicorn_log_config

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize services on startup and handle graceful shutdown."""
    logger.info("Starting gateway service...")

    pool = await control_db_manager.get_pool()
    sqs_client = SQSClient()
    helius_client = create_helius_client()

    jobs = IndexingJobsRepository(pool)
    database_configs = DatabaseConfigRepository(pool)

    app.state.sqs_client = sqs_client
    app.state.database_configs = database_configs
    app.state.job_service = IndexingJobService(jobs, database_configs, helius_client, sqs_client)
    app.state.ingestion_service = WebhookIngestionService(
        WebhookEventsRepository(pool), jobs, sqs_client
    )

    logger.info("Gateway service startup complete")

    yield

    logger.info("Shutting down gateway service...")
    await helius_client.close()
    await control_db_manager.cleanup()
    logger.info("Gateway service shutdown complete")


app = FastAPI(
    title="Chainsink Gateway",
    description="Helius webhook ingestion and indexing job management",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health/live")
async def liveness_check():
    """Liveness probe endpoint - checks if the application is alive."""
    return {"status": "alive", "timestamp": datetime.datetime.now(datetime.UTC).isoformat()}


@app.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness probe endpoint - checks the control database and the indexing queue."""
    components: dict[str, str] = {}

    try:
        async with control_db_manager.acquire_connection() as conn:
            await conn.fetchval("SELECT 1")
        components["control_db"] = "healthy"
    except Exception as e:
        components["control_db"] = f"unhealthy: {e}"

    try:
        sqs_client: SQSClient = request.app.state.sqs_client
        attrs = await sqs_client.get_queue_attributes(require_indexing_jobs_queue_arn())
        components["sqs"] = "healthy" if attrs is not None else "unhealthy: no queue attributes"
    except Exception as e:
        components["sqs"] = f"unhealthy: {e}"

    if all(status == "healthy" for status in components.values()):
        return {"status": "ready", "components": components}

    newrelic.agent.record_custom_event("GatewayNotReady", components)
    logger.error("Readiness check failed", components=components)
    raise HTTPException(status_code=503, detail={"status": "not_ready", "components": components})


app.include_router(webhook_router)
app.include_router(jobs_router)
app.include_router(configs_router)


def main() -> None:
    """Run the gateway service."""
    import uvicorn

    newrelic.agent.initialize(environment=get_chainsink_environment())

    uvicorn.run(
        "src.gateway.main:app",
        host="0.0.0.0",
        port=get_gateway_port(),
        log_config=get_uvicorn_log_config(),
    )


if __name__ == "__main__":
    main()
