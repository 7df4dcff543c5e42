"""Route definitions for the gateway service."""

import json
from typing import Any

from fastapi import APIRouter, HTTPException, Request

from src.database.database_configs import DatabaseConfigRepository
from src.gateway.models import ConnectionTestResponse, DeleteResponse, WebhookResponse
from src.gateway.services.webhook_ingestion import WebhookIngestionService
from src.indexing.errors import (
    ConfigurationError,
    ConflictError,
    IndexingError,
    NotFoundError,
)
from src.indexing.job_service import IndexingJobService
from src.indexing.models import (
    CreateIndexingJobRequest,
    IndexingJob,
    UpdateIndexingJobRequest,
)
from src.utils.logging import LogContext, get_logger

logger = get_logger(__name__)

webhook_router = APIRouter()
jobs_router = APIRouter(prefix="/indexing-jobs", tags=["indexing-jobs"])

ERROR_STATUS_CODES: dict[type[IndexingError], int] = {
    NotFoundError: 404,
    ConflictError: 409,
    ConfigurationError: 422,
}


def _to_http_exception(error: IndexingError) -> HTTPException:
    for error_type, status_code in ERROR_STATUS_CODES.items():
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error))
    logger.error("Unhandled indexing error", error=str(error), kind=error.kind)
    return HTTPException(status_code=500, detail=str(error))


def _job_service(request: Request) -> IndexingJobService:
    return request.app.state.job_service


def _reject_constant(name: str) -> Any:
    # NaN and Infinity cannot be stored in jsonb
    raise ValueError(f"Non-standard JSON constant: {name}")


async def _read_payload(request: Request) -> Any:
    """JSON body, or the raw text when the body is not standard JSON."""
    body = await request.body()
    if not body:
        return None
    text = body.decode("utf-8", errors="replace")
    try:
        return json.loads(text, parse_constant=_reject_constant)
    except ValueError:
        return text


@webhook_router.post("/webhooks/{job_id}", response_model=WebhookResponse)
async def receive_webhook(job_id: str, request: Request) -> WebhookResponse:
    """Receive a Helius webhook delivery for a job. Always responds 200."""
    ingestion_service: WebhookIngestionService = request.app.state.ingestion_service
    payload = await _read_payload(request)
    with LogContext(job_id=job_id):
        return await ingestion_service.receive(job_id, payload)


@jobs_router.get("", response_model=list[IndexingJob])
async def list_jobs(request: Request) -> list[IndexingJob]:
    return await _job_service(request).list_jobs()


@jobs_router.get("/{job_id}", response_model=IndexingJob)
async def get_job(job_id: str, request: Request) -> IndexingJob:
    try:
        return await _job_service(request).get_job(job_id)
    except IndexingError as e:
        raise _to_http_exception(e) from e


@jobs_router.post("", response_model=IndexingJob, status_code=201)
async def create_job(body: CreateIndexingJobRequest, request: Request) -> IndexingJob:
    try:
        return await _job_service(request).create_job(body)
    except IndexingError as e:
        raise _to_http_exception(e) from e


@jobs_router.put("/{job_id}", response_model=IndexingJob)
async def update_job(job_id: str, body: UpdateIndexingJobRequest, request: Request) -> IndexingJob:
    try:
        return await _job_service(request).update_job(job_id, body)
    except IndexingError as e:
        raise _to_http_exception(e) from e


@jobs_router.delete("/{job_id}", response_model=DeleteResponse)
async def delete_job(job_id: str, request: Request) -> DeleteResponse:
    try:
        await _job_service(request).delete_job(job_id)
    except IndexingError as e:
        raise _to_http_exception(e) from e
    return DeleteResponse()


@jobs_router.post("/{job_id}/pause", response_model=IndexingJob)
async def pause_job(job_id: str, request: Request) -> IndexingJob:
    try:
        return await _job_service(request).pause_job(job_id)
    except IndexingError as e:
        raise _to_http_exception(e) from e


@jobs_router.post("/{job_id}/resume", response_model=IndexingJob)
async def resume_job(job_id: str, request: Request) -> IndexingJob:
    try:
        return await _job_service(request).resume_job(job_id)
    except IndexingError as e:
        raise _to_http_exception(e) from e


configs_router = APIRouter(prefix="/database-configs", tags=["database-configs"])


@configs_router.post("/{config_id}/test", response_model=ConnectionTestResponse)
async def check_database_config(config_id: str, request: Request) -> ConnectionTestResponse:
    """Check connectivity to a sink database and record the result on the config."""
    database_configs: DatabaseConfigRepository = request.app.state.database_configs
    config = await database_configs.get_by_id(config_id)
    if config is None:
        raise HTTPException(status_code=404, detail=f"Database configuration not found: {config_id}")
    result = await database_configs.test_connection(config)
    return ConnectionTestResponse(success=bool(result["success"]), error=result.get("error"))
