"""Pydantic models for the gateway service."""

from pydantic import BaseModel


class WebhookResponse(BaseModel):
    """Result of receiving a webhook. Always returned with HTTP 200."""

    success: bool
    status: str | None = None
    error: str | None = None


class DeleteResponse(BaseModel):
    success: bool = True


class ConnectionTestResponse(BaseModel):
    success: bool
    error: str | None = None
