"""Configuration utility for chainsink.

This module provides centralized configuration management with:
- Environment variables as the only source
- Type-safe access to configuration values
"""

import os
from typing import Any


def parse_config_value(value: str) -> str | bool | int | float:
    if value.lower() == "true":
        return True
    elif value.lower() == "false":
        return False
    else:
        # Try to parse as a number
        try:
            return int(value)
        except ValueError:
            try:
                return float(value)
            except ValueError:
                # Return as string
                return value


def get_config_value(key: str, default: Any = None) -> Any:
    """Get a configuration value from environment variables.

    Args:
        key: Configuration key name (e.g., "CONTROL_DATABASE_URL")
        default: Default value if key not found

    Returns:
        Configuration value or default
    """
    env_value = os.environ.get(key)
    if env_value is not None:
        return parse_config_value(env_value)

    return default


def get_config_value_str(key: str) -> str | None:
    """
    Get a configuration value from environment variables. But sometimes you just want a string.
    """
    return os.environ.get(key)


def require_config_value(key: str) -> str:
    value = os.environ.get(key)
    if value is None:
        raise ValueError(f"Environment variable {key} is required")
    return value


def get_control_database_url() -> str:
    """Get control database connection URL.

    The control database holds indexing jobs, database configs and the webhook event log.

    Returns:
        PostgreSQL connection string from CONTROL_DATABASE_URL config

    Raises:
        ValueError: If CONTROL_DATABASE_URL is not configured
    """
    url = get_config_value_str("CONTROL_DATABASE_URL")
    if url:
        return url

    raise ValueError(
        "Control database URL not found. Please provide CONTROL_DATABASE_URL environment variable"
    )


def get_chainsink_environment() -> str:
    """Get chainsink environment from env var."""
    return get_config_value("CHAINSINK_ENVIRONMENT", "local")


# Helius (webhook provider) configuration
def get_helius_api_key() -> str | None:
    """Get Helius API key from env."""
    return get_config_value_str("HELIUS_API_KEY")


def get_helius_api_base_url() -> str:
    """Get Helius REST API base URL from env."""
    return get_config_value_str("HELIUS_API_BASE_URL") or "https://api.helius.xyz/v0"


def get_helius_webhook_base_url() -> str | None:
    """Get the public base URL Helius should deliver webhooks to.

    The per-job delivery URL is `{base}/{job_id}`.
    """
    url = get_config_value_str("HELIUS_WEBHOOK_BASE_URL")
    return url.rstrip("/") if url else None


# Queue configuration
def get_indexing_jobs_queue_arn() -> str | None:
    """Get the ARN (or URL) of the indexing jobs SQS FIFO queue."""
    return get_config_value_str("INDEXING_JOBS_QUEUE_ARN")


def get_sqs_extended_enabled() -> bool:
    """Whether the SQS extended client (S3 offload for large payloads) is enabled."""
    return bool(get_config_value("SQS_EXTENDED_ENABLED", False))


def get_sqs_extended_s3_bucket() -> str | None:
    """Get the S3 bucket used by the SQS extended client."""
    return get_config_value_str("SQS_EXTENDED_S3_BUCKET")


def get_webhook_event_lane_count() -> int:
    """Number of message-group lanes per job for webhook events."""
    return int(get_config_value("WEBHOOK_EVENT_LANE_COUNT", 4))


# Worker configuration
def get_indexing_worker_concurrency() -> int:
    """Number of concurrent poll loops run by the indexing worker."""
    return max(int(get_config_value("INDEXING_WORKER_CONCURRENCY", 4)), 1)


def get_indexing_worker_http_port() -> int:
    """Port for the indexing worker health server."""
    return int(get_config_value("INDEXING_WORKER_HTTP_PORT", 8080))


def get_gateway_port() -> int:
    """Port for the webhook gateway / API service."""
    return int(get_config_value("GATEWAY_PORT", 8001))


# Sink database configuration
def get_sink_db_connect_timeout() -> float:
    """Connection timeout in seconds for user-configured sink databases."""
    return float(get_config_value("SINK_DB_CONNECT_TIMEOUT_SECONDS", 30))


def get_sink_db_command_timeout() -> float:
    """Per-statement timeout in seconds for user-configured sink databases."""
    return float(get_config_value("SINK_DB_COMMAND_TIMEOUT_SECONDS", 60))
