"""chainsink logging config

Logging is configured when this module is imported. It uses structlog for structured logging. Logs are
pretty-printed in the local env (CHAINSINK_ENVIRONMENT='local') and JSON-formatted everywhere else.

```
from src.utils.logging import get_logger

logger = get_logger(__name__)
logger.info("Upserted rows", job_id="123", rows=40)
```

Use add_log_context() / LogContext to attach values (job_id, message_type, ...) to every log line emitted
in the current async context. Python's standard `logging` module is routed through structlog, so library
loggers (asyncpg, botocore, uvicorn) are formatted the same way.
"""

from __future__ import annotations

import logging
import os
from typing import Any

import structlog
import structlog.contextvars

from src.utils.config import get_chainsink_environment
from src.utils.newrelic_logging import newrelic_error_processor


def _is_local_environment() -> bool:
    return get_chainsink_environment() == "local"


def _get_log_renderer() -> structlog.types.Processor:
    """Get the renderer for the current environment.

    Can be overridden with the LOG_RENDERER environment variable ('console' or 'json').
    """
    log_renderer = os.getenv("LOG_RENDERER", "").lower()
    if log_renderer == "console":
        use_console = True
    elif log_renderer == "json":
        use_console = False
    else:
        use_console = _is_local_environment()

    if use_console:
        return structlog.dev.ConsoleRenderer(
            colors=True,
            pad_event=0,
            force_colors=False,
            repr_native_str=False,
            exception_formatter=structlog.dev.plain_traceback,
            sort_keys=True,
            event_key="message",
        )
    return structlog.processors.JSONRenderer()


def configure_logging() -> None:
    """Configure structlog and the stdlib root logger."""
    common_processors: list[structlog.types.Processor] = [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.contextvars.merge_contextvars,
        structlog.processors.EventRenamer("message"),
        newrelic_error_processor,
        structlog.stdlib.filter_by_level,  # Must come after add_log_level
    ]

    structlog.configure(
        processors=common_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # filter_by_level expects a structlog logger, stdlib records filter themselves
    foreign_processors = [p for p in common_processors if p != structlog.stdlib.filter_by_level]
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=_get_log_renderer(),
            foreign_pre_chain=foreign_processors,
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(stream_handler)

    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    numeric_log_level = getattr(logging, log_level, logging.INFO)
    root_logger.setLevel(numeric_log_level)

    if numeric_log_level <= logging.DEBUG:
        for logger_name in ["uvicorn", "uvicorn.access", "uvicorn.error"]:
            uvicorn_logger = logging.getLogger(logger_name)
            if uvicorn_logger.level > numeric_log_level:
                uvicorn_logger.setLevel(numeric_log_level)


configure_logging()


def add_log_context(**kwargs: Any) -> None:
    """Add values to the logging context of the current async context."""
    structlog.contextvars.bind_contextvars(**kwargs)


def remove_log_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_log_context() -> None:
    """Clear all values from the logging context."""
    structlog.contextvars.clear_contextvars()


LogContext = structlog.contextvars.bound_contextvars


def get_logger(name: str, **kwargs: Any) -> structlog.BoundLogger:
    """Get a logger instance. Wrapper around structlog.get_logger for convenience.

    Args:
        name: Logger name (usually __name__ from the calling module)
    """
    return structlog.get_logger(name, **kwargs)


def get_uvicorn_log_config() -> dict[str, Any]:
    """Uvicorn logging configuration matching the structlog format."""
    handler_config = {"handlers": ["default"], "level": "INFO", "propagate": False}
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processor": _get_log_renderer(),
                "foreign_pre_chain": [
                    structlog.stdlib.add_log_level,
                    structlog.stdlib.add_logger_name,
                    structlog.processors.TimeStamper(fmt="iso"),
                    structlog.processors.EventRenamer("message"),
                ],
            },
        },
        "handlers": {
            "default": {
                "formatter": "default",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            "": dict(handler_config),
            "uvicorn": dict(handler_config),
            "uvicorn.access": dict(handler_config),
            "uvicorn.error": dict(handler_config),
        },
    }
