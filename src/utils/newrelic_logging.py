"""New Relic logging integration helpers."""

from collections.abc import MutableMapping
from typing import Any

import newrelic.agent


def newrelic_error_processor(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor that reports error-level logs to New Relic via notice_error.

    Passes every event through unchanged.
    """
    if method_name in ("error", "critical", "exception"):
        newrelic.agent.notice_error()

    return event_dict
