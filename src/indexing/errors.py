"""
Error taxonomy for the indexing pipeline and the failure classification step.

CRUD callers receive these as typed errors. Pipeline tasks classify every failure with
classify_failure() before recording it on the job, so a failed task never crashes the worker.
"""

from dataclasses import dataclass
from typing import Literal

FailureKind = Literal[
    "not_found",
    "conflict",
    "configuration",
    "external_store",
    "upstream_provider",
    "unexpected",
]

UNKNOWN_ERROR_MESSAGE = "Unknown error"


class IndexingError(Exception):
    """Base class for all indexing pipeline errors."""

    kind: FailureKind = "unexpected"


class NotFoundError(IndexingError):
    """A job or database config does not exist."""

    kind: FailureKind = "not_found"


class ConflictError(IndexingError):
    """An invalid state transition was requested."""

    kind: FailureKind = "conflict"


class ConfigurationError(IndexingError):
    """A job is misconfigured (unsupported type, invalid table name). Fatal for the task."""

    kind: FailureKind = "configuration"


class ExternalStoreError(IndexingError):
    """Connecting to or querying a user's sink database failed."""

    kind: FailureKind = "external_store"


class UpstreamProviderError(IndexingError):
    """A call to the webhook provider failed."""

    kind: FailureKind = "upstream_provider"


@dataclass(frozen=True)
class FailureInfo:
    kind: FailureKind
    message: str


def classify_failure(exc: BaseException) -> FailureInfo:
    """Classify an exception raised while processing a pipeline task."""
    message = str(exc) or UNKNOWN_ERROR_MESSAGE
    if isinstance(exc, IndexingError):
        return FailureInfo(kind=exc.kind, message=message)
    return FailureInfo(kind="unexpected", message=message)
