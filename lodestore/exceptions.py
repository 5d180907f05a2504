"""Exception hierarchy shared by the dispatch engine and the public adapter."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .core.messages import ErrorDetails


class LodestoreError(Exception):
    """Base class for every error raised by lodestore."""


class QueueFullError(LodestoreError):
    """Raised by ``enqueue`` when the request queue reached its bound."""

    def __init__(self, max_size: int):
        super().__init__(f"Request queue is full ({max_size} pending requests)")
        self.max_size = max_size


class ChannelCreationError(LodestoreError):
    """The background worker could not be created."""


class ProtocolViolationError(LodestoreError):
    """A result arrived that cannot belong to the in-flight request."""


class StoreError(LodestoreError):
    """Raised inside the executor; ``type`` becomes ``ErrorDetails.type``."""

    def __init__(self, type: str, message: str):
        super().__init__(message)
        self.type = type
        self.message = message


class QueryError(LodestoreError):
    """A query failed; ``details`` carries the executor's error report."""

    def __init__(self, details: "ErrorDetails"):
        super().__init__(f"{details.type}: {details.message}")
        self.details = details

    @property
    def type(self) -> str:
        return self.details.type


class WorkerTerminatedError(QueryError):
    """The worker was torn down while a request was in flight on it."""


def error_for(details: "ErrorDetails") -> QueryError:
    """Exception the async surface raises for a failed request."""
    if details.type == "worker_terminated":
        return WorkerTerminatedError(details)
    return QueryError(details)
