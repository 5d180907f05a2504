"""Request and message shapes exchanged between the engine and its executors."""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Literal, Optional

from pydantic import BaseModel, ConfigDict

RequestState = Literal["queued", "dispatched"]

# Out-of-band text posted by a worker that could not initialise.
WORKER_FAILED = "WorkerFailed"
FAILURE_SIGNAL = f"worker:{WORKER_FAILED}"


class WorkerStatus(str, Enum):
    NOT_STARTED = "not_started"
    REGISTERED = "registered"
    FAILED = "failed"


class ErrorDetails(BaseModel):
    """Failure report produced by an executor."""

    type: str = "unknown"
    message: str = ""


class Request(BaseModel):
    """A unit of work owned by the request queue until its result is routed."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    payload: Any = None
    on_success: Optional[Callable[..., Any]] = None
    on_error: Optional[Callable[[ErrorDetails], Any]] = None
    request_id: int = 0
    state: RequestState = "queued"

    def to_message(self) -> "WorkerRequest":
        return WorkerRequest(request_id=self.request_id, name=self.name, payload=self.payload)


class WorkerRequest(BaseModel):
    """Outbound message: exactly what the executor needs, no handlers."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    request_id: int
    name: str
    payload: Any = None


class WorkerResult(BaseModel):
    """Inbound structured result for the request currently in flight."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    request_id: Optional[int] = None
    error_occurred: bool = False
    error_details: Optional[ErrorDetails] = None
    returned_value: Any = None

    @classmethod
    def success(cls, request_id: Optional[int], value: Any = None) -> "WorkerResult":
        return cls(request_id=request_id, returned_value=value)

    @classmethod
    def failure(cls, request_id: Optional[int], error_type: str, message: str) -> "WorkerResult":
        return cls(
            request_id=request_id,
            error_occurred=True,
            error_details=ErrorDetails(type=error_type, message=message),
        )


def is_failure_signal(message: str) -> bool:
    """True for the ``"<source>:WorkerFailed"`` text a failing worker posts."""
    parts = message.split(":", 1)
    return len(parts) == 2 and parts[1] == WORKER_FAILED
