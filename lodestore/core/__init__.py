"""Request dispatch engine: queue, probe, dispatcher, router and worker channel."""

from .messages import ErrorDetails, Request, WorkerRequest, WorkerResult, WorkerStatus
from .request_queue import RequestQueue
from .router import ResultRouter
from .probe import ExecutionContextProbe
from .channel import BackgroundChannel
from .dispatcher import Dispatcher

__all__ = [
    "BackgroundChannel",
    "Dispatcher",
    "ErrorDetails",
    "ExecutionContextProbe",
    "Request",
    "RequestQueue",
    "ResultRouter",
    "WorkerRequest",
    "WorkerResult",
    "WorkerStatus",
]
