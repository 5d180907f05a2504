"""Hands each result to the request at the head of the queue.

Results carry no routing key: the next result always belongs to the
dispatched head, which holds only while a single request is in flight over an
order-preserving transport.  ``request_id`` is checked when present to catch
transports that break that assumption.
"""

from __future__ import annotations

import logging
from typing import Callable

from ..exceptions import ProtocolViolationError
from .messages import ErrorDetails, Request, WorkerResult
from .request_queue import RequestQueue

logger = logging.getLogger(__name__)


class ResultRouter:
    def __init__(self, queue: RequestQueue, advance: Callable[[], None], *, strict: bool = False):
        self._queue = queue
        self._advance = advance
        self._strict = strict

    def route(self, result: WorkerResult) -> bool:
        """Complete the in-flight request with *result*; False if it was dropped."""
        head = self._queue.peek_head()
        if head is None:
            return self._violation("Result arrived with no request in flight", result)
        if head.state != "dispatched":
            return self._violation(f"Result arrived before {head.name} was dispatched", result)
        if result.request_id is not None and result.request_id != head.request_id:
            return self._violation(
                f"Result for request {result.request_id} but {head.request_id} is in flight",
                result,
            )

        finished = self._queue.dequeue_head()
        logger.debug("Request finished: %s (id=%d)", finished.name, finished.request_id)
        try:
            self.complete(finished, result)
        finally:
            self._advance()
        return True

    def complete(self, request: Request, result: WorkerResult) -> None:
        """Invoke the handler matching *result*; handler errors are logged."""
        try:
            if result.error_occurred:
                if request.on_error is not None:
                    request.on_error(result.error_details or ErrorDetails())
            elif request.on_success is not None:
                if result.returned_value is not None:
                    request.on_success(result.returned_value)
                else:
                    request.on_success()
        except Exception as e:
            logger.exception("Completion handler of %s raised: %s", request.name, e)

    def _violation(self, message: str, result: WorkerResult) -> bool:
        if self._strict:
            raise ProtocolViolationError(message)
        logger.error("%s, dropping result %r", message, result)
        return False
