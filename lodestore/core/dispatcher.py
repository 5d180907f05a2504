"""Request dispatch engine.

Requests are queued in FIFO order and executed one at a time, either in the
background worker thread (status ``REGISTERED``) or directly on the caller's
event loop (status ``FAILED``).  While the probe has not concluded, requests
only queue up; the probe's conclusion releases them.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Callable, Optional, Set

from ..config import AppSettings, get_settings
from ..db.executor import QueryExecutor
from ..exceptions import ChannelCreationError, LodestoreError
from .channel import BackgroundChannel
from .messages import ErrorDetails, Request, WorkerResult, WorkerStatus
from .probe import ChannelFactory, ExecutionContextProbe
from .request_queue import RequestQueue
from .router import ResultRouter

logger = logging.getLogger(__name__)

TARGET_WORKER = "worker"
TARGET_DIRECT = "direct"


class Dispatcher:
    """Owns the queue, the probe and the single in-flight slot."""

    def __init__(
        self,
        settings: Optional[AppSettings] = None,
        *,
        channel_factory: Optional[ChannelFactory] = None,
        executor_factory: Optional[Callable[[], Any]] = None,
    ):
        self._settings = settings or get_settings()
        self._queue = RequestQueue(self._settings.max_pending)
        self._router = ResultRouter(
            self._queue, self._execute_next, strict=self._settings.strict_routing
        )
        self._executor_factory = executor_factory or self._default_executor_factory
        self._channel_factory = channel_factory or self._default_channel_factory
        self._ids = itertools.count(1)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._probe: Optional[ExecutionContextProbe] = None
        self._direct_executor: Any = None
        self._direct_tasks: Set[asyncio.Task] = set()
        self._in_flight_target: Optional[str] = None
        self._closed = False

    # lifecycle

    def start(self) -> None:
        """Bind to the running loop and begin probing the worker."""
        if self._probe is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._probe = ExecutionContextProbe(
            self._loop,
            self._channel_factory,
            self._router.route,
            window=self._settings.worker.probe_window,
            enabled=self._settings.worker.enabled,
        )
        self._probe.subscribe(self._on_status_change)
        self._probe.start()

    async def reset(self) -> None:
        """Recreate the worker and run a fresh probe cycle."""
        if self._probe is None:
            self.start()
            return
        head = self._queue.peek_head()
        abandoned = (
            head
            if head is not None
            and head.state == "dispatched"
            and self._in_flight_target == TARGET_WORKER
            else None
        )
        await self._probe.reset()
        # a job the worker finished while being joined was routed already
        if abandoned is not None and self._queue.peek_head() is abandoned:
            logger.warning("Worker reset while %s was in flight", abandoned.name)
            self._router.route(
                WorkerResult.failure(
                    abandoned.request_id,
                    "worker_terminated",
                    "worker was terminated before returning a result",
                )
            )
        if self._direct_executor is not None and not self._direct_tasks:
            # recreated on demand if the new cycle falls back to direct execution
            await self._direct_executor.close()
            self._direct_executor = None
        self._probe.start()

    async def close(self) -> None:
        """Stop the worker and fail every request still pending."""
        if self._closed:
            return
        self._closed = True
        for task in list(self._direct_tasks):
            task.cancel()
        if self._direct_tasks:
            await asyncio.gather(*self._direct_tasks, return_exceptions=True)
        if self._probe is not None:
            await self._probe.close()
        if self._direct_executor is not None:
            await self._direct_executor.close()
            self._direct_executor = None
        while self._queue:
            request = self._queue.dequeue_head()
            self._router.complete(
                request,
                WorkerResult.failure(request.request_id, "engine_closed", "connection was closed"),
            )

    # queueing

    def submit(
        self,
        name: str,
        payload: Any = None,
        on_success: Optional[Callable[..., Any]] = None,
        on_error: Optional[Callable[[ErrorDetails], Any]] = None,
    ) -> Request:
        request = Request(name=name, payload=payload, on_success=on_success, on_error=on_error)
        self.enqueue(request)
        return request

    def enqueue(self, request: Request) -> None:
        if self._closed:
            raise LodestoreError("Dispatcher is closed")
        self.start()
        request.state = "queued"
        self._queue.enqueue(request)
        request.request_id = next(self._ids)
        logger.debug("Request pushed: %s (id=%d)", request.name, request.request_id)
        if not self.in_flight and self._probe.concluded:
            self._execute_next()

    # dispatch

    def _execute_next(self) -> None:
        if self._closed or self.in_flight or self._probe is None or not self._probe.concluded:
            return
        request = self._queue.peek_head()
        if request is None:
            self._in_flight_target = None
            return

        request.state = "dispatched"
        if self._probe.status is WorkerStatus.REGISTERED:
            try:
                self._probe.channel.send(request.to_message())
            except ChannelCreationError as e:
                logger.warning("Worker channel unusable (%s), falling back", e)
                request.state = "queued"
                self._probe.mark_failed()
                return
            self._in_flight_target = TARGET_WORKER
            logger.debug("Request executing in worker: %s", request.name)
        else:
            self._in_flight_target = TARGET_DIRECT
            logger.debug("Request executing directly: %s", request.name)
            self._execute_direct(request)

    def _execute_direct(self, request: Request) -> None:
        try:
            if self._direct_executor is None:
                self._direct_executor = self._executor_factory()
        except Exception as e:
            logger.exception("Could not create direct executor: %s", e)
            failure = WorkerResult.failure(request.request_id, "unknown", str(e))
            self._loop.call_soon(self._router.route, failure)
            return

        task = self._loop.create_task(
            self._direct_executor.execute(request.name, request.payload, request_id=request.request_id)
        )
        self._direct_tasks.add(task)
        task.add_done_callback(self._on_direct_done)

    def _on_direct_done(self, task: "asyncio.Task[WorkerResult]") -> None:
        self._direct_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            head = self._queue.peek_head()
            result = WorkerResult.failure(head.request_id if head else None, "unknown", str(error))
        else:
            result = task.result()
        self._router.route(result)

    def _on_status_change(self, status: WorkerStatus, previous: WorkerStatus) -> None:
        if status is WorkerStatus.FAILED and previous is WorkerStatus.REGISTERED:
            head = self._queue.peek_head()
            if head is not None and head.state == "dispatched" and self._in_flight_target == TARGET_WORKER:
                # The worker signals failure before reading its inbox, so
                # the head never ran there.
                logger.info("Re-dispatching %s directly", head.name)
                head.state = "queued"
                self._in_flight_target = None
        self._execute_next()

    # defaults

    def _default_executor_factory(self) -> QueryExecutor:
        return QueryExecutor(self._settings.store)

    def _default_channel_factory(
        self,
        loop: asyncio.AbstractEventLoop,
        on_result: Callable[[WorkerResult], None],
        on_failure_signal: Callable[[], None],
    ) -> BackgroundChannel:
        return BackgroundChannel(
            loop,
            on_result,
            on_failure_signal,
            executor_factory=self._executor_factory,
            join_timeout=self._settings.worker.join_timeout,
        )

    # introspection

    @property
    def status(self) -> WorkerStatus:
        return self._probe.status if self._probe is not None else WorkerStatus.NOT_STARTED

    @property
    def in_flight(self) -> bool:
        head = self._queue.peek_head()
        return head is not None and head.state == "dispatched"

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def settings(self) -> AppSettings:
        return self._settings
