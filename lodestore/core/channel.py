"""Ordered two-way message transport to the background worker thread.

The worker owns its own event loop and a ``QueryExecutor``.  Requests travel
through a ``queue.Queue`` inbox; results and the out-of-band failure text are
posted back onto the caller's loop with ``call_soon_threadsafe``.  Both
directions are FIFO, which is what positional result routing relies on.
"""

from __future__ import annotations

import asyncio
import logging
import queue
import threading
from typing import Any, Callable, Union

from ..exceptions import ChannelCreationError
from .messages import FAILURE_SIGNAL, WorkerRequest, WorkerResult, is_failure_signal

logger = logging.getLogger(__name__)

_STOP = object()

InboundMessage = Union[WorkerResult, str]
ResultCallback = Callable[[WorkerResult], None]
FailureCallback = Callable[[], None]


class BackgroundChannel:
    """Worker thread plus the message plumbing around it."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        on_result: ResultCallback,
        on_failure_signal: FailureCallback,
        *,
        executor_factory: Callable[[], Any],
        join_timeout: float = 5.0,
        name: str = "lodestore-worker",
    ):
        self._loop = loop
        self._on_result = on_result
        self._on_failure_signal = on_failure_signal
        self._executor_factory = executor_factory
        self._join_timeout = join_timeout
        self._inbox: "queue.Queue[Any]" = queue.Queue()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._closed = False
        self._draining = False

    # caller side

    def start(self) -> None:
        try:
            self._thread.start()
        except RuntimeError as e:
            raise ChannelCreationError(f"Could not start worker thread: {e}") from e
        logger.debug("Worker thread %s started", self._thread.name)

    def send(self, message: WorkerRequest) -> None:
        if self._closed:
            raise ChannelCreationError("Channel is closed")
        self._inbox.put(message)

    def close(self) -> None:
        """Stop accepting messages and ask the worker to exit after its current job."""
        if self._closed:
            return
        self._closed = True
        self._inbox.put(_STOP)

    async def aclose(self) -> None:
        """Close and wait (bounded) for the worker thread to finish.

        Results of jobs the worker completes while it is being joined are still
        delivered; anything arriving after the join timeout is dropped.
        """
        self.close()
        self._draining = True
        try:
            if self._thread.is_alive():
                await self._loop.run_in_executor(None, self._thread.join, self._join_timeout)
                if self._thread.is_alive():
                    logger.warning("Worker thread did not exit within %.1fs", self._join_timeout)
            # results posted before the thread exited are already scheduled
            await asyncio.sleep(0)
        finally:
            self._draining = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, message: InboundMessage) -> None:
        if self._closed and not (self._draining and isinstance(message, WorkerResult)):
            logger.debug("Dropping message from closed worker: %r", message)
            return
        if isinstance(message, str):
            if is_failure_signal(message):
                logger.warning("Worker reported it could not initialise")
                self._on_failure_signal()
            else:
                logger.info("Ignoring text message from worker: %s", message)
            return
        self._on_result(message)

    # worker side

    def _post(self, message: InboundMessage) -> None:
        try:
            self._loop.call_soon_threadsafe(self._deliver, message)
        except RuntimeError:
            logger.debug("Caller loop is closed, dropping worker message")

    def _run(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            try:
                executor = self._executor_factory()
            except Exception as e:
                logger.exception("Worker initialisation failed: %s", e)
                self._post(FAILURE_SIGNAL)
                return

            while True:
                message = self._inbox.get()
                if message is _STOP:
                    break
                result = loop.run_until_complete(
                    executor.execute(message.name, message.payload, request_id=message.request_id)
                )
                self._post(result)

            loop.run_until_complete(executor.close())
        finally:
            loop.close()
            logger.debug("Worker thread %s exited", threading.current_thread().name)
