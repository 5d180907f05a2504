"""Decides, once per lifetime, whether the background worker is usable."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional

from ..exceptions import ChannelCreationError
from .messages import WorkerResult, WorkerStatus

logger = logging.getLogger(__name__)

StatusListener = Callable[[WorkerStatus, WorkerStatus], None]
ChannelFactory = Callable[
    [asyncio.AbstractEventLoop, Callable[[WorkerResult], None], Callable[[], None]], Any
]


class ExecutionContextProbe:
    """Single owner of the worker status.

    ``start`` creates the channel and opens a grace window; if the worker has
    not reported a failure when the window closes the status becomes
    ``REGISTERED``.  Listeners are called as ``listener(new, previous)`` on
    every transition.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        channel_factory: ChannelFactory,
        on_result: Callable[[WorkerResult], None],
        *,
        window: float = 0.1,
        enabled: bool = True,
    ):
        self._loop = loop
        self._channel_factory = channel_factory
        self._on_result = on_result
        self._window = window
        self._enabled = enabled
        self._status = WorkerStatus.NOT_STARTED
        self._listeners: List[StatusListener] = []
        self._timer: Optional[asyncio.TimerHandle] = None
        self._started = False
        self.channel: Any = None

    @property
    def status(self) -> WorkerStatus:
        return self._status

    @property
    def concluded(self) -> bool:
        return self._status is not WorkerStatus.NOT_STARTED

    def subscribe(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def start(self) -> None:
        if self._started:
            return
        self._started = True

        if not self._enabled:
            logger.info("Background worker disabled, executing queries directly")
            self._conclude(WorkerStatus.FAILED)
            return

        try:
            channel = self._channel_factory(self._loop, self._on_result, self.mark_failed)
            channel.start()
        except ChannelCreationError as e:
            logger.warning("lodestore is not running in a background worker: %s", e)
            self._conclude(WorkerStatus.FAILED)
            return
        except Exception as e:
            logger.exception("Unexpected error creating the worker channel: %s", e)
            self._conclude(WorkerStatus.FAILED)
            return

        self.channel = channel
        self._timer = self._loop.call_later(self._window, self._on_window_elapsed)

    def mark_failed(self) -> None:
        """Failure path used by the channel; valid inside or after the window."""
        if self._status is WorkerStatus.FAILED:
            return
        logger.warning("lodestore is not running in a background worker")
        if self.channel is not None:
            self.channel.close()
        self._conclude(WorkerStatus.FAILED)

    async def reset(self) -> None:
        """Tear the channel down and return to ``NOT_STARTED``."""
        self._cancel_timer()
        channel, self.channel = self.channel, None
        previous = self._status
        self._status = WorkerStatus.NOT_STARTED
        self._started = False
        if channel is not None:
            await channel.aclose()
        logger.info("Worker status reset (was %s)", previous.value)

    async def close(self) -> None:
        self._cancel_timer()
        if self.channel is not None:
            await self.channel.aclose()

    def _on_window_elapsed(self) -> None:
        self._timer = None
        if self._status is WorkerStatus.NOT_STARTED:
            self._conclude(WorkerStatus.REGISTERED)

    def _conclude(self, status: WorkerStatus) -> None:
        self._cancel_timer()
        previous = self._status
        self._status = status
        logger.info("Worker status %s -> %s", previous.value, status.value)
        for listener in list(self._listeners):
            listener(status, previous)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
