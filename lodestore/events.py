"""Lifecycle events emitted by ``Connection.init_db``."""

from __future__ import annotations

import inspect
import logging
from enum import Enum
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class Event(str, Enum):
    CREATE = "create"
    UPGRADE = "upgrade"
    OPEN = "open"


class EventBus:
    """Ordered listeners per event; sync and async callbacks are both accepted."""

    def __init__(self):
        self._listeners: Dict[Event, List[Callable[..., Any]]] = {}

    def on(self, event: Event, callback: Callable[..., Any]) -> None:
        self._listeners.setdefault(Event(event), []).append(callback)

    def off(self, event: Event, callback: Callable[..., Any]) -> None:
        listeners = self._listeners.get(Event(event), [])
        if callback in listeners:
            listeners.remove(callback)

    async def emit(self, event: Event, *args: Any) -> List[Any]:
        """Call every listener in registration order and return their results."""
        results = []
        for callback in list(self._listeners.get(Event(event), [])):
            result = callback(*args)
            if inspect.isawaitable(result):
                result = await result
            results.append(result)
        logger.debug("Emitted %s to %d listener(s)", Event(event).value, len(results))
        return results
