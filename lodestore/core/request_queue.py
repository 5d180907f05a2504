"""FIFO queue of pending requests."""

from __future__ import annotations

from collections import deque
from typing import Deque, Optional

from ..exceptions import QueueFullError
from .messages import Request


class RequestQueue:
    """Ordered collection of pending requests; the head may be in flight.

    ``max_size`` of ``0`` disables the bound.
    """

    def __init__(self, max_size: int = 0):
        self._items: Deque[Request] = deque()
        self._max_size = max_size

    def enqueue(self, request: Request) -> None:
        if self._max_size and len(self._items) >= self._max_size:
            raise QueueFullError(self._max_size)
        self._items.append(request)

    def peek_head(self) -> Optional[Request]:
        return self._items[0] if self._items else None

    def dequeue_head(self) -> Request:
        return self._items.popleft()

    @property
    def max_size(self) -> int:
        return self._max_size

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)
