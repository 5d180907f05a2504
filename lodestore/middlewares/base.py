from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict

from ..core.messages import Request

Handler = Callable[[Request, Dict[str, Any]], Awaitable[Any]]


class BaseMiddleware(ABC):
    """Caller-side middleware wrapping every request before it is queued.

    Call ``await handler(request, data)`` to continue the chain; the return
    value is the query result seen by the caller.
    """

    @abstractmethod
    async def __call__(self, handler: Handler, request: Request, data: Dict[str, Any]) -> Any:
        raise NotImplementedError
