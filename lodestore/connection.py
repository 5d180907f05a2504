"""Public async API over the dispatch engine.

Every method builds a request, runs it through the caller-side middleware
chain and submits it to the ``Dispatcher``; the awaited future is resolved by
the request's success/error handlers.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Callable, Dict, List, Optional, Union

from .config import AppSettings, get_settings
from .core.dispatcher import Dispatcher
from .core.messages import ErrorDetails, Request, WorkerStatus
from .db.models import Api, Database, DbInfo, InitDbResult, SetQuery
from .events import Event, EventBus
from .exceptions import QueryError, error_for
from .middlewares.base import BaseMiddleware

logger = logging.getLogger(__name__)

Query = Union[Dict[str, Any], Any]


class Connection:
    """Entry point for applications: ``async with Connection() as conn: ...``."""

    def __init__(
        self,
        settings: Optional[AppSettings] = None,
        *,
        dispatcher: Optional[Dispatcher] = None,
        **dispatcher_options: Any,
    ):
        self._settings = settings or get_settings()
        self._dispatcher = dispatcher or Dispatcher(self._settings, **dispatcher_options)
        self._events = EventBus()
        self._middlewares: List[BaseMiddleware] = []
        self._log_status = False
        self.database: Optional[Database] = None

    async def __aenter__(self) -> "Connection":
        self._dispatcher.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # request plumbing

    async def _push_api(self, name: Api, payload: Any = None) -> Any:
        request = Request(name=name.value, payload=payload)
        data: Dict[str, Any] = {"connection": self}
        handler = self._submit
        for middleware in reversed(self._middlewares):
            handler = functools.partial(middleware, handler)
        return await handler(request, data)

    async def _submit(self, request: Request, data: Dict[str, Any]) -> Any:
        future = asyncio.get_running_loop().create_future()

        def on_success(*args: Any) -> None:
            if not future.done():
                future.set_result(args[0] if args else None)

        def on_error(details: ErrorDetails) -> None:
            if not future.done():
                future.set_exception(error_for(details))

        request.on_success = on_success
        request.on_error = on_error
        self._dispatcher.enqueue(request)
        return await future

    # database lifecycle

    async def init_db(self, database: Union[Database, Dict[str, Any]]) -> bool:
        """Create or upgrade *database*, emit lifecycle events, return ``is_created``."""
        result: InitDbResult = await self._push_api(Api.INIT_DB, database)
        db = result.database
        self.database = db
        if result.is_created:
            if result.old_version:
                await self._events.emit(Event.UPGRADE, db, result.old_version, result.new_version)
            else:
                await self._events.emit(Event.CREATE, db)
        await self._events.emit(Event.OPEN, db)
        return result.is_created

    async def open_db(self, name: str, version: Optional[int] = None) -> Database:
        database = await self._push_api(Api.OPEN_DB, DbInfo(name=name, version=version))
        self.database = database
        return database

    async def drop_db(self) -> None:
        await self._push_api(Api.DROP_DB)
        self.database = None

    async def terminate(self) -> None:
        await self._push_api(Api.TERMINATE)
        self.database = None

    # queries

    async def select(self, query: Query) -> List[Dict[str, Any]]:
        return await self._push_api(Api.SELECT, query)

    async def count(self, query: Query) -> int:
        return await self._push_api(Api.COUNT, query)

    async def insert(self, query: Query):
        return await self._push_api(Api.INSERT, query)

    async def update(self, query: Query) -> int:
        return await self._push_api(Api.UPDATE, query)

    async def remove(self, query: Query) -> int:
        return await self._push_api(Api.REMOVE, query)

    async def clear(self, table_name: str) -> None:
        await self._push_api(Api.CLEAR, table_name)

    async def get(self, key: str) -> Any:
        return await self._push_api(Api.GET, key)

    async def set(self, key: str, value: Any) -> None:
        await self._push_api(Api.SET, SetQuery(key=key, value=value))

    async def transaction(self, query: Query) -> Any:
        return await self._push_api(Api.TRANSACTION, query)

    async def union(self, queries: List[Query]) -> List[Dict[str, Any]]:
        return await self._push_api(Api.UNION, list(queries))

    async def intersect(self, query: Query) -> List[Dict[str, Any]]:
        return await self._push_api(Api.INTERSECT, query)

    async def import_scripts(self, *modules: str) -> None:
        """Import modules in the executing context so transactions can reference them."""
        await self._push_api(Api.IMPORT_SCRIPTS, list(modules))

    # events, middleware, plugins

    def on(self, event: Event, callback: Callable[..., Any]) -> None:
        self._events.on(event, callback)

    def off(self, event: Event, callback: Callable[..., Any]) -> None:
        self._events.off(event, callback)

    async def add_middleware(self, middleware: Union[BaseMiddleware, str], for_worker: bool = False) -> None:
        """Add a caller-side middleware, or a ``"module:function"`` one for the executor."""
        if for_worker:
            await self._push_api(Api.MIDDLEWARE, middleware)
            return
        self._middlewares.append(middleware)

    def add_plugin(self, plugin: Any, params: Any = None) -> Any:
        return plugin.setup(self, params)

    @property
    def log_status(self) -> bool:
        return self._log_status

    async def set_log_status(self, status: bool) -> None:
        self._log_status = status
        logging.getLogger("lodestore").setLevel(logging.DEBUG if status else logging.WARNING)
        await self._push_api(Api.CHANGE_LOG_STATUS, status)

    # engine

    @property
    def status(self) -> WorkerStatus:
        return self._dispatcher.status

    @property
    def dispatcher(self) -> Dispatcher:
        return self._dispatcher

    async def reset_worker(self) -> None:
        """Recreate the background worker and probe it again."""
        await self._dispatcher.reset()
        if self.database is not None:
            # a fresh worker has no open database
            try:
                await self.open_db(self.database.name)
            except QueryError as e:
                logger.warning("Could not reopen %s after reset: %s", self.database.name, e)
                self.database = None

    async def close(self) -> None:
        if self.database is not None:
            try:
                await self.terminate()
            except Exception as e:
                logger.warning("Error terminating database on close: %s", e)
        await self._dispatcher.close()
