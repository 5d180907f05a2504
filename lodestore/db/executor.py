"""Executes named requests against SQLite.

The same executor class serves both the background worker and the direct
fallback path.  ``execute`` never raises: every failure is reported as a
``WorkerResult`` with ``error_occurred`` set.
"""

from __future__ import annotations

import importlib
import inspect
import json
import logging
import sqlite3
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiosqlite
from pydantic import ValidationError

from ..config import StoreSettings
from ..core.messages import WorkerResult
from ..exceptions import StoreError
from ..utils.validators import is_valid_import_path, quote_identifier
from . import connection
from .models import (
    Api,
    CountQuery,
    Database,
    DbInfo,
    InitDbResult,
    InsertQuery,
    IntersectQuery,
    RemoveQuery,
    SelectQuery,
    SetQuery,
    Table,
    TransactionQuery,
    UpdateQuery,
)
from .query_builder import (
    INVALID_QUERY,
    TABLE_NOT_EXIST,
    build_order,
    build_paging,
    build_where,
    create_table_sql,
    decode_row,
    drop_table_sql,
    encode,
    require_column,
)

logger = logging.getLogger(__name__)

DB_NOT_EXIST = "db_not_exist"
DB_NOT_OPEN = "db_not_open"
INVALID_VERSION = "invalid_version"
METHOD_NOT_EXIST = "method_not_exist"
INVALID_API = "invalid_api"
CONSTRAINT = "constraint"
TRANSACTION_ABORTED = "transaction_aborted"

WorkerMiddleware = Callable[[str, Any], Any]


def resolve_callable(path: str) -> Callable[..., Any]:
    """Import ``"package.module:function"`` and return the function."""
    if not is_valid_import_path(path) or ":" not in path:
        raise StoreError(METHOD_NOT_EXIST, f"invalid method path {path!r}")
    module_name, attr = path.split(":", 1)
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise StoreError(METHOD_NOT_EXIST, f"cannot import {module_name}: {e}") from e
    func = getattr(module, attr, None)
    if not callable(func):
        raise StoreError(METHOD_NOT_EXIST, f"{path} is not callable")
    return func


class TransactionContext:
    """Handle passed to a transaction method; all calls share one SQLite transaction."""

    def __init__(self, executor: "QueryExecutor", conn: aiosqlite.Connection, data: Any):
        self._executor = executor
        self._conn = conn
        self.data = data

    async def select(self, query: Any) -> List[Dict[str, Any]]:
        return await self._executor._select(self._conn, SelectQuery.model_validate(query))

    async def count(self, query: Any) -> int:
        return await self._executor._count(self._conn, CountQuery.model_validate(query))

    async def insert(self, query: Any):
        return await self._executor._insert(self._conn, InsertQuery.model_validate(query), commit=False)

    async def update(self, query: Any) -> int:
        return await self._executor._update(self._conn, UpdateQuery.model_validate(query), commit=False)

    async def remove(self, query: Any) -> int:
        return await self._executor._remove(self._conn, RemoveQuery.model_validate(query), commit=False)

    def abort(self, message: str = "transaction aborted") -> None:
        raise StoreError(TRANSACTION_ABORTED, message)


class QueryExecutor:
    """Holds at most one open database and runs requests against it."""

    def __init__(self, settings: StoreSettings):
        self._directory = settings.directory
        self._conn: Optional[aiosqlite.Connection] = None
        self._database: Optional[Database] = None
        self._middlewares: List[WorkerMiddleware] = []
        self._handlers: Dict[str, Callable[[Any], Awaitable[Any]]] = {
            Api.INIT_DB.value: self.init_db,
            Api.OPEN_DB.value: self.open_db,
            Api.DROP_DB.value: self.drop_db,
            Api.SELECT.value: self.select,
            Api.COUNT.value: self.count,
            Api.INSERT.value: self.insert,
            Api.UPDATE.value: self.update,
            Api.REMOVE.value: self.remove,
            Api.CLEAR.value: self.clear,
            Api.GET.value: self.get,
            Api.SET.value: self.set,
            Api.TRANSACTION.value: self.transaction,
            Api.UNION.value: self.union,
            Api.INTERSECT.value: self.intersect,
            Api.CHANGE_LOG_STATUS.value: self.change_log_status,
            Api.MIDDLEWARE.value: self.add_middleware,
            Api.IMPORT_SCRIPTS.value: self.import_scripts,
            Api.TERMINATE.value: self.terminate,
        }

    async def execute(self, name: str, payload: Any = None, *, request_id: Optional[int] = None) -> WorkerResult:
        try:
            handler = self._handlers.get(name)
            if handler is None:
                raise StoreError(INVALID_API, f"unknown request {name!r}")
            for middleware in self._middlewares:
                payload = middleware(name, payload)
                if inspect.isawaitable(payload):
                    payload = await payload
            value = await handler(payload)
            return WorkerResult.success(request_id, value)
        except StoreError as e:
            logger.debug("Request %s failed: %s", name, e.message)
            return WorkerResult.failure(request_id, e.type, e.message)
        except ValidationError as e:
            return WorkerResult.failure(request_id, INVALID_QUERY, str(e))
        except sqlite3.IntegrityError as e:
            return WorkerResult.failure(request_id, CONSTRAINT, str(e))
        except Exception as e:
            logger.exception("Unexpected error while executing %s: %s", name, e)
            return WorkerResult.failure(request_id, "unknown", str(e))

    async def close(self) -> None:
        if self._conn is not None:
            try:
                await self._conn.close()
            finally:
                self._conn = None
                logger.debug("Closed database %s", self._database.name if self._database else None)

    # database lifecycle

    async def init_db(self, payload: Any) -> InitDbResult:
        database = Database.model_validate(payload)
        await self.close()
        conn = await connection.open_connection(self._directory, database.name)
        try:
            old_version = await connection.get_user_version(conn)
            if old_version > database.version:
                raise StoreError(
                    INVALID_VERSION,
                    f"database {database.name} is at version {old_version}, requested {database.version}",
                )
            if old_version < database.version:
                if old_version:
                    previous = await connection.load_schema(conn)
                    for table in (previous.tables if previous else []):
                        await conn.execute(drop_table_sql(table))
                    logger.info(
                        "Upgrading database %s from version %d to %d",
                        database.name, old_version, database.version,
                    )
                for table in database.tables:
                    await conn.execute(create_table_sql(table))
                await connection.save_schema(conn, database)
                await connection.set_user_version(conn, database.version)
                await conn.commit()
        except Exception:
            await conn.close()
            raise

        self._conn = conn
        self._database = database
        is_created = old_version != database.version
        return InitDbResult(
            is_created=is_created,
            database=database,
            old_version=old_version if is_created and old_version else None,
            new_version=database.version if is_created and old_version else None,
        )

    async def open_db(self, payload: Any) -> Database:
        info = DbInfo.model_validate(payload)
        if self._conn is not None and self._database is not None and self._database.name == info.name:
            database = self._database
        else:
            if not connection.database_exists(self._directory, info.name):
                raise StoreError(DB_NOT_EXIST, f"database {info.name} does not exist")
            await self.close()
            conn = await connection.open_connection(self._directory, info.name)
            database = await connection.load_schema(conn)
            if database is None:
                await conn.close()
                raise StoreError(DB_NOT_EXIST, f"database {info.name} has no schema")
            self._conn = conn
            self._database = database
        if info.version is not None and info.version != database.version:
            raise StoreError(
                INVALID_VERSION,
                f"database {info.name} is at version {database.version}, requested {info.version}",
            )
        return database

    async def drop_db(self, payload: Any = None) -> None:
        database = self._require_database()
        await self.close()
        connection.remove_database_file(self._directory, database.name)
        self._database = None
        logger.info("Dropped database %s", database.name)

    async def terminate(self, payload: Any = None) -> None:
        await self.close()
        self._database = None

    # queries

    async def select(self, payload: Any) -> List[Dict[str, Any]]:
        return await self._select(self._require_conn(), SelectQuery.model_validate(payload))

    async def count(self, payload: Any) -> int:
        return await self._count(self._require_conn(), CountQuery.model_validate(payload))

    async def insert(self, payload: Any):
        return await self._insert(self._require_conn(), InsertQuery.model_validate(payload))

    async def update(self, payload: Any) -> int:
        return await self._update(self._require_conn(), UpdateQuery.model_validate(payload))

    async def remove(self, payload: Any) -> int:
        return await self._remove(self._require_conn(), RemoveQuery.model_validate(payload))

    async def clear(self, payload: Any) -> None:
        conn = self._require_conn()
        table = self._table(payload)
        await conn.execute(f"DELETE FROM {quote_identifier(table.name)}")
        await conn.commit()

    async def get(self, payload: Any) -> Any:
        return await connection.keystore_get(self._require_conn(), str(payload))

    async def set(self, payload: Any) -> None:
        query = SetQuery.model_validate(payload)
        await connection.keystore_set(self._require_conn(), query.key, query.value)

    async def union(self, payload: Any) -> List[Dict[str, Any]]:
        conn = self._require_conn()
        if not isinstance(payload, (list, tuple)) or not payload:
            raise StoreError(INVALID_QUERY, "union needs a non-empty list of select queries")
        seen = set()
        rows: List[Dict[str, Any]] = []
        for query in payload:
            for row in await self._select(conn, SelectQuery.model_validate(query)):
                key = _row_key(row)
                if key not in seen:
                    seen.add(key)
                    rows.append(row)
        return rows

    async def intersect(self, payload: Any) -> List[Dict[str, Any]]:
        conn = self._require_conn()
        query = IntersectQuery.model_validate(payload)
        if len(query.queries) < 2:
            raise StoreError(INVALID_QUERY, "intersect needs at least two select queries")
        results = [await self._select(conn, q) for q in query.queries]
        others = [{_row_key(r) for r in result} for result in results[1:]]
        seen = set()
        rows: List[Dict[str, Any]] = []
        for row in results[0]:
            key = _row_key(row)
            if key not in seen and all(key in keys for keys in others):
                seen.add(key)
                rows.append(row)
        return rows

    async def transaction(self, payload: Any) -> Any:
        conn = self._require_conn()
        query = TransactionQuery.model_validate(payload)
        for name in query.tables:
            self._table(name)
        method = resolve_callable(query.method) if isinstance(query.method, str) else query.method

        await conn.execute("BEGIN")
        try:
            result = method(TransactionContext(self, conn, query.data))
            if inspect.isawaitable(result):
                result = await result
        except Exception:
            await conn.rollback()
            logger.debug("Transaction rolled back")
            raise
        await conn.commit()
        return result

    # executing-context configuration

    async def change_log_status(self, payload: Any) -> None:
        level = logging.DEBUG if payload else logging.WARNING
        logging.getLogger("lodestore").setLevel(level)

    async def add_middleware(self, payload: Any) -> None:
        self._middlewares.append(resolve_callable(payload))

    async def import_scripts(self, payload: Any) -> None:
        for name in payload or []:
            if not is_valid_import_path(name) or ":" in name:
                raise StoreError(INVALID_QUERY, f"invalid module name {name!r}")
            try:
                importlib.import_module(name)
            except ImportError as e:
                raise StoreError(METHOD_NOT_EXIST, f"cannot import {name}: {e}") from e
            logger.debug("Imported %s", name)

    # implementation shared with TransactionContext

    async def _select(self, conn: aiosqlite.Connection, query: SelectQuery) -> List[Dict[str, Any]]:
        table = self._table(query.from_)
        if query.columns:
            columns = ", ".join(quote_identifier(require_column(table, c).name) for c in query.columns)
        else:
            columns = "*"
        distinct = "DISTINCT " if query.distinct else ""
        where_sql, params = build_where(table, query.where)
        paging_sql, paging_params = build_paging(query.limit, query.skip)
        sql = (
            f"SELECT {distinct}{columns} FROM {quote_identifier(table.name)}"
            f"{where_sql}{build_order(table, query.order)}{paging_sql}"
        )
        cursor = await conn.execute(sql, params + paging_params)
        rows = await cursor.fetchall()
        return [decode_row(table, row) for row in rows]

    async def _count(self, conn: aiosqlite.Connection, query: CountQuery) -> int:
        table = self._table(query.from_)
        where_sql, params = build_where(table, query.where)
        cursor = await conn.execute(f"SELECT COUNT(*) FROM {quote_identifier(table.name)}{where_sql}", params)
        row = await cursor.fetchone()
        return row[0]

    async def _insert(self, conn: aiosqlite.Connection, query: InsertQuery, *, commit: bool = True):
        table = self._table(query.into)
        verb = "INSERT OR REPLACE" if query.upsert else "INSERT OR IGNORE" if query.ignore else "INSERT"
        primary = next((c for c in table.columns if c.primary_key), None)
        inserted = 0
        returned: List[Dict[str, Any]] = []
        try:
            for value in query.values:
                row = self._row_for_insert(table, value)
                if row:
                    names = ", ".join(quote_identifier(n) for n in row)
                    marks = ", ".join("?" for _ in row)
                    params = [encode(table.column(n), v) for n, v in row.items()]
                    sql = f"{verb} INTO {quote_identifier(table.name)} ({names}) VALUES ({marks})"
                else:
                    params = []
                    sql = f"{verb} INTO {quote_identifier(table.name)} DEFAULT VALUES"
                cursor = await conn.execute(sql, params)
                if cursor.rowcount > 0:
                    inserted += 1
                    if query.return_:
                        if primary is not None and primary.auto_increment and primary.name not in row:
                            row[primary.name] = cursor.lastrowid
                        returned.append(row)
        except Exception:
            if commit:
                await conn.rollback()
            raise
        if commit:
            await conn.commit()
        return returned if query.return_ else inserted

    def _row_for_insert(self, table: Table, value: Dict[str, Any]) -> Dict[str, Any]:
        for name in value:
            require_column(table, name)
        row = {}
        for column in table.columns:
            if column.name in value:
                row[column.name] = value[column.name]
            elif column.default is not None:
                row[column.name] = column.default
        return row

    async def _update(self, conn: aiosqlite.Connection, query: UpdateQuery, *, commit: bool = True) -> int:
        table = self._table(query.in_)
        if not query.set:
            raise StoreError(INVALID_QUERY, "update needs at least one column to set")
        assignments = []
        params: List[Any] = []
        for name, value in query.set.items():
            column = require_column(table, name)
            assignments.append(f"{quote_identifier(name)} = ?")
            params.append(encode(column, value))
        where_sql, where_params = build_where(table, query.where)
        sql = f"UPDATE {quote_identifier(table.name)} SET {', '.join(assignments)}{where_sql}"
        return await self._write(conn, sql, params + where_params, commit)

    async def _remove(self, conn: aiosqlite.Connection, query: RemoveQuery, *, commit: bool = True) -> int:
        table = self._table(query.from_)
        where_sql, params = build_where(table, query.where)
        sql = f"DELETE FROM {quote_identifier(table.name)}{where_sql}"
        return await self._write(conn, sql, params, commit)

    async def _write(self, conn: aiosqlite.Connection, sql: str, params: List[Any], commit: bool) -> int:
        try:
            cursor = await conn.execute(sql, params)
        except Exception:
            if commit:
                await conn.rollback()
            raise
        if commit:
            await conn.commit()
        return cursor.rowcount

    # helpers

    def _require_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StoreError(DB_NOT_OPEN, "no database is open, call init_db or open_db first")
        return self._conn

    def _require_database(self) -> Database:
        self._require_conn()
        return self._database

    def _table(self, name: Any) -> Table:
        database = self._require_database()
        table = database.table(name) if isinstance(name, str) else None
        if table is None:
            raise StoreError(TABLE_NOT_EXIST, f"table {name} does not exist in {database.name}")
        return table


def _row_key(row: Dict[str, Any]) -> str:
    return json.dumps(row, sort_keys=True, default=str)
