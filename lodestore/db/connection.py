"""Async SQLite connection helpers: opening, meta tables and schema versioning.

Wraps `aiosqlite` connections.  Each database lives in its own file under the
configured store directory; the schema version is kept in ``PRAGMA
user_version`` and the schema itself as JSON in a private meta table.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

import aiosqlite

from .models import Database

META_TABLE = "__lodestore_meta"
KEYSTORE_TABLE = "__lodestore_keystore"
MEMORY = ":memory:"
CONNECT_TIMEOUT = 30.0  # seconds

logger = logging.getLogger(__name__)


def database_path(directory: str, name: str) -> str:
    if directory == MEMORY:
        return MEMORY
    return str(Path(directory) / f"{name}.sqlite3")


def database_exists(directory: str, name: str) -> bool:
    if directory == MEMORY:
        return False
    return Path(database_path(directory, name)).exists()


async def open_connection(directory: str, name: str) -> aiosqlite.Connection:
    """Open the database file for *name*, creating the directory if needed."""
    path = database_path(directory, name)
    if path != MEMORY:
        Path(directory).mkdir(parents=True, exist_ok=True)
    try:
        conn = await aiosqlite.connect(path, timeout=CONNECT_TIMEOUT, cached_statements=128)
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA foreign_keys = ON;")
        await _initialize_meta(conn)
    except Exception as e:
        logger.exception("Error opening database %s: %s", path, e)
        raise
    logger.debug("Opened database %s", path)
    return conn


async def _initialize_meta(conn: aiosqlite.Connection) -> None:
    await conn.executescript(
        f"""
        CREATE TABLE IF NOT EXISTS {META_TABLE} (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS {KEYSTORE_TABLE} (
            key TEXT PRIMARY KEY,
            value TEXT
        );
        """
    )
    await conn.commit()


async def get_user_version(conn: aiosqlite.Connection) -> int:
    cursor = await conn.execute("PRAGMA user_version;")
    row = await cursor.fetchone()
    return row[0] if row else 0


async def set_user_version(conn: aiosqlite.Connection, version: int) -> None:
    await conn.execute(f"PRAGMA user_version = {int(version)};")


async def load_schema(conn: aiosqlite.Connection) -> Optional[Database]:
    cursor = await conn.execute(f"SELECT value FROM {META_TABLE} WHERE key = 'schema'")
    row = await cursor.fetchone()
    if row is None:
        return None
    return Database.model_validate_json(row[0])


async def save_schema(conn: aiosqlite.Connection, database: Database) -> None:
    await conn.execute(
        f"INSERT OR REPLACE INTO {META_TABLE} (key, value) VALUES ('schema', ?)",
        (database.model_dump_json(),),
    )


async def keystore_get(conn: aiosqlite.Connection, key: str):
    cursor = await conn.execute(f"SELECT value FROM {KEYSTORE_TABLE} WHERE key = ?", (key,))
    row = await cursor.fetchone()
    return json.loads(row[0]) if row and row[0] is not None else None


async def keystore_set(conn: aiosqlite.Connection, key: str, value) -> None:
    await conn.execute(
        f"INSERT OR REPLACE INTO {KEYSTORE_TABLE} (key, value) VALUES (?, ?)",
        (key, json.dumps(value, default=str)),
    )
    await conn.commit()


def remove_database_file(directory: str, name: str) -> None:
    if directory == MEMORY:
        return
    for suffix in ("", "-wal", "-shm", "-journal"):
        path = Path(database_path(directory, name) + suffix)
        if path.exists():
            path.unlink()
            logger.debug("Removed %s", path)
