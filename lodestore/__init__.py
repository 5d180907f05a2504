"""Async query API over a local SQLite store, executed in a background worker
thread when one is available and directly on the caller's loop otherwise."""

from .config import AppSettings, get_settings
from .connection import Connection
from .core.messages import WorkerStatus
from .db.models import Api, Column, Database, Table
from .events import Event
from .exceptions import LodestoreError, QueryError, QueueFullError, WorkerTerminatedError

__all__ = [
    "Api",
    "AppSettings",
    "Column",
    "Connection",
    "Database",
    "Event",
    "LodestoreError",
    "QueryError",
    "QueueFullError",
    "Table",
    "WorkerStatus",
    "WorkerTerminatedError",
    "get_settings",
]
