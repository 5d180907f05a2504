"""
This file contains shared fixtures for the test suite.
"""

import os
import logging

import pytest
import pytest_asyncio

# Set env vars before any application modules are imported
os.environ.setdefault("TEST_MODE", "1")
os.environ.setdefault("PYTHONIOENCODING", "utf-8")

from lodestore.config import AppSettings, StoreSettings, WorkerSettings, get_settings  # noqa: E402
from lodestore.connection import Connection  # noqa: E402

from fakes import ChannelHolder, FakeExecutor  # noqa: E402


@pytest.fixture(autouse=True)
def reset_settings_cache():
    """
    Clear the cached settings between tests so environment patches take effect.
    """
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def restore_package_log_level():
    """Connection.set_log_status changes the package logger level."""
    package_logger = logging.getLogger("lodestore")
    level = package_logger.level
    yield
    package_logger.setLevel(level)


@pytest.fixture(autouse=True)
def reset_fake_executors():
    FakeExecutor.instances.clear()
    yield
    FakeExecutor.instances.clear()


@pytest.fixture
def settings(tmp_path):
    """Settings pointing the store at a per-test directory with a short probe window."""
    return AppSettings(
        debug=True,
        log_level="DEBUG",
        store=StoreSettings(directory=str(tmp_path / "store")),
        worker=WorkerSettings(probe_window=0.01, join_timeout=2.0),
    )


@pytest.fixture
def direct_settings(settings):
    """Same store, but the background worker is disabled."""
    return settings.model_copy(update={"worker": WorkerSettings(enabled=False)})


@pytest.fixture
def channels():
    return ChannelHolder()


@pytest.fixture
def sample_schema():
    return {
        "name": "shop",
        "version": 1,
        "tables": [
            {
                "name": "products",
                "columns": [
                    {"name": "id", "data_type": "number", "primary_key": True, "auto_increment": True},
                    {"name": "name", "data_type": "string", "not_null": True},
                    {"name": "price", "data_type": "number", "default": 0},
                    {"name": "in_stock", "data_type": "boolean", "default": True},
                    {"name": "tags", "data_type": "array"},
                ],
            },
            {
                "name": "customers",
                "columns": [
                    {"name": "email", "data_type": "string", "primary_key": True},
                    {"name": "name", "data_type": "string"},
                    {"name": "city", "data_type": "string"},
                    {"name": "joined", "data_type": "date_time"},
                ],
            },
        ],
    }


@pytest.fixture
def sample_products():
    return [
        {"name": "apple", "price": 3, "tags": ["fruit", "red"]},
        {"name": "banana", "price": 1, "tags": ["fruit"]},
        {"name": "carrot", "price": 2, "in_stock": False, "tags": ["vegetable"]},
        {"name": "durian", "price": 10, "tags": ["fruit", "smelly"]},
    ]


@pytest_asyncio.fixture
async def worker_connection(settings, sample_schema):
    """Connection running queries in the real background worker thread."""
    conn = Connection(settings)
    await conn.init_db(sample_schema)
    yield conn
    await conn.close()


@pytest_asyncio.fixture
async def direct_connection(direct_settings, sample_schema):
    """Connection executing queries directly on the test's event loop."""
    conn = Connection(direct_settings)
    await conn.init_db(sample_schema)
    yield conn
    await conn.close()
