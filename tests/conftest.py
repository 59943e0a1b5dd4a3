"""
Shared fixtures for pNode Monitor tests.
"""

import builtins
import contextlib
import os
import tempfile
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import AsyncMock, MagicMock

import pytest


@pytest.fixture
def temp_db():
    """Create temporary test database with full schema."""
    from pnode_monitor import database

    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    try:
        database.init_db(path)
        yield path
    finally:
        for suffix in ("", "-wal", "-shm"):
            with contextlib.suppress(builtins.BaseException):
                os.unlink(path + suffix)


@pytest.fixture
def db_executor():
    executor = ThreadPoolExecutor(max_workers=2)
    yield executor
    executor.shutdown(wait=True)


@pytest.fixture
def store(temp_db, db_executor):
    """PodStore bound to the temporary database."""
    from pnode_monitor.database import PodStore

    return PodStore(temp_db, db_executor)


@pytest.fixture
def sample_pods():
    """Raw pod descriptors as returned by get-pods-with-stats."""
    return [
        {
            "address": "10.0.0.5:9001",
            "is_public": True,
            "last_seen_timestamp": 1735689600,
            "pubkey": "PubKeyAlpha111",
            "rpc_port": 6000,
            "storage_committed": 1000000000,
            "storage_usage_percent": 12.5,
            "storage_used": 125000000,
            "uptime": 86400,
            "version": "0.7.3",
        },
        {
            "address": "203.0.113.7:9001",
            "is_public": False,
            "last_seen_timestamp": 1735689500,
            "pubkey": "PubKeyBeta222",
            "rpc_port": 6000,
            "storage_committed": 2000000000,
            "storage_usage_percent": 0.0,
            "storage_used": 0,
            "uptime": 0,
            "version": "0.7.2",
        },
    ]


@pytest.fixture
def sample_geo_response():
    return {
        "status": "success",
        "country": "Germany",
        "city": "Nuremberg",
        "lat": 49.4478,
        "lon": 11.0683,
    }


def make_response(json_data=None, json_exc=None):
    """Mock aiohttp response usable as `async with session.get(...) as resp`."""
    response = MagicMock()
    response.status = 200
    if json_exc is not None:
        response.json = AsyncMock(side_effect=json_exc)
    else:
        response.json = AsyncMock(return_value=json_data)
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=None)
    return context


@pytest.fixture
def response_factory():
    return make_response


@pytest.fixture
def mock_session():
    """Mock aiohttp.ClientSession; tests set session.get / session.post side effects."""
    session = MagicMock()
    session.closed = False
    session.close = AsyncMock()
    return session
