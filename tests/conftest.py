"""
Shared fixtures for the data layer test suite.
"""
import asyncio
import os

os.environ.setdefault("TESTING", "1")

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from src.shared.metrics_collector import MetricsCollector
from src.shared.database import (
    ConnectionFactory,
    ConnectionPool,
    EngineConnectionFactory,
    PerformanceMonitor,
    PoolConfig,
    QueryOptimizer,
    shutdown_pool,
)


class FakeConnection:
    """Stand-in for a database session."""

    def __init__(self, number: int):
        self.number = number
        self.closed = False

    def __repr__(self):
        return f"FakeConnection({self.number})"


class FakeConnectionFactory(ConnectionFactory):
    """Counts created and disposed connections."""

    def __init__(self, fail_on_create: bool = False):
        self.created = []
        self.disposed = []
        self.reset_calls = []
        self.fail_on_create = fail_on_create
        self.fail_on_reset = False
        self.dispose_delay = 0.0
        self.closed = False

    async def create(self) -> FakeConnection:
        if self.fail_on_create:
            raise ConnectionError("database unreachable")
        connection = FakeConnection(len(self.created) + 1)
        self.created.append(connection)
        return connection

    async def reset(self, connection: FakeConnection) -> None:
        self.reset_calls.append(connection)
        if self.fail_on_reset:
            raise ConnectionError("connection reset by peer")

    async def dispose(self, connection: FakeConnection) -> None:
        if self.dispose_delay:
            await asyncio.sleep(self.dispose_delay)
        connection.closed = True
        self.disposed.append(connection)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def fresh_metrics():
    """Start every test with an empty metrics collector."""
    MetricsCollector.reset_instance()
    yield
    MetricsCollector.reset_instance()


@pytest.fixture
async def global_pool_reset():
    """Make sure no process-wide pool leaks between tests."""
    await shutdown_pool()
    yield
    await shutdown_pool()


@pytest.fixture
def factory():
    return FakeConnectionFactory()


@pytest.fixture
async def make_pool(factory):
    """Build pools on the fake factory and close them after the test."""
    pools = []

    def _make(**config_kwargs) -> ConnectionPool:
        pool = ConnectionPool(factory, PoolConfig(**config_kwargs))
        pools.append(pool)
        return pool

    yield _make

    for pool in pools:
        await pool.close()


@pytest.fixture
def monitor():
    return PerformanceMonitor(slow_threshold_ms=1000.0, window_size=100)


@pytest.fixture
async def sqlite_pool(tmp_path):
    """Pool over a real SQLite database with a ``posts`` table."""
    url = f"sqlite+aiosqlite:///{tmp_path / 'dejavu.db'}"

    setup_engine = create_async_engine(url, poolclass=NullPool)
    async with setup_engine.begin() as conn:
        await conn.execute(text(
            "CREATE TABLE posts ("
            " id INTEGER PRIMARY KEY AUTOINCREMENT,"
            " author TEXT NOT NULL,"
            " title TEXT,"
            " likes INTEGER DEFAULT 0,"
            " slug TEXT UNIQUE"
            ")"
        ))
    await setup_engine.dispose()

    pool = ConnectionPool(
        EngineConnectionFactory.from_url(url),
        PoolConfig(min=1, max=3, acquire_timeout_millis=2000),
    )
    await pool.start()
    yield pool
    await pool.close()


@pytest.fixture
def optimizer(sqlite_pool, monitor):
    return QueryOptimizer(sqlite_pool, monitor)
