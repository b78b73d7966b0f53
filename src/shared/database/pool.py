"""
Connection pool for the DEJA-VU data layer.

Hands out a bounded number of database connections to asyncio tasks:
- idle connections are reused first, new ones are opened up to ``max``
- excess demand waits in a FIFO queue, each waiter with its own deadline
- released connections go straight to the oldest waiter
- ``execute``/``connection()`` reset a connection through the factory
  before giving it back, dropping it if the reset fails
- a background sweep closes connections idle for longer than
  ``idle_timeout_millis`` while keeping ``min`` connections warm

All pool state is mutated from synchronous code on the event loop, so
acquire/release/expiry/eviction never interleave mid-update.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, asdict
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, Dict, Optional, Set, TypeVar

from ..logging_config import get_logger
from ..metrics_collector import get_metrics_collector
from .exceptions import (
    AcquireTimeoutError,
    PoolClosedError,
    PoolNotInitializedError,
    ReleaseError,
)

T = TypeVar('T')


class ConnectionFactory(ABC):
    """Opens and disposes the connections a pool manages."""

    @abstractmethod
    async def create(self) -> Any:
        """Open a new connection."""

    @abstractmethod
    async def dispose(self, connection: Any) -> None:
        """Close a connection the pool no longer needs."""

    async def reset(self, connection: Any) -> None:
        """Return a connection to a clean state before it is pooled again."""

    async def close(self) -> None:
        """Release factory-wide resources once the pool is closed."""


@dataclass(frozen=True)
class PoolConfig:
    """Connection pool configuration."""
    min: int = 2
    max: int = 10
    acquire_timeout_millis: int = 30000
    idle_timeout_millis: int = 300000  # 5 minutes
    cleanup_interval_millis: int = 60000

    def __post_init__(self):
        if self.max < 1:
            raise ValueError("Pool max must be at least 1")
        if not 0 <= self.min <= self.max:
            raise ValueError("Pool min must be between 0 and max")
        for name in ('acquire_timeout_millis', 'idle_timeout_millis', 'cleanup_interval_millis'):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")


@dataclass(eq=False)
class _Waiter:
    future: asyncio.Future
    enqueued_at: float
    timer: Optional[asyncio.TimerHandle] = None


class ConnectionPool:
    """Bounded asyncio connection pool with FIFO waiters."""

    def __init__(self, factory: ConnectionFactory, config: Optional[PoolConfig] = None):
        self.factory = factory
        self.config = config or PoolConfig()
        self.logger = get_logger(__name__, 'connection_pool')
        self.metrics = get_metrics_collector()

        self._all: Dict[int, Any] = {}
        self._available: Deque[Any] = deque()  # oldest idle on the left
        self._idle_since: Dict[int, float] = {}
        self._checked_out: Set[int] = set()
        self._pending: Deque[_Waiter] = deque()
        self._opening = 0

        self._started = False
        self._closed = False
        self._cleanup_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

        self.pool_stats = {
            'created': 0,
            'evicted': 0,
            'disposed': 0,
            'acquire_timeouts': 0,
            'connection_errors': 0,
        }

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        """Open the ``min`` warm connections and start the cleanup sweep."""
        if self._started or self._closed:
            return
        self._started = True

        try:
            while len(self._all) + self._opening < self.config.min:
                self._opening += 1
                connection = await self._open_reserved()
                self._checkin(connection)
        except BaseException:
            # Warm-up did not finish; a later start() retries it
            self._started = False
            raise

        self._cleanup_task = asyncio.create_task(self._cleanup_worker())
        self.logger.info(
            f"Connection pool started: min={self.config.min}, max={self.config.max}",
            operation="start"
        )

    async def acquire(self) -> Any:
        """
        Get a connection, opening one or waiting in line if none is idle.

        Raises:
            AcquireTimeoutError: no connection was handed over in time
            PoolClosedError: the pool is closed or closes while waiting
        """
        if self._closed:
            raise PoolClosedError("Pool is closed")

        if self._available:
            connection = self._available.pop()
            self._idle_since.pop(id(connection), None)
            self._checked_out.add(id(connection))
            self._update_gauges()
            return connection

        if len(self._all) + self._opening < self.config.max:
            self._opening += 1
            try:
                connection = await self._open_reserved()
            except BaseException:
                self._replenish()
                raise
            if self._closed:
                self._all.pop(id(connection), None)
                await self._dispose(connection)
                raise PoolClosedError("Pool closed while opening a connection")
            self._checked_out.add(id(connection))
            self._update_gauges()
            return connection

        return await self._wait_for_connection()

    def release(self, connection: Any) -> None:
        """
        Give a checked-out connection back.

        The oldest live waiter receives it directly; otherwise it becomes idle.

        Raises:
            ReleaseError: the connection is not checked out from this pool
        """
        key = id(connection)
        if key not in self._checked_out:
            raise ReleaseError("Connection is not checked out from this pool")

        if self._closed:
            self._checked_out.discard(key)
            self._all.pop(key, None)
            self._spawn(self._dispose(connection))
            self._update_gauges()
            return

        while self._pending:
            waiter = self._pending.popleft()
            if waiter.future.done():
                continue
            waiter.timer.cancel()
            waiter.future.set_result(connection)
            self._update_gauges()
            return

        self._checked_out.discard(key)
        self._available.append(connection)
        self._idle_since[key] = time.monotonic()
        self._update_gauges()

    async def execute(self, operation: Callable[[Any], Awaitable[T]]) -> T:
        """
        Run ``operation`` with a pooled connection, always giving it back.

        Whatever the operation leaves uncommitted is rolled back before the
        connection is reused.
        """
        connection = await self.acquire()
        try:
            return await operation(connection)
        finally:
            await self._reset_and_release(connection)

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[Any]:
        """
        Scoped checkout.

        Usage:
            async with pool.connection() as conn:
                await conn.execute(...)
        """
        connection = await self.acquire()
        try:
            yield connection
        finally:
            await self._reset_and_release(connection)

    async def cleanup(self) -> int:
        """Close connections idle past ``idle_timeout_millis``, keeping ``min`` open."""
        now = time.monotonic()
        idle_limit = self.config.idle_timeout_millis / 1000
        evicted = []

        while self._available and len(self._all) > self.config.min:
            oldest = self._available[0]
            if now - self._idle_since[id(oldest)] < idle_limit:
                break
            self._available.popleft()
            del self._idle_since[id(oldest)]
            del self._all[id(oldest)]
            evicted.append(oldest)

        if evicted:
            self.pool_stats['evicted'] += len(evicted)
            self.metrics.get_counter('db_pool_connections_evicted_total').increment(len(evicted))
            self._update_gauges()
            self.logger.debug(f"Evicted {len(evicted)} idle connections", operation="cleanup")
            disposals = [self._spawn(self._dispose(connection)) for connection in evicted]
            # Disposal outlives a cancelled sweep; close() awaits it
            await asyncio.shield(asyncio.gather(*disposals))

        return len(evicted)

    def get_stats(self) -> Dict[str, Any]:
        """Get connection pool status."""
        return {
            'total': len(self._all),
            'available': len(self._available),
            'checked_out': len(self._checked_out),
            'pending': len(self._pending),
            'opening': self._opening,
            'closed': self._closed,
            'stats': dict(self.pool_stats),
            'config': asdict(self.config),
        }

    async def close(self) -> None:
        """
        Fail all waiters, stop the sweep and close idle connections.

        Connections still checked out are closed when they are released.
        """
        if self._closed:
            return
        self._closed = True

        while self._pending:
            waiter = self._pending.popleft()
            if not waiter.future.done():
                waiter.timer.cancel()
                waiter.future.set_exception(PoolClosedError())

        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        idle = list(self._available)
        self._available.clear()
        self._idle_since.clear()
        for connection in idle:
            del self._all[id(connection)]
        self._update_gauges()

        await asyncio.gather(*(self._dispose(connection) for connection in idle))
        if self._background:
            await asyncio.gather(*self._background)
        await self.factory.close()

        self.logger.info("Connection pool closed", operation="close")

    async def _wait_for_connection(self) -> Any:
        loop = asyncio.get_running_loop()
        waiter = _Waiter(future=loop.create_future(), enqueued_at=loop.time())
        waiter.timer = loop.call_later(
            self.config.acquire_timeout_millis / 1000, self._expire_waiter, waiter
        )
        self._pending.append(waiter)
        self._update_gauges()

        try:
            connection = await waiter.future
        except asyncio.CancelledError:
            self._abandon_waiter(waiter)
            raise

        wait_seconds = loop.time() - waiter.enqueued_at
        self.metrics.get_timer('db_pool_acquire_wait').record(wait_seconds)
        return connection

    def _expire_waiter(self, waiter: _Waiter) -> None:
        if waiter.future.done():
            return
        if waiter in self._pending:
            self._pending.remove(waiter)

        self.pool_stats['acquire_timeouts'] += 1
        self.metrics.get_counter('db_pool_acquire_timeouts_total').increment()
        self._update_gauges()
        self.logger.warning(
            f"Connection acquire timed out after {self.config.acquire_timeout_millis}ms",
            operation="acquire"
        )
        waiter.future.set_exception(AcquireTimeoutError(self.config.acquire_timeout_millis))

    def _abandon_waiter(self, waiter: _Waiter) -> None:
        """Clean up after a waiting task was cancelled."""
        waiter.timer.cancel()
        if waiter in self._pending:
            self._pending.remove(waiter)
            self._update_gauges()

        future = waiter.future
        if future.done() and not future.cancelled():
            if future.exception() is None:
                # Handed a connection just before the cancellation landed
                self.release(future.result())

    async def _open_reserved(self) -> Any:
        """Open a connection for a slot already counted in ``_opening``."""
        try:
            connection = await self.factory.create()
        except Exception as e:
            self.pool_stats['connection_errors'] += 1
            self.logger.error(f"Failed to open database connection: {e}", operation="open")
            raise
        finally:
            self._opening -= 1

        self._all[id(connection)] = connection
        self.pool_stats['created'] += 1
        self.logger.debug("Opened database connection", operation="open", total=len(self._all))
        return connection

    def _replenish(self) -> None:
        """Open connections for queued waiters after a reserved slot was given up."""
        if self._closed:
            return
        spare = self.config.max - len(self._all) - self._opening
        for _ in range(min(len(self._pending), spare)):
            self._opening += 1
            self._spawn(self._open_for_waiter())

    async def _open_for_waiter(self) -> None:
        try:
            connection = await self._open_reserved()
        except Exception:
            # Already logged; queued callers still time out on their own deadline
            return
        if self._closed:
            self._all.pop(id(connection), None)
            await self._dispose(connection)
            return
        self._checkin(connection)

    async def _reset_and_release(self, connection: Any) -> None:
        """Roll back leftover work, then release; a connection that cannot be reset is dropped."""
        if id(connection) not in self._checked_out:
            raise ReleaseError("Connection is not checked out from this pool")
        if self._closed:
            self.release(connection)
            return

        try:
            await self.factory.reset(connection)
        except Exception as e:
            self.logger.error(f"Failed to reset database connection: {e}", operation="release")
            self._discard(connection)
            return
        except BaseException:
            self._discard(connection)
            raise
        self.release(connection)

    def _discard(self, connection: Any) -> None:
        """Drop a checked-out connection and reuse its slot for queued callers."""
        self._checked_out.discard(id(connection))
        self._all.pop(id(connection), None)
        self._spawn(self._dispose(connection))
        self._update_gauges()
        self._replenish()

    def _checkin(self, connection: Any) -> None:
        self._checked_out.add(id(connection))
        self.release(connection)

    async def _dispose(self, connection: Any) -> None:
        try:
            await self.factory.dispose(connection)
            self.pool_stats['disposed'] += 1
        except Exception as e:
            self.pool_stats['connection_errors'] += 1
            self.logger.error(f"Error closing database connection: {e}", operation="dispose")

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _cleanup_worker(self) -> None:
        """Background worker running the idle sweep."""
        interval = self.config.cleanup_interval_millis / 1000

        while not self._closed:
            try:
                await asyncio.sleep(interval)
                await self.cleanup()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error in connection pool cleanup: {e}", operation="cleanup")

    def _update_gauges(self) -> None:
        self.metrics.get_gauge('db_pool_connections_total').set(len(self._all))
        self.metrics.get_gauge('db_pool_connections_available').set(len(self._available))
        self.metrics.get_gauge('db_pool_connections_checked_out').set(len(self._checked_out))
        self.metrics.get_gauge('db_pool_pending_acquires').set(len(self._pending))


# Global pool instance
_pool: Optional[ConnectionPool] = None


async def initialize_pool(
    url: Optional[str] = None,
    key: Optional[str] = None,
    config: Optional[PoolConfig] = None,
    factory: Optional[ConnectionFactory] = None,
) -> ConnectionPool:
    """
    Create and start the process-wide pool.

    Later calls return the existing pool and ignore their arguments.

    Args:
        url: Database URL, defaults to the configured one
        key: Store credential substituted as the URL password
        config: Pool configuration, defaults to the configured one
        factory: Connection factory, defaults to a SQLAlchemy engine on ``url``
    """
    global _pool
    if _pool is not None:
        return _pool

    from ..config import get_settings
    from .connection import EngineConnectionFactory

    settings = get_settings()
    if factory is None:
        factory = EngineConnectionFactory.from_url(
            url or settings.database.get_database_url(),
            key=key or settings.supabase.supabase_db_key,
            echo=settings.database.db_echo,
        )

    pool = ConnectionPool(factory, config or settings.database.to_pool_config())
    _pool = pool
    try:
        await pool.start()
    except Exception:
        _pool = None
        await pool.close()
        raise
    return pool


def get_pool() -> ConnectionPool:
    """Get the process-wide pool."""
    if _pool is None:
        raise PoolNotInitializedError()
    return _pool


async def shutdown_pool() -> None:
    """Close and forget the process-wide pool."""
    global _pool
    if _pool is not None:
        pool, _pool = _pool, None
        await pool.close()
