"""
Database access layer for DEJA-VU.

This package provides:
- An asyncio connection pool with FIFO queuing, acquire timeouts and
  idle-connection eviction
- Query helpers (batching, keyset pagination, full-text search, bulk insert,
  aggregation) running on the pool
- Rolling-window latency monitoring for database operations
"""

from .exceptions import (
    PoolError,
    AcquireTimeoutError,
    PoolClosedError,
    PoolNotInitializedError,
    ReleaseError,
    BulkInsertError,
)
from .pool import (
    ConnectionFactory,
    PoolConfig,
    ConnectionPool,
    initialize_pool,
    get_pool,
    shutdown_pool,
)
from .connection import EngineConnectionFactory
from .performance_monitor import (
    PerformanceMonitor,
    get_performance_monitor,
    monitored,
)
from .query_optimizer import (
    CursorPage,
    SearchResult,
    QueryOptimizer,
)

__all__ = [
    # Errors
    'PoolError',
    'AcquireTimeoutError',
    'PoolClosedError',
    'PoolNotInitializedError',
    'ReleaseError',
    'BulkInsertError',

    # Connection pool
    'ConnectionFactory',
    'PoolConfig',
    'ConnectionPool',
    'EngineConnectionFactory',

    # Query helpers
    'CursorPage',
    'SearchResult',
    'QueryOptimizer',

    # Monitoring
    'PerformanceMonitor',
    'get_performance_monitor',
    'monitored',

    # Lifecycle functions
    'initialize_pool',
    'get_pool',
    'shutdown_pool',
]
