"""Errors raised by the connection pool and query helpers."""

from typing import Any, List, Optional


class PoolError(Exception):
    """Base class for connection pool errors."""
    pass


class AcquireTimeoutError(PoolError):
    """A queued acquire did not receive a connection before its deadline."""

    def __init__(self, timeout_millis: int):
        super().__init__(f"Connection acquire timeout after {timeout_millis}ms")
        self.timeout_millis = timeout_millis


class PoolClosedError(PoolError):
    """The pool is closing or closed."""

    def __init__(self, message: str = "Pool is closing"):
        super().__init__(message)


class PoolNotInitializedError(PoolError):
    """get_pool() was called before initialize_pool()."""

    def __init__(self):
        super().__init__("Database pool not initialized. Call initialize_pool first.")


class ReleaseError(PoolError):
    """A connection was released that this pool has not checked out."""
    pass


class BulkInsertError(PoolError):
    """A chunk of a bulk insert failed; earlier chunks remain committed."""

    def __init__(self, table: str, failed_batch: int, inserted: Optional[List[Any]] = None):
        self.table = table
        self.failed_batch = failed_batch
        self.inserted = inserted or []
        super().__init__(
            f"Bulk insert into {table} failed at batch {failed_batch} "
            f"after {len(self.inserted)} rows were committed"
        )
