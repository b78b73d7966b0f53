"""
Query helpers running on the connection pool.

Common data-access patterns (batched operations, keyset pagination,
full-text search, chunked bulk insert, grouped aggregation) expressed as
SQLAlchemy Core statements. Every helper checks out one connection through
``ConnectionPool.execute`` and is timed by the performance monitor; the
timing starts once the connection is held, so time spent queued for a
connection is not counted.

Tables are addressed by name with lightweight ``table()``/``column()``
constructs, so no schema reflection happens.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import column, func, insert, literal_column, select, table
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncConnection

from ..logging_config import get_logger
from .exceptions import BulkInsertError
from .performance_monitor import PerformanceMonitor, get_performance_monitor
from .pool import ConnectionPool, get_pool

AGGREGATE_FUNCTIONS = {
    'count': func.count,
    'sum': func.sum,
    'avg': func.avg,
    'min': func.min,
    'max': func.max,
}

# Dialect-specific INSERT constructs supporting ON CONFLICT
_UPSERT_INSERTS = {
    'postgresql': postgresql.insert,
    'sqlite': sqlite.insert,
}


@dataclass
class CursorPage:
    """One page of keyset pagination."""
    data: List[Dict[str, Any]] = field(default_factory=list)
    has_more: bool = False
    next_cursor: Optional[Any] = None


@dataclass
class SearchResult:
    """Full-text search matches plus the total match count."""
    data: List[Dict[str, Any]] = field(default_factory=list)
    count: int = 0


def _projection(select_columns: Optional[Sequence[str]]) -> list:
    if not select_columns:
        return [literal_column('*')]
    return [column(name) for name in select_columns]


def _equality_filters(filters: Optional[Mapping[str, Any]]) -> list:
    return [column(key) == value for key, value in (filters or {}).items()]


async def _commit(connection: AsyncConnection) -> None:
    if connection.in_transaction():
        await connection.commit()


async def _rollback(connection: AsyncConnection) -> None:
    if connection.in_transaction():
        await connection.rollback()


class QueryOptimizer:
    """Data-access patterns executed through the connection pool."""

    def __init__(self, pool: Optional[ConnectionPool] = None, monitor: Optional[PerformanceMonitor] = None):
        self._pool = pool
        self.monitor = monitor or get_performance_monitor()
        self.logger = get_logger(__name__, 'query_optimizer')

    @property
    def pool(self) -> ConnectionPool:
        """The bound pool, or the process-wide one."""
        return self._pool or get_pool()

    async def _execute(self, name: str, run: Callable[[AsyncConnection], Awaitable[Any]]) -> Any:
        """Run ``run`` on a pooled connection, timing only the work done on it."""
        async def timed(connection: AsyncConnection) -> Any:
            with self.monitor.measure(name):
                return await run(connection)

        return await self.pool.execute(timed)

    async def batch_queries(self, operations: Sequence[Callable[[AsyncConnection], Awaitable[Any]]]) -> List[Any]:
        """
        Run operations one after another on a single connection.

        Each operation's work is committed as it completes. The first failure
        rolls back that operation's own work, skips the rest and propagates;
        operations that already completed stay committed.
        """
        async def run(connection: AsyncConnection) -> List[Any]:
            results = []
            for operation in operations:
                try:
                    results.append(await operation(connection))
                    await _commit(connection)
                except Exception:
                    await _rollback(connection)
                    raise
            return results

        return await self._execute('batch_queries', run)

    async def paginate_with_cursor(
        self,
        table_name: str,
        limit: int,
        order_by: str,
        cursor: Optional[Any] = None,
        ascending: bool = False,
        filters: Optional[Mapping[str, Any]] = None,
        select_columns: Optional[Sequence[str]] = None,
    ) -> CursorPage:
        """
        Keyset pagination over ``table_name`` ordered by ``order_by``.

        Pass ``next_cursor`` back to get the following page. A cursor is only
        meaningful with the same ``order_by``, ``ascending`` and ``filters``.
        """
        if limit < 1:
            raise ValueError("limit must be positive")
        if select_columns and order_by not in select_columns:
            select_columns = [*select_columns, order_by]

        order_column = column(order_by)
        stmt = (
            select(*_projection(select_columns))
            .select_from(table(table_name))
            .where(*_equality_filters(filters))
            .order_by(order_column.asc() if ascending else order_column.desc())
            .limit(limit + 1)  # one extra row tells whether another page exists
        )
        if cursor is not None:
            stmt = stmt.where(order_column > cursor if ascending else order_column < cursor)

        async def run(connection: AsyncConnection) -> List[Dict[str, Any]]:
            result = await connection.execute(stmt)
            rows = [dict(row) for row in result.mappings().all()]
            await _commit(connection)
            return rows

        rows = await self._execute(f"paginate_with_cursor:{table_name}", run)

        has_more = len(rows) > limit
        data = rows[:limit]
        next_cursor = data[-1][order_by] if has_more and data else None
        return CursorPage(data=data, has_more=has_more, next_cursor=next_cursor)

    async def full_text_search(
        self,
        table_name: str,
        search_column: str,
        query: str,
        limit: int = 20,
        offset: int = 0,
        additional_filters: Optional[Mapping[str, Any]] = None,
        select_columns: Optional[Sequence[str]] = None,
    ) -> SearchResult:
        """
        Full-text match on one column with offset pagination.

        On PostgreSQL the match renders as
        ``to_tsvector(column) @@ plainto_tsquery(query)``. The count covers every
        match, ignoring ``limit`` and ``offset``.
        """
        document = func.to_tsvector(column(search_column))
        conditions = [document.match(query), *_equality_filters(additional_filters)]
        source = table(table_name)

        rows_stmt = (
            select(*_projection(select_columns))
            .select_from(source)
            .where(*conditions)
            .offset(offset)
            .limit(limit)
        )
        count_stmt = select(func.count()).select_from(source).where(*conditions)

        async def run(connection: AsyncConnection) -> SearchResult:
            rows = (await connection.execute(rows_stmt)).mappings().all()
            total = (await connection.execute(count_stmt)).scalar_one()
            await _commit(connection)
            return SearchResult(data=[dict(row) for row in rows], count=total or 0)

        return await self._execute(f"full_text_search:{table_name}", run)

    async def bulk_insert(
        self,
        table_name: str,
        records: Sequence[Mapping[str, Any]],
        batch_size: int = 100,
        on_conflict: Optional[Sequence[str]] = None,
        ignore_duplicates: bool = False,
    ) -> List[Dict[str, Any]]:
        """
        Insert ``records`` in chunks of ``batch_size``, returning the stored rows.

        Chunks run in order on one connection and are committed one by one.
        Columns missing from a record are inserted as NULL.

        Args:
            on_conflict: Unique columns to resolve conflicts on. Conflicting
                rows are updated unless ``ignore_duplicates`` is set, in which
                case they are skipped.

        Raises:
            BulkInsertError: a chunk failed; carries the rows already
                committed. The store error is chained as ``__cause__``.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        if ignore_duplicates and not on_conflict:
            raise ValueError("ignore_duplicates requires on_conflict columns")
        if not records:
            return []

        column_names = list(dict.fromkeys(name for record in records for name in record))
        target = table(table_name, *(column(name) for name in column_names))

        def build_statement(dialect_name: str, batch: List[Dict[str, Any]]):
            if not on_conflict:
                return insert(target).values(batch).returning(literal_column('*'))

            upsert = _UPSERT_INSERTS.get(dialect_name)
            if upsert is None:
                raise ValueError(f"on_conflict is not supported for dialect {dialect_name}")

            stmt = upsert(target).values(batch)
            updates = {
                name: stmt.excluded[name] for name in column_names if name not in on_conflict
            }
            if ignore_duplicates or not updates:
                stmt = stmt.on_conflict_do_nothing(index_elements=list(on_conflict))
            else:
                stmt = stmt.on_conflict_do_update(index_elements=list(on_conflict), set_=updates)
            return stmt.returning(literal_column('*'))

        async def run(connection: AsyncConnection) -> List[Dict[str, Any]]:
            inserted: List[Dict[str, Any]] = []
            for batch_number, start in enumerate(range(0, len(records), batch_size)):
                batch = [
                    {name: record.get(name) for name in column_names}
                    for record in records[start:start + batch_size]
                ]
                stmt = build_statement(connection.dialect.name, batch)
                try:
                    result = await connection.execute(stmt)
                    rows = [dict(row) for row in result.mappings().all()]
                    await _commit(connection)
                except Exception as e:
                    await _rollback(connection)
                    self.logger.error(
                        f"Bulk insert into {table_name} failed at batch {batch_number}: {e}",
                        operation="bulk_insert",
                    )
                    raise BulkInsertError(table_name, batch_number, inserted) from e
                inserted.extend(rows)
            return inserted

        return await self._execute(f"bulk_insert:{table_name}", run)

    async def aggregate(
        self,
        table_name: str,
        group_by: Sequence[str],
        aggregates: Mapping[str, str],
        filters: Optional[Mapping[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Grouped aggregation.

        ``aggregates`` maps a column to one of count/sum/avg/min/max; each
        result column is labelled ``<column>_<function>``.
        """
        unknown = sorted(set(aggregates.values()) - AGGREGATE_FUNCTIONS.keys())
        if unknown:
            raise ValueError(f"Unsupported aggregate functions: {', '.join(unknown)}")

        group_columns = [column(name) for name in group_by]
        measures = [
            AGGREGATE_FUNCTIONS[function](column(name)).label(f"{name}_{function}")
            for name, function in aggregates.items()
        ]

        stmt = (
            select(*group_columns, *measures)
            .select_from(table(table_name))
            .where(*_equality_filters(filters))
            .group_by(*group_columns)
        )
        if limit:
            stmt = stmt.limit(limit)

        async def run(connection: AsyncConnection) -> List[Dict[str, Any]]:
            result = await connection.execute(stmt)
            rows = [dict(row) for row in result.mappings().all()]
            await _commit(connection)
            return rows

        return await self._execute(f"aggregate:{table_name}", run)
