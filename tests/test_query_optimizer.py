"""
Tests for the query helpers.

Most tests run against a real SQLite database through the pool; the
full-text search statement is compiled for PostgreSQL.
"""

import asyncio
from unittest.mock import MagicMock

import pytest
from sqlalchemy import event, text
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError

from src.shared.database import (
    BulkInsertError,
    ConnectionFactory,
    ConnectionPool,
    EngineConnectionFactory,
    PoolConfig,
    PoolNotInitializedError,
    QueryOptimizer,
    SearchResult,
)


def make_posts(count):
    return [
        {
            'author': 'ann' if i % 2 == 0 else 'bob',
            'title': f"Post {i}",
            'likes': i,
            'slug': f"post-{i}",
        }
        for i in range(count)
    ]


async def count_rows(pool, table_name='posts'):
    async def run(connection):
        result = await connection.execute(text(f"SELECT COUNT(*) FROM {table_name}"))
        return result.scalar_one()

    return await pool.execute(run)


class RecordingConnection:
    """Captures statements and returns canned results."""

    def __init__(self, rows, total):
        self.statements = []
        self.result = MagicMock()
        self.result.mappings.return_value.all.return_value = rows
        self.result.scalar_one.return_value = total

    async def execute(self, statement):
        self.statements.append(statement)
        return self.result

    def in_transaction(self):
        return False


class RecordingFactory(ConnectionFactory):

    def __init__(self, connection):
        self.connection = connection

    async def create(self):
        return self.connection

    async def dispose(self, connection):
        pass


class TestBulkInsert:
    """Test chunked inserts."""

    async def test_inserts_in_chunks(self, sqlite_pool, monitor):
        engine = sqlite_pool.factory.engine
        inserts = []

        def capture(conn, cursor, statement, parameters, context, executemany):
            if statement.lstrip().upper().startswith("INSERT"):
                inserts.append(statement)

        # Listeners only reach connections opened after registration
        event.listen(engine.sync_engine, "before_cursor_execute", capture)
        pool = ConnectionPool(EngineConnectionFactory(engine), PoolConfig(min=0, max=1))
        try:
            rows = await QueryOptimizer(pool, monitor).bulk_insert(
                'posts', make_posts(250), batch_size=100
            )
        finally:
            await pool.close()
            event.remove(engine.sync_engine, "before_cursor_execute", capture)

        assert len(inserts) == 3
        assert len(rows) == 250
        assert [row['slug'] for row in rows] == [f"post-{i}" for i in range(250)]
        assert all(row['id'] is not None for row in rows)
        assert await count_rows(sqlite_pool) == 250

    async def test_empty_records(self, optimizer):
        assert await optimizer.bulk_insert('posts', []) == []

    async def test_missing_columns_become_null(self, optimizer):
        rows = await optimizer.bulk_insert('posts', [
            {'author': 'ann', 'title': 'With title'},
            {'author': 'bob', 'slug': 'no-title'},
        ])

        assert rows[0]['slug'] is None
        assert rows[1]['title'] is None
        assert rows[1]['slug'] == 'no-title'

    async def test_upsert_updates_conflicting_rows(self, optimizer, sqlite_pool):
        await optimizer.bulk_insert('posts', make_posts(3))

        rows = await optimizer.bulk_insert(
            'posts',
            [{'author': 'carol', 'title': 'Rewritten', 'likes': 99, 'slug': 'post-1'}],
            on_conflict=['slug'],
        )

        assert len(rows) == 1
        assert rows[0]['title'] == 'Rewritten'
        assert rows[0]['author'] == 'carol'
        assert await count_rows(sqlite_pool) == 3

    async def test_ignore_duplicates_skips_conflicts(self, optimizer, sqlite_pool):
        await optimizer.bulk_insert('posts', make_posts(2))

        rows = await optimizer.bulk_insert(
            'posts',
            make_posts(4),
            on_conflict=['slug'],
            ignore_duplicates=True,
        )

        assert [row['slug'] for row in rows] == ['post-2', 'post-3']
        assert await count_rows(sqlite_pool) == 4

    async def test_failed_chunk_reports_progress(self, optimizer, sqlite_pool):
        records = make_posts(5)
        records[3]['author'] = None  # violates NOT NULL

        with pytest.raises(BulkInsertError) as exc_info:
            await optimizer.bulk_insert('posts', records, batch_size=2)

        error = exc_info.value
        assert error.table == 'posts'
        assert error.failed_batch == 1
        assert [row['slug'] for row in error.inserted] == ['post-0', 'post-1']
        assert isinstance(error.__cause__, IntegrityError)

        assert await count_rows(sqlite_pool) == 2
        assert sqlite_pool.get_stats()['checked_out'] == 0

    @pytest.mark.parametrize("kwargs", [
        {'batch_size': 0},
        {'ignore_duplicates': True},
    ])
    async def test_invalid_arguments(self, optimizer, kwargs):
        with pytest.raises(ValueError):
            await optimizer.bulk_insert('posts', make_posts(1), **kwargs)

    async def test_is_monitored(self, optimizer, monitor):
        await optimizer.bulk_insert('posts', make_posts(1))
        assert monitor.get_stats('bulk_insert:posts')['count'] == 1


class TestCursorPagination:
    """Test keyset pagination."""

    async def test_walks_every_row_once(self, optimizer):
        await optimizer.bulk_insert('posts', make_posts(25))

        seen = []
        cursor = None
        pages = 0
        while True:
            page = await optimizer.paginate_with_cursor('posts', limit=10, order_by='id', cursor=cursor)
            pages += 1
            seen.extend(row['id'] for row in page.data)
            if not page.has_more:
                assert page.next_cursor is None
                break
            assert page.next_cursor == page.data[-1]['id']
            cursor = page.next_cursor

        assert pages == 3
        assert len(seen) == 25
        assert seen == sorted(seen, reverse=True)
        assert len(set(seen)) == 25

    async def test_exact_multiple_has_no_extra_page(self, optimizer):
        await optimizer.bulk_insert('posts', make_posts(10))

        page = await optimizer.paginate_with_cursor('posts', limit=10, order_by='id')

        assert len(page.data) == 10
        assert page.has_more is False
        assert page.next_cursor is None

    async def test_ascending_with_filters(self, optimizer):
        await optimizer.bulk_insert('posts', make_posts(10))

        first = await optimizer.paginate_with_cursor(
            'posts', limit=3, order_by='likes', ascending=True, filters={'author': 'ann'}
        )
        second = await optimizer.paginate_with_cursor(
            'posts', limit=3, order_by='likes', ascending=True,
            filters={'author': 'ann'}, cursor=first.next_cursor,
        )

        assert [row['likes'] for row in first.data] == [0, 2, 4]
        assert [row['likes'] for row in second.data] == [6, 8]
        assert first.has_more and not second.has_more

    async def test_order_column_added_to_selection(self, optimizer):
        await optimizer.bulk_insert('posts', make_posts(3))

        page = await optimizer.paginate_with_cursor(
            'posts', limit=2, order_by='id', select_columns=['title']
        )

        assert set(page.data[0]) == {'title', 'id'}
        assert page.next_cursor == page.data[-1]['id']

    async def test_empty_table(self, optimizer):
        page = await optimizer.paginate_with_cursor('posts', limit=5, order_by='id')

        assert page.data == []
        assert page.has_more is False
        assert page.next_cursor is None

    async def test_rejects_non_positive_limit(self, optimizer):
        with pytest.raises(ValueError):
            await optimizer.paginate_with_cursor('posts', limit=0, order_by='id')


class TestAggregate:
    """Test grouped aggregation."""

    async def test_group_by_author(self, optimizer):
        await optimizer.bulk_insert('posts', make_posts(6))

        rows = await optimizer.aggregate('posts', ['author'], {'likes': 'sum', 'id': 'count'})
        by_author = {row['author']: row for row in rows}

        assert by_author['ann']['likes_sum'] == 0 + 2 + 4
        assert by_author['bob']['likes_sum'] == 1 + 3 + 5
        assert by_author['ann']['id_count'] == 3

    async def test_filters_and_limit(self, optimizer):
        await optimizer.bulk_insert('posts', make_posts(6))

        rows = await optimizer.aggregate(
            'posts', ['author'], {'likes': 'max'}, filters={'author': 'bob'}, limit=5
        )

        assert rows == [{'author': 'bob', 'likes_max': 5}]

    async def test_unknown_function(self, optimizer, sqlite_pool):
        with pytest.raises(ValueError, match="median"):
            await optimizer.aggregate('posts', ['author'], {'likes': 'median'})

        assert sqlite_pool.get_stats()['checked_out'] == 0


class TestBatchQueries:
    """Test sequential operations on one connection."""

    async def test_runs_in_order(self, optimizer):
        async def insert(connection):
            await connection.execute(text("INSERT INTO posts (author, slug) VALUES ('ann', 'a')"))
            return 'inserted'

        async def count(connection):
            return (await connection.execute(text("SELECT COUNT(*) FROM posts"))).scalar_one()

        assert await optimizer.batch_queries([insert, count]) == ['inserted', 1]

    async def test_failure_stops_batch(self, optimizer, sqlite_pool):
        calls = []

        async def insert(connection):
            calls.append('insert')
            await connection.execute(text("INSERT INTO posts (author, slug) VALUES ('ann', 'a')"))

        async def fail(connection):
            calls.append('fail')
            await connection.execute(text("INSERT INTO posts (author, slug) VALUES ('bob', 'b')"))
            raise RuntimeError("boom")

        async def never(connection):
            calls.append('never')

        with pytest.raises(RuntimeError, match="boom"):
            await optimizer.batch_queries([insert, fail, never])

        assert calls == ['insert', 'fail']
        assert await count_rows(sqlite_pool) == 1
        assert sqlite_pool.get_stats()['checked_out'] == 0


class TestFullTextSearch:
    """Test the full-text search statement and result shape."""

    async def test_builds_postgres_match(self, monitor):
        connection = RecordingConnection(rows=[{'id': 1, 'title': 'asyncio pools'}], total=7)
        pool = ConnectionPool(RecordingFactory(connection), PoolConfig(min=0, max=1))
        optimizer = QueryOptimizer(pool, monitor)

        result = await optimizer.full_text_search(
            'posts', 'body', 'asyncio pools', limit=5, offset=10,
            additional_filters={'author': 'ann'},
        )

        assert result == SearchResult(data=[{'id': 1, 'title': 'asyncio pools'}], count=7)

        rows_sql = str(connection.statements[0].compile(dialect=postgresql.dialect()))
        count_sql = str(connection.statements[1].compile(dialect=postgresql.dialect()))
        assert "to_tsvector(body) @@ plainto_tsquery" in rows_sql
        assert "author =" in rows_sql
        assert "LIMIT" in rows_sql and "OFFSET" in rows_sql
        assert "count(*)" in count_sql
        assert "plainto_tsquery" in count_sql
        assert monitor.get_stats('full_text_search:posts')['count'] == 1

        await pool.close()


class TestPoolBinding:

    async def test_uses_global_pool_when_unbound(self, global_pool_reset, monitor):
        optimizer = QueryOptimizer(monitor=monitor)

        with pytest.raises(PoolNotInitializedError):
            await optimizer.paginate_with_cursor('posts', limit=1, order_by='id')


class TestTiming:
    """Test what the helpers record in the monitor."""

    async def test_queue_wait_not_counted(self, monitor):
        connection = RecordingConnection(rows=[{'author': 'ann', 'id_count': 2}], total=0)
        pool = ConnectionPool(RecordingFactory(connection), PoolConfig(min=0, max=1))
        optimizer = QueryOptimizer(pool, monitor)
        held = await pool.acquire()

        task = asyncio.create_task(optimizer.aggregate('posts', ['author'], {'id': 'count'}))
        await asyncio.sleep(0.1)
        pool.release(held)
        rows = await task

        assert rows == [{'author': 'ann', 'id_count': 2}]
        stats = monitor.get_stats('aggregate:posts')
        assert stats['count'] == 1
        assert stats['max'] < 50

        await pool.close()
