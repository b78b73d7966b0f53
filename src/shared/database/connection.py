"""
SQLAlchemy-backed connections for the pool.

The engine is created with NullPool so that ConnectionPool is the only
layer keeping connections open.
"""
from typing import Optional

import structlog
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from .pool import ConnectionFactory

logger = structlog.get_logger(__name__)


class EngineConnectionFactory(ConnectionFactory):
    """Opens AsyncConnections on an AsyncEngine."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    @classmethod
    def from_url(
        cls,
        database_url: str,
        key: Optional[str] = None,
        echo: bool = False,
        **engine_kwargs,
    ) -> "EngineConnectionFactory":
        """
        Build a factory for ``database_url``.

        Args:
            database_url: SQLAlchemy async URL, e.g. ``postgresql+asyncpg://...``
            key: Credential used as the URL password when given
            echo: Log SQL statements
        """
        url = make_url(database_url)
        if key:
            url = url.set(password=key)

        engine = create_async_engine(url, poolclass=NullPool, echo=echo, **engine_kwargs)
        logger.info(
            "Database engine created",
            url=url.render_as_string(hide_password=True),
        )
        return cls(engine)

    async def create(self) -> AsyncConnection:
        connection = self.engine.connect()
        await connection.start()
        return connection

    async def reset(self, connection: AsyncConnection) -> None:
        if connection.in_transaction():
            await connection.rollback()
            logger.debug("Rolled back uncommitted work on release")

    async def dispose(self, connection: AsyncConnection) -> None:
        if connection.closed:
            return
        if connection.in_transaction():
            await connection.rollback()
        await connection.close()

    async def close(self) -> None:
        await self.engine.dispose()
        logger.info("Database engine disposed")
