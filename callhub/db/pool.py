# callhub/db/pool.py
"""
Shared psycopg_pool pool for the coin ledger, the durable call mirror and
availability preferences.

Connections run in autocommit with dict rows; multi-statement ledger work goes
through `transaction()`.
"""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from callhub.config import settings
from callhub.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class DatabasePoolManager:
    def __init__(self):
        self.pool: AsyncConnectionPool | None = None
        self._state = "new"

    @property
    def ready(self) -> bool:
        return self._state == "open"

    async def initialize(self) -> None:
        """Open the pool and wait for `min_size` checked connections."""
        if self._state == "open":
            logger.warning("Database pool already initialized")
            return
        if self._state == "closed":
            raise RuntimeError("Cannot reinitialize closed pool")

        config = settings.get_db_pool_config()
        pool = AsyncConnectionPool(
            conninfo=settings.DATABASE_URL,
            open=False,
            check=AsyncConnectionPool.check_connection,
            configure=self._configure_connection,
            **config,
        )
        try:
            await pool.open()
            await pool.wait()
        except Exception as e:
            logger.error("Failed to initialize database pool", error=str(e))
            await pool.close()
            raise RuntimeError(f"Database pool initialization failed: {e}") from e

        self.pool = pool
        self._state = "open"
        logger.info(
            "Database pool initialized",
            min_size=config["min_size"],
            max_size=config["max_size"],
        )

    async def _configure_connection(self, conn: psycopg.AsyncConnection) -> None:
        conn.row_factory = dict_row
        # idle connections must never sit INTRANS between ledger calls
        await conn.set_autocommit(True)
        await conn.execute(
            sql.SQL("SET application_name = {}").format(
                sql.Literal(f"callhub-{settings.environment}")
            )
        )
        await conn.execute("SET timezone = 'UTC'")
        await conn.execute("SET statement_timeout = '30s'")

    async def close(self) -> None:
        if self._state != "open":
            return

        self._state = "closed"
        try:
            await asyncio.wait_for(self.pool.close(), timeout=30.0)
            logger.info("Database pool closed")
        except TimeoutError:
            logger.warning("Database pool close timed out")

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        if not self.ready:
            raise RuntimeError(f"Database pool is {self._state}")

        async with self.pool.connection() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """Connection inside one transaction: commit on exit, rollback on error."""
        async with self.connection() as conn:
            async with conn.transaction():
                yield conn

    async def health_check(self) -> dict[str, Any]:
        if not self.ready:
            return {"healthy": False, "error": f"Pool is {self._state}"}

        try:
            async with self.connection() as conn:
                await conn.execute("SELECT 1")
        except Exception as e:
            logger.error("Database pool health check failed", error=str(e))
            return {"healthy": False, "error": str(e)}

        stats = self.pool.get_stats()
        return {
            "healthy": True,
            "pool_stats": {
                "pool_size": stats.get("pool_size", 0),
                "pool_available": stats.get("pool_available", 0),
            },
        }


db_pool = DatabasePoolManager()


async def get_db_connection():
    return db_pool.connection()


async def db_health_check() -> dict[str, Any]:
    return await db_pool.health_check()
