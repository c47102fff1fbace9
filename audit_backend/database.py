"""
Database connection pool management using asyncpg.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import asyncpg
from asyncpg import Pool, Connection

from audit_backend.config import settings

logger = logging.getLogger(__name__)

USERS_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id              uuid PRIMARY KEY DEFAULT gen_random_uuid(),
    name            varchar(200) NOT NULL,
    email           varchar(320) NOT NULL UNIQUE,
    organization_id varchar(50),
    created_at      timestamptz NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at      timestamptz NOT NULL DEFAULT CURRENT_TIMESTAMP,
    created_by      varchar(50),
    updated_by      varchar(50),
    deleted_at      timestamptz
)
"""


class Database:
    """Async PostgreSQL connection pool."""

    def __init__(self, dsn: Optional[str] = None):
        self._dsn = dsn or settings.database_url
        self._pool: Optional[Pool] = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        """Create the pool and make sure the users table exists."""
        async with self._lock:
            if self._pool is not None:
                return

            logger.info("Connecting to PostgreSQL...")
            self._pool = await asyncpg.create_pool(
                dsn=self._dsn,
                min_size=settings.db_pool_min_size,
                max_size=settings.db_pool_max_size,
                command_timeout=settings.db_command_timeout,
                server_settings={'application_name': settings.app_name},
            )
            await self._pool.execute(USERS_SCHEMA)
            logger.info("PostgreSQL connection pool ready")

    async def disconnect(self) -> None:
        async with self._lock:
            if self._pool is None:
                return
            await self._pool.close()
            self._pool = None
            logger.info("PostgreSQL connection pool closed")

    @property
    def pool(self) -> Pool:
        if self._pool is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._pool

    async def execute(self, query: str, *args) -> str:
        return await self.pool.execute(query, *args)

    async def fetch(self, query: str, *args) -> list:
        return await self.pool.fetch(query, *args)

    async def fetchrow(self, query: str, *args) -> Optional[asyncpg.Record]:
        return await self.pool.fetchrow(query, *args)

    async def fetchval(self, query: str, *args):
        return await self.pool.fetchval(query, *args)

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[Connection, None]:
        """Connection with an open transaction, committed on clean exit."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def health_check(self) -> bool:
        """Check database connectivity."""
        try:
            return await self.fetchval("SELECT 1") == 1
        except (asyncpg.PostgresError, OSError, RuntimeError) as e:
            logger.error(f"Database health check failed: {e}")
            return False


# Global database instance
database = Database()


async def get_db() -> Database:
    """Dependency injection for database access."""
    return database
