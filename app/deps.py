"""Dependency injection for FastAPI"""
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import asyncpg

from app.config import settings
from app.core.index_manager import IndexManager
from app.core.query_cache import CacheGateway, create_cache_store
from app.core.query_executor import QueryExecutor
from app.core.sql_guard import SQLGuard
from app.core.sql_exec import SQLExecutor
from app.smart_logger import SmartLogger
from app.utils.log_sanitize import sanitize_for_log


class DatabasePool:
    """Target database pool manager"""

    def __init__(self):
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Create the asyncpg pool"""
        if not self.pool:
            self.pool = await asyncpg.create_pool(
                dsn=settings.database_url,
                min_size=settings.db_pool_min_size,
                max_size=settings.db_pool_max_size,
            )
            SmartLogger.log(
                "INFO",
                "deps.db_pool.connected",
                category="deps.db_pool",
                params=sanitize_for_log({"database_url": settings.database_url}),
            )

    async def close(self):
        """Close the pool"""
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def get_pool(self) -> asyncpg.Pool:
        if not self.pool:
            await self.connect()
        return self.pool


class CacheConnection:
    """Result cache manager"""

    def __init__(self):
        self.gateway: Optional[CacheGateway] = None

    def connect(self) -> CacheGateway:
        if not self.gateway:
            self.gateway = CacheGateway(create_cache_store(settings.redis_url), settings.cache_ttl_seconds)
        return self.gateway

    async def close(self):
        if self.gateway:
            await self.gateway.close()
            self.gateway = None


# Global instances
db_pool = DatabasePool()
cache_conn = CacheConnection()


async def get_db_pool() -> asyncpg.Pool:
    """FastAPI dependency for the target database pool"""
    return await db_pool.get_pool()


def get_cache_gateway() -> CacheGateway:
    """FastAPI dependency for the result cache"""
    return cache_conn.connect()


def get_query_executor() -> QueryExecutor:
    return QueryExecutor(get_cache_gateway(), guard=SQLGuard(), executor=SQLExecutor())


def get_index_manager() -> IndexManager:
    return IndexManager(SQLExecutor())


@asynccontextmanager
async def dedicated_connection(db: Any) -> AsyncIterator[Any]:
    """
    One connection for a multi-statement unit of work.

    A pool hands out a connection for the block; anything else (a single
    connection, a test double) is used as-is.
    """
    acquire = getattr(db, "acquire", None)
    if acquire is None:
        yield db
        return
    async with acquire() as conn:
        yield conn

