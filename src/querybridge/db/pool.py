"""Connection pool lifecycle for the capability host."""

import logging
from dataclasses import dataclass
from typing import Any

import asyncpg

from querybridge.config import Settings
from querybridge.core.schema import RetryPolicy
from querybridge.db.executor import ResilientQueryExecutor

logger = logging.getLogger(__name__)


@dataclass
class DatabaseContext:
    """
    Owns the pool and the executor built on it.

    One instance is created at server startup and handed to whatever needs database access.
    """

    pool: Any
    executor: ResilientQueryExecutor

    async def close(self) -> None:
        """Close every pooled connection."""
        await self.pool.close()
        logger.info("Database pool closed.")


def resolve_host(host: str) -> str:
    """Map ``localhost`` to the IPv4 loopback so the driver never tries ``::1`` first."""
    if host == "localhost":
        logger.info("Changed localhost to 127.0.0.1 to ensure IPv4 connection")
        return "127.0.0.1"
    return host


async def create_database_context(settings: Settings) -> DatabaseContext:
    """Create the pool, check connectivity and wrap it in a :class:`DatabaseContext`."""
    host = resolve_host(settings.DB_HOST)

    # Log connection details (without password)
    logger.info(
        "Database configuration: user=%s host=%s port=%d database=%s",
        settings.DB_USERNAME,
        host,
        settings.DB_PORT,
        settings.DB_NAME,
    )

    pool = await asyncpg.create_pool(
        user=settings.DB_USERNAME,
        password=settings.DB_PASSWORD,
        database=settings.DB_NAME,
        host=host,
        port=settings.DB_PORT,
        min_size=1,
        max_size=settings.DB_POOL_MAX_SIZE,
        timeout=settings.DB_CONNECT_TIMEOUT,
        max_inactive_connection_lifetime=settings.DB_IDLE_TIMEOUT,
    )

    executor = ResilientQueryExecutor(
        pool,
        RetryPolicy(
            max_attempts=settings.QUERY_MAX_ATTEMPTS,
            backoff_base=settings.QUERY_BACKOFF_BASE,
        ),
        read_only=settings.QUERY_READ_ONLY,
    )
    try:
        result = await executor.execute("SELECT NOW() AS now")
    except Exception:
        await pool.close()
        raise
    logger.debug("Connected to database: %s", result.rows[0]["now"])

    return DatabaseContext(pool=pool, executor=executor)
