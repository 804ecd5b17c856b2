# app/infra/db_async.py
"""
asyncpg pool for the dispatch stores.

The pool is created once in the HTTP lifespan (or by ``python -m
app.infra.migrate``) and shared by every pg_*_repo_async module through
``db_conn``. Sessions run in UTC so ``now()`` defaults on responses and
ratings line up with the timestamps the state machine writes.
"""
from __future__ import annotations
from typing import Any, AsyncIterator
from contextlib import asynccontextmanager

import asyncpg
from app.config import settings
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

_pool: asyncpg.Pool | None = None


async def init_pool() -> None:
    global _pool
    if _pool is not None:
        return

    _pool = await asyncpg.create_pool(
        dsn=settings.database_dsn,
        min_size=settings.pg_pool_min,
        max_size=settings.pg_pool_max,
        timeout=settings.pg_connect_timeout,
        command_timeout=settings.pg_command_timeout,
        server_settings={
            "application_name": "crisis_dispatch",
            "timezone": "UTC",
        },
    )
    logger.info(
        "Postgres pool ready: min=%d max=%d", settings.pg_pool_min, settings.pg_pool_max,
    )


async def close_pool() -> None:
    global _pool
    if _pool is None:
        return
    pool, _pool = _pool, None
    await pool.close()
    logger.info("Postgres pool closed")


@asynccontextmanager
async def db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    Borrow a pooled connection.

    With ``autocommit=False`` the block runs in one transaction that is
    rolled back if the block raises. Store methods use the default: each
    of their statements is a single atomic guard on its own.
    """
    if _pool is None:
        raise RuntimeError("Connection pool not initialized. Call init_pool() first.")

    async with _pool.acquire() as conn:
        if autocommit:
            yield conn
        else:
            async with conn.transaction():
                yield conn


async def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Connection pool not initialized")
    return _pool


def pool_stats() -> dict[str, Any]:
    """Pool occupancy for /health/detailed."""
    if _pool is None:
        return {"initialized": False}
    size = _pool.get_size()
    return {
        "initialized": True,
        "size": size,
        "idle": _pool.get_idle_size(),
        "in_use": size - _pool.get_idle_size(),
        "max_size": _pool.get_max_size(),
    }
