# app/infra/db_resilience_async.py
"""
Async database resilience utilities.

``safe_db_conn`` retries acquiring a connection on transient errors with
exponential backoff. The body of the ``async with`` block runs once; a
transient failure inside it (or exhausted retries) surfaces as
DependencyFailureError so callers see a typed 503 instead of a driver error.
"""
from __future__ import annotations
import asyncio
from contextlib import AsyncExitStack, asynccontextmanager

import asyncpg
from app.core.dispatch.errors import DependencyFailureError, DispatchError
from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger
from app.infra.metrics import AppMetrics

logger = get_logger(__name__)

MAX_RETRIES = 3
INITIAL_DELAY = 0.1
BACKOFF_FACTOR = 2.0
MAX_DELAY = 5.0


def is_transient_error(exc: BaseException) -> bool:
    """
    Check if database error is transient (should retry).

    Transient errors:
    - Connection errors
    - Server closed connection
    - Too many connections
    - Deadlock
    - Pool not initialized yet / already closed
    """
    if isinstance(exc, (asyncpg.PostgresConnectionError, OSError, asyncio.TimeoutError)):
        return True

    if isinstance(exc, asyncpg.TooManyConnectionsError):
        return True

    if isinstance(exc, asyncpg.DeadlockDetectedError):
        return True

    if isinstance(exc, asyncpg.InterfaceError):
        return True

    if isinstance(exc, asyncpg.PostgresError):
        # Constraint violations, syntax errors etc. are not retryable
        return False

    error_message = str(exc).lower()
    transient_patterns = [
        "connection",
        "timeout",
        "closed",
        "network",
        "too many connections",
        "pool not initialized",
    ]
    return any(pattern in error_message for pattern in transient_patterns)


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True, *, operation: str = "db"):
    """
    Database connection with retry on transient acquisition errors.

    Usage:
        async with safe_db_conn(operation="responses.get") as conn:
            row = await conn.fetchrow("SELECT * FROM responses WHERE id = $1", response_id)
    """
    delay = INITIAL_DELAY

    async with AsyncExitStack() as stack:
        for attempt in range(MAX_RETRIES + 1):
            try:
                conn = await stack.enter_async_context(db_conn(autocommit=autocommit))
                break
            except Exception as exc:
                if not is_transient_error(exc):
                    raise

                if attempt >= MAX_RETRIES:
                    logger.error(f"Max retries ({MAX_RETRIES}) exceeded getting connection for {operation}")
                    AppMetrics.database_error(operation)
                    raise DependencyFailureError("Database is unavailable. Please try again later.") from exc

                logger.warning(
                    f"Transient error getting connection for {operation} "
                    f"(attempt {attempt + 1}/{MAX_RETRIES}): {exc}. Retrying in {delay:.2f}s..."
                )
                await asyncio.sleep(delay)
                delay = min(delay * BACKOFF_FACTOR, MAX_DELAY)

        try:
            yield conn
        except DispatchError:
            raise
        except Exception as exc:
            if not is_transient_error(exc):
                raise
            logger.error(f"Transient database error during {operation}: {exc}", exc_info=True)
            AppMetrics.database_error(operation)
            raise DependencyFailureError("Database is unavailable. Please try again later.") from exc
