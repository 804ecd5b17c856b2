# app/infra/pg_uow_async.py
"""
Async PostgreSQL unit of work (asyncpg).

Opens one connection with ``autocommit=False`` and hands out repositories
bound to it, so a status change and the profile write that goes with it
commit or roll back together.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from app.core.dispatch.errors import DispatchError
from app.core.dispatch.ports import TransactionStores
from app.infra.db_resilience_async import safe_db_conn
from app.infra.logging_config import get_logger
from app.infra.metrics import AppMetrics
from app.infra.pg_crisis_repo_async import AsyncPostgresCrisisRepository
from app.infra.pg_rating_repo_async import AsyncPostgresRatingRepository
from app.infra.pg_response_repo_async import AsyncPostgresResponseRepository
from app.infra.pg_volunteer_repo_async import AsyncPostgresVolunteerProfileRepository

logger = get_logger(__name__)


class AsyncPostgresDispatchUnitOfWork:

    @asynccontextmanager
    async def transaction(self, operation: str = "dispatch") -> AsyncIterator[TransactionStores]:
        """
        Usage:
            async with uow.transaction("assignment.complete") as tx:
                updated = await tx.responses.transition(...)
                await tx.profiles.increment_counter(...)

        Raises:
            Whatever the block raises, after the transaction is rolled back
        """
        try:
            async with safe_db_conn(autocommit=False, operation=operation) as conn:
                yield TransactionStores(
                    responses=AsyncPostgresResponseRepository(conn),
                    crises=AsyncPostgresCrisisRepository(conn),
                    profiles=AsyncPostgresVolunteerProfileRepository(conn),
                    ratings=AsyncPostgresRatingRepository(conn),
                )
        except DispatchError:
            raise
        except Exception as e:
            logger.error(f"Transaction {operation} rolled back: {e}", exc_info=True)
            AppMetrics.database_error(operation)
            raise


# Global singleton
_uow: AsyncPostgresDispatchUnitOfWork | None = None


def get_unit_of_work() -> AsyncPostgresDispatchUnitOfWork:
    """Get the global unit of work instance."""
    global _uow
    if _uow is None:
        _uow = AsyncPostgresDispatchUnitOfWork()
    return _uow
