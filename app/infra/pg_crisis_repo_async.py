# app/infra/pg_crisis_repo_async.py
"""
Async PostgreSQL crisis repository (asyncpg).

Crises are created by the ingestion feed. The dispatch service reads them
and moves their status with a conditional UPDATE that never applies when
the stored status is outside the expected set.
"""
from __future__ import annotations

from typing import Iterable, Optional

from app.core.dispatch.domain import Crisis, CrisisStatus
from app.infra.db_resilience_async import safe_db_conn
from app.infra.logging_config import get_logger
from app.infra.pg_common import borrowed, geo_from_row, id_str, parse_uuid

logger = get_logger(__name__)


def _row_to_crisis(row) -> Crisis:
    """Convert an asyncpg Record to a Crisis."""
    return Crisis(
        id=id_str(row["id"]),
        disaster_type=row["disaster_type"],
        severity=row["severity"],
        status=CrisisStatus(row["status"]),
        description=row.get("description"),
        address=row.get("address"),
        location=geo_from_row(row),
        assigned_volunteer_id=id_str(row.get("assigned_volunteer_id")),
        created_at=row.get("created_at"),
    )


class AsyncPostgresCrisisRepository:
    """Crisis lookups plus guarded status updates."""

    def __init__(self, conn=None):
        # Bound to an open transaction when built by the unit of work
        self._conn = conn

    def _connection(self, operation: str):
        if self._conn is not None:
            return borrowed(self._conn)
        return safe_db_conn(operation=operation)

    async def get_crisis(self, crisis_id: str) -> Optional[Crisis]:
        cid = parse_uuid(crisis_id)
        if cid is None:
            return None
        async with self._connection("crises.get") as conn:
            row = await conn.fetchrow("SELECT * FROM crises WHERE id = $1::uuid", cid)
        return _row_to_crisis(row) if row else None

    async def update_status(
        self,
        crisis_id: str,
        status: CrisisStatus,
        *,
        expected: Iterable[CrisisStatus],
        assigned_volunteer_id: Optional[str] = None,
    ) -> Optional[Crisis]:
        """
        Move a crisis to ``status`` only if its current status is in ``expected``.

        ``assigned_volunteer_id`` is written when given and left as is otherwise.

        Returns:
            The updated Crisis, or None if the guard did not match
        """
        cid = parse_uuid(crisis_id)
        if cid is None:
            return None
        expected_values = [CrisisStatus(s).value for s in expected]

        async with self._connection("crises.update_status") as conn:
            row = await conn.fetchrow(
                """
                UPDATE crises
                SET status = $2,
                    assigned_volunteer_id = COALESCE($3::uuid, assigned_volunteer_id),
                    updated_at = now()
                WHERE id = $1::uuid
                  AND status = ANY($4::text[])
                RETURNING *
                """,
                cid,
                CrisisStatus(status).value,
                parse_uuid(assigned_volunteer_id) if assigned_volunteer_id else None,
                expected_values,
            )

        if row is None:
            logger.debug(
                f"Crisis status guard missed: id={crisis_id}, target={CrisisStatus(status).value}, "
                f"expected={expected_values}",
                extra={"crisis_id": crisis_id},
            )
            return None

        logger.info(
            f"Crisis {crisis_id} -> {row['status']}",
            extra={"crisis_id": crisis_id},
        )
        return _row_to_crisis(row)


# Global singleton
_crisis_repo: AsyncPostgresCrisisRepository | None = None


def get_crisis_repo() -> AsyncPostgresCrisisRepository:
    """Get the global crisis repository instance."""
    global _crisis_repo
    if _crisis_repo is None:
        _crisis_repo = AsyncPostgresCrisisRepository()
    return _crisis_repo
