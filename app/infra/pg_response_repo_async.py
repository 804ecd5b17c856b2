# app/infra/pg_response_repo_async.py
"""
Async PostgreSQL response repository (asyncpg).

One row per (crisis, volunteer) pair, enforced by a unique constraint.
All status changes are compare-and-set UPDATEs:

    UPDATE responses ... WHERE id = $1 AND status = ANY($2) RETURNING *

so two concurrent transitions on the same response cannot both apply.
Rows are never deleted.
"""
from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from app.core.dispatch.domain import Response, ResponseStatus
from app.infra.db_resilience_async import safe_db_conn
from app.infra.logging_config import get_logger
from app.infra.pg_common import borrowed, id_str, parse_uuid

logger = get_logger(__name__)


def _row_to_response(row) -> Response:
    """Convert an asyncpg Record to a Response."""
    previous = row.get("previous_status")
    return Response(
        id=id_str(row["id"]),
        crisis_id=id_str(row["crisis_id"]),
        volunteer_id=id_str(row["volunteer_id"]),
        status=ResponseStatus(row["status"]),
        civilian_requester_id=id_str(row.get("civilian_requester_id")),
        accepted_at=row.get("accepted_at"),
        completed_at=row.get("completed_at"),
        failed_reason=row.get("failed_reason"),
        previous_status=ResponseStatus(previous) if previous else None,
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


class AsyncPostgresResponseRepository:

    def __init__(self, conn=None):
        # Bound to an open transaction when built by the unit of work
        self._conn = conn

    def _connection(self, operation: str):
        if self._conn is not None:
            return borrowed(self._conn)
        return safe_db_conn(operation=operation)

    async def get(self, response_id: str) -> Optional[Response]:
        rid = parse_uuid(response_id)
        if rid is None:
            return None
        async with self._connection("responses.get") as conn:
            row = await conn.fetchrow("SELECT * FROM responses WHERE id = $1::uuid", rid)
        return _row_to_response(row) if row else None

    async def find(self, crisis_id: str, volunteer_id: str) -> Optional[Response]:
        cid, vid = parse_uuid(crisis_id), parse_uuid(volunteer_id)
        if cid is None or vid is None:
            return None
        async with self._connection("responses.find") as conn:
            row = await conn.fetchrow(
                "SELECT * FROM responses WHERE crisis_id = $1::uuid AND volunteer_id = $2::uuid",
                cid,
                vid,
            )
        return _row_to_response(row) if row else None

    async def find_or_create(
        self,
        crisis_id: str,
        volunteer_id: str,
        civilian_requester_id: Optional[str],
    ) -> tuple[Response, bool]:
        """
        Insert a ``notified`` response for the pair unless one exists.

        Concurrent callers race on the unique constraint; the loser's INSERT
        is a no-op and it reads the winner's row.

        Returns:
            (response, created)
        """
        async with self._connection("responses.find_or_create") as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO responses (crisis_id, volunteer_id, civilian_requester_id, status)
                VALUES ($1::uuid, $2::uuid, $3::uuid, 'notified')
                ON CONFLICT (crisis_id, volunteer_id) DO NOTHING
                RETURNING *
                """,
                crisis_id,
                volunteer_id,
                parse_uuid(civilian_requester_id) if civilian_requester_id else None,
            )
            if row is not None:
                return _row_to_response(row), True

            row = await conn.fetchrow(
                "SELECT * FROM responses WHERE crisis_id = $1::uuid AND volunteer_id = $2::uuid",
                crisis_id,
                volunteer_id,
            )

        if row is None:
            raise RuntimeError(
                f"Response for crisis={crisis_id} volunteer={volunteer_id} vanished after conflict"
            )
        return _row_to_response(row), False

    async def transition(
        self,
        response_id: str,
        *,
        expected: Iterable[ResponseStatus],
        target: ResponseStatus,
        at: Optional[datetime] = None,
        failed_reason: Optional[str] = None,
    ) -> Optional[Response]:
        """
        Compare-and-set the status of one response.

        accepted stamps accepted_at, completed stamps completed_at, failed
        records the reason and the status it left, and clears both stamps.

        Returns:
            The updated Response, or None if the stored status was not in ``expected``
        """
        rid = parse_uuid(response_id)
        if rid is None:
            return None
        expected_values = [ResponseStatus(s).value for s in expected]
        target = ResponseStatus(target)

        async with self._connection("responses.transition") as conn:
            row = await conn.fetchrow(
                """
                UPDATE responses
                SET status = $3::text,
                    previous_status = CASE WHEN $3::text = 'failed' THEN status ELSE previous_status END,
                    accepted_at = CASE
                        WHEN $3::text = 'accepted' THEN COALESCE($4::timestamptz, now())
                        WHEN $3::text = 'failed' THEN NULL
                        ELSE accepted_at
                    END,
                    completed_at = CASE
                        WHEN $3::text = 'completed' THEN COALESCE($4::timestamptz, now())
                        WHEN $3::text = 'failed' THEN NULL
                        ELSE completed_at
                    END,
                    failed_reason = CASE WHEN $3::text = 'failed' THEN $5::text ELSE NULL END,
                    updated_at = now()
                WHERE id = $1::uuid
                  AND status = ANY($2::text[])
                RETURNING *
                """,
                rid,
                expected_values,
                target.value,
                at,
                failed_reason,
            )

        if row is None:
            logger.info(
                f"Response transition guard missed: id={response_id}, target={target.value}, "
                f"expected={expected_values}",
                extra={"response_id": response_id},
            )
            return None
        return _row_to_response(row)

    async def upsert_accepted(
        self,
        crisis_id: str,
        volunteer_id: str,
        *,
        expected: Optional[ResponseStatus],
        at: datetime,
    ) -> Optional[Response]:
        """
        Force the pair's response to ``accepted`` (admin assignment).

        ``expected=None`` inserts and fails if a row already exists;
        otherwise the existing row is updated only while it still has
        status ``expected``.
        """
        cid, vid = parse_uuid(crisis_id), parse_uuid(volunteer_id)
        if cid is None or vid is None:
            return None

        async with self._connection("responses.upsert_accepted") as conn:
            if expected is None:
                row = await conn.fetchrow(
                    """
                    INSERT INTO responses (crisis_id, volunteer_id, status, accepted_at)
                    VALUES ($1::uuid, $2::uuid, 'accepted', $3::timestamptz)
                    ON CONFLICT (crisis_id, volunteer_id) DO NOTHING
                    RETURNING *
                    """,
                    cid,
                    vid,
                    at,
                )
            else:
                row = await conn.fetchrow(
                    """
                    UPDATE responses
                    SET status = 'accepted',
                        accepted_at = $3::timestamptz,
                        completed_at = NULL,
                        failed_reason = NULL,
                        previous_status = NULL,
                        updated_at = now()
                    WHERE crisis_id = $1::uuid
                      AND volunteer_id = $2::uuid
                      AND status = $4::text
                    RETURNING *
                    """,
                    cid,
                    vid,
                    at,
                    ResponseStatus(expected).value,
                )

        return _row_to_response(row) if row else None

    async def list_for_volunteer(self, volunteer_id: str) -> list[Response]:
        vid = parse_uuid(volunteer_id)
        if vid is None:
            return []
        async with self._connection("responses.list_for_volunteer") as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM responses
                WHERE volunteer_id = $1::uuid
                ORDER BY created_at DESC
                """,
                vid,
            )
        return [_row_to_response(row) for row in rows]


# Global singleton
_response_repo: AsyncPostgresResponseRepository | None = None


def get_response_repo() -> AsyncPostgresResponseRepository:
    """Get the global response repository instance."""
    global _response_repo
    if _response_repo is None:
        _response_repo = AsyncPostgresResponseRepository()
    return _response_repo
