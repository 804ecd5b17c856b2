# app/infra/pg_rating_repo_async.py
"""
Async PostgreSQL rating repository (asyncpg).
One rating per (response, rater); duplicates are absorbed by ON CONFLICT.
"""
from __future__ import annotations

from typing import Optional

from app.core.dispatch.domain import Rating
from app.infra.db_resilience_async import safe_db_conn
from app.infra.logging_config import get_logger
from app.infra.pg_common import borrowed, id_str, parse_uuid

logger = get_logger(__name__)


def _row_to_rating(row) -> Rating:
    """Convert an asyncpg Record to a Rating."""
    return Rating(
        id=id_str(row["id"]),
        response_id=id_str(row["response_id"]),
        rater_id=id_str(row["rater_id"]),
        rated_volunteer_id=id_str(row["rated_volunteer_id"]),
        score=row["score"],
        crisis_id=id_str(row.get("crisis_id")),
        comment=row.get("comment"),
        photo_proof_url=row.get("photo_proof_url"),
        location=row.get("location"),
        created_at=row.get("created_at"),
    )


class AsyncPostgresRatingRepository:

    def __init__(self, conn=None):
        # Bound to an open transaction when built by the unit of work
        self._conn = conn

    def _connection(self, operation: str):
        if self._conn is not None:
            return borrowed(self._conn)
        return safe_db_conn(operation=operation)

    async def create(
        self,
        *,
        response_id: str,
        rater_id: str,
        rated_volunteer_id: str,
        score: int,
        crisis_id: Optional[str] = None,
        comment: Optional[str] = None,
        photo_proof_url: Optional[str] = None,
        location: Optional[str] = None,
    ) -> Optional[Rating]:
        """
        Insert a rating.

        Returns:
            The new Rating, or None if this rater already rated this response
        """
        async with self._connection("ratings.create") as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO ratings (
                    response_id, rater_id, rated_volunteer_id, crisis_id,
                    score, comment, photo_proof_url, location
                )
                VALUES ($1::uuid, $2::uuid, $3::uuid, $4::uuid, $5, $6, $7, $8)
                ON CONFLICT (response_id, rater_id) DO NOTHING
                RETURNING *
                """,
                response_id,
                rater_id,
                rated_volunteer_id,
                parse_uuid(crisis_id) if crisis_id else None,
                score,
                comment,
                photo_proof_url,
                location,
            )

        if row is None:
            logger.debug(
                f"Duplicate rating ignored: response={response_id}, rater={rater_id}",
                extra={"response_id": response_id},
            )
            return None
        return _row_to_rating(row)

    async def list_for_volunteer(self, volunteer_id: str) -> list[Rating]:
        vid = parse_uuid(volunteer_id)
        if vid is None:
            return []
        async with self._connection("ratings.list_for_volunteer") as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM ratings
                WHERE rated_volunteer_id = $1::uuid
                ORDER BY created_at DESC
                """,
                vid,
            )
        return [_row_to_rating(row) for row in rows]


# Global singleton
_rating_repo: AsyncPostgresRatingRepository | None = None


def get_rating_repo() -> AsyncPostgresRatingRepository:
    """Get the global rating repository instance."""
    global _rating_repo
    if _rating_repo is None:
        _rating_repo = AsyncPostgresRatingRepository()
    return _rating_repo
