# app/infra/pg_volunteer_repo_async.py
"""
Async PostgreSQL volunteer profile repository (asyncpg).

Counters and the rating average are changed by single-statement upserts,
so concurrent completions or ratings never lose an update.
"""
from __future__ import annotations

from typing import Optional

from app.core.dispatch.domain import VolunteerProfile
from app.core.dispatch.errors import NotFoundError
from app.infra.db_resilience_async import safe_db_conn
from app.infra.logging_config import get_logger
from app.infra.pg_common import borrowed, id_str, parse_uuid

logger = get_logger(__name__)

# Column names are interpolated into SQL, so only these are accepted
COUNTERS = frozenset({"completed_tasks", "failed_tasks"})


def _row_to_profile(row) -> VolunteerProfile:
    """Convert an asyncpg Record to a VolunteerProfile."""
    return VolunteerProfile(
        user_id=id_str(row["user_id"]),
        skills=list(row["skills"] or []),
        availability=bool(row["availability"]),
        rating=float(row["rating"] or 0),
        rating_sum=row["rating_sum"],
        rating_count=row["rating_count"],
        completed_tasks=row["completed_tasks"],
        failed_tasks=row["failed_tasks"],
        updated_at=row.get("updated_at"),
    )


def _require_uuid(user_id: str) -> str:
    uid = parse_uuid(user_id)
    if uid is None:
        raise NotFoundError(f"User not found with ID: {user_id}")
    return uid


class AsyncPostgresVolunteerProfileRepository:

    def __init__(self, conn=None):
        # Bound to an open transaction when built by the unit of work
        self._conn = conn

    def _connection(self, operation: str):
        if self._conn is not None:
            return borrowed(self._conn)
        return safe_db_conn(operation=operation)

    async def find_available(self) -> list[str]:
        async with self._connection("profiles.find_available") as conn:
            rows = await conn.fetch(
                "SELECT user_id FROM volunteer_profiles WHERE availability ORDER BY user_id"
            )
        return [id_str(row["user_id"]) for row in rows]

    async def get_profile(self, user_id: str) -> Optional[VolunteerProfile]:
        uid = parse_uuid(user_id)
        if uid is None:
            return None
        async with self._connection("profiles.get") as conn:
            row = await conn.fetchrow(
                "SELECT * FROM volunteer_profiles WHERE user_id = $1::uuid",
                uid,
            )
        return _row_to_profile(row) if row else None

    async def upsert_profile(
        self,
        user_id: str,
        *,
        skills: Optional[list[str]] = None,
        availability: Optional[bool] = None,
    ) -> VolunteerProfile:
        """
        Create or update a profile. None leaves a field unchanged
        (or at its default on insert).
        """
        uid = _require_uuid(user_id)
        async with self._connection("profiles.upsert") as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO volunteer_profiles (user_id, skills, availability)
                VALUES ($1::uuid, COALESCE($2::text[], '{}'), COALESCE($3::boolean, false))
                ON CONFLICT (user_id) DO UPDATE
                SET skills = COALESCE($2::text[], volunteer_profiles.skills),
                    availability = COALESCE($3::boolean, volunteer_profiles.availability),
                    updated_at = now()
                RETURNING *
                """,
                uid,
                skills,
                availability,
            )
        return _row_to_profile(row)

    async def increment_counter(self, user_id: str, counter: str) -> None:
        """Add 1 to ``completed_tasks`` or ``failed_tasks``, creating the profile if needed."""
        if counter not in COUNTERS:
            raise ValueError(f"Unknown profile counter: {counter}")
        uid = _require_uuid(user_id)

        async with self._connection("profiles.increment_counter") as conn:
            await conn.execute(
                f"""
                INSERT INTO volunteer_profiles (user_id, {counter})
                VALUES ($1::uuid, 1)
                ON CONFLICT (user_id) DO UPDATE
                SET {counter} = volunteer_profiles.{counter} + 1,
                    updated_at = now()
                """,
                uid,
            )
        logger.debug(
            f"Incremented {counter} for volunteer {user_id}",
            extra={"volunteer_id": user_id},
        )

    async def record_rating(self, user_id: str, score: int) -> VolunteerProfile:
        """Fold ``score`` into rating_sum/rating_count and refresh the average."""
        uid = _require_uuid(user_id)
        async with self._connection("profiles.record_rating") as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO volunteer_profiles (user_id, rating_sum, rating_count, rating)
                VALUES ($1::uuid, $2::integer, 1, $2::integer)
                ON CONFLICT (user_id) DO UPDATE
                SET rating_sum = volunteer_profiles.rating_sum + EXCLUDED.rating_sum,
                    rating_count = volunteer_profiles.rating_count + 1,
                    rating = round(
                        (volunteer_profiles.rating_sum + EXCLUDED.rating_sum)::numeric
                        / (volunteer_profiles.rating_count + 1),
                        1
                    ),
                    updated_at = now()
                RETURNING *
                """,
                uid,
                int(score),
            )
        return _row_to_profile(row)


# Global singleton
_profile_repo: AsyncPostgresVolunteerProfileRepository | None = None


def get_volunteer_profile_repo() -> AsyncPostgresVolunteerProfileRepository:
    """Get the global volunteer profile repository instance."""
    global _profile_repo
    if _profile_repo is None:
        _profile_repo = AsyncPostgresVolunteerProfileRepository()
    return _profile_repo
