# app/infra/pg_user_repo_async.py
"""
Async PostgreSQL user lookups (asyncpg).

Users belong to the credential store; this repository only reads id,
name, role and location.
"""
from __future__ import annotations

from typing import Iterable, Optional

from app.core.dispatch.domain import User, UserRole
from app.infra.db_resilience_async import safe_db_conn
from app.infra.logging_config import get_logger
from app.infra.pg_common import geo_from_row, id_str, parse_uuid, parse_uuids

logger = get_logger(__name__)


def _row_to_user(row) -> User:
    """Convert an asyncpg Record to a User."""
    return User(
        id=id_str(row["id"]),
        name=row["name"],
        role=UserRole(row["role"]),
        location=geo_from_row(row),
    )


class AsyncPostgresUserRepository:
    """Read-only user store backed by the ``users`` table."""

    async def get_user(self, user_id: str) -> Optional[User]:
        uid = parse_uuid(user_id)
        if uid is None:
            return None
        async with safe_db_conn(operation="users.get") as conn:
            row = await conn.fetchrow(
                "SELECT id, name, role, longitude, latitude FROM users WHERE id = $1::uuid",
                uid,
            )
        return _row_to_user(row) if row else None

    async def get_users(self, user_ids: Iterable[str]) -> list[User]:
        ids = parse_uuids(user_ids)
        if not ids:
            return []
        async with safe_db_conn(operation="users.get_many") as conn:
            rows = await conn.fetch(
                """
                SELECT id, name, role, longitude, latitude
                FROM users
                WHERE id = ANY($1::uuid[])
                ORDER BY name
                """,
                ids,
            )
        return [_row_to_user(row) for row in rows]

    async def count_by_role(self, role: UserRole) -> int:
        async with safe_db_conn(operation="users.count_by_role") as conn:
            count = await conn.fetchval(
                "SELECT count(*) FROM users WHERE role = $1",
                UserRole(role).value,
            )
        return int(count or 0)


# Global singleton
_user_repo: AsyncPostgresUserRepository | None = None


def get_user_repo() -> AsyncPostgresUserRepository:
    """Get the global user repository instance."""
    global _user_repo
    if _user_repo is None:
        _user_repo = AsyncPostgresUserRepository()
    return _user_repo
