# app/infra/schema_validator.py
"""
Schema version validator.

The service does NOT run migrations on startup. Migrations run separately
(``python -m app.infra.migrate``); at startup the service only checks that
the newest applied migration is the one this build expects, and refuses
to start otherwise.
"""
from __future__ import annotations
from app.config import settings
from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger
from app.infra.migrations_async import available_migrations

logger = get_logger(__name__)

_TABLE_EXISTS_SQL = """
    SELECT EXISTS (
        SELECT FROM information_schema.tables
        WHERE table_schema = 'public'
        AND table_name = 'schema_migrations'
    )
"""


async def _applied_versions(conn) -> list[str] | None:
    """Applied migration filenames in order, or None if never initialized."""
    if not await conn.fetchval(_TABLE_EXISTS_SQL):
        return None
    rows = await conn.fetch("SELECT version FROM schema_migrations ORDER BY version")
    return [row["version"] for row in rows]


async def validate_schema_version() -> dict:
    """
    Validate that the database schema matches ``settings.expected_schema_version``.

    Returns:
        dict with keys ok, current_version, expected_version

    Raises:
        RuntimeError: If the schema is missing or at a different version
    """
    expected = settings.expected_schema_version

    async with db_conn() as conn:
        applied = await _applied_versions(conn)

    if applied is None:
        error = (
            "Schema migrations table not found. "
            "Database has not been initialized. "
            "Run migrations first: python -m app.infra.migrate"
        )
        logger.critical(error)
        raise RuntimeError(error)

    if not applied:
        error = (
            "No migrations have been applied. "
            "Run migrations first: python -m app.infra.migrate"
        )
        logger.critical(error)
        raise RuntimeError(error)

    current_version = applied[-1]
    if current_version != expected:
        error = (
            f"Schema version mismatch! "
            f"Expected: {expected}, Found: {current_version}. "
            f"Run migrations to update schema: python -m app.infra.migrate"
        )
        logger.critical(error, extra={"expected": expected, "current": current_version})
        raise RuntimeError(error)

    logger.info(f"Schema version validated: {current_version}")
    return {
        "ok": True,
        "current_version": current_version,
        "expected_version": expected,
    }


async def get_schema_info() -> dict:
    """Schema state for /health/detailed and debugging."""
    async with db_conn() as conn:
        applied = await _applied_versions(conn)

    if applied is None:
        return {
            "initialized": False,
            "migrations_applied": 0,
            "latest_version": None,
            "expected_version": settings.expected_schema_version,
        }

    pending = [name for name in available_migrations() if name not in set(applied)]
    latest = applied[-1] if applied else None
    return {
        "initialized": True,
        "migrations_applied": len(applied),
        "latest_version": latest,
        "expected_version": settings.expected_schema_version,
        "is_compatible": latest == settings.expected_schema_version,
        "pending_migrations": pending,
    }
