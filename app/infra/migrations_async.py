# app/infra/migrations_async.py
"""
SQL migrations for the dispatch schema (app/infra/sql/NNN_*.sql).

Each file is applied once, in filename order, inside a single transaction
guarded by an advisory lock. The sha256 of every applied file is stored so
an edited migration shows up as drift instead of silently diverging from
what production actually ran.
"""
from __future__ import annotations
import hashlib
from pathlib import Path

from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

SQL_DIR = Path(__file__).resolve().parent / "sql"

_BOOTSTRAP_SQL = """
    CREATE TABLE IF NOT EXISTS schema_migrations(
      version text PRIMARY KEY,
      checksum text,
      applied_at timestamptz NOT NULL DEFAULT now()
    )
"""


def available_migrations() -> list[str]:
    """Migration filenames in apply order (001_init.sql, 002_..., ...)."""
    return sorted(p.name for p in SQL_DIR.glob("*.sql") if p.is_file())


def migration_checksum(version: str) -> str:
    return hashlib.sha256((SQL_DIR / version).read_bytes()).hexdigest()


async def apply_migrations() -> dict:
    """
    Apply every pending migration.

    Returns:
        dict with keys ok, applied (filenames applied by this run), count,
        and drifted (already applied files whose content has changed since)
    """
    async with db_conn(autocommit=False) as conn:
        await conn.execute(_BOOTSTRAP_SQL)
        # Two deploy jobs racing must not both apply 00N
        await conn.execute("SELECT pg_advisory_xact_lock(hashtext('schema_migrations'))")

        rows = await conn.fetch("SELECT version, checksum FROM schema_migrations")
        recorded = {row["version"]: row["checksum"] for row in rows}

        applied_now: list[str] = []
        drifted: list[str] = []
        for version in available_migrations():
            checksum = migration_checksum(version)

            if version in recorded:
                if recorded[version] and recorded[version] != checksum:
                    logger.warning("Migration %s changed after it was applied", version)
                    drifted.append(version)
                continue

            logger.info("Applying migration %s", version)
            await conn.execute((SQL_DIR / version).read_text(encoding="utf-8"))
            await conn.execute(
                "INSERT INTO schema_migrations(version, checksum) VALUES ($1, $2)",
                version, checksum,
            )
            applied_now.append(version)

    logger.info("Migrations complete: %d applied", len(applied_now))
    return {"ok": True, "applied": applied_now, "count": len(applied_now), "drifted": drifted}
