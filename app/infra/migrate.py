#!/usr/bin/env python3
# app/infra/migrate.py
"""
Migration runner for the dispatch schema.

    python -m app.infra.migrate            # apply pending migrations
    python -m app.infra.migrate --status   # show applied / pending, change nothing

The HTTP service never migrates; at startup it only checks that the
newest applied migration equals EXPECTED_SCHEMA_VERSION.
"""
import asyncio
import sys

from app.config import settings
from app.infra.db_async import close_pool, init_pool
from app.infra.logging_config import get_logger, setup_logging
from app.infra.migrations_async import apply_migrations
from app.infra.schema_validator import get_schema_info

setup_logging(level="INFO", use_json=False)
logger = get_logger(__name__)


async def _status() -> int:
    info = await get_schema_info()
    logger.info("Applied: %d, latest: %s", info["migrations_applied"], info["latest_version"])
    logger.info("Expected by this build: %s", info["expected_version"])
    for name in info.get("pending_migrations", []):
        logger.info("  pending %s", name)
    return 0 if info.get("is_compatible") else 2


async def _apply() -> int:
    result = await apply_migrations()
    for name in result["applied"]:
        logger.info("  applied %s", name)
    if not result["applied"]:
        logger.info("Schema already up to date")
    for name in result["drifted"]:
        logger.warning("  drifted %s: file differs from the applied version", name)
    return 0 if result["ok"] else 1


async def main(argv: list[str]) -> int:
    logger.info(
        "Crisis dispatch migrations: env=%s db=%s:%s/%s",
        settings.app_env, settings.pghost, settings.pgport, settings.pgdatabase,
    )
    try:
        await init_pool()
        return await (_status() if "--status" in argv else _apply())
    except Exception as exc:
        logger.critical("MIGRATION FAILED: %s", exc, exc_info=True)
        return 1
    finally:
        await close_pool()


if __name__ == "__main__":
    sys.exit(asyncio.run(main(sys.argv[1:])))
