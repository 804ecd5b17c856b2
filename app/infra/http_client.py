# app/infra/http_client.py
"""
Outbound HTTP session for the push gateway.

One lazily created aiohttp.ClientSession per process. The connector limit
follows DISPATCH_FANOUT_CONCURRENCY so a help-request fan-out never queues
behind its own connection pool, and the total timeout is a little above
NOTIFICATION_EMIT_TIMEOUT_SECONDS so ``deliver()`` is the one that gives up.

Call ``close_all_sessions()`` once during application shutdown.
"""
from __future__ import annotations

import aiohttp

from app.config import settings
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

_sender: aiohttp.ClientSession | None = None


def _sender_limits() -> tuple[int, aiohttp.ClientTimeout]:
    limit = max(settings.dispatch_fanout_concurrency * 2, 10)
    total = settings.notification_emit_timeout_seconds + 1.0
    return limit, aiohttp.ClientTimeout(total=total, connect=min(3.0, total))


def get_sender_session() -> aiohttp.ClientSession:
    """Session used by the webhook notification channel."""
    global _sender
    if _sender is None or _sender.closed:
        limit, timeout = _sender_limits()
        _sender = aiohttp.ClientSession(
            timeout=timeout,
            connector=aiohttp.TCPConnector(limit=limit, keepalive_timeout=30),
            headers={"User-Agent": "crisis-dispatch/1.0"},
        )
        logger.debug("Push gateway session created (limit=%d, total_timeout=%.1fs)", limit, timeout.total)
    return _sender


async def close_all_sessions() -> None:
    global _sender
    if _sender is not None and not _sender.closed:
        await _sender.close()
        logger.debug("Push gateway session closed")
    _sender = None
