# app/core/dispatch/delivery.py
"""
Best-effort event delivery through the injected Notifier.

A committed state change is never undone because an emit failed; callers
get a bool back and decide whether the failure matters to them.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from app.config import settings
from app.core.dispatch.ports import Notifier
from app.infra.metrics import AppMetrics

logger = logging.getLogger(__name__)


async def deliver(
    notifier: Notifier,
    target_user_id: str | None,
    event: str,
    payload: dict[str, Any],
    *,
    timeout: float | None = None,
) -> bool:
    """
    Emit ``event`` to one user, bounded by the emit timeout.

    Returns True on success, False if the channel raised or timed out.
    A missing target (e.g. no civilian requester) is a no-op returning False.
    """
    if not target_user_id:
        return False

    if timeout is None:
        timeout = settings.notification_emit_timeout_seconds

    try:
        await asyncio.wait_for(
            notifier.notify(target_user_id, event, payload),
            timeout=timeout,
        )
        return True
    except asyncio.TimeoutError:
        logger.warning(
            "Notification %s to %s timed out after %.1fs",
            event, target_user_id, timeout,
        )
    except Exception:
        logger.error(
            "Notification %s to %s failed",
            event, target_user_id,
            exc_info=True,
        )

    AppMetrics.event_emit_failed(event)
    return False
