# app/infra/audit_log.py
"""
Audit logging for dispatch decisions.

Admin overrides, volunteer transitions and ratings are recorded to a
dedicated logger named "audit" (separate from the application log) so
they can be routed to their own sink via logging configuration.
"""
from __future__ import annotations

import logging
from typing import Any

_audit_logger = logging.getLogger("audit")


def audit_event(
    action: str,
    *,
    actor_id: str | None = None,
    crisis_id: str | None = None,
    response_id: str | None = None,
    detail: str = "",
    extra: dict[str, Any] | None = None,
) -> None:
    """
    Record an audit event.

    Args:
        action: Action name (e.g., "crisis.assign", "response.accept")
        actor_id: User who performed the action
        crisis_id: Crisis affected (if applicable)
        response_id: Response affected (if applicable)
        detail: Human-readable detail
        extra: Additional structured context
    """
    record = {
        "audit_action": action,
        "actor_id": actor_id or "",
        "crisis_id": crisis_id or "",
        "response_id": response_id or "",
        "detail": detail,
    }
    if extra:
        record.update(extra)

    _audit_logger.info(
        f"AUDIT: {action} actor={actor_id or '-'} crisis={crisis_id or '-'} "
        f"response={response_id or '-'} {detail}",
        extra=record,
    )
