# app/core/dispatch/notifier.py
"""
Notification Dispatcher.

A civilian help request fans out to every eligible volunteer. Each
volunteer is processed independently under a bounded semaphore:

    find-or-create Response (notified) -> emit new_assignment_notification

A failure for one volunteer is logged and excluded from the count; it
never aborts the rest of the batch.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from app.config import settings
from app.core.dispatch import messages
from app.core.dispatch.authorization import REQUEST_HELP, authorize
from app.core.dispatch.delivery import deliver
from app.core.dispatch.domain import (
    Crisis,
    CrisisStatus,
    EligibleVolunteer,
    HelpRequestResult,
)
from app.core.dispatch.eligibility import EligibilityResolver
from app.core.dispatch.errors import InvalidStateError, NoVolunteersAvailableError, NotFoundError
from app.core.dispatch.ports import AsyncCrisisStore, AsyncResponseStore, AsyncUserStore, Notifier
from app.infra.logging_config import LogContext
from app.infra.metrics import AppMetrics

logger = logging.getLogger(__name__)

# Crisis statuses advanced to notifications_sent after a successful fan-out
_ADVANCE_FROM = (CrisisStatus.NEW, CrisisStatus.VERIFIED)


class NotificationDispatcher:
    def __init__(
        self,
        *,
        crises: AsyncCrisisStore,
        users: AsyncUserStore,
        responses: AsyncResponseStore,
        eligibility: EligibilityResolver,
        notifier: Notifier,
        fanout_concurrency: Optional[int] = None,
        mark_crisis_notified: Optional[bool] = None,
    ) -> None:
        self.crises = crises
        self.users = users
        self.responses = responses
        self.eligibility = eligibility
        self.notifier = notifier
        self.fanout_concurrency = max(1, fanout_concurrency or settings.dispatch_fanout_concurrency)
        self.mark_crisis_notified = (
            settings.dispatch_mark_crisis_notified
            if mark_crisis_notified is None else mark_crisis_notified
        )

    async def request_help(self, crisis_id: str, civilian_id: str) -> HelpRequestResult:
        """
        Notify every available volunteer about ``crisis_id``.

        Raises:
            NotFoundError: crisis or requesting user does not exist
            ForbiddenError: requester is not a civilian
            InvalidStateError: crisis no longer accepts help requests
            NoVolunteersAvailableError: no volunteer is registered at all
        """
        log = LogContext(logger, actor_id=civilian_id, crisis_id=crisis_id)

        crisis = await self.crises.get_crisis(crisis_id)
        if crisis is None:
            raise NotFoundError("Crisis not found")

        await authorize(self.users, civilian_id, REQUEST_HELP, action="request help")

        if not crisis.accepts_help_requests:
            log.warning("Help requested for crisis in status %s", crisis.status.value)
            raise InvalidStateError(
                f"Help cannot be requested for this crisis (current status: {crisis.status.value})."
            )

        if await self.eligibility.count_registered_volunteers() == 0:
            log.warning("No registered volunteers in the system")
            raise NoVolunteersAvailableError()

        eligible = await self.eligibility.resolve_eligible_volunteers(crisis_id)
        AppMetrics.help_requested()

        semaphore = asyncio.Semaphore(self.fanout_concurrency)

        async def _bounded(volunteer: EligibleVolunteer) -> Optional[str]:
            async with semaphore:
                return await self._notify_volunteer(crisis, volunteer, civilian_id)

        with AppMetrics.track_fanout_time():
            outcomes = await asyncio.gather(*(_bounded(v) for v in eligible))

        response_ids = [rid for rid in outcomes if rid is not None]
        result = HelpRequestResult(
            crisis_id=crisis_id,
            notified_count=len(response_ids),
            eligible_count=len(eligible),
            response_ids=response_ids,
        )

        log.info(
            "Help request fan-out done: %d/%d volunteers notified",
            result.notified_count, result.eligible_count,
        )

        if result.notified_count and self.mark_crisis_notified and crisis.status in _ADVANCE_FROM:
            await self._mark_notified(crisis, log)

        return result

    async def _notify_volunteer(
        self,
        crisis: Crisis,
        volunteer: EligibleVolunteer,
        civilian_id: str,
    ) -> Optional[str]:
        """Process one volunteer. Returns the response id, or None on failure."""
        log = LogContext(logger, crisis_id=crisis.id, volunteer_id=volunteer.volunteer_id)

        try:
            response, created = await self.responses.find_or_create(
                crisis.id, volunteer.volunteer_id, civilian_id,
            )
        except Exception:
            log.error("Could not record response for volunteer %s", volunteer.name, exc_info=True)
            AppMetrics.volunteer_notify_failed()
            return None

        if created:
            AppMetrics.response_created()
            log.info("Created response %s", response.id)
        else:
            log.info("Response %s already exists (status=%s), re-notifying", response.id, response.status.value)

        delivered = await deliver(
            self.notifier,
            volunteer.volunteer_id,
            messages.NEW_ASSIGNMENT,
            messages.help_request_payload(crisis, response),
        )
        if not delivered:
            AppMetrics.volunteer_notify_failed()
            return None

        AppMetrics.volunteer_notified()
        return response.id

    async def _mark_notified(self, crisis: Crisis, log: LogContext) -> None:
        # Best effort: the notifications already went out
        try:
            updated = await self.crises.update_status(
                crisis.id,
                CrisisStatus.NOTIFICATIONS_SENT,
                expected=_ADVANCE_FROM,
            )
        except Exception:
            log.error("Failed to mark crisis as notifications_sent", exc_info=True)
            return

        if updated is None:
            log.debug("Crisis status moved on concurrently, left unchanged")
