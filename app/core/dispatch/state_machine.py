# app/core/dispatch/state_machine.py
"""
Assignment State Machine.

Volunteer-driven transitions on a single Response:

    notified -> accepted -> (en_route) -> (arrived) -> completed
    failed is reachable from notified, accepted, en_route and arrived

completed and failed are terminal. Every transition is checked in the
same order:

    validation -> existence -> capability -> status -> conditional write

The write is a compare-and-set guarded by the status observed during the
check, so two racing requests cannot both succeed; the loser gets
ConflictError. Task counters are written in the same transaction as
the status change.

The admin override (``admin_assign``) is a separate entry point with its
own authorization and preconditions.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from app.core.dispatch import messages
from app.core.dispatch.authorization import ADMIN_ASSIGN, RESPOND_TO_ASSIGNMENT, authorize
from app.core.dispatch.delivery import deliver
from app.core.dispatch.domain import (
    ACTIVE_STATUSES,
    ASSIGNABLE_STATUSES,
    AssignmentResult,
    Crisis,
    CrisisStatus,
    Response,
    ResponseStatus,
    UserRole,
)
from app.core.dispatch.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from app.core.dispatch.ports import (
    AsyncCrisisStore,
    AsyncDispatchUnitOfWork,
    AsyncResponseStore,
    AsyncUserStore,
    Notifier,
)
from app.infra.audit_log import audit_event
from app.infra.logging_config import LogContext
from app.infra.metrics import AppMetrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transition:
    verb: str
    sources: frozenset[ResponseStatus]
    target: ResponseStatus
    counter: Optional[str] = None


TRANSITIONS: dict[str, Transition] = {
    "accept": Transition(
        "accept",
        frozenset({ResponseStatus.NOTIFIED}),
        ResponseStatus.ACCEPTED,
    ),
    "start_route": Transition(
        "mark en route",
        frozenset({ResponseStatus.ACCEPTED}),
        ResponseStatus.EN_ROUTE,
    ),
    "arrive": Transition(
        "mark arrived",
        frozenset({ResponseStatus.ACCEPTED, ResponseStatus.EN_ROUTE}),
        ResponseStatus.ARRIVED,
    ),
    "complete": Transition(
        "complete",
        frozenset({ResponseStatus.ACCEPTED, ResponseStatus.EN_ROUTE, ResponseStatus.ARRIVED}),
        ResponseStatus.COMPLETED,
        counter="completed_tasks",
    ),
    "fail": Transition(
        "fail/reject",
        frozenset({
            ResponseStatus.NOTIFIED,
            ResponseStatus.ACCEPTED,
            ResponseStatus.EN_ROUTE,
            ResponseStatus.ARRIVED,
        }),
        ResponseStatus.FAILED,
        counter="failed_tasks",
    ),
}

# Progress statuses a volunteer may report, mapped to their operation
_PROGRESS_OPS = {
    ResponseStatus.EN_ROUTE: "start_route",
    ResponseStatus.ARRIVED: "arrive",
}

# Pair states from which an admin may force an assignment
_ADMIN_OVERRIDABLE = frozenset({None, ResponseStatus.NOTIFIED, ResponseStatus.FAILED})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AssignmentStateMachine:
    def __init__(
        self,
        *,
        responses: AsyncResponseStore,
        crises: AsyncCrisisStore,
        users: AsyncUserStore,
        uow: AsyncDispatchUnitOfWork,
        notifier: Notifier,
    ) -> None:
        self.responses = responses
        self.crises = crises
        self.users = users
        self.uow = uow
        self.notifier = notifier

    # ------------------------------------------------------------------
    # Volunteer-driven transitions
    # ------------------------------------------------------------------

    async def accept(self, response_id: str, actor_id: str) -> Response:
        return await self._apply("accept", response_id, actor_id)

    async def complete(self, response_id: str, actor_id: str) -> Response:
        return await self._apply("complete", response_id, actor_id)

    async def fail(self, response_id: str, actor_id: str, reason: Optional[str]) -> Response:
        if not isinstance(reason, str) or not reason.strip():
            raise ValidationError("A reason is required when failing/rejecting an assignment.")
        return await self._apply("fail", response_id, actor_id, failed_reason=reason.strip())

    async def update_progress(
        self,
        response_id: str,
        actor_id: str,
        status: ResponseStatus | str,
    ) -> Response:
        """Volunteer reports being en route or on site."""
        try:
            status = ResponseStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown progress status: {status}") from None

        op = _PROGRESS_OPS.get(status)
        if op is None:
            raise ValidationError("Progress status must be one of: en_route, arrived")
        return await self._apply(op, response_id, actor_id)

    async def _apply(
        self,
        op: str,
        response_id: str,
        actor_id: str,
        *,
        failed_reason: Optional[str] = None,
    ) -> Response:
        transition = TRANSITIONS[op]
        log = LogContext(logger, actor_id=actor_id, response_id=response_id)

        response = await self.responses.get(response_id)
        if response is None:
            raise NotFoundError("Assignment (Response) not found")

        await authorize(
            self.users,
            actor_id,
            RESPOND_TO_ASSIGNMENT,
            response,
            action=f"{transition.verb} this assignment",
        )

        observed = response.status
        if observed not in transition.sources:
            AppMetrics.transition(op, "rejected")
            log.info("Rejected %s: status is %s", op, observed.value)
            raise InvalidStateError(
                f"Cannot {transition.verb} assignment with status: {observed.value}"
            )

        # The status change and its profile counter commit together
        async with self.uow.transaction(f"assignment.{op}") as tx:
            updated = await tx.responses.transition(
                response_id,
                expected=(observed,),
                target=transition.target,
                at=_utcnow(),
                failed_reason=failed_reason,
            )
            if updated is None:
                AppMetrics.transition(op, "conflict")
                log.warning("Lost race on %s (expected %s)", op, observed.value)
                raise ConflictError(
                    "Assignment was modified by another request. Reload and try again."
                )

            if transition.counter:
                await tx.profiles.increment_counter(updated.volunteer_id, transition.counter)

        AppMetrics.transition(op, "ok")
        audit_event(
            f"response.{op}",
            actor_id=actor_id,
            crisis_id=updated.crisis_id,
            response_id=updated.id,
            detail=f"{observed.value} -> {updated.status.value}",
            extra={"failed_reason": failed_reason} if failed_reason else None,
        )

        await self._announce(updated)
        return updated

    async def _announce(self, response: Response) -> None:
        """Confirm to the volunteer and inform the civilian requester."""
        await deliver(
            self.notifier,
            response.volunteer_id,
            messages.ASSIGNMENT_UPDATE,
            messages.assignment_update_payload(messages.volunteer_confirmation(response), response),
        )

        if not response.civilian_requester_id:
            return

        crisis = await self._crisis_for_message(response.crisis_id)
        if response.status == ResponseStatus.ACCEPTED:
            event, payload = messages.VOLUNTEER_ACCEPTED, messages.volunteer_accepted_payload(crisis, response)
        elif response.status in (ResponseStatus.EN_ROUTE, ResponseStatus.ARRIVED):
            event, payload = messages.VOLUNTEER_PROGRESS, messages.volunteer_progress_payload(crisis, response)
        elif response.status == ResponseStatus.COMPLETED:
            event, payload = messages.TASK_COMPLETED, messages.task_completed_payload(crisis, response)
        else:
            event, payload = messages.TASK_FAILED, messages.task_failed_payload(crisis, response)

        await deliver(self.notifier, response.civilian_requester_id, event, payload)

    async def _crisis_for_message(self, crisis_id: str) -> Optional[Crisis]:
        # Only used for message text; a lookup failure falls back to a generic label
        try:
            return await self.crises.get_crisis(crisis_id)
        except Exception:
            logger.warning("Crisis %s lookup failed while building message", crisis_id, exc_info=True)
            return None

    # ------------------------------------------------------------------
    # Admin override
    # ------------------------------------------------------------------

    async def admin_assign(
        self,
        crisis_id: str,
        volunteer_id: str,
        admin_id: str,
    ) -> AssignmentResult:
        """
        Assign ``volunteer_id`` to ``crisis_id`` directly, skipping the
        volunteer accept step.

        The pair's Response goes straight to ``accepted`` and the crisis to
        ``assigned``. A Response that is already being worked or is completed
        is never overwritten.

        Both writes share one transaction; if the crisis moves on in between,
        neither is kept.
        """
        if not crisis_id or not volunteer_id:
            raise ValidationError("Both crisis_id and volunteer_id are required.")

        log = LogContext(logger, actor_id=admin_id, crisis_id=crisis_id, volunteer_id=volunteer_id)

        await authorize(self.users, admin_id, ADMIN_ASSIGN, action="assign volunteers")

        crisis, target = await asyncio.gather(
            self.crises.get_crisis(crisis_id),
            self.users.get_user(volunteer_id),
        )
        if crisis is None:
            raise NotFoundError(f"Crisis not found with ID: {crisis_id}")
        if target is None:
            raise NotFoundError(f"Volunteer user not found with ID: {volunteer_id}")

        if target.role != UserRole.VOLUNTEER:
            raise ValidationError(f"User {target.name or volunteer_id} is not registered as a volunteer.")

        if crisis.status not in ASSIGNABLE_STATUSES:
            raise InvalidStateError(f"Crisis cannot be assigned (current status: {crisis.status.value}).")

        if crisis.status == CrisisStatus.ASSIGNED and crisis.assigned_volunteer_id == volunteer_id:
            raise InvalidStateError(f"Volunteer {target.name} is already assigned to this crisis.")

        existing = await self.responses.find(crisis_id, volunteer_id)
        observed = existing.status if existing else None
        if observed not in _ADMIN_OVERRIDABLE:
            AppMetrics.transition("admin_assign", "rejected")
            if observed in ACTIVE_STATUSES:
                detail = f"Volunteer {target.name} is already working this crisis (status: {observed.value})."
            else:
                detail = f"Cannot assign volunteer: assignment is already {observed.value}."
            raise InvalidStateError(detail)

        previous_volunteer_id = crisis.assigned_volunteer_id

        # Raising inside the block rolls the accepted Response back
        async with self.uow.transaction("assignment.admin_assign") as tx:
            response = await tx.responses.upsert_accepted(
                crisis_id,
                volunteer_id,
                expected=observed,
                at=_utcnow(),
            )
            if response is None:
                AppMetrics.transition("admin_assign", "conflict")
                log.warning("Admin assign lost race (expected %s)", observed.value if observed else "absent")
                raise ConflictError("Assignment was modified by another request. Reload and try again.")

            updated_crisis = await tx.crises.update_status(
                crisis_id,
                CrisisStatus.ASSIGNED,
                expected=ASSIGNABLE_STATUSES,
                assigned_volunteer_id=volunteer_id,
            )
            if updated_crisis is None:
                AppMetrics.transition("admin_assign", "conflict")
                log.warning("Crisis left assignable states during assignment; rolling back response")
                raise ConflictError("Crisis status changed during assignment. Reload and try again.")

        AppMetrics.transition("admin_assign", "ok")
        audit_event(
            "crisis.assign",
            actor_id=admin_id,
            crisis_id=crisis_id,
            response_id=response.id,
            detail=f"volunteer={volunteer_id} previous={previous_volunteer_id or '-'}",
        )

        await deliver(
            self.notifier,
            volunteer_id,
            messages.NEW_ASSIGNMENT,
            messages.admin_assignment_payload(updated_crisis, response),
        )

        if previous_volunteer_id and previous_volunteer_id != volunteer_id:
            await self._announce_reassignment(updated_crisis, previous_volunteer_id)
        else:
            previous_volunteer_id = None

        log.info("Admin assigned volunteer %s", target.name)
        return AssignmentResult(
            response=response,
            crisis=updated_crisis,
            previous_volunteer_id=previous_volunteer_id,
        )

    async def _announce_reassignment(self, crisis: Crisis, previous_volunteer_id: str) -> None:
        try:
            previous = await self.responses.find(crisis.id, previous_volunteer_id)
        except Exception:
            logger.warning("Could not load previous assignee response", exc_info=True)
            previous = None

        await deliver(
            self.notifier,
            previous_volunteer_id,
            messages.ASSIGNMENT_UPDATE,
            messages.reassignment_payload(crisis, previous.id if previous else None),
        )
