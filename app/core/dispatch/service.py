# app/core/dispatch/service.py
"""
Wiring for the dispatch core.

``DispatchService`` groups the components that share one set of stores and
one notification channel. Route handlers call ``get_dispatch_service()``;
tests build a ``DispatchService`` directly from fakes.
"""
from __future__ import annotations

from dataclasses import dataclass

from app.core.dispatch.eligibility import EligibilityResolver
from app.core.dispatch.notifier import NotificationDispatcher
from app.core.dispatch.ports import (
    AsyncCrisisStore,
    AsyncDispatchUnitOfWork,
    AsyncRatingStore,
    AsyncResponseStore,
    AsyncUserStore,
    AsyncVolunteerProfileStore,
    Notifier,
)
from app.core.dispatch.profiles import VolunteerProfileService
from app.core.dispatch.ratings import RatingGate
from app.core.dispatch.state_machine import AssignmentStateMachine


@dataclass
class DispatchService:
    eligibility: EligibilityResolver
    dispatcher: NotificationDispatcher
    assignments: AssignmentStateMachine
    ratings: RatingGate
    profiles: VolunteerProfileService

    @classmethod
    def build(
        cls,
        *,
        users: AsyncUserStore,
        crises: AsyncCrisisStore,
        profiles: AsyncVolunteerProfileStore,
        responses: AsyncResponseStore,
        ratings: AsyncRatingStore,
        uow: AsyncDispatchUnitOfWork,
        notifier: Notifier,
        fanout_concurrency: int | None = None,
        mark_crisis_notified: bool | None = None,
    ) -> "DispatchService":
        eligibility = EligibilityResolver(crises=crises, profiles=profiles, users=users)
        return cls(
            eligibility=eligibility,
            dispatcher=NotificationDispatcher(
                crises=crises,
                users=users,
                responses=responses,
                eligibility=eligibility,
                notifier=notifier,
                fanout_concurrency=fanout_concurrency,
                mark_crisis_notified=mark_crisis_notified,
            ),
            assignments=AssignmentStateMachine(
                responses=responses,
                crises=crises,
                users=users,
                uow=uow,
                notifier=notifier,
            ),
            ratings=RatingGate(
                responses=responses,
                ratings=ratings,
                users=users,
                uow=uow,
                notifier=notifier,
            ),
            profiles=VolunteerProfileService(
                profiles=profiles,
                responses=responses,
                users=users,
                notifier=notifier,
            ),
        )


# Global singleton
_service: DispatchService | None = None


def get_dispatch_service() -> DispatchService:
    """Production wiring: Postgres stores and the configured notification channel."""
    global _service
    if _service is None:
        from app.infra.notification_channels import get_notification_channel
        from app.infra.pg_crisis_repo_async import get_crisis_repo
        from app.infra.pg_rating_repo_async import get_rating_repo
        from app.infra.pg_response_repo_async import get_response_repo
        from app.infra.pg_uow_async import get_unit_of_work
        from app.infra.pg_user_repo_async import get_user_repo
        from app.infra.pg_volunteer_repo_async import get_volunteer_profile_repo

        _service = DispatchService.build(
            users=get_user_repo(),
            crises=get_crisis_repo(),
            profiles=get_volunteer_profile_repo(),
            responses=get_response_repo(),
            ratings=get_rating_repo(),
            uow=get_unit_of_work(),
            notifier=get_notification_channel(),
        )
    return _service


def reset_dispatch_service() -> None:
    """Drop the cached service (tests, settings reload)."""
    global _service
    _service = None
