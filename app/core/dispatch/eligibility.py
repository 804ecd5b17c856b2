# app/core/dispatch/eligibility.py
"""
Eligibility Resolver.

Candidates for a crisis are every volunteer whose profile is flagged
available. Skills and distance are not considered.
"""
from __future__ import annotations

import logging

from app.core.dispatch.domain import EligibleVolunteer, UserRole
from app.core.dispatch.errors import NotFoundError
from app.core.dispatch.ports import AsyncCrisisStore, AsyncUserStore, AsyncVolunteerProfileStore

logger = logging.getLogger(__name__)


class EligibilityResolver:
    def __init__(
        self,
        *,
        crises: AsyncCrisisStore,
        profiles: AsyncVolunteerProfileStore,
        users: AsyncUserStore,
    ) -> None:
        self.crises = crises
        self.profiles = profiles
        self.users = users

    async def resolve_eligible_volunteers(self, crisis_id: str) -> list[EligibleVolunteer]:
        """
        Return id and name of every available volunteer.

        Raises NotFoundError if the crisis does not exist. An empty list means
        nobody is available right now and is not an error.
        """
        crisis = await self.crises.get_crisis(crisis_id)
        if crisis is None:
            raise NotFoundError("Crisis not found")

        available_ids = await self.profiles.find_available()
        if not available_ids:
            logger.info("No available volunteers for crisis %s", crisis_id)
            return []

        users = await self.users.get_users(available_ids)
        # A profile whose user is gone, or whose role changed, is skipped
        eligible = [
            EligibleVolunteer(volunteer_id=u.id, name=u.name)
            for u in users
            if u.role == UserRole.VOLUNTEER
        ]

        logger.debug(
            "Resolved %d eligible volunteers for crisis %s (%d available profiles)",
            len(eligible), crisis_id, len(available_ids),
        )
        return eligible

    async def count_registered_volunteers(self) -> int:
        return await self.users.count_by_role(UserRole.VOLUNTEER)
