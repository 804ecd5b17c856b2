# app/core/dispatch/profiles.py
"""Volunteer self-service: profile and assignment list."""
from __future__ import annotations

import logging
from typing import Any, Optional

from app.core.dispatch import messages
from app.core.dispatch.authorization import MANAGE_PROFILE, authorize
from app.core.dispatch.delivery import deliver
from app.core.dispatch.domain import Response, VolunteerProfile
from app.core.dispatch.errors import NotFoundError, ValidationError
from app.core.dispatch.ports import (
    AsyncResponseStore,
    AsyncUserStore,
    AsyncVolunteerProfileStore,
    Notifier,
)

logger = logging.getLogger(__name__)


def normalize_skills(skills: Any) -> Optional[list[str]]:
    """
    Accept a comma-separated string or a list; drop blanks.

    None means "leave unchanged".
    """
    if skills is None:
        return None
    if isinstance(skills, str):
        items = skills.split(",")
    elif isinstance(skills, (list, tuple)):
        items = [str(s) for s in skills]
    else:
        raise ValidationError("Skills must be a comma-separated string or a list of strings.")
    return [s.strip() for s in items if s.strip()]


class VolunteerProfileService:
    def __init__(
        self,
        *,
        profiles: AsyncVolunteerProfileStore,
        responses: AsyncResponseStore,
        users: AsyncUserStore,
        notifier: Notifier,
    ) -> None:
        self.profiles = profiles
        self.responses = responses
        self.users = users
        self.notifier = notifier

    async def get_profile(self, volunteer_id: str) -> VolunteerProfile:
        await authorize(self.users, volunteer_id, MANAGE_PROFILE, action="view a volunteer profile")
        profile = await self.profiles.get_profile(volunteer_id)
        if profile is None:
            raise NotFoundError(
                "Volunteer profile details not yet created. Update your profile to create it."
            )
        return profile

    async def update_profile(
        self,
        volunteer_id: str,
        *,
        skills: Any = None,
        availability: Optional[bool] = None,
    ) -> VolunteerProfile:
        if availability is not None and not isinstance(availability, bool):
            raise ValidationError("Availability must be a boolean.")
        normalized = normalize_skills(skills)

        await authorize(self.users, volunteer_id, MANAGE_PROFILE, action="update a volunteer profile")

        profile = await self.profiles.upsert_profile(
            volunteer_id,
            skills=normalized,
            availability=availability,
        )
        logger.info(
            "Profile updated for volunteer %s (availability=%s, %d skills)",
            volunteer_id, profile.availability, len(profile.skills),
        )

        await deliver(
            self.notifier,
            volunteer_id,
            messages.PROFILE_UPDATE,
            messages.profile_update_payload(profile),
        )
        return profile

    async def list_assignments(self, volunteer_id: str) -> list[Response]:
        """The volunteer's responses, newest first."""
        await authorize(self.users, volunteer_id, MANAGE_PROFILE, action="view assignments")
        return await self.responses.list_for_volunteer(volunteer_id)
