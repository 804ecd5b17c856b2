# app/core/dispatch/ports.py
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncContextManager, Iterable, Optional, Protocol

from app.core.dispatch.domain import (
    Crisis,
    CrisisStatus,
    Rating,
    Response,
    ResponseStatus,
    User,
    UserRole,
    VolunteerProfile,
)


# ============================================================================
# EXTERNAL COLLABORATORS (read mostly)
# ============================================================================

class AsyncUserStore(Protocol):
    async def get_user(self, user_id: str) -> Optional[User]: ...
    async def get_users(self, user_ids: Iterable[str]) -> list[User]: ...
    async def count_by_role(self, role: UserRole) -> int: ...


class AsyncCrisisStore(Protocol):
    async def get_crisis(self, crisis_id: str) -> Optional[Crisis]: ...

    async def update_status(
        self,
        crisis_id: str,
        status: CrisisStatus,
        *,
        expected: Iterable[CrisisStatus],
        assigned_volunteer_id: Optional[str] = None,
    ) -> Optional[Crisis]:
        """
        Conditionally move a crisis to ``status``.

        Returns the updated crisis, or None when the current status is not
        one of ``expected`` (nothing is written in that case).
        """
        ...


class AsyncVolunteerProfileStore(Protocol):
    async def find_available(self) -> list[str]: ...
    async def get_profile(self, user_id: str) -> Optional[VolunteerProfile]: ...

    async def upsert_profile(
        self,
        user_id: str,
        *,
        skills: Optional[list[str]] = None,
        availability: Optional[bool] = None,
    ) -> VolunteerProfile: ...

    async def increment_counter(self, user_id: str, counter: str) -> None:
        """Atomically add 1 to ``completed_tasks`` or ``failed_tasks``."""
        ...

    async def record_rating(self, user_id: str, score: int) -> VolunteerProfile:
        """Fold one score into the running average in a single write."""
        ...


# ============================================================================
# RESPONSE / RATING STORES (owned by the core)
# ============================================================================

class AsyncResponseStore(Protocol):
    async def get(self, response_id: str) -> Optional[Response]: ...
    async def find(self, crisis_id: str, volunteer_id: str) -> Optional[Response]: ...

    async def find_or_create(
        self,
        crisis_id: str,
        volunteer_id: str,
        civilian_requester_id: Optional[str],
    ) -> tuple[Response, bool]:
        """
        Atomic find-or-create for a (crisis, volunteer) pair.

        True  => a new ``notified`` response was inserted
        False => an existing response was returned unchanged
        """
        ...

    async def transition(
        self,
        response_id: str,
        *,
        expected: Iterable[ResponseStatus],
        target: ResponseStatus,
        at: Optional[datetime] = None,
        failed_reason: Optional[str] = None,
    ) -> Optional[Response]:
        """
        Compare-and-set a response status.

        Returns the updated response, or None when the stored status is no
        longer one of ``expected``.
        """
        ...

    async def upsert_accepted(
        self,
        crisis_id: str,
        volunteer_id: str,
        *,
        expected: Optional[ResponseStatus],
        at: datetime,
    ) -> Optional[Response]:
        """
        Force the pair's response to ``accepted``.

        ``expected=None`` means the pair must not have a response yet.
        Returns None if the stored state no longer matches ``expected``.
        """
        ...

    async def list_for_volunteer(self, volunteer_id: str) -> list[Response]: ...


class AsyncRatingStore(Protocol):
    async def create(
        self,
        *,
        response_id: str,
        rater_id: str,
        rated_volunteer_id: str,
        score: int,
        crisis_id: Optional[str] = None,
        comment: Optional[str] = None,
        photo_proof_url: Optional[str] = None,
        location: Optional[str] = None,
    ) -> Optional[Rating]:
        """Insert a rating; None if (response, rater) already rated."""
        ...

    async def list_for_volunteer(self, volunteer_id: str) -> list[Rating]: ...


# ============================================================================
# UNIT OF WORK
# ============================================================================

@dataclass
class TransactionStores:
    """Store views that share one open transaction."""
    responses: AsyncResponseStore
    crises: AsyncCrisisStore
    profiles: AsyncVolunteerProfileStore
    ratings: AsyncRatingStore


class AsyncDispatchUnitOfWork(Protocol):
    def transaction(self, operation: str = "dispatch") -> AsyncContextManager[TransactionStores]:
        """
        Writes made through the yielded stores commit together when the
        block exits normally and are all rolled back if it raises.
        """
        ...


# ============================================================================
# NOTIFICATION CHANNEL
# ============================================================================

class Notifier(Protocol):
    async def notify(self, target_user_id: str, event: str, payload: dict[str, Any]) -> None:
        """Fire-and-forget delivery to one user's room. Raises on transport failure."""
        ...
