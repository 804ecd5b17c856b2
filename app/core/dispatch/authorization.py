# app/core/dispatch/authorization.py
"""
Capability checks for dispatch operations.

Every operation declares the roles allowed to invoke it and, where the
operation targets a Response, whose reference on that Response the actor
must match.  ``check_capability`` is pure; ``authorize`` resolves the
actor from the user store first.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Optional

from app.core.dispatch.domain import Response, User, UserRole
from app.core.dispatch.errors import ForbiddenError, NotFoundError
from app.core.dispatch.ports import AsyncUserStore


@dataclass(frozen=True)
class Capability:
    name: str
    roles: frozenset[UserRole]
    owner: Optional[Callable[[Response], Optional[str]]] = None
    # Roles that satisfy the ownership predicate without matching it
    owner_bypass: frozenset[UserRole] = field(default_factory=frozenset)


REQUEST_HELP = Capability("request_help", frozenset({UserRole.CIVILIAN}))

RESPOND_TO_ASSIGNMENT = Capability(
    "respond_to_assignment",
    frozenset({UserRole.VOLUNTEER}),
    owner=lambda r: r.volunteer_id,
)

ADMIN_ASSIGN = Capability("admin_assign", frozenset({UserRole.ADMIN}))

MANAGE_PROFILE = Capability("manage_profile", frozenset({UserRole.VOLUNTEER}))

SUBMIT_RATING = Capability(
    "submit_rating",
    frozenset({UserRole.CIVILIAN, UserRole.ADMIN}),
    owner=lambda r: r.civilian_requester_id,
    owner_bypass=frozenset({UserRole.ADMIN}),
)

VIEW_RATINGS = Capability("view_ratings", frozenset({UserRole.ADMIN}))


def check_capability(
    actor: User,
    capability: Capability,
    resource: Optional[Response] = None,
    *,
    action: str | None = None,
) -> None:
    """
    Raise ForbiddenError unless ``actor`` holds ``capability`` on ``resource``.

    ``action`` is the human-readable verb phrase used in the error message
    (e.g. "accept this assignment").
    """
    action = action or capability.name.replace("_", " ")

    if actor.role not in capability.roles:
        raise ForbiddenError(f"Role '{actor.role.value}' is not authorized to {action}")

    if capability.owner is None or resource is None:
        return

    if actor.role in capability.owner_bypass:
        return

    owner_id = capability.owner(resource)
    if owner_id is None or owner_id != actor.id:
        raise ForbiddenError(f"Not authorized to {action}")


async def authorize(
    users: AsyncUserStore,
    actor_id: str,
    capability: Capability,
    resource: Optional[Response] = None,
    *,
    action: str | None = None,
) -> User:
    """Load the acting user and check ``capability``. Returns the actor."""
    actor = await users.get_user(actor_id)
    if actor is None:
        raise NotFoundError(f"User not found with ID: {actor_id}")
    check_capability(actor, capability, resource, action=action)
    return actor
