# app/core/dispatch/domain.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


# ============================================================================
# STATUS ENUMS
# ============================================================================

class UserRole(str, Enum):
    CIVILIAN = "civilian"
    VOLUNTEER = "volunteer"
    ADMIN = "admin"


class CrisisStatus(str, Enum):
    NEW = "new"
    VERIFIED = "verified"
    NOTIFICATIONS_SENT = "notifications_sent"
    ASSIGNED = "assigned"
    RESOLVED = "resolved"
    CLOSED = "closed"


class ResponseStatus(str, Enum):
    NOTIFIED = "notified"
    ACCEPTED = "accepted"
    EN_ROUTE = "en_route"
    ARRIVED = "arrived"
    COMPLETED = "completed"
    FAILED = "failed"


# Crisis statuses that still accept civilian help requests
HELP_REQUESTABLE_STATUSES = frozenset({
    CrisisStatus.NEW,
    CrisisStatus.VERIFIED,
    CrisisStatus.NOTIFICATIONS_SENT,
})

# Crisis statuses an admin may (re)assign from
ASSIGNABLE_STATUSES = frozenset({
    CrisisStatus.NEW,
    CrisisStatus.VERIFIED,
    CrisisStatus.NOTIFICATIONS_SENT,
    CrisisStatus.ASSIGNED,
})

TERMINAL_STATUSES = frozenset({ResponseStatus.COMPLETED, ResponseStatus.FAILED})

# Responses in these statuses are held by a volunteer who is working the crisis
ACTIVE_STATUSES = frozenset({
    ResponseStatus.ACCEPTED,
    ResponseStatus.EN_ROUTE,
    ResponseStatus.ARRIVED,
})


# ============================================================================
# ENTITIES
# ============================================================================

@dataclass
class GeoPoint:
    longitude: float
    latitude: float


@dataclass
class User:
    """Read-only view of a user owned by the credential store."""
    id: str
    name: str
    role: UserRole
    location: Optional[GeoPoint] = None

    def has_role(self, *roles: UserRole) -> bool:
        return self.role in roles


@dataclass
class Crisis:
    id: str
    disaster_type: Optional[str]
    severity: Optional[int]
    status: CrisisStatus
    description: Optional[str] = None
    address: Optional[str] = None
    location: Optional[GeoPoint] = None
    assigned_volunteer_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def accepts_help_requests(self) -> bool:
        return self.status in HELP_REQUESTABLE_STATUSES

    @property
    def is_assignable(self) -> bool:
        return self.status in ASSIGNABLE_STATUSES


@dataclass
class VolunteerProfile:
    user_id: str
    skills: list[str] = field(default_factory=list)
    availability: bool = False
    rating: float = 0.0
    rating_sum: int = 0
    rating_count: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    updated_at: Optional[datetime] = None


@dataclass
class Response:
    """One volunteer's engagement with one crisis."""
    id: str
    crisis_id: str
    volunteer_id: str
    status: ResponseStatus
    civilian_requester_id: Optional[str] = None
    accepted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_reason: Optional[str] = None
    previous_status: Optional[ResponseStatus] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_owned_by(self, user_id: str) -> bool:
        return self.volunteer_id == user_id

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "crisis_id": self.crisis_id,
            "volunteer_id": self.volunteer_id,
            "civilian_requester_id": self.civilian_requester_id,
            "status": self.status.value,
            "accepted_at": _iso(self.accepted_at),
            "completed_at": _iso(self.completed_at),
            "failed_reason": self.failed_reason,
            "previous_status": self.previous_status.value if self.previous_status else None,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class Rating:
    id: str
    response_id: str
    rater_id: str
    rated_volunteer_id: str
    score: int
    crisis_id: Optional[str] = None
    comment: Optional[str] = None
    photo_proof_url: Optional[str] = None
    location: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "response_id": self.response_id,
            "rater_id": self.rater_id,
            "rated_volunteer_id": self.rated_volunteer_id,
            "crisis_id": self.crisis_id,
            "score": self.score,
            "comment": self.comment,
            "photo_proof_url": self.photo_proof_url,
            "location": self.location,
            "created_at": _iso(self.created_at),
        }


# ============================================================================
# OPERATION RESULTS
# ============================================================================

@dataclass
class EligibleVolunteer:
    volunteer_id: str
    name: str


@dataclass
class HelpRequestResult:
    crisis_id: str
    notified_count: int
    eligible_count: int
    response_ids: list[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        return f"Help request sent. {self.notified_count} volunteers have been notified."


@dataclass
class AssignmentResult:
    """Outcome of an admin override: the upserted response and the crisis after assignment."""
    response: Response
    crisis: Crisis
    previous_volunteer_id: Optional[str] = None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
