# app/core/dispatch/messages.py
"""
Notification events emitted by the dispatch core.

Builders return plain dicts (string keys, primitive or id values) so any
channel can serialize them without knowing the domain types.
"""
from __future__ import annotations

from typing import Any

from app.core.dispatch.domain import Crisis, Rating, Response, ResponseStatus, VolunteerProfile

NEW_ASSIGNMENT = "new_assignment_notification"
ASSIGNMENT_UPDATE = "assignment_update"
VOLUNTEER_ACCEPTED = "volunteer_accepted"
VOLUNTEER_PROGRESS = "volunteer_progress"
TASK_COMPLETED = "task_completed"
TASK_FAILED = "task_failed"
NEW_RATING = "new_rating"
PROFILE_UPDATE = "volunteer_profile_update"

REASSIGNED = "reassigned"


def _crisis_label(crisis: Crisis | None) -> str:
    if crisis is None or not crisis.disaster_type:
        return "Unknown Type"
    return crisis.disaster_type


def help_request_payload(crisis: Crisis, response: Response) -> dict[str, Any]:
    return {
        "message": f"New crisis requires assistance! ({_crisis_label(crisis)})",
        "crisis_id": crisis.id,
        "crisis_type": crisis.disaster_type,
        "crisis_severity": crisis.severity,
        "response_id": response.id,
    }


def admin_assignment_payload(crisis: Crisis, response: Response) -> dict[str, Any]:
    return {
        "message": "An Administrator has assigned you to a crisis.",
        "crisis_id": crisis.id,
        "crisis_type": crisis.disaster_type,
        "crisis_severity": crisis.severity,
        "response_id": response.id,
    }


def reassignment_payload(crisis: Crisis, previous_response_id: str | None) -> dict[str, Any]:
    return {
        "message": (
            f"Your assignment for crisis {_crisis_label(crisis)} "
            f"(ID: {crisis.id[-6:]}) has been reassigned by an admin."
        ),
        "crisis_id": crisis.id,
        "response_id": previous_response_id,
        "status": REASSIGNED,
    }


def assignment_update_payload(message: str, response: Response) -> dict[str, Any]:
    return {
        "message": message,
        "response_id": response.id,
        "status": response.status.value,
        "crisis_id": response.crisis_id,
    }


def volunteer_confirmation(response: Response) -> str:
    """Confirmation text sent to the volunteer after their own transition."""
    if response.status == ResponseStatus.ACCEPTED:
        return "Assignment accepted successfully."
    if response.status == ResponseStatus.EN_ROUTE:
        return "Assignment marked as en route."
    if response.status == ResponseStatus.ARRIVED:
        return "Assignment marked as arrived."
    if response.status == ResponseStatus.COMPLETED:
        return "Assignment marked as completed!"
    if response.status == ResponseStatus.FAILED:
        return f"Assignment marked as failed/rejected. Reason: {response.failed_reason}"
    return f"Assignment status: {response.status.value}"


def volunteer_accepted_payload(crisis: Crisis | None, response: Response) -> dict[str, Any]:
    return {
        "message": f"A volunteer has accepted your request for {_crisis_label(crisis)}.",
        "response_id": response.id,
        "crisis_id": response.crisis_id,
        "volunteer_id": response.volunteer_id,
    }


def volunteer_progress_payload(crisis: Crisis | None, response: Response) -> dict[str, Any]:
    label = _crisis_label(crisis)
    if response.status == ResponseStatus.EN_ROUTE:
        message = f"The volunteer is on the way to help with {label}."
    else:
        message = f"The volunteer has arrived to help with {label}."
    return {
        "message": message,
        "response_id": response.id,
        "crisis_id": response.crisis_id,
        "status": response.status.value,
    }


def task_completed_payload(crisis: Crisis | None, response: Response) -> dict[str, Any]:
    return {
        "message": (
            f"The volunteer has completed the task for {_crisis_label(crisis)}. "
            "You can now rate their performance."
        ),
        "response_id": response.id,
        "crisis_id": response.crisis_id,
    }


def task_failed_payload(crisis: Crisis | None, response: Response) -> dict[str, Any]:
    """Outright rejection (was notified) and mid-task failure read differently."""
    label = _crisis_label(crisis)
    rejected = response.previous_status == ResponseStatus.NOTIFIED
    if rejected:
        message = (
            f"Your request for {label} could not be accepted by the volunteer. "
            f"Reason: {response.failed_reason}"
        )
    else:
        message = (
            f"The volunteer encountered an issue and could not complete the task for {label}. "
            f"Reason: {response.failed_reason}"
        )
    return {
        "message": message,
        "response_id": response.id,
        "crisis_id": response.crisis_id,
        "rejected": rejected,
        "previous_status": response.previous_status.value if response.previous_status else None,
    }


def new_rating_payload(rating: Rating) -> dict[str, Any]:
    return {
        "rating": rating.score,
        "comment": rating.comment,
        "crisis_id": rating.crisis_id,
        "response_id": rating.response_id,
    }


def profile_update_payload(profile: VolunteerProfile) -> dict[str, Any]:
    return {
        "message": "Your profile has been updated.",
        "availability": profile.availability,
        "skills": ",".join(profile.skills),
    }
