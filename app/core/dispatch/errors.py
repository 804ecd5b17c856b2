# app/core/dispatch/errors.py
"""
Typed domain errors for the dispatch core.

Each error maps to a specific HTTP status code.  The transport layer
catches ``DispatchError`` subtypes and converts them to ``HTTPException``
without embedding business logic in the route handlers.
"""
from __future__ import annotations


class DispatchError(Exception):
    """Base class for all dispatch domain errors."""

    status_code: int = 500
    code: str = "dispatch_error"

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


class NotFoundError(DispatchError):
    """Crisis, response, user or volunteer absent (404)."""

    status_code = 404
    code = "not_found"


class ForbiddenError(DispatchError):
    """Actor does not own the response or lacks the required role (403)."""

    status_code = 403
    code = "forbidden"


class InvalidStateError(DispatchError):
    """Crisis or response status does not permit the operation (400)."""

    status_code = 400
    code = "invalid_state"


class ValidationError(DispatchError):
    """Missing or malformed input, e.g. an empty failure reason (400)."""

    status_code = 400
    code = "validation_error"


class NoVolunteersAvailableError(DispatchError):
    """No volunteer is registered in the system at all (404)."""

    status_code = 404
    code = "no_volunteers"

    def __init__(self, detail: str = "There are currently no registered volunteers."):
        super().__init__(detail)


class ConflictError(DispatchError):
    """Optimistic status check lost a race, or a duplicate record (409)."""

    status_code = 409
    code = "conflict"


class DependencyFailureError(DispatchError):
    """A collaborator store or the notification channel is unreachable (503)."""

    status_code = 503
    code = "dependency_failure"
