# app/core/dispatch/ratings.py
"""
Rating Gate.

A rating is accepted only for a completed Response, from its civilian
requester or an admin, once per (response, rater). The volunteer's
average is folded in as a running sum/count in the same transaction that
stores the rating.
"""
from __future__ import annotations

import logging
from typing import Optional

from app.core.dispatch import messages
from app.core.dispatch.authorization import SUBMIT_RATING, VIEW_RATINGS, authorize
from app.core.dispatch.delivery import deliver
from app.core.dispatch.domain import Rating, ResponseStatus
from app.core.dispatch.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from app.core.dispatch.ports import (
    AsyncDispatchUnitOfWork,
    AsyncRatingStore,
    AsyncResponseStore,
    AsyncUserStore,
    Notifier,
)
from app.infra.audit_log import audit_event
from app.infra.metrics import AppMetrics

logger = logging.getLogger(__name__)

MIN_SCORE = 1
MAX_SCORE = 5


class RatingGate:
    def __init__(
        self,
        *,
        responses: AsyncResponseStore,
        ratings: AsyncRatingStore,
        users: AsyncUserStore,
        uow: AsyncDispatchUnitOfWork,
        notifier: Notifier,
    ) -> None:
        self.responses = responses
        self.ratings = ratings
        self.users = users
        self.uow = uow
        self.notifier = notifier

    async def submit_rating(
        self,
        response_id: str,
        rater_id: str,
        score: int,
        *,
        comment: Optional[str] = None,
        photo_proof_url: Optional[str] = None,
        location: Optional[str] = None,
    ) -> Rating:
        if isinstance(score, bool) or not isinstance(score, int) or not MIN_SCORE <= score <= MAX_SCORE:
            raise ValidationError(f"Rating must be an integer between {MIN_SCORE} and {MAX_SCORE}.")

        response = await self.responses.get(response_id)
        if response is None:
            raise NotFoundError("Response record not found.")

        await authorize(
            self.users, rater_id, SUBMIT_RATING, response, action="rate this response",
        )

        if response.status != ResponseStatus.COMPLETED:
            raise InvalidStateError("Cannot rate an assignment that is not completed.")

        async with self.uow.transaction("rating.submit") as tx:
            rating = await tx.ratings.create(
                response_id=response.id,
                rater_id=rater_id,
                rated_volunteer_id=response.volunteer_id,
                score=score,
                crisis_id=response.crisis_id,
                comment=comment,
                photo_proof_url=photo_proof_url,
                location=location,
            )
            if rating is None:
                raise ConflictError("You have already submitted a rating for this response.")

            profile = await tx.profiles.record_rating(response.volunteer_id, score)

        AppMetrics.rating_submitted()
        audit_event(
            "rating.submit",
            actor_id=rater_id,
            crisis_id=response.crisis_id,
            response_id=response.id,
            detail=f"score={score} volunteer={response.volunteer_id}",
        )
        logger.info(
            "Rating %d recorded for volunteer %s, average now %.1f over %d ratings",
            score, response.volunteer_id, profile.rating, profile.rating_count,
        )

        await deliver(
            self.notifier,
            response.volunteer_id,
            messages.NEW_RATING,
            messages.new_rating_payload(rating),
        )
        return rating

    async def list_volunteer_ratings(self, volunteer_id: str, actor_id: str) -> list[Rating]:
        await authorize(self.users, actor_id, VIEW_RATINGS, action="view volunteer ratings")
        return await self.ratings.list_for_volunteer(volunteer_id)
