# app/transport/schemas.py
from pydantic import BaseModel, Field


class AdminAssignIn(BaseModel):
    volunteer_id: str = Field(min_length=1, max_length=64)


class FailAssignmentIn(BaseModel):
    # Blank / missing reasons are rejected by the state machine with its own message
    reason: str | None = Field(default=None, max_length=2000)


class ProgressIn(BaseModel):
    status: str = Field(min_length=1, max_length=32)


class ProfileUpdateIn(BaseModel):
    skills: str | list[str] | None = None
    availability: bool | None = None


class RatingIn(BaseModel):
    response_id: str = Field(min_length=1, max_length=64)
    rating: int
    comment: str | None = Field(default=None, max_length=2000)
    photo_proof_url: str | None = Field(default=None, max_length=2048)
    location: str | None = Field(default=None, max_length=512)


class HelpRequestOut(BaseModel):
    message: str
    crisis_id: str
    notified_count: int
    eligible_count: int
    response_ids: list[str]
