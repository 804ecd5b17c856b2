# tests/conftest.py
"""Pytest configuration and fixtures"""
import asyncio
import sys
import uuid
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from app.core.dispatch.domain import (  # noqa: E402
    Crisis,
    CrisisStatus,
    Rating,
    Response,
    ResponseStatus,
    User,
    UserRole,
    VolunteerProfile,
)
from app.core.dispatch.ports import TransactionStores  # noqa: E402
from app.core.dispatch.service import DispatchService  # noqa: E402


def new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# In-memory stores
#
# Reads yield to the event loop once, so coroutines gathered in a test
# interleave between "read status" and "conditional write" the same way
# concurrent requests do against Postgres. Writes never yield, which makes
# each compare-and-set atomic.
# ============================================================================

class FakeUserStore:
    def __init__(self):
        self.users: dict[str, User] = {}
        self.fail = False

    async def get_user(self, user_id):
        if self.fail:
            raise RuntimeError("user store down")
        return self.users.get(user_id)

    async def get_users(self, user_ids):
        return [self.users[uid] for uid in user_ids if uid in self.users]

    async def count_by_role(self, role):
        if self.fail:
            raise RuntimeError("user store down")
        return sum(1 for u in self.users.values() if u.role == role)


class FakeCrisisStore:
    def __init__(self):
        self.crises: dict[str, Crisis] = {}
        self.update_calls: list[tuple] = []

    async def get_crisis(self, crisis_id):
        await asyncio.sleep(0)
        crisis = self.crises.get(crisis_id)
        return replace(crisis) if crisis else None

    async def update_status(self, crisis_id, status, *, expected, assigned_volunteer_id=None):
        self.update_calls.append((crisis_id, status, frozenset(expected), assigned_volunteer_id))
        crisis = self.crises.get(crisis_id)
        if crisis is None or crisis.status not in set(expected):
            return None
        crisis.status = status
        if assigned_volunteer_id is not None:
            crisis.assigned_volunteer_id = assigned_volunteer_id
        return replace(crisis)


class FakeProfileStore:
    def __init__(self):
        self.profiles: dict[str, VolunteerProfile] = {}
        self.fail_writes = False

    async def find_available(self):
        return [uid for uid, p in self.profiles.items() if p.availability]

    async def get_profile(self, user_id):
        profile = self.profiles.get(user_id)
        return replace(profile, skills=list(profile.skills)) if profile else None

    async def upsert_profile(self, user_id, *, skills=None, availability=None):
        profile = self.profiles.setdefault(user_id, VolunteerProfile(user_id=user_id))
        if skills is not None:
            profile.skills = list(skills)
        if availability is not None:
            profile.availability = availability
        profile.updated_at = _now()
        return replace(profile, skills=list(profile.skills))

    async def increment_counter(self, user_id, counter):
        if self.fail_writes:
            raise RuntimeError("profile store down")
        profile = self.profiles.setdefault(user_id, VolunteerProfile(user_id=user_id))
        setattr(profile, counter, getattr(profile, counter) + 1)

    async def record_rating(self, user_id, score):
        if self.fail_writes:
            raise RuntimeError("profile store down")
        profile = self.profiles.setdefault(user_id, VolunteerProfile(user_id=user_id))
        profile.rating_sum += score
        profile.rating_count += 1
        profile.rating = round(profile.rating_sum / profile.rating_count, 1)
        return replace(profile, skills=list(profile.skills))


class FakeResponseStore:
    def __init__(self):
        self.responses: dict[str, Response] = {}
        self.fail_for: set[str] = set()

    def _find(self, crisis_id, volunteer_id):
        for r in self.responses.values():
            if r.crisis_id == crisis_id and r.volunteer_id == volunteer_id:
                return r
        return None

    def by_pair(self, crisis_id, volunteer_id):
        return self._find(crisis_id, volunteer_id)

    async def get(self, response_id):
        await asyncio.sleep(0)
        r = self.responses.get(response_id)
        return replace(r) if r else None

    async def find(self, crisis_id, volunteer_id):
        await asyncio.sleep(0)
        r = self._find(crisis_id, volunteer_id)
        return replace(r) if r else None

    async def find_or_create(self, crisis_id, volunteer_id, civilian_requester_id):
        if volunteer_id in self.fail_for:
            raise RuntimeError("insert failed")
        existing = self._find(crisis_id, volunteer_id)
        if existing is not None:
            return replace(existing), False
        r = Response(
            id=new_id(),
            crisis_id=crisis_id,
            volunteer_id=volunteer_id,
            status=ResponseStatus.NOTIFIED,
            civilian_requester_id=civilian_requester_id,
            created_at=_now(),
            updated_at=_now(),
        )
        self.responses[r.id] = r
        return replace(r), True

    async def transition(self, response_id, *, expected, target, at=None, failed_reason=None):
        r = self.responses.get(response_id)
        if r is None or r.status not in set(expected):
            return None
        at = at or _now()
        if target == ResponseStatus.FAILED:
            r.previous_status = r.status
            r.accepted_at = None
            r.completed_at = None
            r.failed_reason = failed_reason
        else:
            r.failed_reason = None
            if target == ResponseStatus.ACCEPTED:
                r.accepted_at = at
            elif target == ResponseStatus.COMPLETED:
                r.completed_at = at
        r.status = target
        r.updated_at = at
        return replace(r)

    async def upsert_accepted(self, crisis_id, volunteer_id, *, expected, at):
        r = self._find(crisis_id, volunteer_id)
        if expected is None:
            if r is not None:
                return None
            r = Response(
                id=new_id(),
                crisis_id=crisis_id,
                volunteer_id=volunteer_id,
                status=ResponseStatus.ACCEPTED,
                accepted_at=at,
                created_at=at,
                updated_at=at,
            )
            self.responses[r.id] = r
            return replace(r)

        if r is None or r.status != expected:
            return None
        r.status = ResponseStatus.ACCEPTED
        r.accepted_at = at
        r.completed_at = None
        r.failed_reason = None
        r.previous_status = None
        r.updated_at = at
        return replace(r)

    async def list_for_volunteer(self, volunteer_id):
        rows = [replace(r) for r in self.responses.values() if r.volunteer_id == volunteer_id]
        return sorted(rows, key=lambda r: r.created_at, reverse=True)


class FakeRatingStore:
    def __init__(self):
        self.ratings: list[Rating] = []

    async def create(self, *, response_id, rater_id, rated_volunteer_id, score,
                     crisis_id=None, comment=None, photo_proof_url=None, location=None):
        if any(r.response_id == response_id and r.rater_id == rater_id for r in self.ratings):
            return None
        rating = Rating(
            id=new_id(),
            response_id=response_id,
            rater_id=rater_id,
            rated_volunteer_id=rated_volunteer_id,
            score=score,
            crisis_id=crisis_id,
            comment=comment,
            photo_proof_url=photo_proof_url,
            location=location,
            created_at=_now(),
        )
        self.ratings.append(rating)
        return replace(rating)

    async def list_for_volunteer(self, volunteer_id):
        return [replace(r) for r in self.ratings if r.rated_volunteer_id == volunteer_id]


_WRITE_METHODS = frozenset({
    "find_or_create",
    "transition",
    "upsert_accepted",
    "update_status",
    "upsert_profile",
    "increment_counter",
    "record_rating",
    "create",
})


class _Journaled:
    """Store proxy that logs an undo step for every row its writes touch."""

    def __init__(self, store, rows, undo: list):
        self._store = store
        self._rows = rows
        self._undo = undo

    def __getattr__(self, name):
        method = getattr(self._store, name)
        if name not in _WRITE_METHODS:
            return method

        async def journaled(*args, **kwargs):
            before = self._capture()
            result = await method(*args, **kwargs)
            self._record(before)
            return result

        return journaled

    def _capture(self):
        if isinstance(self._rows, list):
            return {id(row) for row in self._rows}
        return {key: replace(row) for key, row in self._rows.items()}

    def _record(self, before) -> None:
        rows = self._rows
        if isinstance(rows, list):
            for row in [r for r in rows if id(r) not in before]:
                self._undo.append(lambda row=row: rows.remove(row))
            return
        for key, row in rows.items():
            prev = before.get(key)
            if prev is None:
                self._undo.append(lambda key=key: rows.pop(key, None))
            elif vars(prev) != vars(row):
                self._undo.append(lambda row=row, prev=prev: vars(row).update(vars(prev)))


class FakeUnitOfWork:
    """
    Transaction over the in-memory stores.

    A rollback undoes only the writes made through the yielded stores, so
    changes made concurrently by someone else survive, as they would in
    Postgres.
    """

    def __init__(self, *, responses, crises, profiles, ratings):
        self.responses = responses
        self.crises = crises
        self.profiles = profiles
        self.ratings = ratings
        self.committed: list[str] = []
        self.rolled_back: list[str] = []

    @asynccontextmanager
    async def transaction(self, operation="dispatch"):
        undo: list = []
        try:
            yield TransactionStores(
                responses=_Journaled(self.responses, self.responses.responses, undo),
                crises=_Journaled(self.crises, self.crises.crises, undo),
                profiles=_Journaled(self.profiles, self.profiles.profiles, undo),
                ratings=_Journaled(self.ratings, self.ratings.ratings, undo),
            )
        except BaseException:
            for step in reversed(undo):
                step()
            self.rolled_back.append(operation)
            raise
        self.committed.append(operation)


class RecordingNotifier:
    """Notifier that records every emit; selected targets fail or hang."""

    def __init__(self):
        self.sent: list[tuple[str, str, dict]] = []
        self.fail_for: set[str] = set()
        self.hang_for: set[str] = set()

    async def notify(self, target_user_id, event, payload):
        if target_user_id in self.fail_for:
            raise RuntimeError("push gateway refused the event")
        if target_user_id in self.hang_for:
            await asyncio.sleep(3600)
        self.sent.append((target_user_id, event, payload))

    def events_for(self, user_id) -> list[str]:
        return [event for target, event, _ in self.sent if target == user_id]

    def payloads_for(self, user_id, event) -> list[dict]:
        return [p for target, e, p in self.sent if target == user_id and e == event]


# ============================================================================
# World: stores + service + builders
# ============================================================================

class DispatchWorld:
    def __init__(self):
        self.users = FakeUserStore()
        self.crises = FakeCrisisStore()
        self.profiles = FakeProfileStore()
        self.responses = FakeResponseStore()
        self.ratings = FakeRatingStore()
        self.notifier = RecordingNotifier()
        self.uow = FakeUnitOfWork(
            responses=self.responses,
            crises=self.crises,
            profiles=self.profiles,
            ratings=self.ratings,
        )
        self.service = DispatchService.build(
            users=self.users,
            crises=self.crises,
            profiles=self.profiles,
            responses=self.responses,
            ratings=self.ratings,
            uow=self.uow,
            notifier=self.notifier,
            fanout_concurrency=4,
            mark_crisis_notified=True,
        )

    def _user(self, role: UserRole, name: str) -> User:
        user = User(id=new_id(), name=name, role=role)
        self.users.users[user.id] = user
        return user

    def civilian(self, name: str = "Carol") -> User:
        return self._user(UserRole.CIVILIAN, name)

    def admin(self, name: str = "Ada") -> User:
        return self._user(UserRole.ADMIN, name)

    def volunteer(self, name: str = "Vic", available: bool = True, with_profile: bool = True) -> User:
        user = self._user(UserRole.VOLUNTEER, name)
        if with_profile:
            self.profiles.profiles[user.id] = VolunteerProfile(user_id=user.id, availability=available)
        return user

    def crisis(self, status: CrisisStatus = CrisisStatus.NEW, **kwargs) -> Crisis:
        kwargs.setdefault("disaster_type", "Flood")
        kwargs.setdefault("severity", 4)
        crisis = Crisis(id=new_id(), status=status, **kwargs)
        self.crises.crises[crisis.id] = crisis
        return crisis

    def response(
        self,
        crisis: Crisis,
        volunteer: User,
        status: ResponseStatus = ResponseStatus.NOTIFIED,
        civilian: User | None = None,
        **kwargs,
    ) -> Response:
        response = Response(
            id=new_id(),
            crisis_id=crisis.id,
            volunteer_id=volunteer.id,
            status=status,
            civilian_requester_id=civilian.id if civilian else None,
            created_at=kwargs.pop("created_at", _now()),
            **kwargs,
        )
        if status == ResponseStatus.FAILED and not response.failed_reason:
            response.failed_reason = "earlier failure"
        self.responses.responses[response.id] = response
        return response

    def stored(self, response: Response) -> Response:
        return self.responses.responses[response.id]

    def profile(self, user: User) -> VolunteerProfile:
        return self.profiles.profiles[user.id]


@pytest.fixture
def world():
    return DispatchWorld()


@pytest.fixture
def fast_emit_timeout(monkeypatch):
    """Shrink the notification emit timeout so hang tests finish quickly."""
    from app.config import settings
    monkeypatch.setattr(settings, "notification_emit_timeout_seconds", 0.05)
    return 0.05
