# tests/test_state_machine.py
"""Tests for app/core/dispatch/state_machine.py: volunteer-driven transitions."""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from app.core.dispatch import messages
from app.core.dispatch.domain import CrisisStatus, ResponseStatus
from app.core.dispatch.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from app.core.dispatch.state_machine import TRANSITIONS


def _setup(world, status=ResponseStatus.NOTIFIED, with_civilian=True):
    civilian = world.civilian() if with_civilian else None
    volunteer = world.volunteer()
    crisis = world.crisis(CrisisStatus.NOTIFICATIONS_SENT)
    response = world.response(crisis, volunteer, status, civilian=civilian)
    return civilian, volunteer, crisis, response


class TestTransitionTable:
    def test_terminal_states_have_no_outgoing_transitions(self):
        for transition in TRANSITIONS.values():
            assert ResponseStatus.COMPLETED not in transition.sources
            assert ResponseStatus.FAILED not in transition.sources

    def test_fail_reachable_from_every_live_state(self):
        assert TRANSITIONS["fail"].sources == {
            ResponseStatus.NOTIFIED,
            ResponseStatus.ACCEPTED,
            ResponseStatus.EN_ROUTE,
            ResponseStatus.ARRIVED,
        }

    def test_only_notified_can_be_accepted(self):
        assert TRANSITIONS["accept"].sources == {ResponseStatus.NOTIFIED}


class TestAccept:
    @pytest.mark.asyncio
    async def test_accept_notified(self, world):
        _, volunteer, _, response = _setup(world)

        updated = await world.service.assignments.accept(response.id, volunteer.id)

        assert updated.status == ResponseStatus.ACCEPTED
        assert updated.accepted_at is not None
        assert world.stored(response).status == ResponseStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_accept_twice_is_invalid_state(self, world):
        _, volunteer, _, response = _setup(world)
        await world.service.assignments.accept(response.id, volunteer.id)

        with pytest.raises(InvalidStateError) as exc_info:
            await world.service.assignments.accept(response.id, volunteer.id)

        assert exc_info.value.detail == "Cannot accept assignment with status: accepted"
        assert world.stored(response).status == ResponseStatus.ACCEPTED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [
        ResponseStatus.ACCEPTED,
        ResponseStatus.EN_ROUTE,
        ResponseStatus.ARRIVED,
        ResponseStatus.COMPLETED,
        ResponseStatus.FAILED,
    ])
    async def test_accept_non_notified_leaves_status_unchanged(self, world, status):
        _, volunteer, _, response = _setup(world, status)

        with pytest.raises(InvalidStateError):
            await world.service.assignments.accept(response.id, volunteer.id)

        assert world.stored(response).status == status

    @pytest.mark.asyncio
    async def test_accept_completed_message(self, world):
        _, volunteer, _, response = _setup(world, ResponseStatus.COMPLETED)

        with pytest.raises(InvalidStateError) as exc_info:
            await world.service.assignments.accept(response.id, volunteer.id)

        assert exc_info.value.detail == "Cannot accept assignment with status: completed"

    @pytest.mark.asyncio
    async def test_accept_by_other_volunteer_forbidden(self, world):
        _, _, _, response = _setup(world)
        intruder = world.volunteer("Intruder")

        with pytest.raises(ForbiddenError):
            await world.service.assignments.accept(response.id, intruder.id)

        assert world.stored(response).status == ResponseStatus.NOTIFIED

    @pytest.mark.asyncio
    async def test_accept_by_civilian_forbidden(self, world):
        civilian, _, _, response = _setup(world)

        with pytest.raises(ForbiddenError):
            await world.service.assignments.accept(response.id, civilian.id)

    @pytest.mark.asyncio
    async def test_accept_by_admin_forbidden(self, world):
        _, _, _, response = _setup(world)
        admin = world.admin()

        with pytest.raises(ForbiddenError):
            await world.service.assignments.accept(response.id, admin.id)

    @pytest.mark.asyncio
    async def test_unknown_response(self, world):
        volunteer = world.volunteer()

        with pytest.raises(NotFoundError):
            await world.service.assignments.accept("missing", volunteer.id)

    @pytest.mark.asyncio
    async def test_not_found_checked_before_ownership(self, world):
        civilian = world.civilian()

        with pytest.raises(NotFoundError):
            await world.service.assignments.accept("missing", civilian.id)

    @pytest.mark.asyncio
    async def test_forbidden_checked_before_status(self, world):
        _, _, _, response = _setup(world, ResponseStatus.COMPLETED)
        intruder = world.volunteer("Intruder")

        with pytest.raises(ForbiddenError):
            await world.service.assignments.accept(response.id, intruder.id)

    @pytest.mark.asyncio
    async def test_accept_notifies_volunteer_and_civilian(self, world):
        civilian, volunteer, _, response = _setup(world)

        await world.service.assignments.accept(response.id, volunteer.id)

        assert world.notifier.events_for(volunteer.id) == [messages.ASSIGNMENT_UPDATE]
        assert world.notifier.events_for(civilian.id) == [messages.VOLUNTEER_ACCEPTED]
        [update] = world.notifier.payloads_for(volunteer.id, messages.ASSIGNMENT_UPDATE)
        assert update["status"] == "accepted"
        assert update["response_id"] == response.id

    @pytest.mark.asyncio
    async def test_accept_without_civilian_only_notifies_volunteer(self, world):
        _, volunteer, _, response = _setup(world, with_civilian=False)

        await world.service.assignments.accept(response.id, volunteer.id)

        assert [target for target, _, _ in world.notifier.sent] == [volunteer.id]

    @pytest.mark.asyncio
    async def test_emit_failure_does_not_roll_back(self, world):
        civilian, volunteer, _, response = _setup(world)
        world.notifier.fail_for.update({volunteer.id, civilian.id})

        updated = await world.service.assignments.accept(response.id, volunteer.id)

        assert updated.status == ResponseStatus.ACCEPTED
        assert world.stored(response).status == ResponseStatus.ACCEPTED


class TestComplete:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [
        ResponseStatus.ACCEPTED,
        ResponseStatus.EN_ROUTE,
        ResponseStatus.ARRIVED,
    ])
    async def test_complete_from_active_states(self, world, status):
        _, volunteer, _, response = _setup(world, status)

        updated = await world.service.assignments.complete(response.id, volunteer.id)

        assert updated.status == ResponseStatus.COMPLETED
        assert updated.completed_at is not None
        assert world.profile(volunteer).completed_tasks == 1
        assert world.profile(volunteer).failed_tasks == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [
        ResponseStatus.NOTIFIED,
        ResponseStatus.COMPLETED,
        ResponseStatus.FAILED,
    ])
    async def test_complete_rejected_without_counter_change(self, world, status):
        _, volunteer, _, response = _setup(world, status)

        with pytest.raises(InvalidStateError) as exc_info:
            await world.service.assignments.complete(response.id, volunteer.id)

        assert exc_info.value.detail == f"Cannot complete assignment with status: {status.value}"
        assert world.profile(volunteer).completed_tasks == 0
        assert world.stored(response).status == status

    @pytest.mark.asyncio
    async def test_complete_increments_exactly_once(self, world):
        _, volunteer, _, response = _setup(world, ResponseStatus.ACCEPTED)
        world.profile(volunteer).completed_tasks = 7

        await world.service.assignments.complete(response.id, volunteer.id)
        with pytest.raises(InvalidStateError):
            await world.service.assignments.complete(response.id, volunteer.id)

        assert world.profile(volunteer).completed_tasks == 8

    @pytest.mark.asyncio
    async def test_complete_prompts_civilian_to_rate(self, world):
        civilian, volunteer, _, response = _setup(world, ResponseStatus.ARRIVED)

        await world.service.assignments.complete(response.id, volunteer.id)

        [payload] = world.notifier.payloads_for(civilian.id, messages.TASK_COMPLETED)
        assert "rate" in payload["message"]
        assert payload["response_id"] == response.id


class TestFail:
    @pytest.mark.asyncio
    async def test_fail_accepted(self, world):
        """accepted + 'car broke down' -> failed, reason stored, accepted_at cleared, failed_tasks +1."""
        _, volunteer, _, response = _setup(world)
        await world.service.assignments.accept(response.id, volunteer.id)
        assert world.stored(response).accepted_at is not None

        updated = await world.service.assignments.fail(response.id, volunteer.id, "car broke down")

        assert updated.status == ResponseStatus.FAILED
        assert updated.failed_reason == "car broke down"
        assert updated.accepted_at is None
        assert updated.completed_at is None
        assert updated.previous_status == ResponseStatus.ACCEPTED
        assert world.profile(volunteer).failed_tasks == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reason", [None, "", "   ", 42])
    async def test_fail_requires_reason(self, world, reason):
        _, volunteer, _, response = _setup(world, ResponseStatus.ACCEPTED)

        with pytest.raises(ValidationError):
            await world.service.assignments.fail(response.id, volunteer.id, reason)

        assert world.stored(response).status == ResponseStatus.ACCEPTED
        assert world.profile(volunteer).failed_tasks == 0

    @pytest.mark.asyncio
    async def test_validation_before_existence(self, world):
        volunteer = world.volunteer()

        with pytest.raises(ValidationError):
            await world.service.assignments.fail("missing", volunteer.id, "")

    @pytest.mark.asyncio
    async def test_reason_is_trimmed(self, world):
        _, volunteer, _, response = _setup(world, ResponseStatus.EN_ROUTE)

        updated = await world.service.assignments.fail(response.id, volunteer.id, "  flat tyre \n")

        assert updated.failed_reason == "flat tyre"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [ResponseStatus.COMPLETED, ResponseStatus.FAILED])
    async def test_fail_terminal_rejected(self, world, status):
        _, volunteer, _, response = _setup(world, status)

        with pytest.raises(InvalidStateError) as exc_info:
            await world.service.assignments.fail(response.id, volunteer.id, "changed my mind")

        assert status.value in exc_info.value.detail
        assert world.profile(volunteer).failed_tasks == 0

    @pytest.mark.asyncio
    async def test_rejection_message_for_notified(self, world):
        civilian, volunteer, _, response = _setup(world, ResponseStatus.NOTIFIED)

        await world.service.assignments.fail(response.id, volunteer.id, "too far away")

        [payload] = world.notifier.payloads_for(civilian.id, messages.TASK_FAILED)
        assert payload["rejected"] is True
        assert payload["previous_status"] == "notified"
        assert "could not be accepted" in payload["message"]
        assert "too far away" in payload["message"]

    @pytest.mark.asyncio
    async def test_mid_task_failure_message(self, world):
        civilian, volunteer, _, response = _setup(world, ResponseStatus.ARRIVED)

        await world.service.assignments.fail(response.id, volunteer.id, "road closed")

        [payload] = world.notifier.payloads_for(civilian.id, messages.TASK_FAILED)
        assert payload["rejected"] is False
        assert payload["previous_status"] == "arrived"
        assert "could not complete" in payload["message"]


class TestProgress:
    @pytest.mark.asyncio
    async def test_accepted_to_en_route_to_arrived(self, world):
        civilian, volunteer, _, response = _setup(world, ResponseStatus.ACCEPTED)

        en_route = await world.service.assignments.update_progress(response.id, volunteer.id, "en_route")
        arrived = await world.service.assignments.update_progress(response.id, volunteer.id, ResponseStatus.ARRIVED)

        assert en_route.status == ResponseStatus.EN_ROUTE
        assert arrived.status == ResponseStatus.ARRIVED
        assert world.notifier.events_for(civilian.id) == [
            messages.VOLUNTEER_PROGRESS,
            messages.VOLUNTEER_PROGRESS,
        ]

    @pytest.mark.asyncio
    async def test_accepted_can_skip_to_arrived(self, world):
        _, volunteer, _, response = _setup(world, ResponseStatus.ACCEPTED)

        updated = await world.service.assignments.update_progress(response.id, volunteer.id, "arrived")

        assert updated.status == ResponseStatus.ARRIVED

    @pytest.mark.asyncio
    async def test_en_route_requires_accepted(self, world):
        _, volunteer, _, response = _setup(world, ResponseStatus.NOTIFIED)

        with pytest.raises(InvalidStateError) as exc_info:
            await world.service.assignments.update_progress(response.id, volunteer.id, "en_route")

        assert exc_info.value.detail == "Cannot mark en route assignment with status: notified"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["completed", "accepted", "failed", "teleported"])
    async def test_only_progress_statuses_allowed(self, world, status):
        _, volunteer, _, response = _setup(world, ResponseStatus.ACCEPTED)

        with pytest.raises(ValidationError):
            await world.service.assignments.update_progress(response.id, volunteer.id, status)

        assert world.stored(response).status == ResponseStatus.ACCEPTED


class TestFailedReasonInvariant:
    @pytest.mark.asyncio
    async def test_reason_present_iff_failed(self, world):
        _, volunteer, _, response = _setup(world)
        sm = world.service.assignments

        await sm.accept(response.id, volunteer.id)
        assert world.stored(response).failed_reason is None
        await sm.update_progress(response.id, volunteer.id, "en_route")
        assert world.stored(response).failed_reason is None
        await sm.fail(response.id, volunteer.id, "injured")
        assert world.stored(response).failed_reason == "injured"


class TestConcurrentTransitions:
    @pytest.mark.asyncio
    async def test_double_accept_one_wins(self, world):
        _, volunteer, _, response = _setup(world)
        sm = world.service.assignments

        results = await asyncio.gather(
            sm.accept(response.id, volunteer.id),
            sm.accept(response.id, volunteer.id),
            return_exceptions=True,
        )

        succeeded = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, Exception)]
        assert len(succeeded) == 1
        assert len(failed) == 1
        assert isinstance(failed[0], (ConflictError, InvalidStateError))

    @pytest.mark.asyncio
    async def test_complete_and_fail_race(self, world):
        _, volunteer, _, response = _setup(world, ResponseStatus.ARRIVED)
        sm = world.service.assignments

        results = await asyncio.gather(
            sm.complete(response.id, volunteer.id),
            sm.fail(response.id, volunteer.id, "gave up"),
            return_exceptions=True,
        )

        succeeded = [r for r in results if not isinstance(r, Exception)]
        assert len(succeeded) == 1
        profile = world.profile(volunteer)
        assert profile.completed_tasks + profile.failed_tasks == 1
        stored = world.stored(response)
        assert stored.status == succeeded[0].status
        assert (stored.failed_reason is not None) == (stored.status == ResponseStatus.FAILED)

    @pytest.mark.asyncio
    async def test_accept_and_admin_assign_race(self, world):
        _, volunteer, crisis, response = _setup(world)
        admin = world.admin()

        results = await asyncio.gather(
            world.service.assignments.accept(response.id, volunteer.id),
            world.service.assignments.admin_assign(crisis.id, volunteer.id, admin.id),
            return_exceptions=True,
        )

        succeeded = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, Exception)]
        assert len(succeeded) == 1
        assert len(failed) == 1
        assert isinstance(failed[0], (ConflictError, InvalidStateError))
        assert world.stored(response).status == ResponseStatus.ACCEPTED
        assert len(world.responses.responses) == 1

    @pytest.mark.asyncio
    async def test_lost_guard_raises_conflict(self, world):
        _, volunteer, _, response = _setup(world)

        original_get = world.responses.get

        async def stale_get(response_id):
            snapshot = await original_get(response_id)
            # Another request accepts between our read and our write
            world.stored(response).status = ResponseStatus.ACCEPTED
            world.stored(response).accepted_at = datetime.now(timezone.utc)
            return snapshot

        world.responses.get = stale_get

        with pytest.raises(ConflictError):
            await world.service.assignments.accept(response.id, volunteer.id)

        assert world.profile(volunteer).completed_tasks == 0


class TestCounterWriteFailure:
    @pytest.mark.asyncio
    async def test_complete_rolled_back_when_counter_write_fails(self, world):
        _, volunteer, _, response = _setup(world, ResponseStatus.ARRIVED)
        world.profiles.fail_writes = True

        with pytest.raises(RuntimeError):
            await world.service.assignments.complete(response.id, volunteer.id)

        stored = world.stored(response)
        assert stored.status == ResponseStatus.ARRIVED
        assert stored.completed_at is None
        assert world.profile(volunteer).completed_tasks == 0
        assert world.uow.rolled_back == ["assignment.complete"]
        assert world.notifier.sent == []

    @pytest.mark.asyncio
    async def test_fail_rolled_back_when_counter_write_fails(self, world):
        _, volunteer, _, response = _setup(world, ResponseStatus.ACCEPTED)
        accepted_at = world.stored(response).accepted_at
        world.profiles.fail_writes = True

        with pytest.raises(RuntimeError):
            await world.service.assignments.fail(response.id, volunteer.id, "flat tyre")

        stored = world.stored(response)
        assert stored.status == ResponseStatus.ACCEPTED
        assert stored.failed_reason is None
        assert stored.previous_status is None
        assert stored.accepted_at == accepted_at
        assert world.profile(volunteer).failed_tasks == 0

    @pytest.mark.asyncio
    async def test_retry_after_counter_failure_counts_once(self, world):
        _, volunteer, _, response = _setup(world, ResponseStatus.ACCEPTED)
        world.profiles.fail_writes = True
        with pytest.raises(RuntimeError):
            await world.service.assignments.complete(response.id, volunteer.id)

        world.profiles.fail_writes = False
        updated = await world.service.assignments.complete(response.id, volunteer.id)

        assert updated.status == ResponseStatus.COMPLETED
        assert world.profile(volunteer).completed_tasks == 1
        assert world.uow.committed == ["assignment.complete"]

    @pytest.mark.asyncio
    async def test_counter_failure_on_first_task_leaves_no_profile(self, world):
        civilian = world.civilian()
        volunteer = world.volunteer(with_profile=False)
        crisis = world.crisis(CrisisStatus.ASSIGNED)
        response = world.response(crisis, volunteer, ResponseStatus.ACCEPTED, civilian=civilian)
        world.profiles.fail_writes = True

        with pytest.raises(RuntimeError):
            await world.service.assignments.complete(response.id, volunteer.id)

        assert volunteer.id not in world.profiles.profiles
        assert world.stored(response).status == ResponseStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_progress_does_not_touch_profile(self, world):
        _, volunteer, _, response = _setup(world, ResponseStatus.ACCEPTED)
        world.profiles.fail_writes = True

        updated = await world.service.assignments.update_progress(
            response.id, volunteer.id, ResponseStatus.EN_ROUTE,
        )

        assert updated.status == ResponseStatus.EN_ROUTE
