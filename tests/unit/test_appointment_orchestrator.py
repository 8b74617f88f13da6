"""Tests for the booking orchestrator."""

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from booking_engine.core.exceptions import (
    ConcurrencyError,
    ConflictError,
    InvalidStatusTransitionError,
    NotFoundError,
    ValidationError,
)
from booking_engine.schemas.appointment import AppointmentCreate
from booking_engine.schemas.enums import AppointmentStatus, ConflictType, NotificationChannel
from booking_engine.services.appointment import BookingOrchestrator


class NoLockManager:
    """Lock manager that never serializes, leaving only storage exclusion."""

    @asynccontextmanager
    async def hold(self, keys):
        yield


def slow_reads(repository):
    """Make active-appointment reads yield so concurrent bookings interleave."""
    original = repository.find_active_appointments

    async def _slow(*args, **kwargs):
        await asyncio.sleep(0.01)
        return await original(*args, **kwargs)

    repository.find_active_appointments = _slow


def slow_gets(repository):
    """Make appointment lookups yield so concurrent status changes interleave."""
    original = repository.get

    async def _slow(*args, **kwargs):
        await asyncio.sleep(0)
        return await original(*args, **kwargs)

    repository.get = _slow


class TestCreateValidation:
    @pytest.mark.asyncio
    async def test_zero_duration_fails_before_conflict_check(
        self, orchestrator, booking_payload
    ):
        orchestrator.detector.detect = AsyncMock(return_value=[])

        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.create_appointment(booking_payload(total_duration=0))

        assert any("total_duration" in error for error in exc_info.value.errors)
        orchestrator.detector.detect.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_client_fails_before_conflict_check(
        self, orchestrator, booking_payload
    ):
        orchestrator.detector.detect = AsyncMock(return_value=[])
        payload = booking_payload()
        del payload["client_id"]

        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.create_appointment(payload)

        assert any("client_id" in error for error in exc_info.value.errors)
        orchestrator.detector.detect.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"services": []},
            {"start_time": "9am"},
            {"start_time": "23:30"},
            {"status": "COMPLETED"},
            {"is_recurring": True},
            {"client_id": ""},
        ],
    )
    async def test_invalid_input(self, orchestrator, booking_payload, overrides):
        with pytest.raises(ValidationError):
            await orchestrator.create_appointment(booking_payload(**overrides))

    @pytest.mark.asyncio
    async def test_unknown_branch(self, orchestrator, booking_payload):
        with pytest.raises(NotFoundError):
            await orchestrator.create_appointment(booking_payload(branch_id="branch-9"))

    @pytest.mark.asyncio
    async def test_branch_of_another_company(self, orchestrator, booking_payload):
        with pytest.raises(NotFoundError):
            await orchestrator.create_appointment(booking_payload(company_id="company-2"))


class TestCreateAppointment:
    @pytest.mark.asyncio
    async def test_create_persists_pending_appointment(
        self, orchestrator, repository, booking_payload
    ):
        result = await orchestrator.create_appointment(booking_payload(), actor="front-desk")

        appointment = result.appointment
        assert result.recurring is None
        assert appointment.status == AppointmentStatus.PENDING
        assert appointment.end_time == "11:00"
        assert appointment.created_by == "front-desk"
        assert [entry.summary for entry in appointment.change_history] == [
            "Appointment created"
        ]
        assert await repository.get(appointment.id) == appointment

    @pytest.mark.asyncio
    async def test_accepts_model_input_and_confirmed_status(self, orchestrator, booking_payload):
        request = AppointmentCreate(**booking_payload(status="CONFIRMED"))

        result = await orchestrator.create_appointment(request)

        assert result.appointment.status == AppointmentStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_conflict_creates_nothing(
        self, orchestrator, repository, booking_payload, appointment_factory
    ):
        await repository.create(appointment_factory("appt-1", "10:30", 60))

        with pytest.raises(ConflictError) as exc_info:
            await orchestrator.create_appointment(booking_payload())

        assert exc_info.value.conflicts[0].kind == ConflictType.STAFF_UNAVAILABLE
        assert list(repository.appointments) == ["appt-1"]

    @pytest.mark.asyncio
    async def test_auto_assigns_first_available_staff(
        self, orchestrator, repository, booking_payload, appointment_factory
    ):
        await repository.create(appointment_factory("appt-1", "10:00", 60))

        result = await orchestrator.create_appointment(
            booking_payload(staff_id=None, auto_assign_staff=True)
        )

        assert result.appointment.staff_id == "staff-2"

    @pytest.mark.asyncio
    async def test_auto_assign_without_free_staff(
        self, orchestrator, repository, booking_payload, monday
    ):
        with pytest.raises(ConflictError):
            await orchestrator.create_appointment(
                booking_payload(
                    staff_id=None,
                    auto_assign_staff=True,
                    date=monday + timedelta(days=5),
                )
            )


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_bookings_with_slot_locks(
        self, orchestrator, repository, booking_payload
    ):
        slow_reads(repository)

        results = await asyncio.gather(
            *[
                orchestrator.create_appointment(booking_payload(client_id=f"client-{n}"))
                for n in range(5)
            ],
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert all(isinstance(f, (ConflictError, ConcurrencyError)) for f in failures)

    @pytest.mark.asyncio
    async def test_concurrent_bookings_with_storage_exclusion_only(
        self, repository, booking_payload, fixed_clock
    ):
        orchestrator = BookingOrchestrator(
            repository, lock_manager=NoLockManager(), clock=fixed_clock
        )
        slow_reads(repository)

        results = await asyncio.gather(
            *[
                orchestrator.create_appointment(booking_payload(client_id=f"client-{n}"))
                for n in range(3)
            ],
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        assert len(successes) == 1
        assert all(
            isinstance(r, (ConflictError, ConcurrencyError))
            for r in results
            if isinstance(r, Exception)
        )
        active = [a for a in repository.appointments.values() if a.is_active]
        assert len(active) == 1

    @pytest.mark.asyncio
    async def test_concurrent_reschedules_leave_one_successor(
        self, orchestrator, repository, booking_payload, monday
    ):
        original = (await orchestrator.create_appointment(booking_payload())).appointment
        slow_gets(repository)

        results = await asyncio.gather(
            orchestrator.reschedule_appointment(original.id, monday + timedelta(days=1), "10:00"),
            orchestrator.reschedule_appointment(original.id, monday + timedelta(days=2), "10:00"),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], InvalidStatusTransitionError)

        successors = [
            a for a in repository.appointments.values() if a.rescheduled_from == original.id
        ]
        assert [a.id for a in successors] == [successes[0].id]
        assert (await repository.get(original.id)).rescheduled_to == successes[0].id

    @pytest.mark.asyncio
    async def test_cancel_racing_reschedule_keeps_one_outcome(
        self, orchestrator, repository, booking_payload, monday
    ):
        original = (await orchestrator.create_appointment(booking_payload())).appointment
        slow_gets(repository)

        rescheduled, cancelled = await asyncio.gather(
            orchestrator.reschedule_appointment(original.id, monday + timedelta(days=1), "10:00"),
            orchestrator.cancel_appointment(original.id, reason="Client called"),
            return_exceptions=True,
        )

        failures = [r for r in (rescheduled, cancelled) if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], InvalidStatusTransitionError)

        stored = await repository.get(original.id)
        successors = [
            a for a in repository.appointments.values() if a.rescheduled_from == original.id
        ]
        if isinstance(cancelled, Exception):
            assert stored.status == AppointmentStatus.RESCHEDULED
            assert stored.cancelled_at is None
            assert len(successors) == 1
        else:
            assert stored.status == AppointmentStatus.CANCELLED
            assert successors == []

    @pytest.mark.asyncio
    async def test_concurrency_error_is_retried_once(
        self, orchestrator, repository, booking_payload
    ):
        create = repository.create
        attempts = []

        async def _flaky(appointment):
            attempts.append(appointment.id)
            if len(attempts) == 1:
                raise ConcurrencyError("lost race")
            return await create(appointment)

        repository.create = AsyncMock(side_effect=_flaky)

        result = await orchestrator.create_appointment(booking_payload())

        assert repository.create.await_count == 2
        assert result.appointment.id in repository.appointments

    @pytest.mark.asyncio
    async def test_second_concurrency_error_becomes_conflict(
        self, orchestrator, repository, booking_payload
    ):
        repository.create = AsyncMock(side_effect=ConcurrencyError("lost race"))

        with pytest.raises(ConflictError):
            await orchestrator.create_appointment(booking_payload())

        assert repository.create.await_count == 2


class TestUpdateAppointment:
    @pytest.mark.asyncio
    async def test_move_within_own_slot(self, orchestrator, booking_payload):
        created = (await orchestrator.create_appointment(booking_payload())).appointment

        updated = await orchestrator.update_appointment(
            created.id, {"start_time": "10:30"}, actor="manager"
        )

        assert (updated.start_time, updated.end_time) == ("10:30", "11:30")
        assert updated.change_history[-1].summary == "Updated start_time"
        assert updated.change_history[-1].actor == "manager"

    @pytest.mark.asyncio
    async def test_move_into_conflict_is_rejected(
        self, orchestrator, repository, booking_payload, appointment_factory
    ):
        await repository.create(appointment_factory("appt-1", "14:00", 60))
        created = (await orchestrator.create_appointment(booking_payload())).appointment

        with pytest.raises(ConflictError):
            await orchestrator.update_appointment(created.id, {"start_time": "14:00"})

        assert (await repository.get(created.id)).start_time == "10:00"

    @pytest.mark.asyncio
    async def test_duration_change_recomputes_end_time(self, orchestrator, booking_payload):
        created = (await orchestrator.create_appointment(booking_payload())).appointment

        updated = await orchestrator.update_appointment(created.id, {"total_duration": 90})

        assert updated.end_time == "11:30"

    @pytest.mark.asyncio
    async def test_notes_update_skips_conflict_check(self, orchestrator, booking_payload):
        created = (await orchestrator.create_appointment(booking_payload())).appointment
        orchestrator.detector.detect = AsyncMock(return_value=[])

        updated = await orchestrator.update_appointment(created.id, {"notes": "Prefers tea"})

        assert updated.notes == "Prefers tea"
        orchestrator.detector.detect.assert_not_awaited()
        assert len(updated.change_history) == 2

    @pytest.mark.asyncio
    async def test_unchanged_update_is_a_no_op(self, orchestrator, booking_payload):
        created = (await orchestrator.create_appointment(booking_payload())).appointment

        updated = await orchestrator.update_appointment(created.id, {"start_time": "10:00"})

        assert updated.change_history == created.change_history

    @pytest.mark.asyncio
    async def test_moving_terminal_appointment_fails(self, orchestrator, booking_payload):
        created = (await orchestrator.create_appointment(booking_payload())).appointment
        await orchestrator.cancel_appointment(created.id)

        with pytest.raises(ValidationError):
            await orchestrator.update_appointment(created.id, {"start_time": "14:00"})

    @pytest.mark.asyncio
    async def test_missing_appointment(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.update_appointment("missing", {"notes": "x"})


class TestRescheduleAppointment:
    @pytest.mark.asyncio
    async def test_reschedule_links_original_and_successor(
        self, orchestrator, repository, booking_payload, monday
    ):
        original = (await orchestrator.create_appointment(booking_payload())).appointment

        successor = await orchestrator.reschedule_appointment(
            original.id, monday + timedelta(days=1), "14:00", actor="front-desk"
        )

        retired = await repository.get(original.id)
        assert retired.status == AppointmentStatus.RESCHEDULED
        assert retired.rescheduled_to == successor.id
        assert retired.rescheduled_at is not None
        assert successor.rescheduled_from == original.id
        assert successor.status == AppointmentStatus.PENDING
        assert (successor.date, successor.start_time, successor.end_time) == (
            monday + timedelta(days=1),
            "14:00",
            "15:00",
        )

    @pytest.mark.asyncio
    async def test_reschedule_into_overlapping_slot_same_day(
        self, orchestrator, repository, booking_payload, monday
    ):
        original = (await orchestrator.create_appointment(booking_payload())).appointment

        successor = await orchestrator.reschedule_appointment(
            original.id, monday, "10:30", new_staff_id="staff-2"
        )

        assert successor.staff_id == "staff-2"
        assert (await repository.get(original.id)).status == AppointmentStatus.RESCHEDULED

    @pytest.mark.asyncio
    async def test_failed_reschedule_leaves_original_untouched(
        self, orchestrator, repository, booking_payload, appointment_factory, monday
    ):
        await repository.create(appointment_factory("appt-1", "14:00", 60))
        original = (
            await orchestrator.create_appointment(booking_payload(status="CONFIRMED"))
        ).appointment

        with pytest.raises(ConflictError):
            await orchestrator.reschedule_appointment(original.id, monday, "14:00")

        assert await repository.get(original.id) == original
        assert len(repository.appointments) == 2

    @pytest.mark.asyncio
    async def test_failed_write_restores_original(
        self, orchestrator, repository, booking_payload, monday
    ):
        original = (await orchestrator.create_appointment(booking_payload())).appointment
        repository.create = AsyncMock(side_effect=RuntimeError("db down"))

        with pytest.raises(RuntimeError):
            await orchestrator.reschedule_appointment(original.id, monday, "15:00")

        restored = await repository.get(original.id)
        assert restored.status == AppointmentStatus.PENDING
        assert restored.rescheduled_to is None

    @pytest.mark.asyncio
    async def test_cannot_reschedule_terminal_appointment(
        self, orchestrator, booking_payload, monday
    ):
        original = (await orchestrator.create_appointment(booking_payload())).appointment
        await orchestrator.cancel_appointment(original.id)

        with pytest.raises(InvalidStatusTransitionError):
            await orchestrator.reschedule_appointment(original.id, monday, "14:00")

    @pytest.mark.asyncio
    async def test_invalid_new_time(self, orchestrator, booking_payload, monday):
        original = (await orchestrator.create_appointment(booking_payload())).appointment

        with pytest.raises(ValidationError):
            await orchestrator.reschedule_appointment(original.id, monday, "23:30")


class TestStatusTransitions:
    @pytest.mark.asyncio
    async def test_happy_path(self, orchestrator, booking_payload, fixed_clock):
        created = (await orchestrator.create_appointment(booking_payload())).appointment

        await orchestrator.confirm_appointment(created.id)
        arrived = await orchestrator.check_in(created.id)
        started = await orchestrator.start(created.id)
        completed = await orchestrator.complete(created.id, actor="stylist")

        assert arrived.checked_in_at == fixed_clock()
        assert started.started_at == fixed_clock()
        assert completed.status == AppointmentStatus.COMPLETED
        assert completed.completed_at == fixed_clock()
        assert len(completed.change_history) == 5
        assert completed.change_history[-1].actor == "stylist"

    @pytest.mark.asyncio
    async def test_cancel_records_metadata_and_frees_slot(self, orchestrator, booking_payload):
        created = (await orchestrator.create_appointment(booking_payload())).appointment

        cancelled = await orchestrator.cancel_appointment(
            created.id, actor="front-desk", reason="Client called", cancelled_by="client"
        )

        assert cancelled.status == AppointmentStatus.CANCELLED
        assert cancelled.cancellation_reason == "Client called"
        assert cancelled.cancelled_by == "client"
        assert cancelled.cancelled_at is not None

        again = await orchestrator.create_appointment(booking_payload())
        assert again.appointment.id != created.id

    @pytest.mark.asyncio
    async def test_no_show(self, orchestrator, booking_payload):
        created = (await orchestrator.create_appointment(booking_payload())).appointment

        no_show = await orchestrator.mark_no_show(created.id)

        assert no_show.status == AppointmentStatus.NO_SHOW
        assert no_show.no_show_at is not None

    @pytest.mark.asyncio
    async def test_walk_in_checks_in_without_confirmation(
        self, orchestrator, booking_payload, fixed_clock
    ):
        created = (await orchestrator.create_appointment(booking_payload())).appointment
        assert created.status == AppointmentStatus.PENDING

        arrived = await orchestrator.check_in(created.id)

        assert arrived.status == AppointmentStatus.ARRIVED
        assert arrived.checked_in_at == fixed_clock()

    @pytest.mark.asyncio
    async def test_invalid_transition(self, orchestrator, booking_payload):
        created = (await orchestrator.create_appointment(booking_payload())).appointment

        with pytest.raises(InvalidStatusTransitionError):
            await orchestrator.complete(created.id)

        with pytest.raises(InvalidStatusTransitionError):
            await orchestrator.start(created.id)


class TestSideEffects:
    @pytest.mark.asyncio
    async def test_notifications_and_broadcast(self, repository, booking_payload, fixed_clock):
        notifier = AsyncMock()
        broadcaster = AsyncMock()
        orchestrator = BookingOrchestrator(
            repository, notifier=notifier, broadcaster=broadcaster, clock=fixed_clock
        )

        result = await orchestrator.create_appointment(
            booking_payload(
                notifications=[
                    {"type": "confirmation", "methods": ["EMAIL"]},
                    {"type": "reminder", "methods": ["SMS", "WHATSAPP"], "timing": 60},
                ]
            )
        )
        await orchestrator.wait_for_side_effects()

        appointment = result.appointment
        notifier.send_confirmation.assert_awaited_once_with(appointment)
        assert [call.args for call in notifier.schedule_reminder.await_args_list] == [
            (appointment, NotificationChannel.SMS, 60, "UTC"),
            (appointment, NotificationChannel.WHATSAPP, 60, "UTC"),
        ]
        broadcaster.emit.assert_awaited_once()
        assert broadcaster.emit.await_args.args[:3] == (
            "company-1",
            "branch-1",
            "appointment.created",
        )

    @pytest.mark.asyncio
    async def test_side_effect_failures_are_swallowed(
        self, repository, booking_payload, fixed_clock
    ):
        notifier = AsyncMock()
        notifier.send_confirmation.side_effect = RuntimeError("broker down")
        notifier.schedule_reminder.side_effect = RuntimeError("broker down")
        broadcaster = AsyncMock()
        broadcaster.emit.side_effect = ConnectionError("redis down")
        orchestrator = BookingOrchestrator(
            repository, notifier=notifier, broadcaster=broadcaster, clock=fixed_clock
        )

        result = await orchestrator.create_appointment(
            booking_payload(
                notifications=[
                    {"type": "confirmation", "methods": ["EMAIL"]},
                    {"type": "reminder", "methods": ["SMS"], "timing": 30},
                ]
            )
        )
        cancelled = await orchestrator.cancel_appointment(result.appointment.id)
        await orchestrator.wait_for_side_effects()

        assert result.appointment.id in repository.appointments
        assert cancelled.status == AppointmentStatus.CANCELLED
        assert broadcaster.emit.await_count == 2


    @pytest.mark.asyncio
    async def test_hanging_notifier_does_not_delay_booking(
        self, repository, booking_payload, fixed_clock
    ):
        release = asyncio.Event()

        async def _hang(appointment):
            await release.wait()

        notifier = AsyncMock()
        notifier.send_confirmation.side_effect = _hang
        orchestrator = BookingOrchestrator(repository, notifier=notifier, clock=fixed_clock)

        result = await asyncio.wait_for(
            orchestrator.create_appointment(
                booking_payload(notifications=[{"type": "confirmation", "methods": ["EMAIL"]}])
            ),
            timeout=1,
        )

        assert result.appointment.id in repository.appointments
        assert not release.is_set()

        release.set()
        await orchestrator.wait_for_side_effects()
        notifier.send_confirmation.assert_awaited_once_with(result.appointment)


class TestQueries:
    @pytest.mark.asyncio
    async def test_get_appointment(self, orchestrator, booking_payload):
        created = (await orchestrator.create_appointment(booking_payload())).appointment

        assert await orchestrator.get_appointment(created.id) == created
        with pytest.raises(NotFoundError):
            await orchestrator.get_appointment("missing")

    @pytest.mark.asyncio
    async def test_available_slots_reflect_bookings(
        self, orchestrator, booking_payload, monday
    ):
        await orchestrator.create_appointment(booking_payload())

        slots = await orchestrator.get_available_slots(
            {
                "branch_id": "branch-1",
                "date": monday,
                "duration": 60,
                "staff_id": "staff-1",
                "granularity": 60,
                "include_unavailable": False,
            }
        )

        assert [s.start_time for s in slots] == [
            "09:00", "11:00", "13:00", "14:00", "15:00", "16:00"
        ]

    @pytest.mark.asyncio
    async def test_check_slot_availability(self, orchestrator, booking_payload, monday):
        created = (await orchestrator.create_appointment(booking_payload())).appointment
        candidate = {
            "branch_id": "branch-1",
            "client_id": "client-2",
            "date": monday,
            "start_time": "10:00",
            "total_duration": 30,
            "staff_id": "staff-1",
        }

        busy = await orchestrator.check_slot_availability(candidate)
        own = await orchestrator.check_slot_availability(
            candidate, exclude_appointment_id=created.id
        )

        assert not busy.available
        assert own.available

    @pytest.mark.asyncio
    async def test_invalid_query_is_a_validation_error(self, orchestrator, monday):
        with pytest.raises(ValidationError):
            await orchestrator.get_available_slots(
                {"branch_id": "branch-1", "date": monday, "duration": 0}
            )
