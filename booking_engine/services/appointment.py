from datetime import date as date_type
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Type, TypeVar, Union
import asyncio
import logging
import uuid

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from booking_engine.core.exceptions import (
    ConcurrencyError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from booking_engine.repositories.base import AppointmentRepository, ScheduleRepository
from booking_engine.schemas.appointment import (
    SLOT_FIELDS,
    AppointmentCreate,
    AppointmentRecord,
    AppointmentUpdate,
    BookingResult,
    ChangeHistoryEntry,
)
from booking_engine.schemas.enums import (
    AppointmentStatus,
    ConflictType,
    NotificationType,
)
from booking_engine.schemas.scheduling import (
    BranchInfo,
    Conflict,
    SlotCandidate,
    SlotCheckResult,
    SlotQuery,
    TimeSlot,
)
from booking_engine.services.availability import AvailabilityCalculator
from booking_engine.services.conflicts import ConflictDetector
from booking_engine.services.locks import (
    LocalSlotLockManager,
    SlotLockManager,
    appointment_lock_key,
    slot_lock_keys,
)
from booking_engine.services.notifications import (
    APPOINTMENT_CREATED,
    APPOINTMENT_RESCHEDULED,
    APPOINTMENT_STATUS_CHANGED,
    APPOINTMENT_UPDATED,
    NotificationDispatcher,
    RealtimeBroadcaster,
)
from booking_engine.services.recurring import RecurringSeriesExpander
from booking_engine.services.schedule_store import ScheduleStore
from booking_engine.services.state_machine import ensure_transition, is_terminal
from booking_engine.utils.time import MINUTES_PER_DAY, add_minutes, is_valid_time, parse_time


logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_input(model_cls: Type[ModelT], data: Union[ModelT, dict]) -> ModelT:
    """Validate raw input into ``model_cls``, raising the engine's ValidationError."""
    if isinstance(data, model_cls):
        return data
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as e:
        errors = []
        for error in e.errors():
            location = ".".join(str(part) for part in error["loc"])
            errors.append(f"{location}: {error['msg']}" if location else error["msg"])
        raise ValidationError(errors) from e


class BookingOrchestrator:
    """Owns the appointment lifecycle.

    Every operation that moves or creates a slot runs conflict detection and
    the write under the slot locks of the staff member, resource and client
    involved. Storage-level exclusion failures are retried once with a fresh
    detection pass and then reported as conflicts.

    Operations on an existing appointment additionally hold its own lock key
    while they read, check and write it. That key is always taken before any
    slot keys.

    Notifications and broadcasts run as background tasks and never delay
    the operation that triggered them.
    """

    def __init__(
        self,
        repository: AppointmentRepository,
        schedule_repository: Optional[ScheduleRepository] = None,
        lock_manager: Optional[SlotLockManager] = None,
        notifier: Optional[NotificationDispatcher] = None,
        broadcaster: Optional[RealtimeBroadcaster] = None,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self.repository = repository
        self.schedule_repository = schedule_repository or repository
        self.lock_manager = lock_manager or LocalSlotLockManager()
        self.notifier = notifier
        self.broadcaster = broadcaster
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.id_factory = id_factory or (lambda: str(uuid.uuid4()))
        self._side_effect_tasks: set[asyncio.Task] = set()

        self.store = ScheduleStore(self.schedule_repository)
        self.detector = ConflictDetector(self.store, repository)
        self.availability = AvailabilityCalculator(self.store, repository, self.detector)
        self.expander = RecurringSeriesExpander(
            self.detector,
            repository,
            lock_manager=self.lock_manager,
            clock=self.clock,
            id_factory=self.id_factory,
        )

    async def get_appointment(self, appointment_id: str) -> AppointmentRecord:
        appointment = await self.repository.get(appointment_id)
        if not appointment:
            raise NotFoundError("Appointment", appointment_id)
        return appointment

    async def create_appointment(
        self, data: Union[AppointmentCreate, dict], actor: str = "system"
    ) -> BookingResult:
        """
        Book a new appointment, expanding its recurring series when requested.

        Args:
            data: Booking request
            actor: Who performs the booking, recorded in the change history

        Returns:
            The persisted first appointment and the series outcome, if recurring

        Raises:
            ValidationError: Malformed or missing input
            NotFoundError: Unknown branch
            ConflictError: The slot is not bookable
        """
        request = parse_input(AppointmentCreate, data)
        logger.info(
            f"Creating appointment for client {request.client_id} at branch "
            f"{request.branch_id} on {request.date} {request.start_time}"
        )

        branch = await self._get_branch(request.branch_id, request.company_id)

        staff_id = request.staff_id
        if request.auto_assign_staff:
            staff_id = await self._auto_assign_staff(request)
            logger.info(f"Auto-assigned staff {staff_id}")

        now = self.clock()
        appointment_id = self.id_factory()
        record = AppointmentRecord(
            id=appointment_id,
            company_id=request.company_id,
            branch_id=request.branch_id,
            client_id=request.client_id,
            staff_id=staff_id,
            resource_id=request.resource_id,
            date=request.date,
            start_time=request.start_time,
            end_time=add_minutes(request.start_time, request.total_duration),
            total_duration=request.total_duration,
            services=request.services,
            status=request.status or AppointmentStatus.PENDING,
            source=request.source,
            notes=request.notes,
            internal_notes=request.internal_notes,
            notifications=request.notifications,
            # The first appointment anchors its own series
            recurring_group_id=appointment_id if request.is_recurring else None,
            change_history=[_history(now, actor, "Appointment created")],
            created_by=actor,
            created_at=now,
            updated_at=now,
        )

        appointment = await self._reserve(record)
        logger.info(f"Appointment {appointment.id} created")

        recurring = None
        if request.is_recurring:
            recurring = await self.expander.expand(
                appointment, request.recurrence_pattern, actor
            )
            if recurring.fully_failed:
                logger.warning(
                    f"No follow-up occurrence could be created for series {recurring.group_id}"
                )

        self._notify_created(appointment, branch)
        self._broadcast(
            appointment, APPOINTMENT_CREATED, {"appointment": appointment.model_dump(mode="json")}
        )
        return BookingResult(appointment=appointment, recurring=recurring)

    async def update_appointment(
        self,
        appointment_id: str,
        data: Union[AppointmentUpdate, dict],
        actor: str = "system",
    ) -> AppointmentRecord:
        """Apply a partial update, re-checking conflicts when the slot moves."""
        update = parse_input(AppointmentUpdate, data)

        async with self.lock_manager.hold([appointment_lock_key(appointment_id)]):
            current = await self.get_appointment(appointment_id)

            changes = {
                field: getattr(update, field)
                for field in update.model_fields_set
                if getattr(update, field) != getattr(current, field)
            }
            if not changes:
                logger.debug(f"No changes for appointment {appointment_id}")
                return current

            moves_slot = any(field in SLOT_FIELDS for field in changes)
            if moves_slot and is_terminal(current.status):
                raise ValidationError(
                    [f"Cannot move an appointment in status {current.status.value}"]
                )

            merged = current.model_copy(update=changes, deep=True)
            if merged.start_minute + merged.total_duration > MINUTES_PER_DAY:
                raise ValidationError(["Appointment cannot extend past midnight"])

            now = self.clock()
            merged = merged.model_copy(
                update={
                    "end_time": add_minutes(merged.start_time, merged.total_duration),
                    "updated_at": now,
                    "change_history": current.change_history
                    + [_history(now, actor, f"Updated {', '.join(sorted(changes))}")],
                }
            )

            if moves_slot:
                logger.info(
                    f"Appointment {appointment_id} moves slot, re-validating "
                    f"({', '.join(sorted(f for f in changes if f in SLOT_FIELDS))})"
                )
                updated = await self._reserve(merged, exclude_appointment_id=appointment_id)
            else:
                updated = await self.repository.update(merged)

        logger.info(f"Appointment {appointment_id} updated")
        self._broadcast(
            updated,
            APPOINTMENT_UPDATED,
            {"appointment": updated.model_dump(mode="json"), "changed": sorted(changes)},
        )
        return updated

    async def reschedule_appointment(
        self,
        appointment_id: str,
        new_date: date_type,
        new_start_time: str,
        new_staff_id: Optional[str] = None,
        actor: str = "system",
    ) -> AppointmentRecord:
        """
        Move an appointment by booking a successor and retiring the original.

        The original ends in RESCHEDULED linked to the successor. When the new
        slot cannot be booked, the original is left as it was.

        Returns:
            The newly created appointment
        """
        if not is_valid_time(new_start_time):
            raise ValidationError([f"start_time: '{new_start_time}' is not a valid HH:MM time"])

        async with self.lock_manager.hold([appointment_lock_key(appointment_id)]):
            original = await self.get_appointment(appointment_id)
            ensure_transition(original.status, AppointmentStatus.RESCHEDULED)
            if parse_time(new_start_time) + original.total_duration > MINUTES_PER_DAY:
                raise ValidationError(["Appointment cannot extend past midnight"])

            logger.info(
                f"Rescheduling appointment {appointment_id} to {new_date} {new_start_time}"
            )
            successor = self._build_successor(
                original, new_date, new_start_time, new_staff_id, actor
            )
            created = await self._reserve(
                successor, exclude_appointment_id=original.id, replaces=original
            )

        logger.info(f"Appointment {appointment_id} rescheduled to {created.id}")
        self._broadcast(
            created,
            APPOINTMENT_RESCHEDULED,
            {"original_id": original.id, "appointment": created.model_dump(mode="json")},
        )
        return created

    async def confirm_appointment(
        self, appointment_id: str, actor: str = "system"
    ) -> AppointmentRecord:
        return await self._transition(
            appointment_id, AppointmentStatus.CONFIRMED, actor, "Appointment confirmed"
        )

    async def cancel_appointment(
        self,
        appointment_id: str,
        actor: str = "system",
        reason: Optional[str] = None,
        cancelled_by: Optional[str] = None,
    ) -> AppointmentRecord:
        summary = f"Appointment cancelled: {reason}" if reason else "Appointment cancelled"
        return await self._transition(
            appointment_id,
            AppointmentStatus.CANCELLED,
            actor,
            summary,
            cancellation_reason=reason,
            cancelled_by=cancelled_by or actor,
            cancelled_at=self.clock(),
        )

    async def check_in(self, appointment_id: str, actor: str = "system") -> AppointmentRecord:
        return await self._transition(
            appointment_id,
            AppointmentStatus.ARRIVED,
            actor,
            "Client checked in",
            checked_in_at=self.clock(),
        )

    async def start(self, appointment_id: str, actor: str = "system") -> AppointmentRecord:
        return await self._transition(
            appointment_id,
            AppointmentStatus.IN_PROGRESS,
            actor,
            "Appointment started",
            started_at=self.clock(),
        )

    async def complete(self, appointment_id: str, actor: str = "system") -> AppointmentRecord:
        return await self._transition(
            appointment_id,
            AppointmentStatus.COMPLETED,
            actor,
            "Appointment completed",
            completed_at=self.clock(),
        )

    async def mark_no_show(
        self, appointment_id: str, actor: str = "system"
    ) -> AppointmentRecord:
        return await self._transition(
            appointment_id,
            AppointmentStatus.NO_SHOW,
            actor,
            "Client did not show up",
            no_show_at=self.clock(),
        )

    async def get_available_slots(self, query: Union[SlotQuery, dict]) -> list[TimeSlot]:
        return await self.availability.get_available_slots(parse_input(SlotQuery, query))

    async def check_slot_availability(
        self,
        candidate: Union[SlotCandidate, dict],
        exclude_appointment_id: Optional[str] = None,
    ) -> SlotCheckResult:
        return await self.availability.check_slot_availability(
            parse_input(SlotCandidate, candidate), exclude_appointment_id
        )

    async def wait_for_side_effects(self) -> None:
        """Wait until every queued notification and broadcast has finished."""
        while self._side_effect_tasks:
            await asyncio.gather(*self._side_effect_tasks)

    async def _transition(
        self,
        appointment_id: str,
        new_status: AppointmentStatus,
        actor: str,
        summary: str,
        **metadata: Any,
    ) -> AppointmentRecord:
        async with self.lock_manager.hold([appointment_lock_key(appointment_id)]):
            current = await self.get_appointment(appointment_id)
            ensure_transition(current.status, new_status)

            now = self.clock()
            updated = current.model_copy(
                update={
                    "status": new_status,
                    "updated_at": now,
                    "change_history": current.change_history + [_history(now, actor, summary)],
                    **metadata,
                },
                deep=True,
            )
            updated = await self.repository.update(updated)

        logger.info(
            f"Appointment {appointment_id} moved from {current.status.value} to {new_status.value}"
        )
        self._broadcast(
            updated,
            APPOINTMENT_STATUS_CHANGED,
            {
                "appointment_id": updated.id,
                "previous_status": current.status.value,
                "status": new_status.value,
            },
        )
        return updated

    async def _reserve(
        self,
        record: AppointmentRecord,
        exclude_appointment_id: Optional[str] = None,
        replaces: Optional[AppointmentRecord] = None,
    ) -> AppointmentRecord:
        """Detect conflicts and write ``record`` as one unit under the slot locks.

        ``exclude_appointment_id`` set without ``replaces`` updates an existing
        record in place; with ``replaces`` the replaced record is retired.
        """
        keys = slot_lock_keys(
            record.date,
            staff_id=record.staff_id,
            resource_id=record.resource_id,
            client_id=record.client_id,
        )
        if replaces is not None:
            keys += slot_lock_keys(
                replaces.date,
                staff_id=replaces.staff_id,
                resource_id=replaces.resource_id,
                client_id=replaces.client_id,
            )

        candidate = SlotCandidate(
            branch_id=record.branch_id,
            client_id=record.client_id,
            date=record.date,
            start_time=record.start_time,
            total_duration=record.total_duration,
            staff_id=record.staff_id,
            resource_id=record.resource_id,
        )

        for attempt in (1, 2):
            try:
                async with self.lock_manager.hold(keys):
                    conflicts = await self.detector.detect(candidate, exclude_appointment_id)
                    if conflicts:
                        logger.info(
                            f"Slot rejected for appointment {record.id} with "
                            f"{len(conflicts)} conflicts"
                        )
                        raise ConflictError(conflicts)

                    if replaces is not None:
                        return await self._replace(record, replaces)
                    if exclude_appointment_id is not None:
                        return await self.repository.update(record)
                    return await self.repository.create(record)
            except ConcurrencyError as e:
                if attempt == 1:
                    logger.warning(
                        f"Lost a race writing appointment {record.id}, retrying: {e}"
                    )
                    continue
                logger.warning(f"Lost a race writing appointment {record.id} twice: {e}")
                raise ConflictError(
                    e.conflicts
                    or [
                        Conflict(
                            kind=ConflictType.STAFF_UNAVAILABLE,
                            message="Slot was taken by a concurrent booking",
                            staff_id=record.staff_id,
                            resource_id=record.resource_id,
                        )
                    ]
                ) from e

    async def _replace(
        self, successor: AppointmentRecord, original: AppointmentRecord
    ) -> AppointmentRecord:
        now = self.clock()
        retired = original.model_copy(
            update={
                "status": AppointmentStatus.RESCHEDULED,
                "rescheduled_to": successor.id,
                "rescheduled_at": now,
                "updated_at": now,
                "change_history": original.change_history
                + [_history(now, successor.created_by, f"Rescheduled to appointment {successor.id}")],
            },
            deep=True,
        )
        # Retire first so the original's own slot does not block its successor
        await self.repository.update(retired)
        try:
            return await self.repository.create(successor)
        except Exception:
            logger.warning(f"Restoring appointment {original.id} after failed reschedule")
            await self.repository.update(original)
            raise

    def _build_successor(
        self,
        original: AppointmentRecord,
        new_date: date_type,
        new_start_time: str,
        new_staff_id: Optional[str],
        actor: str,
    ) -> AppointmentRecord:
        now = self.clock()
        return AppointmentRecord(
            id=self.id_factory(),
            company_id=original.company_id,
            branch_id=original.branch_id,
            client_id=original.client_id,
            staff_id=new_staff_id or original.staff_id,
            resource_id=original.resource_id,
            date=new_date,
            start_time=new_start_time,
            end_time=add_minutes(new_start_time, original.total_duration),
            total_duration=original.total_duration,
            services=original.services,
            status=(
                AppointmentStatus.PENDING
                if original.status == AppointmentStatus.PENDING
                else AppointmentStatus.CONFIRMED
            ),
            source=original.source,
            notes=original.notes,
            internal_notes=original.internal_notes,
            notifications=original.notifications,
            recurring_group_id=original.recurring_group_id,
            rescheduled_from=original.id,
            change_history=[
                _history(now, actor, f"Created as reschedule of appointment {original.id}")
            ],
            created_by=actor,
            created_at=now,
            updated_at=now,
        )

    async def _get_branch(self, branch_id: str, company_id: str) -> BranchInfo:
        branch = await self.schedule_repository.get_branch(branch_id)
        if not branch or branch.company_id != company_id:
            raise NotFoundError("Branch", branch_id)
        return branch

    async def _auto_assign_staff(self, request: AppointmentCreate) -> str:
        service_ids = [service.service_id for service in request.services]
        eligible = await self.schedule_repository.find_eligible_staff(
            request.branch_id, service_ids
        )
        for staff in eligible:
            candidate = SlotCandidate(
                branch_id=request.branch_id,
                client_id=request.client_id,
                date=request.date,
                start_time=request.start_time,
                total_duration=request.total_duration,
                staff_id=staff.id,
                resource_id=request.resource_id,
            )
            if not await self.detector.detect(candidate):
                return staff.id

        raise ConflictError(
            [
                Conflict(
                    kind=ConflictType.STAFF_UNAVAILABLE,
                    message="No eligible staff member is available for the requested slot",
                )
            ]
        )

    def _notify_created(self, appointment: AppointmentRecord, branch: BranchInfo) -> None:
        if self.notifier is None:
            return

        for config in appointment.notifications:
            if config.type == NotificationType.CONFIRMATION:
                self._side_effect(
                    f"confirmation for appointment {appointment.id}",
                    lambda: self.notifier.send_confirmation(appointment),
                )
            elif config.type == NotificationType.REMINDER and config.timing:
                for channel in config.methods:
                    self._side_effect(
                        f"{channel.value} reminder for appointment {appointment.id}",
                        lambda channel=channel, timing=config.timing: (
                            self.notifier.schedule_reminder(
                                appointment, channel, timing, branch.timezone
                            )
                        ),
                    )

    def _broadcast(
        self, appointment: AppointmentRecord, event_type: str, payload: dict[str, Any]
    ) -> None:
        if self.broadcaster is None:
            return
        self._side_effect(
            f"{event_type} broadcast for appointment {appointment.id}",
            lambda: self.broadcaster.emit(
                appointment.company_id, appointment.branch_id, event_type, payload
            ),
        )

    def _side_effect(
        self, description: str, action: Callable[[], Awaitable[None]]
    ) -> None:
        task = asyncio.create_task(self._run_side_effect(description, action))
        self._side_effect_tasks.add(task)
        task.add_done_callback(self._side_effect_tasks.discard)

    async def _run_side_effect(
        self, description: str, action: Callable[[], Awaitable[None]]
    ) -> None:
        try:
            await action()
        except Exception:
            # Side effects never roll back a committed booking
            logger.error(f"Failed to dispatch {description}", exc_info=True)


def _history(timestamp: datetime, actor: str, summary: str) -> ChangeHistoryEntry:
    return ChangeHistoryEntry(timestamp=timestamp, actor=actor, summary=summary)
