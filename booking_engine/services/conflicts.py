from typing import Optional
import logging

from booking_engine.repositories.base import AppointmentRepository
from booking_engine.schemas.appointment import AppointmentRecord
from booking_engine.schemas.enums import ConflictType
from booking_engine.schemas.scheduling import Conflict, SlotCandidate
from booking_engine.services.schedule_store import ScheduleStore
from booking_engine.utils.time import contains, overlaps, parse_time


logger = logging.getLogger(__name__)

__all__ = ["ConflictDetector", "overlaps"]


class ConflictDetector:
    """Validates one candidate slot against staff, resource, client and branch hours.

    Every check runs; conflicts accumulate rather than short-circuit.
    """

    def __init__(self, store: ScheduleStore, repository: AppointmentRepository):
        self.store = store
        self.repository = repository

    async def detect(
        self,
        candidate: SlotCandidate,
        exclude_appointment_id: Optional[str] = None,
    ) -> list[Conflict]:
        logger.debug(
            f"Detecting conflicts for {candidate.date} {candidate.start_time} "
            f"+{candidate.total_duration}m (staff={candidate.staff_id}, "
            f"resource={candidate.resource_id}, client={candidate.client_id})"
        )
        conflicts: list[Conflict] = []

        if candidate.staff_id:
            conflicts.extend(
                await self._check_staff(candidate, exclude_appointment_id)
            )

        if candidate.resource_id:
            conflicts.extend(
                await self._check_resource(candidate, exclude_appointment_id)
            )

        conflicts.extend(await self._check_client(candidate, exclude_appointment_id))

        business_hours_conflict = await self._check_business_hours(candidate)
        if business_hours_conflict:
            conflicts.append(business_hours_conflict)

        logger.debug(f"Conflict detection completed with {len(conflicts)} conflicts")
        return conflicts

    async def _check_staff(
        self, candidate: SlotCandidate, exclude_appointment_id: Optional[str]
    ) -> list[Conflict]:
        staff_id = candidate.staff_id
        staff = await self.store.repository.get_staff(staff_id)
        if not staff:
            return [
                Conflict(
                    kind=ConflictType.STAFF_UNAVAILABLE,
                    message="Staff member not found",
                    staff_id=staff_id,
                )
            ]

        conflicts = []
        hours_conflict = await self._check_staff_hours(candidate)
        if hours_conflict:
            conflicts.append(hours_conflict)

        existing = await self.repository.find_active_appointments(
            candidate.date, staff_id=staff_id
        )
        for appointment in _overlapping(existing, candidate, exclude_appointment_id):
            conflicts.append(
                Conflict(
                    kind=ConflictType.STAFF_UNAVAILABLE,
                    message=(
                        f"Staff member has conflicting appointment from "
                        f"{appointment.start_time} to {appointment.end_time}"
                    ),
                    staff_id=staff_id,
                    conflicting_appointment_id=appointment.id,
                )
            )
        return conflicts

    async def _check_staff_hours(self, candidate: SlotCandidate) -> Optional[Conflict]:
        staff_id = candidate.staff_id
        window = await self.store.resolve_working_window(
            staff_id, candidate.branch_id, candidate.date
        )
        if window is None or not window.is_working:
            return Conflict(
                kind=ConflictType.STAFF_UNAVAILABLE,
                message="Staff member is not scheduled to work on this day",
                staff_id=staff_id,
            )

        time_off = await self.store.get_approved_time_off(staff_id, candidate.date)
        if time_off:
            return Conflict(
                kind=ConflictType.STAFF_UNAVAILABLE,
                message="Staff member has approved time off on this day",
                staff_id=staff_id,
            )

        fits = any(
            contains(start, end, candidate.start_minute, candidate.end_minute)
            for start, end in window.sub_windows()
        )
        if not fits:
            return Conflict(
                kind=ConflictType.STAFF_UNAVAILABLE,
                message="Appointment is outside staff working hours",
                staff_id=staff_id,
            )
        return None

    async def _check_resource(
        self, candidate: SlotCandidate, exclude_appointment_id: Optional[str]
    ) -> list[Conflict]:
        existing = await self.repository.find_active_appointments(
            candidate.date, resource_id=candidate.resource_id
        )
        return [
            Conflict(
                kind=ConflictType.RESOURCE_UNAVAILABLE,
                message=(
                    f"Resource is already booked from "
                    f"{appointment.start_time} to {appointment.end_time}"
                ),
                resource_id=candidate.resource_id,
                conflicting_appointment_id=appointment.id,
            )
            for appointment in _overlapping(existing, candidate, exclude_appointment_id)
        ]

    async def _check_client(
        self, candidate: SlotCandidate, exclude_appointment_id: Optional[str]
    ) -> list[Conflict]:
        existing = await self.repository.find_active_appointments(
            candidate.date, client_id=candidate.client_id
        )
        return [
            Conflict(
                kind=ConflictType.CLIENT_DOUBLE_BOOKING,
                message=(
                    f"Client has conflicting appointment from "
                    f"{appointment.start_time} to {appointment.end_time}"
                ),
                conflicting_appointment_id=appointment.id,
            )
            for appointment in _overlapping(existing, candidate, exclude_appointment_id)
        ]

    async def _check_business_hours(
        self, candidate: SlotCandidate
    ) -> Optional[Conflict]:
        hours = await self.store.get_operating_hours(candidate.branch_id, candidate.date)
        if hours is None:
            # No operating hours configured for the branch
            return None

        if not hours.is_open:
            return Conflict(
                kind=ConflictType.BUSINESS_HOURS,
                message="Business is closed on this day",
            )

        open_minute = parse_time(hours.open_time)
        close_minute = parse_time(hours.close_time)
        if not contains(open_minute, close_minute, candidate.start_minute, candidate.end_minute):
            return Conflict(
                kind=ConflictType.BUSINESS_HOURS,
                message=(
                    f"Appointment is outside business hours "
                    f"({hours.open_time} - {hours.close_time})"
                ),
            )

        for break_interval in hours.breaks:
            if overlaps(
                candidate.start_minute,
                candidate.end_minute,
                break_interval.start_minute,
                break_interval.end_minute,
            ):
                return Conflict(
                    kind=ConflictType.BUSINESS_HOURS,
                    message=(
                        f"Appointment overlaps the branch break "
                        f"({break_interval.start} - {break_interval.end})"
                    ),
                )
        return None


def _overlapping(
    appointments: list[AppointmentRecord],
    candidate: SlotCandidate,
    exclude_appointment_id: Optional[str],
) -> list[AppointmentRecord]:
    return [
        appointment
        for appointment in appointments
        if appointment.id != exclude_appointment_id
        and appointment.is_active
        and overlaps(
            candidate.start_minute,
            candidate.end_minute,
            appointment.start_minute,
            appointment.end_minute,
        )
    ]
