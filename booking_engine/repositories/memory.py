from datetime import date as date_type
from typing import Optional

from booking_engine.core.exceptions import ConcurrencyError, NotFoundError
from booking_engine.repositories.base import single_filter
from booking_engine.schemas.appointment import AppointmentRecord
from booking_engine.schemas.enums import ConflictType, WeekDay
from booking_engine.schemas.scheduling import (
    BranchInfo,
    Conflict,
    DayHours,
    StaffMember,
    TimeOff,
    WorkingSchedule,
)
from booking_engine.utils.time import overlaps


class InMemoryBookingRepository:
    """Process-local appointment and schedule storage.

    Writes enforce the same exclusion rule as the PostgreSQL constraints: no
    two active appointments for one staff member, resource or client may
    overlap on a date. The check and the write happen without yielding to the
    event loop, so they are atomic for coroutines sharing this instance.
    """

    def __init__(self):
        self.appointments: dict[str, AppointmentRecord] = {}
        self.staff: dict[str, StaffMember] = {}
        self.branches: dict[str, BranchInfo] = {}
        self.staff_branches: dict[str, set[str]] = {}
        self.staff_services: dict[str, set[str]] = {}
        self.schedules: list[WorkingSchedule] = []
        self.time_off: list[TimeOff] = []
        self.operating_hours: dict[str, dict[WeekDay, DayHours]] = {}

    # Setup helpers

    def add_branch(self, branch: BranchInfo) -> BranchInfo:
        self.branches[branch.id] = branch
        return branch

    def add_staff(
        self,
        staff: StaffMember,
        branch_ids: Optional[list[str]] = None,
        service_ids: Optional[list[str]] = None,
    ) -> StaffMember:
        self.staff[staff.id] = staff
        self.staff_branches[staff.id] = set(branch_ids or [])
        self.staff_services[staff.id] = set(service_ids or [])
        return staff

    def add_schedule(self, schedule: WorkingSchedule) -> WorkingSchedule:
        self.schedules.append(schedule)
        return schedule

    def add_time_off(self, time_off: TimeOff) -> TimeOff:
        self.time_off.append(time_off)
        return time_off

    def set_operating_hours(
        self, branch_id: str, hours: dict[WeekDay, DayHours]
    ) -> None:
        self.operating_hours[branch_id] = dict(hours)

    # AppointmentRepository

    async def get(self, appointment_id: str) -> Optional[AppointmentRecord]:
        appointment = self.appointments.get(appointment_id)
        return appointment.model_copy(deep=True) if appointment else None

    async def find_active_appointments(
        self,
        date: date_type,
        *,
        staff_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        client_id: Optional[str] = None,
    ) -> list[AppointmentRecord]:
        field, value = single_filter(
            staff_id=staff_id, resource_id=resource_id, client_id=client_id
        )
        matches = [
            a.model_copy(deep=True)
            for a in self.appointments.values()
            if a.is_active and a.date == date and getattr(a, field) == value
        ]
        return sorted(matches, key=lambda a: (a.start_minute, a.id))

    async def create(self, appointment: AppointmentRecord) -> AppointmentRecord:
        if appointment.id in self.appointments:
            raise ValueError(f"Appointment {appointment.id} already exists")
        self._enforce_exclusion(appointment)
        self.appointments[appointment.id] = appointment.model_copy(deep=True)
        return appointment.model_copy(deep=True)

    async def update(self, appointment: AppointmentRecord) -> AppointmentRecord:
        if appointment.id not in self.appointments:
            raise NotFoundError("Appointment", appointment.id)
        self._enforce_exclusion(appointment)
        self.appointments[appointment.id] = appointment.model_copy(deep=True)
        return appointment.model_copy(deep=True)

    def _enforce_exclusion(self, candidate: AppointmentRecord) -> None:
        if not candidate.is_active:
            return

        dimensions = (
            ("staff_id", ConflictType.STAFF_UNAVAILABLE),
            ("resource_id", ConflictType.RESOURCE_UNAVAILABLE),
            ("client_id", ConflictType.CLIENT_DOUBLE_BOOKING),
        )
        conflicts = []
        for field, kind in dimensions:
            value = getattr(candidate, field)
            if value is None:
                continue
            for existing in self.appointments.values():
                if (
                    existing.id == candidate.id
                    or not existing.is_active
                    or existing.date != candidate.date
                    or getattr(existing, field) != value
                ):
                    continue
                if overlaps(
                    candidate.start_minute,
                    candidate.end_minute,
                    existing.start_minute,
                    existing.end_minute,
                ):
                    conflicts.append(
                        Conflict(
                            kind=kind,
                            message=f"Slot already taken by appointment {existing.id}",
                            staff_id=candidate.staff_id,
                            resource_id=candidate.resource_id,
                            conflicting_appointment_id=existing.id,
                        )
                    )
        if conflicts:
            raise ConcurrencyError(
                f"Overlapping active appointment exists for {candidate.id}", conflicts
            )

    # ScheduleRepository

    async def get_staff(self, staff_id: str) -> Optional[StaffMember]:
        return self.staff.get(staff_id)

    async def get_branch(self, branch_id: str) -> Optional[BranchInfo]:
        return self.branches.get(branch_id)

    async def find_eligible_staff(
        self, branch_id: str, service_ids: list[str]
    ) -> list[StaffMember]:
        required = set(service_ids)
        eligible = [
            staff
            for staff_id, staff in self.staff.items()
            if staff.is_active
            and branch_id in self.staff_branches.get(staff_id, set())
            and required <= self.staff_services.get(staff_id, set())
        ]
        return sorted(eligible, key=lambda s: s.id)

    async def find_working_schedules(
        self, staff_id: str, branch_id: str, date: date_type
    ) -> list[WorkingSchedule]:
        return [
            s
            for s in self.schedules
            if s.staff_id == staff_id and s.branch_id == branch_id and s.applies_to(date)
        ]

    async def find_approved_time_off(
        self, staff_id: str, date: date_type
    ) -> Optional[TimeOff]:
        for time_off in self.time_off:
            if time_off.staff_id == staff_id and time_off.is_approved and time_off.covers(date):
                return time_off
        return None

    async def find_operating_hours(
        self, branch_id: str, date: date_type
    ) -> Optional[DayHours]:
        hours = self.operating_hours.get(branch_id)
        if hours is None:
            return None
        return hours.get(WeekDay(date.weekday()), DayHours(is_open=False))

