"""Read/write interfaces the engine consumes. Implementations are injected."""

from datetime import date as date_type
from typing import Optional, Protocol

from booking_engine.schemas.appointment import AppointmentRecord
from booking_engine.schemas.scheduling import (
    BranchInfo,
    DayHours,
    StaffMember,
    TimeOff,
    WorkingSchedule,
)


class AppointmentRepository(Protocol):
    async def get(self, appointment_id: str) -> Optional[AppointmentRecord]:
        ...

    async def find_active_appointments(
        self,
        date: date_type,
        *,
        staff_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        client_id: Optional[str] = None,
    ) -> list[AppointmentRecord]:
        """Active appointments on ``date`` for exactly one of staff, resource or client."""
        ...

    async def create(self, appointment: AppointmentRecord) -> AppointmentRecord:
        """Persist a new appointment.

        Raises ConcurrencyError when the storage layer rejects an overlapping
        active slot for the same staff, resource or client.
        """
        ...

    async def update(self, appointment: AppointmentRecord) -> AppointmentRecord:
        ...


class ScheduleRepository(Protocol):
    async def get_staff(self, staff_id: str) -> Optional[StaffMember]:
        ...

    async def get_branch(self, branch_id: str) -> Optional[BranchInfo]:
        ...

    async def find_eligible_staff(
        self, branch_id: str, service_ids: list[str]
    ) -> list[StaffMember]:
        """Active staff assigned to the branch who provide every requested service."""
        ...

    async def find_working_schedules(
        self, staff_id: str, branch_id: str, date: date_type
    ) -> list[WorkingSchedule]:
        """Override and weekly schedule rows that may govern ``date``."""
        ...

    async def find_approved_time_off(
        self, staff_id: str, date: date_type
    ) -> Optional[TimeOff]:
        ...

    async def find_operating_hours(
        self, branch_id: str, date: date_type
    ) -> Optional[DayHours]:
        """Hours for the weekday of ``date``.

        ``None`` means the branch has no operating hours configured at all; a
        configured branch without a row for that weekday is closed.
        """
        ...


def single_filter(**filters) -> tuple[str, str]:
    """Pick the one non-None lookup key among staff_id, resource_id and client_id."""
    provided = [(field, value) for field, value in filters.items() if value is not None]
    if len(provided) != 1:
        raise ValueError("Exactly one of staff_id, resource_id or client_id is required")
    return provided[0]
