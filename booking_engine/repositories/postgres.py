from datetime import date as date_type
from typing import Any, Optional

import structlog
from sqlalchemy import and_, func, or_, select
from sqlalchemy.dialects.postgresql import Range
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from booking_engine.core.database import AsyncSessionLocal
from booking_engine.core.exceptions import ConcurrencyError, NotFoundError
from booking_engine.models.appointment import Appointment
from booking_engine.models.branch import Branch, BranchOperatingHours
from booking_engine.models.staff import (
    Staff,
    StaffBranch,
    StaffSchedule,
    StaffService,
    StaffTimeOff,
)
from booking_engine.repositories.base import single_filter
from booking_engine.schemas.appointment import AppointmentRecord
from booking_engine.schemas.enums import ACTIVE_STATUSES, TimeOffStatus
from booking_engine.schemas.scheduling import (
    BranchInfo,
    DayHours,
    StaffMember,
    TimeOff,
    WorkingSchedule,
)

logger = structlog.get_logger(__name__)

# PostgreSQL exclusion_violation
EXCLUSION_VIOLATION = "23P01"

_JSON_FIELDS = ("services", "notifications", "change_history")


def _is_exclusion_violation(error: IntegrityError) -> bool:
    code = getattr(error.orig, "sqlstate", None) or getattr(error.orig, "pgcode", None)
    return code == EXCLUSION_VIOLATION


def _to_row_values(record: AppointmentRecord) -> dict[str, Any]:
    values = record.model_dump(exclude=set(_JSON_FIELDS))
    values["status"] = record.status.value
    values["source"] = record.source.value
    for field in _JSON_FIELDS:
        values[field] = [item.model_dump(mode="json") for item in getattr(record, field)]
    values["slot_range"] = Range(record.start_minute, record.end_minute, bounds="[)")
    return values


class SQLAlchemyBookingRepository:
    """PostgreSQL-backed appointment and schedule repository.

    Each call runs in its own session. Overlapping active writes are rejected
    by the ``appointments`` EXCLUDE constraints and surface as
    ConcurrencyError.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory or AsyncSessionLocal

    async def get(self, appointment_id: str) -> Optional[AppointmentRecord]:
        async with self.session_factory() as session:
            row = await session.get(Appointment, appointment_id)
            return AppointmentRecord.model_validate(row) if row else None

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
        query = (
            select(Appointment)
            .where(
                and_(
                    Appointment.date == date,
                    getattr(Appointment, field) == value,
                    Appointment.status.in_([s.value for s in ACTIVE_STATUSES]),
                )
            )
            .order_by(Appointment.start_time, Appointment.id)
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return [AppointmentRecord.model_validate(row) for row in result.scalars().all()]

    async def create(self, appointment: AppointmentRecord) -> AppointmentRecord:
        async with self.session_factory() as session:
            row = Appointment(**_to_row_values(appointment))
            session.add(row)
            await self._commit(session, appointment.id)
            await session.refresh(row)
            return AppointmentRecord.model_validate(row)

    async def update(self, appointment: AppointmentRecord) -> AppointmentRecord:
        async with self.session_factory() as session:
            row = await session.get(Appointment, appointment.id)
            if not row:
                raise NotFoundError("Appointment", appointment.id)
            for field, value in _to_row_values(appointment).items():
                setattr(row, field, value)
            await self._commit(session, appointment.id)
            await session.refresh(row)
            return AppointmentRecord.model_validate(row)

    async def _commit(self, session: AsyncSession, appointment_id: str) -> None:
        try:
            await session.commit()
        except IntegrityError as e:
            await session.rollback()
            if _is_exclusion_violation(e):
                logger.info("Appointment slot exclusion violated", appointment_id=appointment_id)
                raise ConcurrencyError(
                    f"Overlapping active appointment exists for {appointment_id}"
                ) from e
            logger.error("Appointment write failed", appointment_id=appointment_id, exc_info=e)
            raise

    async def get_staff(self, staff_id: str) -> Optional[StaffMember]:
        async with self.session_factory() as session:
            row = await session.get(Staff, staff_id)
            return StaffMember.model_validate(row) if row else None

    async def get_branch(self, branch_id: str) -> Optional[BranchInfo]:
        async with self.session_factory() as session:
            row = await session.get(Branch, branch_id)
            return BranchInfo.model_validate(row) if row else None

    async def find_eligible_staff(
        self, branch_id: str, service_ids: list[str]
    ) -> list[StaffMember]:
        query = (
            select(Staff)
            .join(StaffBranch, StaffBranch.staff_id == Staff.id)
            .where(and_(StaffBranch.branch_id == branch_id, Staff.is_active.is_(True)))
            .order_by(Staff.id)
        )
        required = set(service_ids)
        if required:
            providers = (
                select(StaffService.staff_id)
                .where(StaffService.service_id.in_(required))
                .group_by(StaffService.staff_id)
                .having(func.count(func.distinct(StaffService.service_id)) == len(required))
            )
            query = query.where(Staff.id.in_(providers))

        async with self.session_factory() as session:
            result = await session.execute(query)
            return [StaffMember.model_validate(row) for row in result.scalars().all()]

    async def find_working_schedules(
        self, staff_id: str, branch_id: str, date: date_type
    ) -> list[WorkingSchedule]:
        query = select(StaffSchedule).where(
            and_(
                StaffSchedule.staff_id == staff_id,
                StaffSchedule.branch_id == branch_id,
                or_(
                    StaffSchedule.override_date == date,
                    and_(
                        StaffSchedule.override_date.is_(None),
                        StaffSchedule.day_of_week == date.weekday(),
                        StaffSchedule.start_date <= date,
                        or_(StaffSchedule.end_date.is_(None), StaffSchedule.end_date >= date),
                    ),
                ),
            )
        )
        async with self.session_factory() as session:
            result = await session.execute(query.order_by(StaffSchedule.id))
            return [WorkingSchedule.model_validate(row) for row in result.scalars().all()]

    async def find_approved_time_off(
        self, staff_id: str, date: date_type
    ) -> Optional[TimeOff]:
        query = (
            select(StaffTimeOff)
            .where(
                and_(
                    StaffTimeOff.staff_id == staff_id,
                    StaffTimeOff.status == TimeOffStatus.APPROVED.value,
                    StaffTimeOff.start_date <= date,
                    StaffTimeOff.end_date >= date,
                )
            )
            .order_by(StaffTimeOff.start_date)
            .limit(1)
        )
        async with self.session_factory() as session:
            row = (await session.execute(query)).scalar_one_or_none()
            return TimeOff.model_validate(row) if row else None

    async def find_operating_hours(
        self, branch_id: str, date: date_type
    ) -> Optional[DayHours]:
        query = select(BranchOperatingHours).where(
            BranchOperatingHours.branch_id == branch_id
        )
        async with self.session_factory() as session:
            rows = (await session.execute(query)).scalars().all()

        if not rows:
            return None
        for row in rows:
            if row.day_of_week == date.weekday():
                return DayHours.model_validate(row)
        return DayHours(is_open=False)
