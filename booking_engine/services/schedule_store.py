from datetime import date as date_type
from functools import lru_cache
from typing import Optional
import logging

import holidays

from booking_engine.core.config import settings
from booking_engine.repositories.base import ScheduleRepository
from booking_engine.schemas.scheduling import (
    DayHours,
    TimeOff,
    WorkingSchedule,
    WorkingWindow,
)


logger = logging.getLogger(__name__)


@lru_cache(maxsize=16)
def _country_holidays(country_code: str, year: int) -> holidays.HolidayBase:
    return holidays.country_holidays(country_code, years=year)


class ScheduleStore:
    """Resolves working windows, time-off and branch hours for a single date."""

    def __init__(
        self,
        repository: ScheduleRepository,
        holiday_country_code: Optional[str] = None,
    ):
        self.repository = repository
        self.holiday_country_code = (
            holiday_country_code
            if holiday_country_code is not None
            else settings.HOLIDAY_COUNTRY_CODE
        )

    async def resolve_working_window(
        self, staff_id: str, branch_id: str, date: date_type
    ) -> Optional[WorkingWindow]:
        """
        Effective working window for a staff member at a branch on ``date``.

        An override pinned to the date wins over the weekly schedule. Among
        weekly rows, the one with the latest ``start_date`` whose validity
        window contains the date is used.

        Returns:
            The window, or None when no schedule row governs the date
        """
        schedules = await self.repository.find_working_schedules(
            staff_id, branch_id, date
        )
        schedule = _pick_schedule(schedules, date)
        if schedule is None:
            logger.debug(f"No schedule for staff {staff_id} at branch {branch_id} on {date}")
            return None

        return WorkingWindow(
            date=date,
            is_working=schedule.is_working,
            start_time=schedule.start_time,
            end_time=schedule.end_time,
            breaks=schedule.breaks,
            is_override=schedule.is_override,
        )

    async def get_approved_time_off(
        self, staff_id: str, date: date_type
    ) -> Optional[TimeOff]:
        return await self.repository.find_approved_time_off(staff_id, date)

    async def get_operating_hours(
        self, branch_id: str, date: date_type
    ) -> Optional[DayHours]:
        """Branch hours for ``date``; public holidays close the branch when configured."""
        if self.is_holiday(date):
            logger.debug(f"{date} is a public holiday; branch {branch_id} considered closed")
            return DayHours(is_open=False)
        return await self.repository.find_operating_hours(branch_id, date)

    def is_holiday(self, date: date_type) -> bool:
        if not self.holiday_country_code:
            return False
        return date in _country_holidays(self.holiday_country_code, date.year)


def _pick_schedule(
    schedules: list[WorkingSchedule], date: date_type
) -> Optional[WorkingSchedule]:
    applicable = [s for s in schedules if s.applies_to(date)]
    overrides = [s for s in applicable if s.is_override]
    if overrides:
        return overrides[-1]

    weekly = sorted(
        (s for s in applicable if not s.is_override), key=lambda s: s.start_date
    )
    return weekly[-1] if weekly else None
