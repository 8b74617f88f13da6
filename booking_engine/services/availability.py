from datetime import date as date_type
from datetime import timedelta
from typing import Optional
import logging

from booking_engine.core.config import settings
from booking_engine.core.exceptions import ValidationError
from booking_engine.repositories.base import AppointmentRepository
from booking_engine.schemas.scheduling import (
    SlotCandidate,
    SlotCheckResult,
    SlotQuery,
    TimeSlot,
)
from booking_engine.services.conflicts import ConflictDetector
from booking_engine.services.schedule_store import ScheduleStore
from booking_engine.utils.time import MINUTES_PER_DAY, contains, format_time, overlaps, parse_time


logger = logging.getLogger(__name__)

REASON_NOT_WORKING = "not-working"
REASON_TIME_OFF = "time-off"
REASON_BREAK = "break"
REASON_APPOINTMENT = "appointment"
REASON_BUSINESS_HOURS = "business-hours"


class AvailabilityCalculator:
    """Generates bookable slots from working windows, breaks, time-off and bookings.

    Read-only: nothing here writes to the repositories.
    """

    def __init__(
        self,
        store: ScheduleStore,
        repository: AppointmentRepository,
        detector: Optional[ConflictDetector] = None,
    ):
        self.store = store
        self.repository = repository
        self.detector = detector or ConflictDetector(store, repository)

    async def get_staff_slots(
        self,
        staff_id: str,
        branch_id: str,
        date: date_type,
        duration: int,
        granularity: Optional[int] = None,
        include_unavailable: bool = True,
    ) -> list[TimeSlot]:
        """
        Slots for one staff member on one date.

        Args:
            staff_id: Staff member to compute slots for
            branch_id: Branch whose schedule applies
            date: Date to check
            duration: Requested service duration in minutes
            granularity: Step between slot starts, in minutes
            include_unavailable: Keep slots marked unavailable in the output

        Returns:
            Slots ordered by start time. A day off or approved time-off yields
            a single unavailable slot covering the whole day.
        """
        if duration <= 0:
            raise ValidationError(["duration must be greater than 0"])
        step = granularity or settings.DEFAULT_SLOT_GRANULARITY_MINUTES
        if step <= 0:
            raise ValidationError(["granularity must be greater than 0"])

        logger.debug(
            f"Computing slots for staff {staff_id} at branch {branch_id} on {date} "
            f"(duration={duration}, granularity={step})"
        )

        window = await self.store.resolve_working_window(staff_id, branch_id, date)
        if window is None or not window.is_working:
            logger.debug(f"Staff {staff_id} is not working on {date}")
            return self._whole_day(staff_id, date, REASON_NOT_WORKING, include_unavailable)

        time_off = await self.store.get_approved_time_off(staff_id, date)
        if time_off:
            logger.debug(f"Staff {staff_id} has approved time off on {date}")
            return self._whole_day(staff_id, date, REASON_TIME_OFF, include_unavailable)

        appointments = await self.repository.find_active_appointments(
            date, staff_id=staff_id
        )
        hours = await self.store.get_operating_hours(branch_id, date)

        slots = []
        current = window.start_minute
        while current + duration <= window.end_minute:
            end = current + duration
            reasons = []

            for break_interval in window.breaks:
                if overlaps(current, end, break_interval.start_minute, break_interval.end_minute):
                    reasons.append(REASON_BREAK)
                    break

            if not reasons:
                for appointment in appointments:
                    if overlaps(current, end, appointment.start_minute, appointment.end_minute):
                        reasons.append(REASON_APPOINTMENT)
                        break

            if not reasons and hours is not None and not _within_hours(hours, current, end):
                reasons.append(REASON_BUSINESS_HOURS)

            available = not reasons
            if available or include_unavailable:
                slots.append(
                    TimeSlot(
                        date=date,
                        start_time=format_time(current),
                        end_time=format_time(end),
                        available=available,
                        staff_id=staff_id,
                        reasons=reasons,
                    )
                )
            current += step

        logger.debug(
            f"Generated {len(slots)} slots for staff {staff_id} on {date}, "
            f"{sum(1 for s in slots if s.available)} available"
        )
        return slots

    async def get_available_slots(self, query: SlotQuery) -> list[TimeSlot]:
        """Browse-mode slots for one staff member or every eligible one, merged by start time."""
        logger.info(
            f"Getting available slots for branch {query.branch_id} on {query.date} "
            f"(staff={query.staff_id or 'any'}, duration={query.duration})"
        )

        if query.staff_id:
            staff_ids = [query.staff_id]
        else:
            eligible = await self.store.repository.find_eligible_staff(
                query.branch_id, query.service_ids
            )
            staff_ids = [staff.id for staff in eligible]
            logger.debug(f"Found {len(staff_ids)} eligible staff members")

        slots = []
        for staff_id in staff_ids:
            slots.extend(
                await self.get_staff_slots(
                    staff_id,
                    query.branch_id,
                    query.date,
                    query.duration,
                    granularity=query.granularity,
                    include_unavailable=query.include_unavailable,
                )
            )

        slots.sort(key=lambda s: (parse_time(s.start_time), s.staff_id))
        logger.info(f"Returning {len(slots)} slots for branch {query.branch_id} on {query.date}")
        return slots

    async def check_slot_availability(
        self,
        candidate: SlotCandidate,
        exclude_appointment_id: Optional[str] = None,
    ) -> SlotCheckResult:
        conflicts = await self.detector.detect(candidate, exclude_appointment_id)
        return SlotCheckResult(available=not conflicts, conflicts=conflicts)

    async def find_next_available_slot(
        self,
        query: SlotQuery,
        from_date: Optional[date_type] = None,
        max_days_ahead: Optional[int] = None,
    ) -> Optional[TimeSlot]:
        """
        First available slot on or after ``from_date``.

        Scans day by day for at most ``max_days_ahead`` days; the query's own
        ``date`` is used as the start when ``from_date`` is omitted.
        """
        start = from_date or query.date
        days = max_days_ahead or settings.NEXT_AVAILABLE_SEARCH_DAYS
        logger.info(f"Searching next available slot from {start} for up to {days} days")

        for offset in range(days):
            day = start + timedelta(days=offset)
            slots = await self.get_available_slots(
                query.model_copy(update={"date": day, "include_unavailable": False})
            )
            if slots:
                logger.info(f"Next available slot found on {day} at {slots[0].start_time}")
                return slots[0]

        logger.info(f"No available slot within {days} days of {start}")
        return None

    async def get_available_days(
        self, query: SlotQuery, start_date: date_type, end_date: date_type
    ) -> list[date_type]:
        """Days in ``[start_date, end_date]`` with at least one available slot."""
        if end_date < start_date:
            raise ValidationError(["end_date must not be before start_date"])
        total_days = (end_date - start_date).days + 1
        if total_days > settings.MAX_AVAILABILITY_RANGE_DAYS:
            raise ValidationError(
                [
                    f"Date range of {total_days} days exceeds the maximum of "
                    f"{settings.MAX_AVAILABILITY_RANGE_DAYS} days"
                ]
            )

        available_days = []
        current = start_date
        while current <= end_date:
            slots = await self.get_available_slots(
                query.model_copy(update={"date": current, "include_unavailable": False})
            )
            if slots:
                available_days.append(current)
            current += timedelta(days=1)

        logger.info(
            f"Found {len(available_days)} available days out of {total_days} total days"
        )
        return available_days

    @staticmethod
    def _whole_day(
        staff_id: str, date: date_type, reason: str, include_unavailable: bool
    ) -> list[TimeSlot]:
        if not include_unavailable:
            return []
        return [
            TimeSlot(
                date=date,
                start_time=format_time(0),
                end_time=format_time(MINUTES_PER_DAY),
                available=False,
                staff_id=staff_id,
                reasons=[reason],
            )
        ]


def _within_hours(hours, start: int, end: int) -> bool:
    if not hours.is_open:
        return False
    if not contains(parse_time(hours.open_time), parse_time(hours.close_time), start, end):
        return False
    return not any(
        overlaps(start, end, b.start_minute, b.end_minute) for b in hours.breaks
    )
