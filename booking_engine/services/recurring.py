from datetime import date as date_type
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
import logging
import uuid

from dateutil.relativedelta import relativedelta

from booking_engine.core.config import settings
from booking_engine.core.exceptions import ConcurrencyError
from booking_engine.repositories.base import AppointmentRepository
from booking_engine.schemas.appointment import (
    AppointmentRecord,
    ChangeHistoryEntry,
    RecurrencePattern,
    RecurringSeriesResult,
    SkippedOccurrence,
)
from booking_engine.schemas.enums import RecurrenceType
from booking_engine.schemas.scheduling import SlotCandidate
from booking_engine.services.conflicts import ConflictDetector
from booking_engine.services.locks import SlotLockManager, slot_lock_keys


logger = logging.getLogger(__name__)


def occurrence_date(original: date_type, pattern: RecurrencePattern, position: int) -> date_type:
    """Date of the ``position``-th occurrence; position 1 is the original date."""
    steps = (position - 1) * pattern.interval
    if pattern.type == RecurrenceType.DAILY:
        return original + timedelta(days=steps)
    if pattern.type == RecurrenceType.WEEKLY:
        return original + timedelta(weeks=steps)
    # relativedelta clamps to the last day of shorter months
    return original + relativedelta(months=steps)


def iter_occurrence_dates(
    original: date_type, pattern: RecurrencePattern, max_attempts: Optional[int] = None
):
    """Candidate follow-up dates in order, up to ``end_date``.

    At most ``max_attempts`` dates are produced; how many of them become
    occurrences is decided by the expander.
    """
    if max_attempts is None:
        max_attempts = settings.RECURRING_MAX_ATTEMPTS
    for position in range(2, max_attempts + 2):
        candidate = occurrence_date(original, pattern, position)
        if pattern.end_date is not None and candidate > pattern.end_date:
            break
        yield candidate


class RecurringSeriesExpander:
    """Creates the follow-up occurrences of a recurring appointment.

    Each occurrence is conflict-checked on its own; a failing date is
    recorded and skipped, and the series carries on to later dates until
    ``max_occurrences - 1`` follow-ups are in place. Excluded dates and
    occurrences already booked for the series count toward that total;
    skipped dates do not.
    """

    def __init__(
        self,
        detector: ConflictDetector,
        repository: AppointmentRepository,
        lock_manager: Optional[SlotLockManager] = None,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None,
        max_attempts: Optional[int] = None,
    ):
        self.detector = detector
        self.repository = repository
        self.lock_manager = lock_manager
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.id_factory = id_factory or (lambda: str(uuid.uuid4()))
        self.max_attempts = max_attempts

    async def expand(
        self,
        original: AppointmentRecord,
        pattern: RecurrencePattern,
        actor: str,
    ) -> RecurringSeriesResult:
        """
        Expand ``pattern`` from an already persisted first occurrence.

        Args:
            original: The persisted first appointment of the series
            pattern: Recurrence rule
            actor: Who requested the booking

        Returns:
            Created occurrence ids, skipped dates with reasons and excluded dates
        """
        group_id = original.recurring_group_id or original.id
        result = RecurringSeriesResult(group_id=group_id)
        excluded = set(pattern.exclude_dates)

        logger.info(
            f"Expanding {pattern.type.value} series {group_id} "
            f"(interval={pattern.interval}, max={pattern.max_occurrences}, "
            f"end_date={pattern.end_date})"
        )

        remaining = pattern.max_occurrences - 1
        for day in iter_occurrence_dates(original.date, pattern, self.max_attempts):
            if remaining <= 0:
                break

            if day in excluded:
                logger.debug(f"Skipping excluded date {day} in series {group_id}")
                result.excluded.append(day)
                remaining -= 1
                continue

            booked = await self._find_booked_occurrence(original, group_id, day)
            if booked is not None:
                logger.debug(f"Occurrence on {day} already booked for series {group_id}")
                result.existing.append(booked.id)
                remaining -= 1
                continue

            occurrence = self._build_occurrence(original, group_id, day, actor)
            try:
                reasons = await self._create_occurrence(occurrence)
            except Exception as e:
                # The first occurrence is already committed; record and move on
                logger.error(
                    f"Failed to persist occurrence on {day} for series {group_id}",
                    exc_info=True,
                )
                reasons = [f"Persistence failure: {e}"]
            if reasons:
                logger.warning(
                    f"Could not create occurrence on {day} for series {group_id}: "
                    f"{'; '.join(reasons)}"
                )
                result.skipped.append(SkippedOccurrence(date=day, reasons=reasons))
            else:
                result.created.append(occurrence.id)
                remaining -= 1

        if remaining > 0:
            logger.warning(
                f"Series {group_id} ended with {remaining} occurrences unfilled"
            )
        logger.info(
            f"Series {group_id} expanded: {len(result.created)} created, "
            f"{len(result.skipped)} skipped, {len(result.excluded)} excluded, "
            f"{len(result.existing)} already booked"
        )
        return result

    async def _find_booked_occurrence(
        self, original: AppointmentRecord, group_id: str, day: date_type
    ) -> Optional[AppointmentRecord]:
        booked = await self.repository.find_active_appointments(
            day, client_id=original.client_id
        )
        for appointment in booked:
            if (
                appointment.recurring_group_id == group_id
                and appointment.start_time == original.start_time
            ):
                return appointment
        return None

    async def _create_occurrence(self, occurrence: AppointmentRecord) -> list[str]:
        keys = slot_lock_keys(
            occurrence.date,
            staff_id=occurrence.staff_id,
            resource_id=occurrence.resource_id,
            client_id=occurrence.client_id,
        )
        try:
            if self.lock_manager is None:
                return await self._detect_and_persist(occurrence)
            async with self.lock_manager.hold(keys):
                return await self._detect_and_persist(occurrence)
        except ConcurrencyError as e:
            if e.conflicts:
                return [c.message for c in e.conflicts]
            return [str(e)]

    async def _detect_and_persist(self, occurrence: AppointmentRecord) -> list[str]:
        candidate = SlotCandidate(
            branch_id=occurrence.branch_id,
            client_id=occurrence.client_id,
            date=occurrence.date,
            start_time=occurrence.start_time,
            total_duration=occurrence.total_duration,
            staff_id=occurrence.staff_id,
            resource_id=occurrence.resource_id,
        )
        conflicts = await self.detector.detect(candidate)
        if conflicts:
            return [c.message for c in conflicts]
        await self.repository.create(occurrence)
        return []

    def _build_occurrence(
        self,
        original: AppointmentRecord,
        group_id: str,
        day: date_type,
        actor: str,
    ) -> AppointmentRecord:
        now = self.clock()
        return original.model_copy(
            update={
                "id": self.id_factory(),
                "date": day,
                "recurring_group_id": group_id,
                "created_by": actor,
                "created_at": now,
                "updated_at": now,
                "change_history": [
                    ChangeHistoryEntry(
                        timestamp=now,
                        actor=actor,
                        summary=f"Created as occurrence of recurring series {group_id}",
                    )
                ],
            },
            deep=True,
        )
