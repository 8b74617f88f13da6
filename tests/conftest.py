from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from booking_engine.core.logging import configure_logging
from booking_engine.repositories.memory import InMemoryBookingRepository
from booking_engine.schemas.appointment import AppointmentRecord
from booking_engine.schemas.enums import AppointmentStatus, WeekDay
from booking_engine.schemas.scheduling import (
    BranchInfo,
    BreakInterval,
    StaffMember,
    WorkingSchedule,
)
from booking_engine.services.appointment import BookingOrchestrator
from booking_engine.services.availability import AvailabilityCalculator
from booking_engine.services.conflicts import ConflictDetector
from booking_engine.services.schedule_store import ScheduleStore
from booking_engine.utils.time import add_minutes


# A Monday; every test date is derived from it
MONDAY = date(2030, 1, 7)

FIXED_NOW = datetime(2029, 12, 1, 8, 0, 0, tzinfo=timezone.utc)

COMPANY_ID = "company-1"
BRANCH_ID = "branch-1"
STAFF_ID = "staff-1"
SECOND_STAFF_ID = "staff-2"
CLIENT_ID = "client-1"


@pytest.fixture(scope="session", autouse=True)
def logging_setup():
    configure_logging(level="DEBUG", json_logs=False)


@pytest.fixture
def fixed_clock():
    """Clock returning the same instant on every call."""
    return lambda: FIXED_NOW


@pytest.fixture
def monday() -> date:
    return MONDAY


@pytest.fixture
def repository() -> InMemoryBookingRepository:
    """Branch with two staff members working 09:00-17:00 on weekdays, lunch 12:00-13:00."""
    repo = InMemoryBookingRepository()
    repo.add_branch(BranchInfo(id=BRANCH_ID, company_id=COMPANY_ID, name="Main Street"))
    repo.add_staff(
        StaffMember(id=STAFF_ID, name="Dana Cohen"),
        branch_ids=[BRANCH_ID],
        service_ids=["svc-cut", "svc-color"],
    )
    repo.add_staff(
        StaffMember(id=SECOND_STAFF_ID, name="Noa Levi"),
        branch_ids=[BRANCH_ID],
        service_ids=["svc-cut"],
    )

    for staff_id in (STAFF_ID, SECOND_STAFF_ID):
        for day in (
            WeekDay.MONDAY,
            WeekDay.TUESDAY,
            WeekDay.WEDNESDAY,
            WeekDay.THURSDAY,
            WeekDay.FRIDAY,
        ):
            repo.add_schedule(
                WorkingSchedule(
                    staff_id=staff_id,
                    branch_id=BRANCH_ID,
                    day_of_week=day,
                    start_date=date(2029, 1, 1),
                    start_time="09:00",
                    end_time="17:00",
                    breaks=[BreakInterval(start="12:00", end="13:00")],
                )
            )
    return repo


@pytest.fixture
def store(repository) -> ScheduleStore:
    return ScheduleStore(repository, holiday_country_code="")


@pytest.fixture
def detector(store, repository) -> ConflictDetector:
    return ConflictDetector(store, repository)


@pytest.fixture
def calculator(store, repository) -> AvailabilityCalculator:
    return AvailabilityCalculator(store, repository)


@pytest.fixture
def orchestrator(repository, fixed_clock) -> BookingOrchestrator:
    return BookingOrchestrator(repository, clock=fixed_clock)


@pytest.fixture
def booking_payload(monday):
    """Factory for raw create-appointment input."""

    def _payload(**overrides):
        payload = {
            "company_id": COMPANY_ID,
            "branch_id": BRANCH_ID,
            "client_id": CLIENT_ID,
            "staff_id": STAFF_ID,
            "date": monday,
            "start_time": "10:00",
            "total_duration": 60,
            "services": [
                {
                    "service_id": "svc-cut",
                    "service_name": "Haircut",
                    "duration": 60,
                    "price": Decimal("120.00"),
                }
            ],
        }
        payload.update(overrides)
        return payload

    return _payload


@pytest.fixture
def appointment_factory(monday):
    """Factory for persisted-style appointment records."""

    def _make(appointment_id, start_time="10:00", total_duration=60, **overrides):
        values = dict(
            id=appointment_id,
            company_id=COMPANY_ID,
            branch_id=BRANCH_ID,
            client_id="client-9",
            staff_id=STAFF_ID,
            date=monday,
            start_time=start_time,
            end_time=add_minutes(start_time, total_duration),
            total_duration=total_duration,
            status=AppointmentStatus.CONFIRMED,
            created_by="tester",
            created_at=FIXED_NOW,
            updated_at=FIXED_NOW,
        )
        values.update(overrides)
        return AppointmentRecord(**values)

    return _make
