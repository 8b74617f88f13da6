from datetime import date as date_type
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from booking_engine.core.config import settings
from booking_engine.schemas.enums import (
    ACTIVE_STATUSES,
    AppointmentSource,
    AppointmentStatus,
    NotificationChannel,
    NotificationType,
    RecurrenceType,
)
from booking_engine.utils.time import MINUTES_PER_DAY, is_valid_time, parse_time


class ServiceLine(BaseModel):
    service_id: str = Field(..., min_length=1)
    service_name: Optional[str] = None
    duration: int = Field(..., gt=0)
    price: Decimal = Field(Decimal("0"), ge=0)
    staff_id: Optional[str] = None


class NotificationConfig(BaseModel):
    type: NotificationType
    methods: List[NotificationChannel] = Field(default_factory=list)
    timing: Optional[int] = Field(None, gt=0)  # minutes before the appointment


class ChangeHistoryEntry(BaseModel):
    timestamp: datetime
    actor: str
    summary: str


class RecurrencePattern(BaseModel):
    type: RecurrenceType
    interval: int = Field(1, ge=1)
    end_date: Optional[date_type] = None
    max_occurrences: int = Field(
        default_factory=lambda: settings.DEFAULT_RECURRING_MAX_OCCURRENCES, ge=1
    )
    # ISO "YYYY-MM-DD" strings are parsed into dates
    exclude_dates: List[date_type] = Field(default_factory=list)


def _check_start_time(v: Optional[str]) -> Optional[str]:
    if v is not None and not is_valid_time(v):
        raise ValueError(f"'{v}' is not a valid HH:MM time")
    return v


class AppointmentCreate(BaseModel):
    company_id: str = Field(..., min_length=1)
    branch_id: str = Field(..., min_length=1)
    client_id: str = Field(..., min_length=1)
    staff_id: Optional[str] = None
    resource_id: Optional[str] = None
    # Pick the first eligible staff member free at the requested slot
    auto_assign_staff: bool = False

    date: date_type
    start_time: str
    total_duration: int = Field(..., gt=0)
    services: List[ServiceLine] = Field(..., min_length=1)

    status: Optional[AppointmentStatus] = None
    source: AppointmentSource = AppointmentSource.DASHBOARD
    notes: Optional[str] = None
    internal_notes: Optional[str] = None

    is_recurring: bool = False
    recurrence_pattern: Optional[RecurrencePattern] = None

    notifications: List[NotificationConfig] = Field(default_factory=list)

    @field_validator("start_time")
    @classmethod
    def validate_start_time(cls, v):
        return _check_start_time(v)

    @model_validator(mode="after")
    def validate_booking_rules(self):
        if parse_time(self.start_time) + self.total_duration > MINUTES_PER_DAY:
            raise ValueError("Appointment cannot extend past midnight")
        if self.status is not None and self.status.value not in settings.INITIAL_STATUSES:
            raise ValueError(
                f"Appointments cannot be created in status {self.status.value}"
            )
        if self.is_recurring and self.recurrence_pattern is None:
            raise ValueError("recurrence_pattern is required for recurring appointments")
        if self.staff_id is not None and self.auto_assign_staff:
            raise ValueError("staff_id and auto_assign_staff are mutually exclusive")
        return self


class AppointmentUpdate(BaseModel):
    date: Optional[date_type] = None
    start_time: Optional[str] = None
    staff_id: Optional[str] = None
    resource_id: Optional[str] = None
    total_duration: Optional[int] = Field(None, gt=0)
    services: Optional[List[ServiceLine]] = Field(None, min_length=1)
    notes: Optional[str] = None
    internal_notes: Optional[str] = None
    notifications: Optional[List[NotificationConfig]] = None

    @field_validator("start_time")
    @classmethod
    def validate_start_time(cls, v):
        return _check_start_time(v)


# Fields whose change moves the appointment's slot
SLOT_FIELDS = ("date", "start_time", "staff_id", "resource_id", "total_duration")


class AppointmentRecord(BaseModel):
    """Persisted appointment as seen by the engine."""

    id: str
    company_id: str
    branch_id: str
    client_id: str
    staff_id: Optional[str] = None
    resource_id: Optional[str] = None

    date: date_type
    start_time: str
    end_time: str
    total_duration: int
    services: List[ServiceLine] = Field(default_factory=list)

    status: AppointmentStatus = AppointmentStatus.PENDING
    source: AppointmentSource = AppointmentSource.DASHBOARD
    notes: Optional[str] = None
    internal_notes: Optional[str] = None
    notifications: List[NotificationConfig] = Field(default_factory=list)

    # Series and rescheduling links
    recurring_group_id: Optional[str] = None
    rescheduled_to: Optional[str] = None
    rescheduled_from: Optional[str] = None
    rescheduled_at: Optional[datetime] = None

    # Transition metadata
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    checked_in_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    no_show_at: Optional[datetime] = None

    change_history: List[ChangeHistoryEntry] = Field(default_factory=list)
    created_by: str
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def start_minute(self) -> int:
        return parse_time(self.start_time)

    @property
    def end_minute(self) -> int:
        return self.start_minute + self.total_duration

    def __repr__(self):
        return (
            f"<AppointmentRecord(id={self.id}, status='{self.status.value}', "
            f"date='{self.date}', {self.start_time}-{self.end_time}, "
            f"client_id={self.client_id}, staff_id={self.staff_id})>"
        )


class SkippedOccurrence(BaseModel):
    date: date_type
    reasons: List[str] = Field(default_factory=list)


class RecurringSeriesResult(BaseModel):
    group_id: str
    created: List[str] = Field(default_factory=list)
    skipped: List[SkippedOccurrence] = Field(default_factory=list)
    excluded: List[date_type] = Field(default_factory=list)
    # Occurrences of this series already booked by an earlier run
    existing: List[str] = Field(default_factory=list)

    @property
    def fully_failed(self) -> bool:
        """No follow-up occurrence is in place although at least one was attempted."""
        return not self.created and not self.existing and bool(self.skipped)


class BookingResult(BaseModel):
    appointment: AppointmentRecord
    recurring: Optional[RecurringSeriesResult] = None
