from datetime import date as date_type
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from booking_engine.schemas.enums import ConflictType, TimeOffStatus, WeekDay
from booking_engine.utils.time import is_valid_time, parse_time


def _check_time(value: Optional[str]) -> Optional[str]:
    if value is not None and value != "24:00" and not is_valid_time(value):
        raise ValueError(f"'{value}' is not a valid HH:MM time")
    return value


class BreakInterval(BaseModel):
    start: str
    end: str

    @field_validator("start", "end")
    @classmethod
    def validate_time_format(cls, v):
        return _check_time(v)

    @model_validator(mode="after")
    def validate_order(self):
        if parse_time(self.end) <= parse_time(self.start):
            raise ValueError("Break end must be after break start")
        return self

    @property
    def start_minute(self) -> int:
        return parse_time(self.start)

    @property
    def end_minute(self) -> int:
        return parse_time(self.end)


class WorkingSchedule(BaseModel):
    """Weekly schedule row, or an override pinned to ``override_date``."""

    staff_id: str
    branch_id: str
    day_of_week: WeekDay
    start_date: date_type
    end_date: Optional[date_type] = None
    override_date: Optional[date_type] = None
    is_working: bool = True
    start_time: str = "09:00"
    end_time: str = "17:00"
    breaks: List[BreakInterval] = Field(default_factory=list)

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_time_format(cls, v):
        return _check_time(v)

    model_config = {"from_attributes": True}

    @property
    def is_override(self) -> bool:
        return self.override_date is not None

    def applies_to(self, day: date_type) -> bool:
        """Check whether this row governs ``day``."""
        if self.override_date is not None:
            return self.override_date == day
        if day.weekday() != self.day_of_week.value:
            return False
        if day < self.start_date:
            return False
        return self.end_date is None or day <= self.end_date


class TimeOff(BaseModel):
    id: Optional[str] = None
    staff_id: str
    start_date: date_type
    end_date: date_type
    status: TimeOffStatus = TimeOffStatus.PENDING
    reason: Optional[str] = None

    model_config = {"from_attributes": True}

    @property
    def is_approved(self) -> bool:
        return self.status == TimeOffStatus.APPROVED

    def covers(self, day: date_type) -> bool:
        return self.start_date <= day <= self.end_date


class DayHours(BaseModel):
    """Branch operating hours for one day of the week."""

    is_open: bool = True
    open_time: Optional[str] = None
    close_time: Optional[str] = None
    breaks: List[BreakInterval] = Field(default_factory=list)

    model_config = {"from_attributes": True}

    @field_validator("open_time", "close_time")
    @classmethod
    def validate_time_format(cls, v):
        return _check_time(v)

    @model_validator(mode="after")
    def validate_open_hours(self):
        if self.is_open and (self.open_time is None or self.close_time is None):
            raise ValueError("An open day needs open_time and close_time")
        return self


class StaffMember(BaseModel):
    id: str
    name: str
    is_active: bool = True

    model_config = {"from_attributes": True}


class BranchInfo(BaseModel):
    id: str
    company_id: str
    name: str
    timezone: str = "UTC"

    model_config = {"from_attributes": True}


class WorkingWindow(BaseModel):
    """Effective working hours for a staff member on one date, after overrides."""

    date: date_type
    is_working: bool
    start_time: str
    end_time: str
    breaks: List[BreakInterval] = Field(default_factory=list)
    is_override: bool = False

    @property
    def start_minute(self) -> int:
        return parse_time(self.start_time)

    @property
    def end_minute(self) -> int:
        return parse_time(self.end_time)

    def sub_windows(self) -> list[tuple[int, int]]:
        """Contiguous working intervals left once breaks are cut out."""
        if not self.is_working:
            return []

        periods = []
        current = self.start_minute
        for break_interval in sorted(self.breaks, key=lambda b: b.start_minute):
            break_start = max(break_interval.start_minute, self.start_minute)
            break_end = min(break_interval.end_minute, self.end_minute)
            if break_end <= current:
                continue
            if break_start > current:
                periods.append((current, break_start))
            current = max(current, break_end)

        if current < self.end_minute:
            periods.append((current, self.end_minute))
        return periods


class Conflict(BaseModel):
    """Why a candidate slot cannot be booked. Returned to the caller, never stored."""

    kind: ConflictType
    message: str
    staff_id: Optional[str] = None
    resource_id: Optional[str] = None
    conflicting_appointment_id: Optional[str] = None


class TimeSlot(BaseModel):
    date: date_type
    start_time: str
    end_time: str
    available: bool
    staff_id: str
    reasons: List[str] = Field(default_factory=list)


class SlotCandidate(BaseModel):
    """A fully formed slot to be validated against every booking constraint."""

    branch_id: str
    client_id: str
    date: date_type
    start_time: str
    total_duration: int = Field(..., gt=0)
    staff_id: Optional[str] = None
    resource_id: Optional[str] = None

    @field_validator("start_time")
    @classmethod
    def validate_time_format(cls, v):
        return _check_time(v)

    @property
    def start_minute(self) -> int:
        return parse_time(self.start_time)

    @property
    def end_minute(self) -> int:
        return self.start_minute + self.total_duration


class SlotCheckResult(BaseModel):
    available: bool
    conflicts: List[Conflict] = Field(default_factory=list)


class SlotQuery(BaseModel):
    """Browse-mode availability query. Leave ``staff_id`` unset for any eligible staff."""

    branch_id: str
    date: date_type
    duration: int = Field(..., gt=0)
    staff_id: Optional[str] = None
    service_ids: List[str] = Field(default_factory=list)
    granularity: Optional[int] = Field(None, gt=0)
    include_unavailable: bool = True
