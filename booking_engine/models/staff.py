import uuid

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from booking_engine.core.database import Base
from booking_engine.schemas.enums import TimeOffStatus


class Staff(Base):
    __tablename__ = "staff"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    company_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self):
        return f"<Staff(id={self.id}, name='{self.name}', active={self.is_active})>"


class StaffBranch(Base):
    """Branches a staff member works at."""

    __tablename__ = "staff_branches"

    staff_id = Column(String(36), ForeignKey("staff.id"), primary_key=True)
    branch_id = Column(String(36), ForeignKey("branches.id"), primary_key=True)


class StaffService(Base):
    """Services a staff member provides."""

    __tablename__ = "staff_services"

    staff_id = Column(String(36), ForeignKey("staff.id"), primary_key=True)
    service_id = Column(String(36), primary_key=True)


class StaffSchedule(Base):
    """Weekly working schedule row, or a one-day override when ``override_date`` is set."""

    __tablename__ = "staff_schedules"

    id = Column(Integer, primary_key=True, index=True)
    staff_id = Column(String(36), ForeignKey("staff.id"), nullable=False)
    branch_id = Column(String(36), ForeignKey("branches.id"), nullable=False)

    day_of_week = Column(Integer, nullable=False)  # Monday = 0
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    override_date = Column(Date, nullable=True)

    is_working = Column(Boolean, default=True, nullable=False)
    start_time = Column(String(5), nullable=False)  # "HH:MM"
    end_time = Column(String(5), nullable=False)
    breaks = Column(JSONB, nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_staff_schedules_staff_branch_day", "staff_id", "branch_id", "day_of_week"),
        Index("ix_staff_schedules_override", "staff_id", "branch_id", "override_date"),
    )

    def __repr__(self):
        return (
            f"<StaffSchedule(staff_id={self.staff_id}, day={self.day_of_week}, "
            f"override={self.override_date}, {self.start_time}-{self.end_time})>"
        )


class StaffTimeOff(Base):
    __tablename__ = "staff_time_off"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    staff_id = Column(String(36), ForeignKey("staff.id"), nullable=False, index=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    status = Column(String(20), nullable=False, default=TimeOffStatus.PENDING.value)
    reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return (
            f"<StaffTimeOff(staff_id={self.staff_id}, {self.start_date}..{self.end_date}, "
            f"status='{self.status}')>"
        )
