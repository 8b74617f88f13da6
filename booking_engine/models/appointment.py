import uuid

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import INT4RANGE, JSONB, ExcludeConstraint

from booking_engine.core.database import Base
from booking_engine.schemas.enums import ACTIVE_STATUSES, AppointmentStatus


_ACTIVE_STATUS_FILTER = text(
    "status IN ({})".format(
        ", ".join(f"'{status.value}'" for status in sorted(ACTIVE_STATUSES, key=lambda s: s.value))
    )
)


def _slot_exclusion(column: str) -> ExcludeConstraint:
    """No two active appointments may share ``column`` with overlapping minutes on a date."""
    return ExcludeConstraint(
        (column, "="),
        ("date", "="),
        ("slot_range", "&&"),
        name=f"ex_appointments_{column}_slot",
        using="gist",
        where=_ACTIVE_STATUS_FILTER,
    )


class Appointment(Base):
    """Appointment row.

    ``slot_range`` holds ``[start_minute, end_minute)`` so PostgreSQL can
    enforce the half-open overlap rule with EXCLUDE constraints.
    """

    __tablename__ = "appointments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    company_id = Column(String(36), nullable=False, index=True)
    branch_id = Column(String(36), ForeignKey("branches.id"), nullable=False)
    client_id = Column(String(36), nullable=False)
    staff_id = Column(String(36), ForeignKey("staff.id"), nullable=True)
    resource_id = Column(String(36), nullable=True)

    # Scheduling, wall-clock time at the branch
    date = Column(Date, nullable=False)
    start_time = Column(String(5), nullable=False)
    end_time = Column(String(5), nullable=False)
    total_duration = Column(Integer, nullable=False)
    slot_range = Column(INT4RANGE, nullable=False)
    services = Column(JSONB, nullable=False, default=list)

    status = Column(
        String(20), nullable=False, default=AppointmentStatus.PENDING.value, index=True
    )
    source = Column(String(20), nullable=False)
    notes = Column(Text, nullable=True)
    internal_notes = Column(Text, nullable=True)
    notifications = Column(JSONB, nullable=False, default=list)

    # Series and rescheduling links
    recurring_group_id = Column(String(36), nullable=True, index=True)
    rescheduled_to = Column(String(36), nullable=True)
    rescheduled_from = Column(String(36), nullable=True)
    rescheduled_at = Column(DateTime(timezone=True), nullable=True)

    # Status transition metadata
    cancellation_reason = Column(Text, nullable=True)
    cancelled_by = Column(String(255), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    checked_in_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    no_show_at = Column(DateTime(timezone=True), nullable=True)

    change_history = Column(JSONB, nullable=False, default=list)
    created_by = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_appointments_staff_date", "staff_id", "date"),
        Index("ix_appointments_client_date", "client_id", "date"),
        Index("ix_appointments_resource_date", "resource_id", "date"),
        _slot_exclusion("staff_id"),
        _slot_exclusion("resource_id"),
        _slot_exclusion("client_id"),
    )

    def __repr__(self):
        return (
            f"<Appointment(id={self.id}, status='{self.status}', date='{self.date}', "
            f"{self.start_time}-{self.end_time}, staff_id={self.staff_id})>"
        )
