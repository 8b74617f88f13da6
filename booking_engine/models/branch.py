import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from booking_engine.core.database import Base


class Branch(Base):
    """Branch of a company. Appointment times are wall-clock in its timezone."""

    __tablename__ = "branches"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    company_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    timezone = Column(String(64), nullable=False, default="UTC")
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    operating_hours = relationship(
        "BranchOperatingHours", back_populates="branch", cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<Branch(id={self.id}, name='{self.name}', company_id={self.company_id})>"


class BranchOperatingHours(Base):
    """Opening hours of a branch for one day of the week (Monday = 0)."""

    __tablename__ = "branch_operating_hours"

    id = Column(Integer, primary_key=True, index=True)
    branch_id = Column(String(36), ForeignKey("branches.id"), nullable=False)
    day_of_week = Column(Integer, nullable=False)

    is_open = Column(Boolean, default=True, nullable=False)
    open_time = Column(String(5), nullable=True)  # "HH:MM"
    close_time = Column(String(5), nullable=True)
    breaks = Column(JSONB, nullable=False, default=list)  # [{"start": "HH:MM", "end": "HH:MM"}]

    branch = relationship("Branch", back_populates="operating_hours")

    __table_args__ = (
        UniqueConstraint("branch_id", "day_of_week", name="uq_branch_operating_hours_day"),
    )

    def __repr__(self):
        return (
            f"<BranchOperatingHours(branch_id={self.branch_id}, day={self.day_of_week}, "
            f"open={self.is_open}, {self.open_time}-{self.close_time})>"
        )
