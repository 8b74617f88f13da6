# Import all models to ensure they are registered with SQLAlchemy
from . import appointment, branch, staff
from .appointment import Appointment
from .branch import Branch, BranchOperatingHours
from .staff import Staff, StaffBranch, StaffSchedule, StaffService, StaffTimeOff

__all__ = [
    "appointment",
    "branch",
    "staff",
    "Appointment",
    "Branch",
    "BranchOperatingHours",
    "Staff",
    "StaffBranch",
    "StaffSchedule",
    "StaffService",
    "StaffTimeOff",
]
