from booking_engine.services.appointment import BookingOrchestrator
from booking_engine.services.availability import AvailabilityCalculator
from booking_engine.services.conflicts import ConflictDetector
from booking_engine.services.recurring import RecurringSeriesExpander
from booking_engine.services.schedule_store import ScheduleStore

__all__ = [
    "BookingOrchestrator",
    "AvailabilityCalculator",
    "ConflictDetector",
    "RecurringSeriesExpander",
    "ScheduleStore",
]
