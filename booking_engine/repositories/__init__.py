from booking_engine.repositories.base import AppointmentRepository, ScheduleRepository
from booking_engine.repositories.memory import InMemoryBookingRepository

__all__ = ["AppointmentRepository", "ScheduleRepository", "InMemoryBookingRepository"]
