"""Appointment lifecycle transitions."""

from booking_engine.core.exceptions import InvalidStatusTransitionError
from booking_engine.schemas.enums import ACTIVE_STATUSES, AppointmentStatus


_EXIT_STATES = {
    AppointmentStatus.CANCELLED,
    AppointmentStatus.NO_SHOW,
    AppointmentStatus.RESCHEDULED,
}

ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    # Walk-ins check in without a prior confirmation
    AppointmentStatus.PENDING: frozenset(
        {AppointmentStatus.CONFIRMED, AppointmentStatus.ARRIVED} | _EXIT_STATES
    ),
    AppointmentStatus.CONFIRMED: frozenset({AppointmentStatus.ARRIVED} | _EXIT_STATES),
    AppointmentStatus.ARRIVED: frozenset({AppointmentStatus.IN_PROGRESS} | _EXIT_STATES),
    AppointmentStatus.IN_PROGRESS: frozenset({AppointmentStatus.COMPLETED} | _EXIT_STATES),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
    AppointmentStatus.RESCHEDULED: frozenset(),
}


def can_transition(current: AppointmentStatus, new: AppointmentStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


def ensure_transition(current: AppointmentStatus, new: AppointmentStatus) -> None:
    """Raise InvalidStatusTransitionError unless ``current -> new`` is allowed."""
    if not can_transition(current, new):
        raise InvalidStatusTransitionError(current.value, new.value)


def is_terminal(status: AppointmentStatus) -> bool:
    return status not in ACTIVE_STATUSES
