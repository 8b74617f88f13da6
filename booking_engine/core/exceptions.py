from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from booking_engine.schemas.scheduling import Conflict


class BookingEngineError(Exception):
    """Base class for all booking engine errors."""


class ValidationError(BookingEngineError):
    """Malformed or missing input. Raised before any conflict detection runs."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(f"Validation failed: {'; '.join(errors)}")


class InvalidStatusTransitionError(ValidationError):
    def __init__(self, current_status: str, new_status: str):
        self.current_status = current_status
        self.new_status = new_status
        super().__init__(
            [f"Cannot transition from {current_status} to {new_status}"]
        )


class ConflictError(BookingEngineError):
    """The requested slot is not bookable."""

    def __init__(self, conflicts: list["Conflict"]):
        self.conflicts = conflicts
        super().__init__(
            f"Appointment conflicts detected: "
            f"{', '.join(c.message for c in conflicts)}"
        )


class NotFoundError(BookingEngineError):
    def __init__(self, entity: str, identifier: str):
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"{entity} {identifier} not found")


class ConcurrencyError(BookingEngineError):
    """Lost a race at the storage or lock layer."""

    def __init__(
        self, message: str, conflicts: Optional[list["Conflict"]] = None
    ):
        self.conflicts = conflicts or []
        super().__init__(message)
