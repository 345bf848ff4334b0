"""Domain errors raised by slot resolution and booking.

Routes translate these into HTTP responses; nothing below the route layer
imports FastAPI.
"""


class SchedulingError(Exception):
    """Base class for every error the resolver surfaces to its caller."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidRangeError(SchedulingError):
    """The requested date range is reversed or longer than the configured cap."""


class InvalidSlotDurationError(InvalidRangeError):
    """Slot duration is not positive or does not fit in any rule window."""


class InvalidTimezoneError(SchedulingError):
    """A timezone identifier could not be resolved."""


class NotFoundError(SchedulingError):
    status_code = 404


class DoctorNotApprovedError(SchedulingError):
    status_code = 403


class PersistenceError(SchedulingError):
    """Reading rules or appointments from the database failed."""

    status_code = 503


class SlotConflictError(SchedulingError):
    """The requested slot is taken or being booked by someone else."""

    status_code = 409
