"""
Exceptions raised by the booking core.

Validation problems are not exceptions: the validator returns them as values
(see scheduling/validator.py) so a form can show all of them at once.
"""


class SkybookError(Exception):
    """Base exception for booking core errors."""
    pass


class BookingNotFoundError(SkybookError):
    """Booking not found."""
    pass


class ConflictNotFoundError(SkybookError):
    """Conflict ledger entry not found."""
    pass


class BookingStateError(SkybookError):
    """Invalid booking status transition."""
    pass


class StaleSnapshotError(SkybookError):
    """A confirmed overlapping booking was written after the snapshot was read."""

    def __init__(self, message: str, booking_ids: list[str] = None):
        super().__init__(message)
        self.booking_ids = booking_ids or []


class PermissionDeniedError(SkybookError):
    """Actor's role may not perform this operation."""
    pass
