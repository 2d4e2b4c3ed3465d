"""Error kinds raised by the tour scheduling core."""

from typing import List, Optional


class TourServiceError(Exception):
    """Base exception for the tour service.

    Every error carries a machine-readable ``kind`` and a message that can be
    shown to the end user as-is.
    """

    kind = "error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message, "kind": self.kind}


class ValidationError(TourServiceError):
    """Malformed input, e.g. an empty cancellation reason."""

    kind = "validation_error"
    status_code = 422


class SlotConflict(TourServiceError):
    """Requested interval overlaps an existing tour or blocked time."""

    kind = "slot_conflict"
    status_code = 409

    def __init__(self, message: str, alternatives: Optional[List] = None):
        super().__init__(message)
        self.alternatives = alternatives or []

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["alternatives"] = [
            {"start": slot.start.isoformat(), "end": slot.end.isoformat()}
            for slot in self.alternatives
        ]
        return data


class Forbidden(TourServiceError):
    """Actor is not permitted to perform the action."""

    kind = "forbidden"
    status_code = 403


class InvalidTransition(TourServiceError):
    """Action is not valid from the booking's current status."""

    kind = "invalid_transition"
    status_code = 409


class NotFound(TourServiceError):
    kind = "not_found"
    status_code = 404


class Stale(TourServiceError):
    """Booking changed since the caller read it. Re-read and retry."""

    kind = "stale"
    status_code = 412
