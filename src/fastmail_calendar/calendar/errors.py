"""Error kinds raised by the calendar engine.

Every error carries a stable ``kind`` string that the operation layer copies
into the ``error_type`` field of a structured failure.
"""

from __future__ import annotations


class CalendarError(RuntimeError):
    """Base error for calendar protocol and engine failures."""

    kind = "calendar_error"


class TransportFailure(CalendarError):
    """Raised for network or HTTP-level failures not tied to a single object."""

    kind = "transport_failure"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        self.message = message
        if status_code is None:
            super().__init__(message)
        else:
            super().__init__(f"Calendar server request failed ({status_code}): {message}")


class ProtocolFault(CalendarError):
    """Raised when the server rejects a request as a whole (malformed, unknown method)."""

    kind = "protocol_fault"

    def __init__(self, fault_type: str, message: str) -> None:
        self.fault_type = fault_type
        self.message = message
        super().__init__(f"{fault_type}: {message}")


class ObjectRejected(CalendarError):
    """Raised when one specific object was not found or failed server validation."""

    kind = "object_rejected"

    def __init__(self, object_id: str, message: str, *, reason: str | None = None) -> None:
        self.object_id = object_id
        self.reason = reason
        self.message = message
        super().__init__(f"{object_id}: {message}")


class ParseFailure(CalendarError, ValueError):
    """Raised for malformed wire data: durations, datetimes, calendar objects."""

    kind = "parse_failure"


class CalendarValidationError(CalendarError, ValueError):
    """Raised when caller-supplied values are inconsistent (e.g. end <= start)."""

    kind = "validation_error"


class ConcurrencyConflict(CalendarError):
    """Raised when a conditional write is rejected because the object changed remotely."""

    kind = "concurrency_conflict"

    def __init__(self, object_id: str, message: str | None = None) -> None:
        self.object_id = object_id
        super().__init__(
            message
            or f"{object_id} was modified on the server since it was fetched; "
            "re-read the event and retry"
        )
