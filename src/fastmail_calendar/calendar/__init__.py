"""Calendar integration engine: models, codecs, protocol clients and operations."""

from fastmail_calendar.calendar.errors import (
    CalendarError,
    CalendarValidationError,
    ConcurrencyConflict,
    ObjectRejected,
    ParseFailure,
    ProtocolFault,
    TransportFailure,
)
from fastmail_calendar.calendar.models import (
    CalendarEvent,
    CalendarRef,
    EventDraft,
    EventPatch,
    EventStatus,
    FreeBusyStatus,
)

__all__ = [
    "CalendarError",
    "CalendarEvent",
    "CalendarRef",
    "CalendarValidationError",
    "ConcurrencyConflict",
    "EventDraft",
    "EventPatch",
    "EventStatus",
    "FreeBusyStatus",
    "ObjectRejected",
    "ParseFailure",
    "ProtocolFault",
    "TransportFailure",
]
