"""iCalendar (RFC 5545) mapping for single VEVENT objects.

Content-line parsing, unfolding, escaping and serialization are handled by
:mod:`icalendar`. This module maps the first VEVENT of a calendar object onto
an :class:`ICalEventRecord`, resolving DTSTART/DTEND to UTC instants, and
builds the minimal VCALENDAR the CalDAV provider writes back. Generation
always writes UTC timestamps; zone-local display is rebuilt by the event
formatter.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from typing import Any

from icalendar import Calendar, Event, vBroken, vDatetime

from fastmail_calendar.calendar.errors import ParseFailure
from fastmail_calendar.calendar.timeutil import (
    is_valid_timezone,
    timedelta_to_duration,
    to_instant,
)

logger = logging.getLogger(__name__)

ICAL_PRODID = "-//fastmail-calendar//EN"


@dataclass(frozen=True)
class ICalDateTime:
    """A DTSTART/DTEND value resolved to an absolute instant."""

    instant: datetime
    all_day: bool = False
    tzid: str | None = None


@dataclass(frozen=True)
class ICalEventRecord:
    """Structured view of one VEVENT."""

    uid: str | None
    start: ICalDateTime
    end: ICalDateTime | None = None
    title: str = ""
    description: str = ""
    location: str = ""
    status: str = "CONFIRMED"
    transparency: str = "OPAQUE"
    duration: str | None = None


def _first(component: Any, name: str) -> Any:
    # Repeated properties come back as a list; the first occurrence wins.
    value = component.get(name)
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _wall_clock(value: datetime) -> str:
    return value.replace(tzinfo=None).isoformat(timespec="seconds")


def parse_datetime_property(name: str, prop: Any, *, floating_tz: str = "UTC") -> ICalDateTime:
    """Resolve a parsed DTSTART/DTEND property to an :class:`ICalDateTime`.

    Dates (``VALUE=DATE``) and floating timestamps are read in *floating_tz*;
    a TZID the library could not resolve leaves the value floating, so it is
    read in *floating_tz* as well. Values in a zone that is not an IANA name
    (for example one defined by an embedded VTIMEZONE) keep their absolute
    instant but carry no TZID.
    """
    if isinstance(prop, vBroken):
        raise ParseFailure(f"invalid {name} value: {str(prop)[:60]!r}")

    value = getattr(prop, "dt", None)
    params = getattr(prop, "params", {})
    is_date = str(params.get("VALUE", "")).upper() == "DATE"

    if isinstance(value, datetime) and is_date:
        value = value.date()
    if isinstance(value, date) and not isinstance(value, datetime):
        midnight = datetime.combine(value, time())
        return ICalDateTime(instant=to_instant(_wall_clock(midnight), floating_tz), all_day=True)
    if not isinstance(value, datetime):
        raise ParseFailure(f"{name} is not a DATE or DATE-TIME value")

    tzid = params.get("TZID")
    if value.tzinfo is None:
        if tzid:
            logger.debug(
                "Unknown TZID %r; reading %s as floating time in %s", tzid, name, floating_tz
            )
        return ICalDateTime(instant=to_instant(_wall_clock(value), floating_tz))
    if tzid and is_valid_timezone(tzid):
        return ICalDateTime(instant=to_instant(_wall_clock(value), tzid), tzid=tzid)
    try:
        return ICalDateTime(instant=value.astimezone(UTC))
    except (OverflowError, ValueError) as exc:
        raise ParseFailure(f"{name} is out of range") from exc


def _text(component: Any, name: str) -> str:
    value = _first(component, name)
    return "" if value is None else str(value)


def _token(component: Any, name: str, default: str) -> str:
    value = _first(component, name)
    if value is None:
        return default
    return str(value).strip().upper() or default


def _duration(component: Any) -> str | None:
    prop = _first(component, "DURATION")
    if prop is None:
        return None
    value = None if isinstance(prop, vBroken) else getattr(prop, "dt", None)
    if not isinstance(value, timedelta):
        raise ParseFailure(f"invalid DURATION value: {str(prop)[:60]!r}")
    if value <= timedelta(0):
        raise ParseFailure("DURATION must be positive")
    return timedelta_to_duration(value)


def parse_event(text: str, *, floating_tz: str = "UTC") -> ICalEventRecord:
    """Parse the first VEVENT in *text*.

    Raises ``ParseFailure`` when the object is not valid iCalendar, holds no
    complete VEVENT, or DTSTART is absent or malformed.
    """
    if not text or not text.strip():
        raise ParseFailure("calendar object is empty")

    try:
        # Bytes are never mistaken for a file path by the parser.
        components = Calendar.from_ical(text.encode("utf-8"), multiple=True)
    except (ValueError, TypeError) as exc:
        raise ParseFailure(f"invalid iCalendar data: {exc}") from exc

    event = next(
        (found for component in components for found in component.walk("VEVENT")),
        None,
    )
    if event is None:
        raise ParseFailure("calendar object has no VEVENT")

    start_prop = _first(event, "DTSTART")
    if start_prop is None:
        raise ParseFailure("VEVENT has no DTSTART")
    start = parse_datetime_property("DTSTART", start_prop, floating_tz=floating_tz)

    end_prop = _first(event, "DTEND")
    end = None
    if end_prop is not None:
        end = parse_datetime_property("DTEND", end_prop, floating_tz=floating_tz)

    uid = _text(event, "UID").strip()
    return ICalEventRecord(
        uid=uid or None,
        start=start,
        end=end,
        title=_text(event, "SUMMARY"),
        description=_text(event, "DESCRIPTION"),
        location=_text(event, "LOCATION"),
        status=_token(event, "STATUS", "CONFIRMED"),
        transparency=_token(event, "TRANSP", "OPAQUE"),
        duration=_duration(event),
    )


def _as_utc(value: datetime) -> datetime:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC)


def format_utc_timestamp(value: datetime) -> str:
    """Format an instant as an iCalendar UTC DATE-TIME (``20240315T123000Z``)."""
    return vDatetime(_as_utc(value)).to_ical().decode("ascii")


def generate_event(
    *,
    uid: str,
    title: str,
    start_at: datetime,
    end_at: datetime,
    description: str = "",
    location: str = "",
    status: str | None = None,
    transparency: str | None = None,
    dtstamp: datetime | None = None,
) -> str:
    """Serialize a minimal VCALENDAR wrapping one VEVENT with UTC timestamps."""
    event = Event()
    event.add("uid", uid)
    event.add("dtstamp", _as_utc(dtstamp or datetime.now(UTC)))
    event.add("dtstart", _as_utc(start_at))
    event.add("dtend", _as_utc(end_at))
    event.add("summary", title)
    if description:
        event.add("description", description)
    if location:
        event.add("location", location)
    if status:
        event.add("status", status.upper())
    if transparency:
        event.add("transp", transparency.upper())

    calendar = Calendar()
    calendar.add("prodid", ICAL_PRODID)
    calendar.add("version", "2.0")
    calendar.add_component(event)
    return calendar.to_ical().decode("utf-8")
