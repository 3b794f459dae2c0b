"""Timezone-aware datetime and ISO-8601 duration helpers.

Local datetimes are plain ``YYYY-MM-DDTHH:MM:SS`` strings without an offset;
they only mean something together with an IANA zone name. Instants are aware
``datetime`` objects normalized to UTC.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastmail_calendar.calendar.errors import ParseFailure

LOCAL_DATETIME_FORMAT = "%Y-%m-%dT%H:%M:%S"

# Applied when a timed event has neither an end nor a duration.
MISSING_DURATION_FALLBACK = timedelta(hours=1)
# Applied when a date-only (all-day) event has no end.
ALL_DAY_DURATION_FALLBACK = timedelta(days=1)

_DURATION_PATTERN = re.compile(r"^P(?:(\d+)D)?(?:T(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?)?$")

_MS_PER_SECOND = 1000
_MS_PER_MINUTE = 60 * _MS_PER_SECOND
_MS_PER_HOUR = 60 * _MS_PER_MINUTE
_MS_PER_DAY = 24 * _MS_PER_HOUR


def resolve_zone(tz: str) -> ZoneInfo:
    """Return the ``ZoneInfo`` for *tz* or raise ``ParseFailure``."""
    normalized = tz.strip() if isinstance(tz, str) else ""
    if not normalized:
        raise ParseFailure("timezone must be a non-empty IANA zone name")
    try:
        return ZoneInfo(normalized)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ParseFailure(f"timezone must be a valid IANA timezone: {tz}") from exc


def is_valid_timezone(tz: str) -> bool:
    try:
        resolve_zone(tz)
    except ParseFailure:
        return False
    return True


def _parse_naive_local(local: str) -> datetime:
    normalized = local.strip() if isinstance(local, str) else ""
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ParseFailure(f"invalid local datetime: {local!r}") from exc
    if parsed.tzinfo is not None:
        raise ParseFailure(f"local datetime must not carry a UTC offset: {local!r}")
    return parsed.replace(microsecond=0)


def normalize_local(local: str) -> str:
    """Return *local* in canonical ``YYYY-MM-DDTHH:MM:SS`` form."""
    return _parse_naive_local(local).strftime(LOCAL_DATETIME_FORMAT)


def _wall_clock_offset(instant: datetime, zone: ZoneInfo) -> timedelta:
    # Wall-clock reading of *instant* in *zone*, minus the instant read as UTC.
    rendered = instant.astimezone(zone).replace(tzinfo=None)
    return rendered - instant.replace(tzinfo=None)


def to_instant(local: str, tz: str) -> datetime:
    """Resolve an offset-less local datetime in zone *tz* to a UTC instant.

    The zone offset is only known once there is a candidate instant, so the
    digits are first read as UTC, the offset observed at that instant is
    subtracted, and the offset is checked again at the resulting instant. When
    the two differ (a DST transition lies between them) the second offset
    wins. Ambiguous wall-clock times resolve to the first occurrence.
    """
    zone = resolve_zone(tz)
    naive = _parse_naive_local(local).replace(tzinfo=UTC)

    try:
        offset = _wall_clock_offset(naive, zone)
        candidate = naive - offset
        corrected = _wall_clock_offset(candidate, zone)
        if corrected != offset:
            candidate = naive - corrected
    except (OverflowError, ValueError) as exc:
        raise ParseFailure(f"local datetime is out of range in {tz}: {local!r}") from exc
    return candidate


def to_local(instant: datetime, tz: str) -> str:
    """Format an aware instant as ``YYYY-MM-DDTHH:MM:SS`` wall-clock time in *tz*."""
    zone = resolve_zone(tz)
    normalized = instant if instant.tzinfo is not None else instant.replace(tzinfo=UTC)
    try:
        return normalized.astimezone(zone).strftime(LOCAL_DATETIME_FORMAT)
    except (OverflowError, ValueError) as exc:
        raise ParseFailure(f"instant is out of range in {tz}: {instant.isoformat()}") from exc


def parse_instant(text: str, default_tz: str) -> datetime:
    """Parse a caller-supplied instant.

    Accepts ISO-8601 with ``Z`` or an explicit offset. An offset-less value is
    read as wall-clock time in *default_tz*.
    """
    normalized = text.strip() if isinstance(text, str) else ""
    if not normalized:
        raise ParseFailure("datetime must be a non-empty ISO-8601 string")
    candidate = f"{normalized[:-1]}+00:00" if normalized.endswith(("Z", "z")) else normalized
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError as exc:
        raise ParseFailure(f"invalid ISO-8601 datetime: {text!r}") from exc
    if parsed.tzinfo is None:
        return to_instant(parsed.strftime(LOCAL_DATETIME_FORMAT), default_tz)
    try:
        return parsed.astimezone(UTC)
    except (OverflowError, ValueError) as exc:
        raise ParseFailure(f"datetime is out of range: {text!r}") from exc


def format_utc(instant: datetime) -> str:
    """Render an instant as ``YYYY-MM-DDTHH:MM:SSZ``."""
    normalized = instant if instant.tzinfo is not None else instant.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_duration(text: str) -> int:
    """Parse a restricted ISO-8601 duration (``P[nD][T[nH][nM][nS]]``) into milliseconds."""
    normalized = text.strip() if isinstance(text, str) else ""
    match = _DURATION_PATTERN.match(normalized)
    # "P" alone or a dangling "T" match the pattern but name no component.
    if match is None or not any(match.groups()) or normalized.endswith("T"):
        raise ParseFailure(f"invalid ISO-8601 duration: {text!r}")
    days, hours, minutes, seconds = (int(group or 0) for group in match.groups())
    return (
        days * _MS_PER_DAY
        + hours * _MS_PER_HOUR
        + minutes * _MS_PER_MINUTE
        + seconds * _MS_PER_SECOND
    )


def format_duration(milliseconds: int) -> str:
    """Format milliseconds as the most compact restricted ISO-8601 duration.

    Sub-second remainders are dropped.
    """
    if milliseconds < 0:
        raise ValueError("duration must not be negative")

    remaining = int(milliseconds) // _MS_PER_SECOND * _MS_PER_SECOND
    days, remaining = divmod(remaining, _MS_PER_DAY)
    hours, remaining = divmod(remaining, _MS_PER_HOUR)
    minutes, remaining = divmod(remaining, _MS_PER_MINUTE)
    seconds = remaining // _MS_PER_SECOND

    text = "P"
    if days:
        text += f"{days}D"
    time_part = ""
    if hours:
        time_part += f"{hours}H"
    if minutes:
        time_part += f"{minutes}M"
    if seconds:
        time_part += f"{seconds}S"
    if time_part:
        text += f"T{time_part}"
    if text == "P":
        return "PT0S"
    return text


def duration_to_timedelta(text: str) -> timedelta:
    milliseconds = parse_duration(text)
    try:
        return timedelta(milliseconds=milliseconds)
    except OverflowError as exc:
        raise ParseFailure(f"duration is out of range: {text!r}") from exc


def timedelta_to_duration(value: timedelta) -> str:
    return format_duration(value // timedelta(milliseconds=1))
