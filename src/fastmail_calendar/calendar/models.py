"""Provider-neutral calendar records shared by both protocol clients."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import StrEnum

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from fastmail_calendar.calendar.errors import CalendarValidationError
from fastmail_calendar.calendar.timeutil import (
    duration_to_timedelta,
    normalize_local,
    parse_duration,
    resolve_zone,
    timedelta_to_duration,
    to_instant,
    to_local,
)


class EventStatus(StrEnum):
    """Event lifecycle states as reported by the server."""

    confirmed = "confirmed"
    tentative = "tentative"
    cancelled = "cancelled"


class FreeBusyStatus(StrEnum):
    """Whether an event blocks time for availability purposes."""

    busy = "busy"
    free = "free"
    tentative = "tentative"


def _ensure_span(start_at: datetime, end_at: datetime) -> None:
    if end_at <= start_at:
        raise CalendarValidationError("Event end time must be after start time.")


def _require_aware(value: datetime, field_name: str) -> datetime:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"{field_name} must be timezone-aware")
    return value.astimezone(UTC).replace(microsecond=0)


class CalendarRef(BaseModel):
    """A calendar visible to the account."""

    model_config = ConfigDict(frozen=True)

    calendar_id: str
    name: str
    writable: bool = True


class CalendarEvent(BaseModel):
    """Canonical event shape shared across provider implementations.

    ``start`` is wall-clock time in ``time_zone``; the absolute end is always
    derived from ``start`` + ``duration``.
    """

    event_id: str
    calendar_ids: list[str] = Field(default_factory=list)
    title: str = ""
    description: str = ""
    location: str = ""
    start: str
    time_zone: str
    duration: str
    status: EventStatus = EventStatus.confirmed
    free_busy_status: FreeBusyStatus = FreeBusyStatus.busy
    all_day: bool = False
    # Concurrency token (CalDAV ETag) captured when the object was fetched.
    etag: str | None = None

    @field_validator("start")
    @classmethod
    def _normalize_start(cls, value: str) -> str:
        return normalize_local(value)

    @field_validator("time_zone")
    @classmethod
    def _validate_time_zone(cls, value: str) -> str:
        resolve_zone(value)
        return value.strip()

    @field_validator("duration")
    @classmethod
    def _validate_duration(cls, value: str) -> str:
        if parse_duration(value) <= 0:
            raise ValueError(f"duration must be positive: {value!r}")
        return value.strip()

    @model_validator(mode="after")
    def _check_end_in_range(self) -> CalendarEvent:
        try:
            self.start_at + duration_to_timedelta(self.duration)
        except OverflowError as exc:
            raise ValueError(f"event end is out of range: {self.start} + {self.duration}") from exc
        return self

    @property
    def start_at(self) -> datetime:
        return to_instant(self.start, self.time_zone)

    @property
    def end_at(self) -> datetime:
        return self.start_at + duration_to_timedelta(self.duration)

    @classmethod
    def from_instants(
        cls,
        *,
        event_id: str,
        start_at: datetime,
        end_at: datetime,
        time_zone: str,
        **fields: object,
    ) -> CalendarEvent:
        """Build an event from absolute boundaries, re-expressed in *time_zone*."""
        _ensure_span(start_at, end_at)
        return cls(
            event_id=event_id,
            start=to_local(start_at, time_zone),
            time_zone=time_zone,
            duration=timedelta_to_duration(end_at - start_at),
            **fields,
        )

    def apply_patch(self, patch: EventPatch) -> CalendarEvent:
        """Return a copy of this event with *patch* merged in.

        Supplying only ``end_at`` keeps the existing start, only ``start_at``
        keeps the existing duration, and only ``time_zone`` keeps both instants
        while re-expressing the local start in the new zone.
        """
        time_zone = patch.time_zone or self.time_zone
        start_at = self.start_at
        end_at = self.end_at
        if patch.start_at is not None and patch.end_at is not None:
            start_at, end_at = patch.start_at, patch.end_at
        elif patch.start_at is not None:
            end_at = patch.start_at + (end_at - start_at)
            start_at = patch.start_at
        elif patch.end_at is not None:
            end_at = patch.end_at
        _ensure_span(start_at, end_at)

        times_changed = patch.start_at is not None or patch.end_at is not None
        update: dict[str, object] = {
            "start": to_local(start_at, time_zone),
            "time_zone": time_zone,
            "duration": timedelta_to_duration(end_at - start_at),
            "all_day": self.all_day and not times_changed,
        }
        for field_name in ("title", "description", "location"):
            value = getattr(patch, field_name)
            if value is not None:
                update[field_name] = value
        return self.model_copy(update=update)

    def differs_from(self, other: CalendarEvent) -> bool:
        """True when a user-editable field differs between the two events."""
        return (
            self.title != other.title
            or self.description != other.description
            or self.location != other.location
            or self.time_zone != other.time_zone
            or self.start_at != other.start_at
            or self.end_at != other.end_at
        )


class EventDraft(BaseModel):
    """Client-side event built immediately before a create call."""

    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1)
    start_at: datetime
    end_at: datetime
    time_zone: str
    description: str | None = None
    location: str | None = None

    @field_validator("title")
    @classmethod
    def _normalize_title(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("title must be a non-empty string")
        return normalized

    @field_validator("start_at", "end_at")
    @classmethod
    def _normalize_instant(cls, value: datetime, info: ValidationInfo) -> datetime:
        return _require_aware(value, info.field_name)

    @field_validator("time_zone")
    @classmethod
    def _validate_time_zone(cls, value: str) -> str:
        resolve_zone(value)
        return value.strip()

    @property
    def duration(self) -> timedelta:
        return self.end_at - self.start_at

    def ensure_valid_span(self) -> None:
        _ensure_span(self.start_at, self.end_at)


class EventPatch(BaseModel):
    """Partial update; ``None`` means "leave unchanged", ``""`` clears a text field."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = None
    description: str | None = None
    location: str | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    time_zone: str | None = None

    @field_validator("start_at", "end_at")
    @classmethod
    def _normalize_instant(cls, value: datetime | None, info: ValidationInfo) -> datetime | None:
        if value is None:
            return None
        return _require_aware(value, info.field_name)

    @field_validator("time_zone")
    @classmethod
    def _validate_time_zone(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if not normalized:
            return None
        resolve_zone(normalized)
        return normalized

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True)
