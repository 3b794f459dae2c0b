"""Free-slot discovery over merged busy intervals."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

from pydantic import BaseModel

from fastmail_calendar.calendar.formatter import format_local
from fastmail_calendar.calendar.models import CalendarEvent, EventStatus, FreeBusyStatus
from fastmail_calendar.calendar.timeutil import format_utc


@dataclass(frozen=True)
class BusyInterval:
    """Half-open ``[start, end)`` span of blocked time, in UTC."""

    start: datetime
    end: datetime


class FreeSlot(BaseModel):
    """A maximal gap between busy runs, at least the requested minimum long."""

    start: datetime
    end: datetime
    duration_minutes: int
    start_local: str
    end_local: str

    def to_payload(self) -> dict[str, object]:
        return {
            "start": format_utc(self.start),
            "end": format_utc(self.end),
            "duration_minutes": self.duration_minutes,
            "start_local": self.start_local,
            "end_local": self.end_local,
        }


def is_blocking(event: CalendarEvent) -> bool:
    """Cancelled events and events explicitly marked free do not block time."""
    if event.status == EventStatus.cancelled:
        return False
    return event.free_busy_status != FreeBusyStatus.free


def busy_intervals(events: Iterable[CalendarEvent]) -> list[BusyInterval]:
    return [
        BusyInterval(start=event.start_at, end=event.end_at)
        for event in events
        if is_blocking(event)
    ]


def merge_intervals(intervals: Iterable[BusyInterval]) -> list[BusyInterval]:
    """Merge overlapping or touching intervals into disjoint runs sorted by start."""
    merged: list[BusyInterval] = []
    for interval in sorted(intervals, key=lambda item: (item.start, item.end)):
        if merged and interval.start <= merged[-1].end:
            last = merged[-1]
            if interval.end > last.end:
                merged[-1] = BusyInterval(start=last.start, end=interval.end)
        else:
            merged.append(interval)
    return merged


def _make_slot(start: datetime, end: datetime, display_timezone: str) -> FreeSlot:
    return FreeSlot(
        start=start,
        end=end,
        duration_minutes=int((end - start) // timedelta(minutes=1)),
        start_local=format_local(start, display_timezone),
        end_local=format_local(end, display_timezone),
    )


def find_free_slots(
    events: Iterable[CalendarEvent],
    *,
    after: datetime,
    before: datetime,
    min_duration: timedelta,
    display_timezone: str,
) -> list[FreeSlot]:
    """Return the gaps in ``[after, before)`` not covered by any blocking event.

    A gap exactly ``min_duration`` long is included; empty gaps never are.
    """
    threshold = max(min_duration, timedelta(0))
    slots: list[FreeSlot] = []

    def _emit(start: datetime, end: datetime) -> None:
        gap = end - start
        if gap > timedelta(0) and gap >= threshold:
            slots.append(_make_slot(start, end, display_timezone))

    cursor = after
    for run in merge_intervals(busy_intervals(events)):
        if run.start >= before:
            break
        if run.start > cursor:
            _emit(cursor, run.start)
        cursor = max(cursor, run.end)

    if before > cursor:
        _emit(cursor, before)
    return slots
