"""Provider contract and shared helpers for the two calendar protocols."""

from __future__ import annotations

import abc
import logging
import time
from collections.abc import Callable
from datetime import datetime

import httpx

from fastmail_calendar.calendar.errors import ObjectRejected, TransportFailure
from fastmail_calendar.calendar.models import CalendarEvent, CalendarRef, EventDraft, EventPatch

logger = logging.getLogger(__name__)

DEFAULT_CALENDAR_CACHE_TTL_SECONDS = 60.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0


class CalendarListCache:
    """Time-to-live cache for the account's calendar list.

    Owned by one provider instance. Entries expire after ``ttl_seconds`` and
    are dropped explicitly after every successful write.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_CALENDAR_CACHE_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._calendars: list[CalendarRef] | None = None
        self._fetched_at: float | None = None

    def get(self) -> list[CalendarRef] | None:
        if self._calendars is None or self._fetched_at is None:
            return None
        if self._clock() - self._fetched_at >= self._ttl_seconds:
            return None
        return list(self._calendars)

    def put(self, calendars: list[CalendarRef]) -> None:
        self._calendars = list(calendars)
        self._fetched_at = self._clock()

    def invalidate(self) -> None:
        self._calendars = None
        self._fetched_at = None


def safe_error_message(response: httpx.Response) -> str:
    """Short, single-line description of a failed response body."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        for key in ("detail", "description", "message", "error"):
            message = payload.get(key)
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


class CalendarProvider(abc.ABC):
    """Capability contract implemented once per wire protocol.

    Providers raise the errors in :mod:`fastmail_calendar.calendar.errors`;
    turning them into structured results is the operation layer's job.
    """

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient | None = None,
        calendar_cache: CalendarListCache | None = None,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self._owns_http_client = http_client is None
        if http_client is None:
            http_client = httpx.AsyncClient(timeout=request_timeout_seconds)
        self._http_client = http_client
        if calendar_cache is None:
            calendar_cache = CalendarListCache()
        self._calendar_cache = calendar_cache

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Protocol identifier (``jmap`` or ``caldav``)."""
        ...

    @property
    @abc.abstractmethod
    def endpoint(self) -> str:
        """Server URL used for session bootstrap."""
        ...

    @abc.abstractmethod
    async def list_calendars(self) -> list[CalendarRef]:
        """Return every calendar the account can see."""
        ...

    @abc.abstractmethod
    async def query_events(
        self,
        *,
        calendar_id: str | None = None,
        after: datetime,
        before: datetime,
    ) -> list[CalendarEvent]:
        """Return events overlapping ``[after, before)``.

        ``calendar_id=None`` queries every calendar on the account.
        Individually unparsable objects are skipped.
        """
        ...

    @abc.abstractmethod
    async def create_event(self, *, calendar_id: str, draft: EventDraft) -> CalendarEvent:
        """Create an event; raises ``CalendarValidationError`` before any I/O if end <= start."""
        ...

    @abc.abstractmethod
    async def update_event(self, *, event_id: str, patch: EventPatch) -> CalendarEvent:
        """Apply *patch*; a patch that changes nothing returns the event without writing."""
        ...

    @abc.abstractmethod
    async def delete_event(self, *, event_id: str) -> None:
        """Delete an event."""
        ...

    @abc.abstractmethod
    def reset_session(self) -> None:
        """Forget the cached session so the next call bootstraps again."""
        ...

    async def resolve_calendar(self, calendar_id: str) -> CalendarRef:
        for calendar in await self.list_calendars():
            if calendar.calendar_id == calendar_id:
                return calendar
        raise ObjectRejected(calendar_id, "Calendar not found", reason="notFound")

    def invalidate_calendars(self) -> None:
        self._calendar_cache.invalidate()

    async def _send(self, method: str, url: str, **kwargs: object) -> httpx.Response:
        try:
            return await self._http_client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise TransportFailure(f"{self.name} request failed: {exc}") from exc

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
