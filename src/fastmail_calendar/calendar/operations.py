"""Uniform calendar operations returning structured results.

Every public coroutine on :class:`CalendarOperations` returns an
:class:`OperationResult`; provider, parse and validation errors are converted
to ``status="error"`` results and never propagate to the caller.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ValidationError

from fastmail_calendar.calendar.errors import CalendarError, CalendarValidationError
from fastmail_calendar.calendar.formatter import format_calendar, format_event, format_local
from fastmail_calendar.calendar.freebusy import find_free_slots
from fastmail_calendar.calendar.models import EventDraft, EventPatch
from fastmail_calendar.calendar.providers.base import CalendarProvider
from fastmail_calendar.calendar.timeutil import duration_to_timedelta, parse_instant

logger = logging.getLogger(__name__)

ERROR_MESSAGE_LIMIT = 200

_PATCH_FIELD_NAMES = {
    "title": "title",
    "description": "description",
    "location": "location",
    "start_at": "start",
    "end_at": "end",
    "time_zone": "time_zone",
}


class OperationStatus(StrEnum):
    ok = "ok"
    error = "error"


class OperationResult(BaseModel):
    """Outcome of one calendar operation."""

    status: OperationStatus
    data: Any = None
    error: str | None = None
    error_type: str | None = None
    provider: str | None = None
    object_id: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == OperationStatus.ok

    def to_payload(self) -> dict[str, Any]:
        if self.ok:
            return {"status": "ok", "provider": self.provider, "data": self.data}
        payload: dict[str, Any] = {
            "status": "error",
            "error": self.error,
            "error_type": self.error_type,
            "provider": self.provider,
        }
        if self.object_id is not None:
            payload["object_id"] = self.object_id
        return payload


def redact_credentials(message: str) -> str:
    """Redact credential values (passwords, tokens, auth headers) from *message*."""
    redacted = message
    # Authorization header values
    redacted = re.sub(r"(?i)\b(Basic|Bearer)\s+[A-Za-z0-9._~+/=-]+", r"\1 [REDACTED]", redacted)
    # key=value style pairs
    redacted = re.sub(
        r"(?i)\b(password|passwd|token|api_key|access_token)\s*=\s*([^\s,;]+)",
        r"\1=[REDACTED]",
        redacted,
    )
    # JSON/Python dict style quoted values
    redacted = re.sub(
        r"""(?i)(['"]?(?:password|passwd|token|api_key|access_token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    # key: value style pairs
    redacted = re.sub(
        r"(?i)\b(password|passwd|token|api_key|access_token)\s*:\s*([^\s,;\"']+)",
        r"\1: [REDACTED]",
        redacted,
    )
    # user:password@host in URLs
    redacted = re.sub(r"(https?://[^\s:/@]+):[^\s@/]+@", r"\1:[REDACTED]@", redacted)
    return redacted


def sanitize_error_message(message: str) -> str:
    return " ".join(redact_credentials(message).split())[:ERROR_MESSAGE_LIMIT]


def _validation_message(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"])
        problems.append(f"{location}: {error['msg']}" if location else error["msg"])
    return "; ".join(problems)


class CalendarOperations:
    """The six calendar operations plus a connection diagnostic."""

    def __init__(self, provider: CalendarProvider, *, time_zone: str) -> None:
        self._provider = provider
        self._time_zone = time_zone

    @property
    def provider(self) -> CalendarProvider:
        return self._provider

    def _success(self, data: Any) -> OperationResult:
        return OperationResult(status=OperationStatus.ok, data=data, provider=self._provider.name)

    def _failure(
        self,
        operation: str,
        exc: Exception,
        *,
        object_id: str | None = None,
    ) -> OperationResult:
        if isinstance(exc, ValidationError):
            error_type = CalendarValidationError.kind
            message = _validation_message(exc)
        elif isinstance(exc, CalendarError):
            error_type = exc.kind
            message = str(exc)
            object_id = getattr(exc, "object_id", None) or object_id
        else:
            error_type = CalendarError.kind
            message = f"unexpected {type(exc).__name__}: {exc}"

        sanitized = sanitize_error_message(message)
        logger.warning("Calendar operation %s failed (%s): %s", operation, error_type, sanitized)
        return OperationResult(
            status=OperationStatus.error,
            error=sanitized,
            error_type=error_type,
            provider=self._provider.name,
            object_id=object_id,
        )

    async def _run(
        self,
        operation: str,
        action: Callable[[], Awaitable[Any]],
        *,
        object_id: str | None = None,
    ) -> OperationResult:
        try:
            data = await action()
        except (CalendarError, ValidationError) as exc:
            return self._failure(operation, exc, object_id=object_id)
        except Exception as exc:
            logger.exception("Unexpected error in calendar operation %s", operation)
            return self._failure(operation, exc, object_id=object_id)
        return self._success(data)

    def _instant(self, value: str | datetime) -> datetime:
        if isinstance(value, datetime):
            if value.tzinfo is None:
                raise CalendarValidationError(f"naive datetime {value.isoformat()} has no zone")
            return value
        return parse_instant(value, self._time_zone)

    def _window(self, after: str | datetime, before: str | datetime) -> tuple[datetime, datetime]:
        after_at = self._instant(after)
        before_at = self._instant(before)
        if before_at <= after_at:
            raise CalendarValidationError("'before' must be later than 'after'.")
        return after_at, before_at

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def list_calendars(self) -> OperationResult:
        async def _action() -> list[dict[str, Any]]:
            calendars = await self._provider.list_calendars()
            return [format_calendar(calendar) for calendar in calendars]

        return await self._run("list_calendars", _action)

    async def get_events(
        self,
        *,
        after: str | datetime,
        before: str | datetime,
        calendar_id: str | None = None,
    ) -> OperationResult:
        async def _action() -> list[dict[str, Any]]:
            after_at, before_at = self._window(after, before)
            events = await self._provider.query_events(
                calendar_id=calendar_id, after=after_at, before=before_at
            )
            events.sort(key=lambda event: (event.start_at, event.event_id))
            return [format_event(event) for event in events]

        return await self._run("get_events", _action, object_id=calendar_id)

    async def create_event(
        self,
        *,
        calendar_id: str,
        title: str,
        start: str | datetime,
        end: str | datetime,
        description: str | None = None,
        location: str | None = None,
        time_zone: str | None = None,
    ) -> OperationResult:
        async def _action() -> dict[str, Any]:
            draft = EventDraft(
                title=title,
                start_at=self._instant(start),
                end_at=self._instant(end),
                time_zone=time_zone or self._time_zone,
                description=description,
                location=location,
            )
            event = await self._provider.create_event(calendar_id=calendar_id, draft=draft)
            return {
                "id": event.event_id,
                "title": event.title,
                "start": format_local(event.start_at, event.time_zone),
                "end": format_local(event.end_at, event.time_zone),
                "time_zone": event.time_zone,
            }

        return await self._run("create_event", _action, object_id=calendar_id)

    async def update_event(
        self,
        *,
        event_id: str,
        title: str | None = None,
        description: str | None = None,
        location: str | None = None,
        start: str | datetime | None = None,
        end: str | datetime | None = None,
        time_zone: str | None = None,
    ) -> OperationResult:
        async def _action() -> dict[str, Any]:
            patch = EventPatch(
                title=title,
                description=description,
                location=location,
                start_at=self._instant(start) if start is not None else None,
                end_at=self._instant(end) if end is not None else None,
                time_zone=time_zone,
            )
            if patch.is_empty():
                raise CalendarValidationError("No fields to update were supplied.")
            event = await self._provider.update_event(event_id=event_id, patch=patch)
            return {
                "id": event.event_id,
                "updated_fields": [
                    _PATCH_FIELD_NAMES[name] for name in patch.model_dump(exclude_none=True)
                ],
            }

        return await self._run("update_event", _action, object_id=event_id)

    async def delete_event(self, *, event_id: str) -> OperationResult:
        async def _action() -> dict[str, Any]:
            await self._provider.delete_event(event_id=event_id)
            return {"id": event_id, "deleted": True}

        return await self._run("delete_event", _action, object_id=event_id)

    async def find_free_slots(
        self,
        *,
        after: str | datetime,
        before: str | datetime,
        min_duration: str,
        calendar_id: str | None = None,
    ) -> OperationResult:
        async def _action() -> list[dict[str, Any]]:
            after_at, before_at = self._window(after, before)
            min_delta = duration_to_timedelta(min_duration)
            if min_delta <= timedelta(0):
                raise CalendarValidationError("min_duration must be greater than zero.")
            events = await self._provider.query_events(
                calendar_id=calendar_id, after=after_at, before=before_at
            )
            slots = find_free_slots(
                events,
                after=after_at,
                before=before_at,
                min_duration=min_delta,
                display_timezone=self._time_zone,
            )
            return [slot.to_payload() for slot in slots]

        return await self._run("find_free_slots", _action, object_id=calendar_id)

    async def check_connection(self) -> OperationResult:
        """Force a fresh session bootstrap and report what the account can see."""

        async def _action() -> dict[str, Any]:
            self._provider.reset_session()
            calendars = await self._provider.list_calendars()
            return {
                "protocol": self._provider.name,
                "endpoint": self._provider.endpoint,
                "calendar_count": len(calendars),
                "calendars": [format_calendar(calendar) for calendar in calendars],
            }

        return await self._run("check_connection", _action)
