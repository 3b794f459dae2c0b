"""JMAP calendar client (JSON method-call batches over a bearer-token session)."""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime
from typing import Any

import httpx
from pydantic import ValidationError

from fastmail_calendar.calendar.errors import (
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
from fastmail_calendar.calendar.providers.base import (
    CalendarListCache,
    CalendarProvider,
    safe_error_message,
)
from fastmail_calendar.calendar.timeutil import (
    ALL_DAY_DURATION_FALLBACK,
    MISSING_DURATION_FALLBACK,
    format_utc,
    parse_duration,
    timedelta_to_duration,
    to_local,
)

logger = logging.getLogger(__name__)

JMAP_SESSION_URL = "https://api.fastmail.com/jmap/session"
JMAP_CORE_CAPABILITY = "urn:ietf:params:jmap:core"
JMAP_CALENDARS_CAPABILITY = "urn:ietf:params:jmap:calendars"
JMAP_ERROR_PREFIX = "urn:ietf:params:jmap:error:"

_EVENT_PROPERTIES = [
    "id",
    "calendarIds",
    "title",
    "description",
    "locations",
    "start",
    "timeZone",
    "duration",
    "status",
    "freeBusyStatus",
    "showWithoutTime",
]

# JSCalendar allows a week component (P1W, P2W3DT1H) that the restricted
# duration grammar lacks.
_WEEK_DURATION_PATTERN = re.compile(r"^P(\d+)W(?:(\d+)D)?(T.*)?$")


def _fold_weeks(duration: str) -> str:
    match = _WEEK_DURATION_PATTERN.match(duration.strip())
    if match is None:
        return duration
    weeks, days, time_part = match.groups()
    return f"P{int(weeks) * 7 + int(days or 0)}D{time_part or ''}"


def _first_location(locations: Any) -> str:
    if not isinstance(locations, dict):
        return ""
    for location in locations.values():
        if isinstance(location, dict) and isinstance(location.get("name"), str):
            return location["name"]
    return ""


def _locations_payload(location: str) -> dict[str, Any] | None:
    if not location:
        return None
    return {"loc1": {"@type": "Location", "name": location}}


def _enum_value(enum_cls: type, raw: Any, default: Any) -> Any:
    if isinstance(raw, str):
        try:
            return enum_cls(raw.lower())
        except ValueError:
            return default
    return default


class JmapProvider(CalendarProvider):
    """Calendar provider speaking JMAP for Calendars."""

    def __init__(
        self,
        *,
        token: str,
        session_url: str = JMAP_SESSION_URL,
        default_time_zone: str = "UTC",
        http_client: httpx.AsyncClient | None = None,
        calendar_cache: CalendarListCache | None = None,
        request_timeout_seconds: float = 30.0,
    ) -> None:
        super().__init__(
            http_client=http_client,
            calendar_cache=calendar_cache,
            request_timeout_seconds=request_timeout_seconds,
        )
        self._token = token
        self._session_url = session_url
        self._default_time_zone = default_time_zone
        self._session_lock = asyncio.Lock()
        self._api_url: str | None = None
        self._account_id: str | None = None

    @property
    def name(self) -> str:
        return "jmap"

    @property
    def endpoint(self) -> str:
        return self._session_url

    def reset_session(self) -> None:
        self._api_url = None
        self._account_id = None
        self.invalidate_calendars()

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}", "Accept": "application/json"}

    # ------------------------------------------------------------------
    # Session + transport
    # ------------------------------------------------------------------

    async def _ensure_session(self) -> tuple[str, str]:
        if self._api_url is not None and self._account_id is not None:
            return self._api_url, self._account_id

        async with self._session_lock:
            if self._api_url is not None and self._account_id is not None:
                return self._api_url, self._account_id

            response = await self._send("GET", self._session_url, headers=self._auth_headers())
            self._raise_for_response(response)
            payload = self._json_payload(response)

            api_url = payload.get("apiUrl")
            if not isinstance(api_url, str) or not api_url:
                raise ProtocolFault("invalidSession", "JMAP session response has no apiUrl")
            primary_accounts = payload.get("primaryAccounts")
            account_id = None
            if isinstance(primary_accounts, dict):
                account_id = primary_accounts.get(JMAP_CALENDARS_CAPABILITY)
            if not isinstance(account_id, str) or not account_id:
                raise ProtocolFault(
                    "unsupportedCapability",
                    f"JMAP session has no primary account for {JMAP_CALENDARS_CAPABILITY}",
                )

            self._api_url = api_url
            self._account_id = account_id
            logger.debug("JMAP session established (account %s)", account_id)
            return api_url, account_id

    @staticmethod
    def _json_payload(response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise TransportFailure(
                "JMAP server returned a non-JSON response", status_code=response.status_code
            ) from exc
        if not isinstance(payload, dict):
            raise TransportFailure(
                "JMAP server returned an unexpected payload", status_code=response.status_code
            )
        return payload

    @staticmethod
    def _raise_for_response(response: httpx.Response) -> None:
        if 200 <= response.status_code < 300:
            return

        try:
            problem = response.json()
        except ValueError:
            problem = None
        if isinstance(problem, dict):
            problem_type = problem.get("type")
            if isinstance(problem_type, str) and problem_type.startswith(JMAP_ERROR_PREFIX):
                raise ProtocolFault(
                    problem_type.removeprefix(JMAP_ERROR_PREFIX),
                    str(problem.get("detail") or problem.get("title") or "request rejected"),
                )

        raise TransportFailure(safe_error_message(response), status_code=response.status_code)

    async def _call(self, method_calls: list[list[Any]]) -> dict[str, dict[str, Any]]:
        """Send one batch and return the response arguments keyed by call id."""
        api_url, _ = await self._ensure_session()
        body = {
            "using": [JMAP_CORE_CAPABILITY, JMAP_CALENDARS_CAPABILITY],
            "methodCalls": method_calls,
        }
        response = await self._send("POST", api_url, json=body, headers=self._auth_headers())
        self._raise_for_response(response)
        payload = self._json_payload(response)

        method_responses = payload.get("methodResponses")
        if not isinstance(method_responses, list):
            raise TransportFailure(
                "JMAP response has no methodResponses", status_code=response.status_code
            )

        results: dict[str, dict[str, Any]] = {}
        for entry in method_responses:
            if not isinstance(entry, list) or len(entry) != 3:
                continue
            method_name, arguments, call_id = entry
            arguments = arguments if isinstance(arguments, dict) else {}
            if method_name == "error":
                raise ProtocolFault(
                    str(arguments.get("type") or "serverFail"),
                    str(arguments.get("description") or f"method call {call_id} failed"),
                )
            results[call_id] = arguments
        return results

    async def _set_events(
        self,
        *,
        create: dict[str, dict[str, Any]] | None = None,
        update: dict[str, dict[str, Any]] | None = None,
        destroy: list[str] | None = None,
    ) -> dict[str, Any]:
        _, account_id = await self._ensure_session()
        arguments: dict[str, Any] = {"accountId": account_id}
        if create:
            arguments["create"] = create
        if update:
            arguments["update"] = update
        if destroy:
            arguments["destroy"] = destroy
        results = await self._call([["CalendarEvent/set", arguments, "s0"]])
        return results.get("s0", {})

    @staticmethod
    def _raise_if_rejected(result: dict[str, Any], failure_key: str, object_id: str) -> None:
        failures = result.get(failure_key) or {}
        if object_id in failures:
            set_error = failures[object_id] or {}
            raise ObjectRejected(
                object_id,
                str(set_error.get("description") or set_error.get("type") or "rejected"),
                reason=set_error.get("type"),
            )

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def _event_from_jmap(self, raw: dict[str, Any]) -> CalendarEvent:
        event_id = raw.get("id")
        if not isinstance(event_id, str) or not event_id:
            raise ParseFailure("JMAP event has no id")
        start = raw.get("start")
        if not isinstance(start, str) or not start:
            raise ParseFailure(f"JMAP event {event_id} has no start")

        all_day = bool(raw.get("showWithoutTime"))
        duration = raw.get("duration")
        if isinstance(duration, str):
            duration = _fold_weeks(duration)
        if not isinstance(duration, str) or parse_duration(duration) <= 0:
            fallback = ALL_DAY_DURATION_FALLBACK if all_day else MISSING_DURATION_FALLBACK
            duration = timedelta_to_duration(fallback)

        calendar_ids = raw.get("calendarIds")
        if not isinstance(calendar_ids, dict):
            calendar_ids = {}
        return CalendarEvent(
            event_id=event_id,
            calendar_ids=[cid for cid, member in calendar_ids.items() if member],
            title=raw.get("title") or "",
            description=raw.get("description") or "",
            location=_first_location(raw.get("locations")),
            start=start,
            # A null timeZone is floating time.
            time_zone=raw.get("timeZone") or self._default_time_zone,
            duration=duration,
            status=_enum_value(EventStatus, raw.get("status"), EventStatus.confirmed),
            free_busy_status=_enum_value(
                FreeBusyStatus, raw.get("freeBusyStatus"), FreeBusyStatus.busy
            ),
            all_day=all_day,
        )

    @staticmethod
    def _draft_to_jmap(calendar_id: str, draft: EventDraft) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "@type": "Event",
            "calendarIds": {calendar_id: True},
            "title": draft.title,
            "start": to_local(draft.start_at, draft.time_zone),
            "timeZone": draft.time_zone,
            "duration": timedelta_to_duration(draft.duration),
            "showWithoutTime": False,
        }
        if draft.description:
            payload["description"] = draft.description
        locations = _locations_payload(draft.location or "")
        if locations:
            payload["locations"] = locations
        return payload

    @staticmethod
    def _changed_properties(existing: CalendarEvent, updated: CalendarEvent) -> dict[str, Any]:
        changes: dict[str, Any] = {}
        if updated.title != existing.title:
            changes["title"] = updated.title
        if updated.description != existing.description:
            changes["description"] = updated.description
        if updated.location != existing.location:
            changes["locations"] = _locations_payload(updated.location)
        if updated.start != existing.start or updated.time_zone != existing.time_zone:
            changes["start"] = updated.start
            changes["timeZone"] = updated.time_zone
        if updated.duration != existing.duration:
            changes["duration"] = updated.duration
        if updated.all_day != existing.all_day:
            changes["showWithoutTime"] = updated.all_day
        return changes

    # ------------------------------------------------------------------
    # Capability contract
    # ------------------------------------------------------------------

    async def list_calendars(self) -> list[CalendarRef]:
        cached = self._calendar_cache.get()
        if cached is not None:
            return cached

        _, account_id = await self._ensure_session()
        results = await self._call(
            [["Calendar/get", {"accountId": account_id, "ids": None}, "c0"]]
        )
        calendars: list[CalendarRef] = []
        for raw in results.get("c0", {}).get("list") or []:
            calendar_id = raw.get("id")
            if not isinstance(calendar_id, str):
                continue
            rights = raw.get("myRights")
            writable = True
            if isinstance(rights, dict):
                writable = bool(rights.get("mayWriteAll") or rights.get("mayWriteOwn"))
            calendars.append(
                CalendarRef(calendar_id=calendar_id, name=raw.get("name") or "", writable=writable)
            )

        self._calendar_cache.put(calendars)
        return calendars

    async def query_events(
        self,
        *,
        calendar_id: str | None = None,
        after: datetime,
        before: datetime,
    ) -> list[CalendarEvent]:
        _, account_id = await self._ensure_session()
        query_filter: dict[str, Any] = {"after": format_utc(after), "before": format_utc(before)}
        if calendar_id is not None:
            query_filter["inCalendars"] = [calendar_id]

        results = await self._call(
            [
                ["CalendarEvent/query", {"accountId": account_id, "filter": query_filter}, "q0"],
                [
                    "CalendarEvent/get",
                    {
                        "accountId": account_id,
                        "#ids": {"resultOf": "q0", "name": "CalendarEvent/query", "path": "/ids"},
                        "properties": _EVENT_PROPERTIES,
                    },
                    "g0",
                ],
            ]
        )

        events: list[CalendarEvent] = []
        for raw in results.get("g0", {}).get("list") or []:
            try:
                events.append(self._event_from_jmap(raw))
            except (ParseFailure, ValidationError) as exc:
                logger.warning(
                    "Skipping unparsable JMAP event %s; its time is not counted as busy: %s",
                    raw.get("id"),
                    exc,
                )
        return events

    async def _get_event(self, event_id: str) -> CalendarEvent:
        _, account_id = await self._ensure_session()
        results = await self._call(
            [
                [
                    "CalendarEvent/get",
                    {"accountId": account_id, "ids": [event_id], "properties": _EVENT_PROPERTIES},
                    "g0",
                ]
            ]
        )
        found = results.get("g0", {}).get("list") or []
        if not found:
            raise ObjectRejected(event_id, "Event not found", reason="notFound")
        return self._event_from_jmap(found[0])

    async def create_event(self, *, calendar_id: str, draft: EventDraft) -> CalendarEvent:
        draft.ensure_valid_span()
        result = await self._set_events(
            create={"new": self._draft_to_jmap(calendar_id, draft)}
        )
        self._raise_if_rejected(result, "notCreated", "new")

        created = (result.get("created") or {}).get("new") or {}
        event_id = created.get("id")
        if not isinstance(event_id, str) or not event_id:
            raise ProtocolFault("serverFail", "CalendarEvent/set returned no id for the new event")

        self.invalidate_calendars()
        logger.info("Created JMAP event %s in calendar %s", event_id, calendar_id)
        return CalendarEvent.from_instants(
            event_id=event_id,
            start_at=draft.start_at,
            end_at=draft.end_at,
            time_zone=draft.time_zone,
            calendar_ids=[calendar_id],
            title=draft.title,
            description=draft.description or "",
            location=draft.location or "",
        )

    async def update_event(self, *, event_id: str, patch: EventPatch) -> CalendarEvent:
        existing = await self._get_event(event_id)
        updated = existing.apply_patch(patch)
        if not updated.differs_from(existing):
            return existing

        changes = self._changed_properties(existing, updated)
        if not changes:
            return existing
        result = await self._set_events(update={event_id: changes})
        self._raise_if_rejected(result, "notUpdated", event_id)

        self.invalidate_calendars()
        logger.info("Updated JMAP event %s (%s)", event_id, ", ".join(sorted(changes)))
        return updated

    async def delete_event(self, *, event_id: str) -> None:
        result = await self._set_events(destroy=[event_id])
        self._raise_if_rejected(result, "notDestroyed", event_id)
        self.invalidate_calendars()
        logger.info("Deleted JMAP event %s", event_id)
