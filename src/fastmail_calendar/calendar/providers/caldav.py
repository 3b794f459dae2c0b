"""CalDAV calendar client (WebDAV XML + iCalendar objects over Basic auth)."""

from __future__ import annotations

import asyncio
import logging
import uuid
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime
from urllib.parse import urljoin

import httpx
from pydantic import ValidationError

from fastmail_calendar.calendar.errors import (
    CalendarValidationError,
    ConcurrencyConflict,
    ObjectRejected,
    ParseFailure,
    TransportFailure,
)
from fastmail_calendar.calendar.ical import (
    ICalEventRecord,
    format_utc_timestamp,
    generate_event,
    parse_event,
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
    duration_to_timedelta,
)

logger = logging.getLogger(__name__)

CALDAV_SERVER_URL = "https://caldav.fastmail.com/"
UID_DOMAIN = "fastmail-calendar"

DAV_NS = "DAV:"
CALDAV_NS = "urn:ietf:params:xml:ns:caldav"

_XML_HEADERS = {"Content-Type": "application/xml; charset=utf-8"}
_ICS_CONTENT_TYPE = "text/calendar; charset=utf-8"
_WRITE_PRIVILEGES = {"write", "write-content", "all"}

_PRINCIPAL_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<d:propfind xmlns:d="DAV:"><d:prop><d:current-user-principal/></d:prop></d:propfind>'
)
_HOME_SET_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<d:propfind xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">'
    "<d:prop><c:calendar-home-set/></d:prop></d:propfind>"
)
_CALENDARS_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<d:propfind xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">'
    "<d:prop><d:displayname/><d:resourcetype/><d:current-user-privilege-set/>"
    "<c:supported-calendar-component-set/></d:prop></d:propfind>"
)
_QUERY_TEMPLATE = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<c:calendar-query xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">'
    "<d:prop><d:getetag/><c:calendar-data/></d:prop>"
    '<c:filter><c:comp-filter name="VCALENDAR"><c:comp-filter name="VEVENT">'
    '<c:time-range start="{start}" end="{end}"/>'
    "</c:comp-filter></c:comp-filter></c:filter></c:calendar-query>"
)

_STATUS_FROM_ICAL = {
    "CONFIRMED": EventStatus.confirmed,
    "TENTATIVE": EventStatus.tentative,
    "CANCELLED": EventStatus.cancelled,
}


def _dav(name: str) -> str:
    return f"{{{DAV_NS}}}{name}"


def _caldav(name: str) -> str:
    return f"{{{CALDAV_NS}}}{name}"


@dataclass
class DavResponse:
    """One ``<d:response>`` of a multistatus body, keeping only 200 propstats."""

    href: str
    props: dict[str, ET.Element] = field(default_factory=dict)


def parse_multistatus(text: str) -> list[DavResponse]:
    try:
        root = ET.fromstring(text)
    except ET.ParseError as exc:
        raise ParseFailure(f"malformed multistatus body: {exc}") from exc

    responses: list[DavResponse] = []
    for node in root.iter(_dav("response")):
        href = (node.findtext(_dav("href")) or "").strip()
        if not href:
            continue
        entry = DavResponse(href=href)
        for propstat in node.findall(_dav("propstat")):
            status = propstat.findtext(_dav("status")) or ""
            if " 200 " not in f"{status} ":
                continue
            prop = propstat.find(_dav("prop"))
            if prop is None:
                continue
            for child in prop:
                entry.props[child.tag] = child
        responses.append(entry)
    return responses


def _href_in(element: ET.Element | None) -> str | None:
    if element is None:
        return None
    href = element.findtext(_dav("href"))
    return href.strip() if href else None


def _privileges(element: ET.Element | None) -> set[str] | None:
    if element is None:
        return None
    names: set[str] = set()
    for privilege in element.iter(_dav("privilege")):
        for child in privilege:
            names.add(child.tag.rsplit("}", 1)[-1])
    return names


def _supports_events(element: ET.Element | None) -> bool:
    if element is None:
        return True
    components = {comp.get("name", "").upper() for comp in element.iter(_caldav("comp"))}
    return not components or "VEVENT" in components


class CalDavProvider(CalendarProvider):
    """Calendar provider speaking CalDAV with conditional writes."""

    def __init__(
        self,
        *,
        username: str,
        password: str,
        server_url: str = CALDAV_SERVER_URL,
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
        self._auth = httpx.BasicAuth(username, password)
        self._server_url = server_url
        self._default_time_zone = default_time_zone
        self._session_lock = asyncio.Lock()
        self._home_url: str | None = None

    @property
    def name(self) -> str:
        return "caldav"

    @property
    def endpoint(self) -> str:
        return self._server_url

    def reset_session(self) -> None:
        self._home_url = None
        self.invalidate_calendars()

    def _absolute(self, href: str) -> str:
        return urljoin(self._server_url, href)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _dav_request(
        self,
        method: str,
        url: str,
        *,
        body: str | None = None,
        depth: str | None = None,
    ) -> httpx.Response:
        headers = dict(_XML_HEADERS)
        if depth is not None:
            headers["Depth"] = depth
        response = await self._send(
            method,
            url,
            content=body.encode("utf-8") if body is not None else None,
            headers=headers,
            auth=self._auth,
        )
        if response.status_code < 200 or response.status_code >= 300:
            raise TransportFailure(safe_error_message(response), status_code=response.status_code)
        return response

    async def _propfind(self, url: str, body: str, *, depth: str) -> list[DavResponse]:
        response = await self._dav_request("PROPFIND", url, body=body, depth=depth)
        return parse_multistatus(response.text)

    async def _ensure_home(self) -> str:
        if self._home_url is not None:
            return self._home_url

        async with self._session_lock:
            if self._home_url is not None:
                return self._home_url

            principal_href = None
            for entry in await self._propfind(self._server_url, _PRINCIPAL_BODY, depth="0"):
                principal_href = _href_in(entry.props.get(_dav("current-user-principal")))
                if principal_href:
                    break
            if not principal_href:
                raise ParseFailure("CalDAV server did not report a current-user-principal")

            principal_url = self._absolute(principal_href)
            home_href = None
            for entry in await self._propfind(principal_url, _HOME_SET_BODY, depth="0"):
                home_href = _href_in(entry.props.get(_caldav("calendar-home-set")))
                if home_href:
                    break
            if not home_href:
                raise ParseFailure("CalDAV principal has no calendar-home-set")

            self._home_url = self._absolute(home_href)
            logger.debug("CalDAV calendar home resolved to %s", self._home_url)
            return self._home_url

    async def _get_object(self, event_id: str) -> tuple[str, httpx.Response]:
        url = self._absolute(event_id)
        response = await self._send("GET", url, auth=self._auth)
        if response.status_code == 404:
            raise ObjectRejected(event_id, "Event not found", reason="notFound")
        if response.status_code < 200 or response.status_code >= 300:
            raise TransportFailure(safe_error_message(response), status_code=response.status_code)
        return url, response

    async def _fetch_etag(self, event_id: str) -> tuple[str, str | None]:
        url, response = await self._get_object(event_id)
        return url, response.headers.get("etag")

    async def _fetch_object(self, event_id: str) -> tuple[str, ICalEventRecord, str | None]:
        url, response = await self._get_object(event_id)
        record = parse_event(response.text, floating_tz=self._default_time_zone)
        return url, record, response.headers.get("etag")

    async def _conditional_write(
        self,
        method: str,
        url: str,
        *,
        etag: str | None,
        body: str | None = None,
    ) -> httpx.Response:
        """PUT/DELETE guarded by ``If-Match``; without an ETag the write is unconditional."""
        headers: dict[str, str] = {}
        if body is not None:
            headers["Content-Type"] = _ICS_CONTENT_TYPE
        if etag:
            headers["If-Match"] = etag
        else:
            logger.warning("No ETag for %s; issuing unconditional %s", url, method)

        response = await self._send(
            method,
            url,
            content=body.encode("utf-8") if body is not None else None,
            headers=headers,
            auth=self._auth,
        )
        self._raise_for_write(response, url)
        return response

    @staticmethod
    def _raise_for_write(response: httpx.Response, url: str) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return
        if status == 412:
            raise ConcurrencyConflict(url)
        if status == 404:
            raise ObjectRejected(url, "Event not found", reason="notFound")
        if status in (403, 409, 415):
            raise ObjectRejected(url, safe_error_message(response), reason=str(status))
        raise TransportFailure(safe_error_message(response), status_code=status)

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def _event_from_record(
        self,
        record: ICalEventRecord,
        *,
        event_id: str,
        calendar_id: str | None,
        etag: str | None,
    ) -> CalendarEvent:
        start_at = record.start.instant
        if record.end is not None:
            end_at = record.end.instant
        elif record.duration:
            try:
                end_at = start_at + duration_to_timedelta(record.duration)
            except OverflowError as exc:
                raise ParseFailure(f"event {event_id} ends out of range") from exc
        elif record.start.all_day:
            end_at = start_at + ALL_DAY_DURATION_FALLBACK
        else:
            end_at = start_at + MISSING_DURATION_FALLBACK

        free_busy = FreeBusyStatus.busy
        if record.transparency == "TRANSPARENT":
            free_busy = FreeBusyStatus.free

        try:
            return CalendarEvent.from_instants(
                event_id=event_id,
                start_at=start_at,
                end_at=end_at,
                time_zone=record.start.tzid or self._default_time_zone,
                calendar_ids=[calendar_id] if calendar_id else [],
                title=record.title,
                description=record.description,
                location=record.location,
                status=_STATUS_FROM_ICAL.get(record.status, EventStatus.confirmed),
                free_busy_status=free_busy,
                all_day=record.start.all_day,
                etag=etag,
            )
        except CalendarValidationError as exc:
            raise ParseFailure(f"event {event_id} ends before it starts") from exc

    # ------------------------------------------------------------------
    # Capability contract
    # ------------------------------------------------------------------

    async def list_calendars(self) -> list[CalendarRef]:
        cached = self._calendar_cache.get()
        if cached is not None:
            return cached

        home_url = await self._ensure_home()
        calendars: list[CalendarRef] = []
        for entry in await self._propfind(home_url, _CALENDARS_BODY, depth="1"):
            resource_type = entry.props.get(_dav("resourcetype"))
            if resource_type is None or resource_type.find(_caldav("calendar")) is None:
                continue
            if not _supports_events(entry.props.get(_caldav("supported-calendar-component-set"))):
                continue

            privileges = _privileges(entry.props.get(_dav("current-user-privilege-set")))
            writable = privileges is None or bool(privileges & _WRITE_PRIVILEGES)
            display_name = entry.props.get(_dav("displayname"))
            calendars.append(
                CalendarRef(
                    calendar_id=self._absolute(entry.href),
                    name=(display_name.text or "").strip() if display_name is not None else "",
                    writable=writable,
                )
            )

        self._calendar_cache.put(calendars)
        return calendars

    async def _query_calendar(
        self, calendar_url: str, after: datetime, before: datetime
    ) -> list[CalendarEvent]:
        body = _QUERY_TEMPLATE.format(
            start=format_utc_timestamp(after), end=format_utc_timestamp(before)
        )
        response = await self._dav_request("REPORT", calendar_url, body=body, depth="1")

        events: list[CalendarEvent] = []
        for entry in parse_multistatus(response.text):
            data = entry.props.get(_caldav("calendar-data"))
            if data is None or not (data.text or "").strip():
                continue
            event_id = self._absolute(entry.href)
            etag_node = entry.props.get(_dav("getetag"))
            etag = None
            if etag_node is not None and etag_node.text:
                etag = etag_node.text.strip() or None
            try:
                record = parse_event(data.text, floating_tz=self._default_time_zone)
                events.append(
                    self._event_from_record(
                        record, event_id=event_id, calendar_id=calendar_url, etag=etag
                    )
                )
            except (ParseFailure, ValidationError) as exc:
                logger.warning(
                    "Skipping unparsable calendar object %s; its time is not counted as busy: %s",
                    event_id,
                    exc,
                )
        return events

    async def query_events(
        self,
        *,
        calendar_id: str | None = None,
        after: datetime,
        before: datetime,
    ) -> list[CalendarEvent]:
        if calendar_id is not None:
            targets = [await self.resolve_calendar(calendar_id)]
        else:
            targets = await self.list_calendars()

        events: list[CalendarEvent] = []
        for calendar in targets:
            events.extend(await self._query_calendar(calendar.calendar_id, after, before))
        return events

    async def create_event(self, *, calendar_id: str, draft: EventDraft) -> CalendarEvent:
        draft.ensure_valid_span()
        calendar = await self.resolve_calendar(calendar_id)
        if not calendar.writable:
            raise ObjectRejected(calendar_id, "Calendar is read-only", reason="forbidden")

        uid = f"{uuid.uuid4()}@{UID_DOMAIN}"
        collection = calendar.calendar_id.rstrip("/") + "/"
        url = urljoin(collection, f"{uid}.ics")
        body = generate_event(
            uid=uid,
            title=draft.title,
            start_at=draft.start_at,
            end_at=draft.end_at,
            description=draft.description or "",
            location=draft.location or "",
        )

        response = await self._send(
            "PUT",
            url,
            content=body.encode("utf-8"),
            headers={"Content-Type": _ICS_CONTENT_TYPE, "If-None-Match": "*"},
            auth=self._auth,
        )
        if response.status_code == 412:
            raise ObjectRejected(url, "An object with this UID already exists", reason="exists")
        self._raise_for_write(response, url)

        self.invalidate_calendars()
        logger.info("Created CalDAV event %s", url)
        return CalendarEvent.from_instants(
            event_id=url,
            start_at=draft.start_at,
            end_at=draft.end_at,
            time_zone=draft.time_zone,
            calendar_ids=[calendar.calendar_id],
            title=draft.title,
            description=draft.description or "",
            location=draft.location or "",
            etag=response.headers.get("etag"),
        )

    async def update_event(self, *, event_id: str, patch: EventPatch) -> CalendarEvent:
        url, record, etag = await self._fetch_object(event_id)
        existing = self._event_from_record(record, event_id=url, calendar_id=None, etag=etag)
        updated = existing.apply_patch(patch)
        if not updated.differs_from(existing):
            return existing

        uid = record.uid or url.rsplit("/", 1)[-1].removesuffix(".ics")
        body = generate_event(
            uid=uid,
            title=updated.title,
            start_at=updated.start_at,
            end_at=updated.end_at,
            description=updated.description,
            location=updated.location,
            status=record.status,
            transparency=record.transparency,
        )
        response = await self._conditional_write("PUT", url, etag=etag, body=body)

        self.invalidate_calendars()
        logger.info("Updated CalDAV event %s", url)
        return updated.model_copy(update={"etag": response.headers.get("etag")})

    async def delete_event(self, *, event_id: str) -> None:
        url, etag = await self._fetch_etag(event_id)
        await self._conditional_write("DELETE", url, etag=etag)
        self.invalidate_calendars()
        logger.info("Deleted CalDAV event %s", url)
