"""Unit tests for CalDavProvider.

Covers:
- Principal / calendar-home-set bootstrap and Depth-1 calendar discovery
- Write privileges and component filtering on discovered calendars
- REPORT calendar-query with a server-side time-range
- Unparsable objects (e.g. missing END:VEVENT) skipped, not raised
- Create with If-None-Match, update/delete with If-Match from a fresh GET
- Delete needs only the ETag, so objects that fail to parse can still be removed
- 412 -> ConcurrencyConflict; missing ETag degrades to an unconditional write
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

import httpx
import pytest

from fastmail_calendar.calendar.errors import (
    CalendarValidationError,
    ConcurrencyConflict,
    ObjectRejected,
    ParseFailure,
    TransportFailure,
)
from fastmail_calendar.calendar.models import EventDraft, EventPatch, FreeBusyStatus
from fastmail_calendar.calendar.providers.caldav import (
    CALDAV_SERVER_URL,
    CalDavProvider,
    parse_multistatus,
)

pytestmark = pytest.mark.unit

HOME_PATH = "/dav/calendars/user/me@fastmail.com/"
PERSONAL_URL = f"https://caldav.fastmail.com{HOME_PATH}personal/"
HOLIDAYS_URL = f"https://caldav.fastmail.com{HOME_PATH}holidays/"
OBJECT_URL = f"{PERSONAL_URL}evt-1.ics"


# ---------------------------------------------------------------------------
# Fixtures and helpers
# ---------------------------------------------------------------------------


def _mock_response(
    *,
    status_code: int,
    url: str,
    method: str = "GET",
    text: str = "",
    headers: dict[str, str] | None = None,
) -> httpx.Response:
    request = httpx.Request(method, url)
    return httpx.Response(
        status_code=status_code, text=text, headers=headers or {}, request=request
    )


def _multistatus(*responses: str) -> str:
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<d:multistatus xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">'
        + "".join(responses)
        + "</d:multistatus>"
    )


def _dav_response(href: str, props: str, status: str = "HTTP/1.1 200 OK") -> str:
    return (
        f"<d:response><d:href>{href}</d:href>"
        f"<d:propstat><d:prop>{props}</d:prop><d:status>{status}</d:status></d:propstat>"
        "</d:response>"
    )


def _principal_response() -> httpx.Response:
    body = _multistatus(
        _dav_response(
            "/",
            "<d:current-user-principal><d:href>/dav/principals/user/me@fastmail.com/</d:href>"
            "</d:current-user-principal>",
        )
    )
    return _mock_response(status_code=207, url=CALDAV_SERVER_URL, method="PROPFIND", text=body)


def _home_response() -> httpx.Response:
    body = _multistatus(
        _dav_response(
            "/dav/principals/user/me@fastmail.com/",
            f"<c:calendar-home-set><d:href>{HOME_PATH}</d:href></c:calendar-home-set>",
        )
    )
    return _mock_response(status_code=207, url=CALDAV_SERVER_URL, method="PROPFIND", text=body)


def _calendar_props(name: str, privileges: str, components: str = "VEVENT") -> str:
    return (
        f"<d:displayname>{name}</d:displayname>"
        "<d:resourcetype><d:collection/><c:calendar/></d:resourcetype>"
        f"<d:current-user-privilege-set>{privileges}</d:current-user-privilege-set>"
        f'<c:supported-calendar-component-set><c:comp name="{components}"/>'
        "</c:supported-calendar-component-set>"
    )


def _calendars_response() -> httpx.Response:
    read = "<d:privilege><d:read/></d:privilege>"
    write = "<d:privilege><d:write/></d:privilege>"
    body = _multistatus(
        _dav_response(HOME_PATH, "<d:resourcetype><d:collection/></d:resourcetype>"),
        _dav_response(f"{HOME_PATH}personal/", _calendar_props("Personal", read + write)),
        _dav_response(f"{HOME_PATH}holidays/", _calendar_props("Holidays", read)),
        _dav_response(f"{HOME_PATH}tasks/", _calendar_props("Tasks", read + write, "VTODO")),
    )
    return _mock_response(status_code=207, url=CALDAV_SERVER_URL, method="PROPFIND", text=body)


def _discovery() -> list[httpx.Response]:
    return [_principal_response(), _home_response(), _calendars_response()]


def _ics(*vevent_lines: str, end: bool = True) -> str:
    lines = ["BEGIN:VCALENDAR", "VERSION:2.0", "BEGIN:VEVENT", *vevent_lines]
    if end:
        lines.append("END:VEVENT")
    lines.append("END:VCALENDAR")
    return "\r\n".join(lines) + "\r\n"


def _object_entry(href: str, ics: str, etag: str = '"etag-1"') -> str:
    escaped = ics.replace("&", "&amp;").replace("<", "&lt;")
    return _dav_response(
        href, f"<d:getetag>{etag}</d:getetag><c:calendar-data>{escaped}</c:calendar-data>"
    )


def _report_response(*entries: str, url: str = PERSONAL_URL) -> httpx.Response:
    return _mock_response(status_code=207, url=url, method="REPORT", text=_multistatus(*entries))


def _event_ics(**overrides: str) -> str:
    props = {
        "UID": "evt-1@example.com",
        "DTSTART;TZID=America/New_York": "20240315T090000",
        "DTEND;TZID=America/New_York": "20240315T100000",
        "SUMMARY": "Standup",
        "TRANSP": "OPAQUE",
    }
    props.update(overrides)
    return _ics(*(f"{key}:{value}" for key, value in props.items()))


def _provider(http_client) -> CalDavProvider:
    return CalDavProvider(
        username="me@fastmail.com",
        password="app-password",
        default_time_zone="America/St_Johns",
        http_client=http_client,
    )


def _calls(http_client, method: str) -> list:
    return [call for call in http_client.request.await_args_list if call.args[0] == method]


AFTER = datetime(2024, 3, 15, tzinfo=UTC)
BEFORE = datetime(2024, 3, 16, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


class TestListCalendars:
    async def test_discovery_flow(self, http_client):
        http_client.request.side_effect = _discovery()
        calendars = await _provider(http_client).list_calendars()

        assert [(c.calendar_id, c.name, c.writable) for c in calendars] == [
            (PERSONAL_URL, "Personal", True),
            (HOLIDAYS_URL, "Holidays", False),
        ]

        principal, home, listing = http_client.request.await_args_list
        assert principal.args == ("PROPFIND", CALDAV_SERVER_URL)
        assert principal.kwargs["headers"]["Depth"] == "0"
        assert isinstance(principal.kwargs["auth"], httpx.BasicAuth)
        assert home.args[1] == "https://caldav.fastmail.com/dav/principals/user/me@fastmail.com/"
        assert listing.args[1] == f"https://caldav.fastmail.com{HOME_PATH}"
        assert listing.kwargs["headers"]["Depth"] == "1"

    async def test_cached_within_ttl(self, http_client):
        http_client.request.side_effect = _discovery()
        provider = _provider(http_client)
        first = await provider.list_calendars()
        assert await provider.list_calendars() == first
        assert http_client.request.await_count == 3

    async def test_home_set_cached_after_cache_invalidation(self, http_client):
        http_client.request.side_effect = [*_discovery(), _calendars_response()]
        provider = _provider(http_client)
        await provider.list_calendars()
        provider.invalidate_calendars()
        await provider.list_calendars()
        assert http_client.request.await_count == 4

    async def test_missing_principal(self, http_client):
        http_client.request.return_value = _mock_response(
            status_code=207, url=CALDAV_SERVER_URL, method="PROPFIND", text=_multistatus()
        )
        with pytest.raises(ParseFailure):
            await _provider(http_client).list_calendars()

    async def test_unauthorized(self, http_client):
        http_client.request.return_value = _mock_response(
            status_code=401, url=CALDAV_SERVER_URL, method="PROPFIND", text="Unauthorized"
        )
        with pytest.raises(TransportFailure) as exc_info:
            await _provider(http_client).list_calendars()
        assert exc_info.value.status_code == 401


class TestParseMultistatus:
    def test_non_200_propstat_ignored(self):
        body = _multistatus(
            _dav_response("/a/", "<d:displayname>A</d:displayname>"),
            _dav_response("/b/", "<d:displayname/>", status="HTTP/1.1 404 Not Found"),
        )
        entries = parse_multistatus(body)
        assert [entry.href for entry in entries] == ["/a/", "/b/"]
        assert entries[1].props == {}

    def test_malformed_xml(self):
        with pytest.raises(ParseFailure):
            parse_multistatus("<d:multistatus")


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQueryEvents:
    async def test_report_per_calendar_with_time_range(self, http_client):
        http_client.request.side_effect = [
            *_discovery(),
            _report_response(_object_entry(f"{HOME_PATH}personal/evt-1.ics", _event_ics())),
            _report_response(url=HOLIDAYS_URL),
        ]
        events = await _provider(http_client).query_events(after=AFTER, before=BEFORE)

        reports = _calls(http_client, "REPORT")
        assert [call.args[1] for call in reports] == [PERSONAL_URL, HOLIDAYS_URL]
        body = reports[0].kwargs["content"].decode()
        assert 'start="20240315T000000Z"' in body
        assert 'end="20240316T000000Z"' in body
        assert reports[0].kwargs["headers"]["Depth"] == "1"

        (event,) = events
        assert event.event_id == OBJECT_URL
        assert event.calendar_ids == [PERSONAL_URL]
        assert event.time_zone == "America/New_York"
        assert event.start == "2024-03-15T09:00:00"
        assert event.duration == "PT1H"
        assert event.etag == '"etag-1"'

    async def test_unparsable_object_skipped(self, http_client, caplog):
        broken = _ics("UID:broken", "DTSTART:20240315T120000Z", "SUMMARY:Broken", end=False)
        http_client.request.side_effect = [
            *_discovery(),
            _report_response(
                _object_entry(f"{HOME_PATH}personal/evt-1.ics", _event_ics()),
                _object_entry(f"{HOME_PATH}personal/broken.ics", broken),
            ),
        ]
        with caplog.at_level(logging.WARNING):
            events = await _provider(http_client).query_events(
                calendar_id=PERSONAL_URL, after=AFTER, before=BEFORE
            )
        assert [event.event_id for event in events] == [OBJECT_URL]
        assert "broken.ics" in caplog.text

    async def test_duration_beyond_supported_range_skipped(self, http_client, caplog):
        endless = _ics("UID:endless", "DTSTART:20240315T120000Z", "DURATION:P99999999D")
        http_client.request.side_effect = [
            *_discovery(),
            _report_response(
                _object_entry(f"{HOME_PATH}personal/evt-1.ics", _event_ics()),
                _object_entry(f"{HOME_PATH}personal/endless.ics", endless),
            ),
        ]
        with caplog.at_level(logging.WARNING):
            events = await _provider(http_client).query_events(
                calendar_id=PERSONAL_URL, after=AFTER, before=BEFORE
            )
        assert [event.event_id for event in events] == [OBJECT_URL]
        assert "endless.ics" in caplog.text

    async def test_record_conversion_rules(self, http_client):
        transparent = _event_ics(UID="t", TRANSP="TRANSPARENT")
        no_end = _ics("UID:n", "DTSTART:20240315T150000Z")
        with_duration = _ics("UID:d", "DTSTART:20240315T150000Z", "DURATION:PT20M")
        all_day = _ics("UID:a", "DTSTART;VALUE=DATE:20240315")
        http_client.request.side_effect = [
            *_discovery(),
            _report_response(
                _object_entry(f"{HOME_PATH}personal/t.ics", transparent),
                _object_entry(f"{HOME_PATH}personal/n.ics", no_end),
                _object_entry(f"{HOME_PATH}personal/d.ics", with_duration),
                _object_entry(f"{HOME_PATH}personal/a.ics", all_day),
            ),
        ]
        events = await _provider(http_client).query_events(
            calendar_id=PERSONAL_URL, after=AFTER, before=BEFORE
        )
        by_name = {event.event_id.rsplit("/", 1)[-1]: event for event in events}

        assert by_name["t.ics"].free_busy_status == FreeBusyStatus.free
        assert by_name["n.ics"].duration == "PT1H"
        assert by_name["n.ics"].time_zone == "America/St_Johns"
        assert by_name["d.ics"].duration == "PT20M"
        assert by_name["a.ics"].all_day is True
        assert by_name["a.ics"].duration == "P1D"
        assert by_name["a.ics"].start == "2024-03-15T00:00:00"

    async def test_unknown_calendar(self, http_client):
        http_client.request.side_effect = _discovery()
        with pytest.raises(ObjectRejected) as exc_info:
            await _provider(http_client).query_events(
                calendar_id="https://elsewhere.test/cal/", after=AFTER, before=BEFORE
            )
        assert "Calendar not found" in str(exc_info.value)

    async def test_report_failure(self, http_client):
        http_client.request.side_effect = [
            *_discovery(),
            _mock_response(status_code=500, url=PERSONAL_URL, method="REPORT", text="boom"),
        ]
        with pytest.raises(TransportFailure):
            await _provider(http_client).query_events(
                calendar_id=PERSONAL_URL, after=AFTER, before=BEFORE
            )


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


def _draft(**overrides) -> EventDraft:
    fields = {
        "title": "Dentist, checkup",
        "start_at": datetime(2024, 3, 15, 13, 0, tzinfo=UTC),
        "end_at": datetime(2024, 3, 15, 14, 0, tzinfo=UTC),
        "time_zone": "America/New_York",
    }
    fields.update(overrides)
    return EventDraft(**fields)


class TestCreateEvent:
    async def test_end_not_after_start_issues_no_request(self, http_client):
        draft = _draft(end_at=datetime(2024, 3, 15, 12, 0, tzinfo=UTC))
        with pytest.raises(CalendarValidationError):
            await _provider(http_client).create_event(calendar_id=PERSONAL_URL, draft=draft)
        http_client.request.assert_not_awaited()

    async def test_put_with_if_none_match(self, http_client):
        http_client.request.side_effect = [
            *_discovery(),
            _mock_response(
                status_code=201, url=PERSONAL_URL, method="PUT", headers={"ETag": '"new-etag"'}
            ),
        ]
        event = await _provider(http_client).create_event(
            calendar_id=PERSONAL_URL, draft=_draft()
        )

        (put,) = _calls(http_client, "PUT")
        url = put.args[1]
        assert url.startswith(PERSONAL_URL)
        assert url.endswith("@fastmail-calendar.ics")
        assert put.kwargs["headers"]["If-None-Match"] == "*"
        body = put.kwargs["content"].decode()
        assert "SUMMARY:Dentist\\, checkup" in body
        assert "DTSTART:20240315T130000Z" in body
        assert "DTEND:20240315T140000Z" in body

        assert event.event_id == url
        assert event.etag == '"new-etag"'
        assert event.start == "2024-03-15T09:00:00"

    async def test_read_only_calendar_rejected(self, http_client):
        http_client.request.side_effect = _discovery()
        with pytest.raises(ObjectRejected):
            await _provider(http_client).create_event(calendar_id=HOLIDAYS_URL, draft=_draft())
        assert _calls(http_client, "PUT") == []

    async def test_create_invalidates_calendar_cache(self, http_client):
        http_client.request.side_effect = [
            *_discovery(),
            _mock_response(status_code=201, url=PERSONAL_URL, method="PUT"),
            _calendars_response(),
        ]
        provider = _provider(http_client)
        await provider.create_event(calendar_id=PERSONAL_URL, draft=_draft())
        await provider.list_calendars()
        assert len(_calls(http_client, "PROPFIND")) == 4


def _get_object(ics: str, etag: str | None = '"etag-1"') -> httpx.Response:
    headers = {"ETag": etag} if etag else {}
    return _mock_response(status_code=200, url=OBJECT_URL, text=ics, headers=headers)


class TestUpdateEvent:
    async def test_end_only_put_with_if_match(self, http_client):
        http_client.request.side_effect = [
            _get_object(_event_ics(TRANSP="TRANSPARENT")),
            _mock_response(
                status_code=204, url=OBJECT_URL, method="PUT", headers={"ETag": '"etag-2"'}
            ),
        ]
        updated = await _provider(http_client).update_event(
            event_id=OBJECT_URL,
            patch=EventPatch(end_at=datetime(2024, 3, 15, 15, 30, tzinfo=UTC)),
        )

        (put,) = _calls(http_client, "PUT")
        assert put.args[1] == OBJECT_URL
        assert put.kwargs["headers"]["If-Match"] == '"etag-1"'
        body = put.kwargs["content"].decode()
        assert "UID:evt-1@example.com" in body
        assert "DTSTART:20240315T130000Z" in body
        assert "DTEND:20240315T153000Z" in body
        assert "TRANSP:TRANSPARENT" in body

        assert updated.start == "2024-03-15T09:00:00"
        assert updated.duration == "PT2H30M"
        assert updated.etag == '"etag-2"'

    async def test_precondition_failed_is_conflict(self, http_client):
        http_client.request.side_effect = [
            _get_object(_event_ics()),
            _mock_response(status_code=412, url=OBJECT_URL, method="PUT"),
        ]
        with pytest.raises(ConcurrencyConflict) as exc_info:
            await _provider(http_client).update_event(
                event_id=OBJECT_URL, patch=EventPatch(title="Renamed")
            )
        assert exc_info.value.object_id == OBJECT_URL

    async def test_missing_etag_writes_unconditionally(self, http_client, caplog):
        http_client.request.side_effect = [
            _get_object(_event_ics(), etag=None),
            _mock_response(status_code=204, url=OBJECT_URL, method="PUT"),
        ]
        with caplog.at_level(logging.WARNING):
            await _provider(http_client).update_event(
                event_id=OBJECT_URL, patch=EventPatch(title="Renamed")
            )
        (put,) = _calls(http_client, "PUT")
        assert "If-Match" not in put.kwargs["headers"]
        assert "unconditional" in caplog.text

    async def test_no_change_skips_put(self, http_client):
        http_client.request.side_effect = [_get_object(_event_ics())]
        event = await _provider(http_client).update_event(
            event_id=OBJECT_URL, patch=EventPatch(title="Standup")
        )
        assert event.title == "Standup"
        assert _calls(http_client, "PUT") == []

    async def test_missing_object(self, http_client):
        http_client.request.side_effect = [
            _mock_response(status_code=404, url=OBJECT_URL, text="Not Found")
        ]
        with pytest.raises(ObjectRejected) as exc_info:
            await _provider(http_client).update_event(
                event_id=OBJECT_URL, patch=EventPatch(title="x")
            )
        assert exc_info.value.reason == "notFound"


class TestDeleteEvent:
    async def test_delete_with_if_match(self, http_client):
        http_client.request.side_effect = [
            _get_object(_event_ics()),
            _mock_response(status_code=204, url=OBJECT_URL, method="DELETE"),
        ]
        await _provider(http_client).delete_event(event_id=OBJECT_URL)
        (delete,) = _calls(http_client, "DELETE")
        assert delete.args[1] == OBJECT_URL
        assert delete.kwargs["headers"]["If-Match"] == '"etag-1"'

    async def test_delete_conflict(self, http_client):
        http_client.request.side_effect = [
            _get_object(_event_ics()),
            _mock_response(status_code=412, url=OBJECT_URL, method="DELETE"),
        ]
        with pytest.raises(ConcurrencyConflict):
            await _provider(http_client).delete_event(event_id=OBJECT_URL)

    async def test_delete_object_without_dtstart(self, http_client):
        http_client.request.side_effect = [
            _get_object(_ics("UID:evt-1@example.com", "SUMMARY:No start"), etag='"e1"'),
            _mock_response(status_code=204, url=OBJECT_URL, method="DELETE"),
        ]
        await _provider(http_client).delete_event(event_id=OBJECT_URL)
        (delete,) = _calls(http_client, "DELETE")
        assert delete.args[1] == OBJECT_URL
        assert delete.kwargs["headers"]["If-Match"] == '"e1"'

    async def test_delete_missing_object(self, http_client):
        http_client.request.side_effect = [
            _mock_response(status_code=404, url=OBJECT_URL, method="GET"),
        ]
        with pytest.raises(ObjectRejected) as exc_info:
            await _provider(http_client).delete_event(event_id=OBJECT_URL)
        assert exc_info.value.reason == "notFound"
        assert _calls(http_client, "DELETE") == []
