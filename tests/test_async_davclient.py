#!/usr/bin/env python
# -*- encoding: utf-8 -*-
"""
Unit tests for the async CalDAV client.

Rule: None of the tests in this file should initiate any internet
communication. We use Mock/MagicMock to emulate server communication.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from calsync.davclient import AsyncCalDAVClient
from calsync.lib import error

SERVER = "https://dav.example.com"
CALENDAR = "https://dav.example.com/calendars/alice/work"

CALENDAR_LIST_XML = b"""<?xml version="1.0" encoding="utf-8" ?>
<d:multistatus xmlns:d="DAV:" xmlns:cal="urn:ietf:params:xml:ns:caldav">
  <d:response>
    <d:href>/calendars/alice/</d:href>
    <d:propstat>
      <d:prop><d:resourcetype><d:collection/></d:resourcetype></d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
  <d:response>
    <d:href>/calendars/alice/work/</d:href>
    <d:propstat>
      <d:prop>
        <d:displayname>Work</d:displayname>
        <d:resourcetype><d:collection/><cal:calendar/></d:resourcetype>
      </d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>
"""

EMPTY_MULTISTATUS_XML = b"""<?xml version="1.0" encoding="utf-8" ?>
<d:multistatus xmlns:d="DAV:"></d:multistatus>
"""

PRINCIPAL_XML = b"""<?xml version="1.0" encoding="utf-8" ?>
<d:multistatus xmlns:d="DAV:">
  <d:response>
    <d:href>/.well-known/caldav</d:href>
    <d:propstat>
      <d:prop>
        <d:current-user-principal><d:href>/p/alice/</d:href></d:current-user-principal>
      </d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>
"""

HOME_SET_XML = b"""<?xml version="1.0" encoding="utf-8" ?>
<d:multistatus xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:response>
    <d:href>/p/alice/</d:href>
    <d:propstat>
      <d:prop>
        <c:calendar-home-set><d:href>/home/alice/</d:href></c:calendar-home-set>
      </d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>
"""

HOME_LISTING_XML = b"""<?xml version="1.0" encoding="utf-8" ?>
<d:multistatus xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:response>
    <d:href>/home/alice/</d:href>
    <d:propstat>
      <d:prop><d:resourcetype><d:collection/></d:resourcetype></d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
  <d:response>
    <d:href>/home/alice/personal/</d:href>
    <d:propstat>
      <d:prop>
        <d:displayname>Personal</d:displayname>
        <d:resourcetype><d:collection/><c:calendar/></d:resourcetype>
      </d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>
"""

COLOR_XML = b"""<?xml version="1.0" encoding="utf-8" ?>
<d:multistatus xmlns:d="DAV:" xmlns:i="http://apple.com/ns/ical/">
  <d:response>
    <d:href>/calendars/alice/work/</d:href>
    <d:propstat>
      <d:prop><i:calendar-color>#00FF00</i:calendar-color></d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>
"""

CALENDAR_QUERY_XML = b"""<?xml version="1.0" encoding="utf-8" ?>
<d:multistatus xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:response>
    <d:href>/calendars/alice/work/a.ics</d:href>
    <d:propstat>
      <d:prop>
        <d:getetag>"etag-a"</d:getetag>
        <c:calendar-data>BEGIN:VCALENDAR
VERSION:2.0
BEGIN:VEVENT
UID:a
DTSTART:20240129T100000
DTEND:20240129T110000
SUMMARY:Meeting
END:VEVENT
END:VCALENDAR
</c:calendar-data>
      </d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>
"""

SYNC_COLLECTION_XML = b"""<?xml version="1.0" encoding="utf-8" ?>
<d:multistatus xmlns:d="DAV:">
  <d:response>
    <d:href>/calendars/alice/work/b.ics</d:href>
    <d:propstat>
      <d:prop><d:getetag>"etag-b"</d:getetag></d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
  <d:response>
    <d:href>/calendars/alice/work/</d:href>
    <d:propstat>
      <d:prop><d:getetag>"collection"</d:getetag></d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
  <d:response>
    <d:href>/calendars/alice/work/c.ics</d:href>
    <d:status>HTTP/1.1 410 Gone</d:status>
  </d:response>
  <d:sync-token>token-2</d:sync-token>
</d:multistatus>
"""

EVENT_B_ICS = b"""BEGIN:VCALENDAR
VERSION:2.0
BEGIN:VEVENT
UID:b
DTSTART;VALUE=DATE:20240301
SUMMARY:Trip
END:VEVENT
END:VCALENDAR
"""

RECURRING_QUERY_XML = b"""<?xml version="1.0" encoding="utf-8" ?>
<d:multistatus xmlns:d="DAV:" xmlns:cal="urn:ietf:params:xml:ns:caldav">
  <d:response>
    <d:href>/calendars/alice/work/standup.ics</d:href>
    <d:propstat>
      <d:prop>
        <d:getetag>"etag-standup"</d:getetag>
        <cal:calendar-data>BEGIN:VCALENDAR
VERSION:2.0
BEGIN:VEVENT
UID:standup
DTSTART:20240108T090000
DTEND:20240108T091500
RRULE:FREQ=WEEKLY
SUMMARY:Standup
END:VEVENT
BEGIN:VEVENT
UID:standup
RECURRENCE-ID:20240115T090000
DTSTART:20240115T100000
DTEND:20240115T101500
SUMMARY:Standup (moved)
END:VEVENT
END:VCALENDAR
</cal:calendar-data>
      </d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>
"""

SYNC_TOKEN_XML = b"""<?xml version="1.0" encoding="utf-8" ?>
<d:multistatus xmlns:d="DAV:">
  <d:response>
    <d:href>/calendars/alice/work/</d:href>
    <d:propstat>
      <d:prop><d:sync-token>token-1</d:sync-token></d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>
"""


def create_mock_response(
    content: bytes = b"",
    status_code: int = 200,
    reason: str = "OK",
    headers: dict = None,
) -> MagicMock:
    """Create a mock HTTP response."""
    resp = MagicMock()
    resp.content = content
    resp.status_code = status_code
    resp.reason = reason
    resp.headers = headers or {}
    resp.text = content.decode("utf-8") if content else ""
    return resp


def make_client() -> AsyncCalDAVClient:
    return AsyncCalDAVClient(SERVER, "alice@example.com", "secret")


def sent(call) -> tuple:
    """(method, url, headers, body) of a recorded session.request call"""
    method, url = call.args[:2]
    return method, url, call.kwargs["headers"], call.kwargs["data"]


class TestRequest:
    @pytest.mark.asyncio
    async def test_basic_auth_and_user_agent(self) -> None:
        """Every request carries the credentials and our user agent"""
        client = make_client()
        client.session.request = AsyncMock(return_value=create_mock_response(b"x"))

        response = await client.request(CALENDAR, "GET")

        assert response.status == 200
        kwargs = client.session.request.call_args.kwargs
        assert kwargs["auth"].username == "alice@example.com"
        assert kwargs["headers"]["User-Agent"].startswith("calsync/")

    @pytest.mark.asyncio
    async def test_unauthorized_raises(self) -> None:
        client = make_client()
        client.session.request = AsyncMock(
            return_value=create_mock_response(b"no", status_code=401, reason="Unauthorized")
        )
        with pytest.raises(error.AuthorizationError) as excinfo:
            await client.request(CALENDAR, "GET")
        assert excinfo.value.status == 401

    @pytest.mark.asyncio
    async def test_server_error_carries_status_and_body(self) -> None:
        client = make_client()
        client.session.request = AsyncMock(
            return_value=create_mock_response(b"broken", status_code=500)
        )
        with pytest.raises(error.ReportError) as excinfo:
            await client.report(CALENDAR, b"<x/>")
        assert excinfo.value.status == 500
        assert excinfo.value.body == "broken"

    @pytest.mark.asyncio
    async def test_missing_resource(self) -> None:
        client = make_client()
        client.session.request = AsyncMock(return_value=create_mock_response(status_code=404))
        with pytest.raises(error.NotFoundError):
            await client.report(CALENDAR, b"<x/>")

    def test_method_headers(self) -> None:
        headers = AsyncCalDAVClient._build_method_headers("PROPFIND", 1)
        assert headers["Depth"] == "1"
        assert "xml" in headers["Content-Type"]
        assert "Content-Type" not in AsyncCalDAVClient._build_method_headers("GET")

    @pytest.mark.asyncio
    async def test_context_manager_closes_session(self) -> None:
        client = make_client()
        client.session.close = AsyncMock()
        async with client:
            pass
        client.session.close.assert_awaited_once()


class TestListCalendars:
    @pytest.mark.asyncio
    async def test_primary_path(self) -> None:
        client = make_client()
        client.session.request = AsyncMock(
            return_value=create_mock_response(CALENDAR_LIST_XML, status_code=207)
        )

        calendars = await client.list_calendars()

        assert [c.display_name for c in calendars] == ["Work"]
        assert calendars[0].url == CALENDAR
        method, url, headers, _ = sent(client.session.request.call_args)
        assert method == "PROPFIND"
        ## the part of the username before the @ names the home
        assert url == SERVER + "/calendars/alice/"
        assert headers["Depth"] == "1"

    @pytest.mark.asyncio
    async def test_well_known_fallback(self) -> None:
        client = make_client()
        client.session.request = AsyncMock(
            side_effect=[
                create_mock_response(b"", status_code=404, reason="Not Found"),
                create_mock_response(PRINCIPAL_XML, status_code=207),
                create_mock_response(HOME_SET_XML, status_code=207),
                create_mock_response(HOME_LISTING_XML, status_code=207),
            ]
        )

        calendars = await client.list_calendars()

        assert [c.url for c in calendars] == [SERVER + "/home/alice/personal"]
        urls = [sent(c)[1] for c in client.session.request.call_args_list]
        assert urls == [
            SERVER + "/calendars/alice/",
            SERVER + "/.well-known/caldav",
            SERVER + "/p/alice/",
            SERVER + "/home/alice/",
        ]

    @pytest.mark.asyncio
    async def test_empty_listing_falls_back(self) -> None:
        client = make_client()
        client.session.request = AsyncMock(
            side_effect=[
                create_mock_response(EMPTY_MULTISTATUS_XML, status_code=207),
                create_mock_response(EMPTY_MULTISTATUS_XML, status_code=207),
            ]
        )
        with pytest.raises(error.CalendarsNotFoundError):
            await client.list_calendars()

    @pytest.mark.asyncio
    async def test_credentials_failure_is_not_hidden(self) -> None:
        client = make_client()
        client.session.request = AsyncMock(
            side_effect=[
                create_mock_response(b"", status_code=404),
                create_mock_response(b"", status_code=403, reason="Forbidden"),
            ]
        )
        with pytest.raises(error.AuthorizationError):
            await client.list_calendars()


class TestReading:
    @pytest.mark.asyncio
    async def test_fetch_events(self) -> None:
        client = make_client()
        client.session.request = AsyncMock(
            side_effect=[
                create_mock_response(COLOR_XML, status_code=207),
                create_mock_response(CALENDAR_QUERY_XML, status_code=207),
            ]
        )

        events = await client.fetch_events(CALENDAR + "/")

        assert len(events) == 1
        event = events[0]
        assert event.caldav_uid == "a"
        assert event.etag == "etag-a"
        assert event.calendar_url == CALENDAR
        assert event.color == "#00ff00"
        method, url, headers, body = sent(client.session.request.call_args)
        assert method == "REPORT"
        assert b"calendar-query" in body
        assert b"time-range" in body

    @pytest.mark.asyncio
    async def test_overridden_occurrences_give_one_event(self) -> None:
        """A recurring resource with a RECURRENCE-ID override is one event, the master"""
        client = make_client()
        client.session.request = AsyncMock(
            side_effect=[
                create_mock_response(COLOR_XML, status_code=207),
                create_mock_response(RECURRING_QUERY_XML, status_code=207),
            ]
        )

        events = await client.fetch_events(CALENDAR)

        assert [(e.caldav_uid, e.title, e.etag) for e in events] == [
            ("standup", "Standup", "etag-standup")
        ]

    @pytest.mark.asyncio
    async def test_get_sync_token(self) -> None:
        client = make_client()
        client.session.request = AsyncMock(
            return_value=create_mock_response(SYNC_TOKEN_XML, status_code=207)
        )
        assert await client.get_sync_token(CALENDAR) == "token-1"
        assert sent(client.session.request.call_args)[2]["Depth"] == "0"

    @pytest.mark.asyncio
    async def test_sync_collection_fetches_missing_data(self) -> None:
        client = make_client()
        client.session.request = AsyncMock(
            side_effect=[
                create_mock_response(b"", status_code=404),
                create_mock_response(SYNC_COLLECTION_XML, status_code=207),
                create_mock_response(EVENT_B_ICS, headers={"ETag": '"etag-b"'}),
            ]
        )

        changes = await client.sync_collection(CALENDAR, "token-1")

        assert changes.sync_token == "token-2"
        assert changes.has_deletions
        assert [e.caldav_uid for e in changes.events] == ["b"]
        assert changes.events[0].etag == "etag-b"
        ## the collection itself is never fetched
        method, url, _, _ = sent(client.session.request.call_args_list[2])
        assert (method, url) == ("GET", CALENDAR + "/b.ics")
        assert client.session.request.await_count == 3


class TestWriting:
    @pytest.mark.asyncio
    async def test_put_new_event(self) -> None:
        client = make_client()
        client.session.request = AsyncMock(
            return_value=create_mock_response(status_code=201, headers={"ETag": '"new"'})
        )

        etag = await client.put_event(CALENDAR, "uid-1", "BEGIN:VCALENDAR\nEND:VCALENDAR\n")

        assert etag == "new"
        method, url, headers, body = sent(client.session.request.call_args)
        assert (method, url) == ("PUT", CALENDAR + "/uid-1.ics")
        assert "If-Match" not in headers
        assert headers["Content-Type"].startswith("text/calendar")
        assert body == b"BEGIN:VCALENDAR\r\nEND:VCALENDAR\r\n"

    @pytest.mark.asyncio
    async def test_conditional_put(self) -> None:
        client = make_client()
        client.session.request = AsyncMock(return_value=create_mock_response(status_code=204))

        assert await client.put_event(CALENDAR, "uid-1", "x", etag="v1") is None

        assert sent(client.session.request.call_args)[2]["If-Match"] == '"v1"'

    @pytest.mark.asyncio
    async def test_put_precondition_failed(self) -> None:
        client = make_client()
        client.session.request = AsyncMock(return_value=create_mock_response(status_code=412))
        with pytest.raises(error.PreconditionFailedError):
            await client.put_event(CALENDAR, "uid-1", "x", etag="v1")

    @pytest.mark.asyncio
    async def test_put_failure(self) -> None:
        client = make_client()
        client.session.request = AsyncMock(return_value=create_mock_response(status_code=507))
        with pytest.raises(error.PutError):
            await client.put_event(CALENDAR, "uid-1", "x")

    @pytest.mark.asyncio
    async def test_delete_tolerates_gone(self) -> None:
        client = make_client()
        client.session.request = AsyncMock(return_value=create_mock_response(status_code=404))
        await client.delete_event(CALENDAR, "uid-1")
        method, url, headers, _ = sent(client.session.request.call_args)
        assert (method, url) == ("DELETE", CALENDAR + "/uid-1.ics")

    @pytest.mark.asyncio
    async def test_conditional_delete_refused(self) -> None:
        client = make_client()
        client.session.request = AsyncMock(return_value=create_mock_response(status_code=412))
        with pytest.raises(error.PreconditionFailedError):
            await client.delete_event(CALENDAR, "uid-1", etag="v1")
