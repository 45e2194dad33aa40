"""
Tests for the sans-I/O protocol layer: XML request bodies and
multistatus parsing.  No network communication is involved.
"""
from datetime import date
from datetime import datetime
from datetime import timezone

from lxml import etree

from calsync.lib.url import absolute_url
from calsync.lib.url import calendar_url_variants
from calsync.lib.url import resource_url
from calsync.lib.url import same_resource
from calsync.protocol import DAVResponse
from calsync.protocol import build_calendar_query_body
from calsync.protocol import build_propfind_body
from calsync.protocol import build_sync_collection_body
from calsync.protocol import parse_calendar_color
from calsync.protocol import parse_calendar_home_set
from calsync.protocol import parse_calendar_list
from calsync.protocol import parse_calendar_query_response
from calsync.protocol import parse_current_user_principal
from calsync.protocol import parse_sync_collection_response
from calsync.protocol import parse_sync_token
from calsync.protocol.types import quote_etag
from calsync.protocol.types import strip_etag

NS = {"D": "DAV:", "C": "urn:ietf:params:xml:ns:caldav", "I": "http://apple.com/ns/ical/"}

CALENDAR_HOME_XML = b"""<?xml version="1.0" encoding="utf-8"?>
<d:multistatus xmlns:d="DAV:" xmlns:cal="urn:ietf:params:xml:ns:caldav" xmlns:x1="http://apple.com/ns/ical/">
  <d:response>
    <d:href>/dav/alice/</d:href>
    <d:propstat>
      <d:prop><d:resourcetype><d:collection/></d:resourcetype></d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
  <d:response>
    <d:href>/dav/alice/work/</d:href>
    <d:propstat>
      <d:prop>
        <d:displayname>Work</d:displayname>
        <d:resourcetype><d:collection/><cal:calendar/></d:resourcetype>
        <x1:calendar-color>#FF0000FF</x1:calendar-color>
      </d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
  <d:response>
    <d:href>/dav/alice/tasks/</d:href>
    <d:propstat>
      <d:prop><d:resourcetype><d:collection/></d:resourcetype></d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
  <d:response>
    <d:href>/dav/alice/family-calendar/</d:href>
    <d:propstat>
      <d:prop><d:resourcetype/></d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
    <d:propstat>
      <d:prop><d:displayname/><x1:calendar-color/></d:prop>
      <d:status>HTTP/1.1 404 Not Found</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>
"""

## unprefixed default namespace, as some servers send it
PRINCIPAL_XML = b"""<?xml version="1.0"?>
<multistatus xmlns="DAV:">
  <response>
    <href>/.well-known/caldav</href>
    <propstat>
      <prop>
        <current-user-principal><href>/principals/alice/</href></current-user-principal>
      </prop>
      <status>HTTP/1.1 200 OK</status>
    </propstat>
  </response>
</multistatus>
"""

HOME_SET_XML = b"""<?xml version="1.0"?>
<D:multistatus xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">
  <D:response>
    <D:href>/principals/alice/</D:href>
    <D:propstat>
      <D:prop>
        <C:calendar-home-set><D:href>/calendars/alice/</D:href></C:calendar-home-set>
      </D:prop>
      <D:status>HTTP/1.1 200 OK</D:status>
    </D:propstat>
  </D:response>
</D:multistatus>
"""

SYNC_TOKEN_XML = b"""<?xml version="1.0"?>
<d:multistatus xmlns:d="DAV:">
  <d:response>
    <d:href>/calendars/alice/work/</d:href>
    <d:propstat>
      <d:prop><d:sync-token>http://example.com/ns/sync/1234</d:sync-token></d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>
"""

CALENDAR_QUERY_XML = b"""<?xml version="1.0"?>
<d:multistatus xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:response>
    <d:href>/calendars/alice/work/ev1.ics</d:href>
    <d:propstat>
      <d:prop>
        <d:getetag>"etag-1"</d:getetag>
        <c:calendar-data>BEGIN:VCALENDAR
BEGIN:VEVENT
UID:ev1
DTSTART;VALUE=DATE:20240101
END:VEVENT
END:VCALENDAR
</c:calendar-data>
      </d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>
"""

SYNC_COLLECTION_XML = b"""<?xml version="1.0"?>
<d:multistatus xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:response>
    <d:href>/calendars/alice/work/new.ics</d:href>
    <d:propstat>
      <d:prop><d:getetag>"e2"</d:getetag></d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
  <d:response>
    <d:href>/calendars/alice/work/gone.ics</d:href>
    <d:status>HTTP/1.1 404 Not Found</d:status>
  </d:response>
  <d:sync-token>http://example.com/ns/sync/1235</d:sync-token>
</d:multistatus>
"""


class TestBuilders:
    def test_propfind_body(self) -> None:
        tree = etree.fromstring(build_propfind_body(["displayname", "resourcetype", "calendar-color"]))
        assert tree.tag == "{DAV:}propfind"
        prop = tree.find("D:prop", NS)
        assert prop.find("D:displayname", NS) is not None
        assert prop.find("D:resourcetype", NS) is not None
        assert prop.find("I:calendar-color", NS) is not None

    def test_propfind_unknown_props_are_ignored(self) -> None:
        tree = etree.fromstring(build_propfind_body(["no-such-thing"]))
        assert len(tree.find("D:prop", NS)) == 0

    def test_calendar_query_body(self) -> None:
        body = build_calendar_query_body(
            datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc), date(2024, 2, 1)
        )
        tree = etree.fromstring(body)
        assert tree.tag == "{urn:ietf:params:xml:ns:caldav}calendar-query"
        assert tree.find("D:prop/D:getetag", NS) is not None
        assert tree.find("D:prop/C:calendar-data", NS) is not None
        vevent = tree.find("C:filter/C:comp-filter/C:comp-filter", NS)
        assert vevent.get("name") == "VEVENT"
        time_range = vevent.find("C:time-range", NS)
        assert time_range.get("start") == "20240101T120000Z"
        assert time_range.get("end") == "20240201T000000Z"

    def test_sync_collection_body(self) -> None:
        tree = etree.fromstring(build_sync_collection_body("tok-1"))
        assert tree.tag == "{DAV:}sync-collection"
        assert tree.find("D:sync-token", NS).text == "tok-1"
        assert tree.find("D:sync-level", NS).text == "1"
        assert tree.find("D:prop/D:getetag", NS) is not None


class TestParsers:
    def test_calendar_list(self) -> None:
        base = "https://dav.example.com/dav/alice/"
        calendars = parse_calendar_list(CALENDAR_HOME_XML, base, exclude_href=base)
        assert [c.url for c in calendars] == [
            "https://dav.example.com/dav/alice/work",
            "https://dav.example.com/dav/alice/family-calendar",
        ]
        work, family = calendars
        assert work.display_name == "Work"
        assert work.color == "#ff0000"
        ## href fallback for both the calendar test and the name
        assert family.display_name == "family-calendar"
        assert family.color is None

    def test_current_user_principal_unprefixed(self) -> None:
        assert parse_current_user_principal(PRINCIPAL_XML) == "/principals/alice/"

    def test_calendar_home_set(self) -> None:
        assert parse_calendar_home_set(HOME_SET_XML) == "/calendars/alice/"
        assert parse_calendar_home_set(PRINCIPAL_XML) is None

    def test_calendar_color(self) -> None:
        assert parse_calendar_color(CALENDAR_HOME_XML) == "#ff0000"

    def test_sync_token(self) -> None:
        assert parse_sync_token(SYNC_TOKEN_XML) == "http://example.com/ns/sync/1234"
        assert parse_sync_token(PRINCIPAL_XML) is None

    def test_calendar_query(self) -> None:
        results = parse_calendar_query_response(CALENDAR_QUERY_XML)
        assert len(results) == 1
        assert results[0].href == "/calendars/alice/work/ev1.ics"
        assert results[0].etag == "etag-1"
        assert "UID:ev1" in results[0].calendar_data

    def test_sync_collection(self) -> None:
        result = parse_sync_collection_response(SYNC_COLLECTION_XML)
        assert result.sync_token == "http://example.com/ns/sync/1235"
        assert [r.href for r in result.changed] == ["/calendars/alice/work/new.ics"]
        assert result.changed[0].calendar_data is None
        assert result.deleted == ["/calendars/alice/work/gone.ics"]

    def test_empty_and_broken_bodies(self) -> None:
        assert parse_calendar_list(b"", "https://x/") == []
        assert parse_calendar_query_response(b"<not xml") == []
        assert parse_sync_token(b"") is None


class TestResponseAndEtags:
    def test_response_properties(self) -> None:
        response = DAVResponse(status=201, headers={"ETag": 'W/"abc"'}, body=b"")
        assert response.ok
        assert not response.is_multistatus
        assert response.etag == "abc"
        assert response.reason == "Created"
        assert response.text == ""

    def test_multistatus_is_not_2xx_ok(self) -> None:
        response = DAVResponse(status=207, headers={}, body=b"<x/>")
        assert response.is_multistatus
        assert response.etag is None

    def test_quote_etag(self) -> None:
        assert quote_etag("abc") == '"abc"'
        assert quote_etag('"abc"') == '"abc"'
        assert quote_etag('W/"abc"') == 'W/"abc"'
        assert strip_etag('"abc"') == "abc"


class TestUrls:
    def test_resource_url(self) -> None:
        assert resource_url("https://x/cal/", "uid-1") == "https://x/cal/uid-1.ics"
        assert resource_url("https://x/cal", "uid-1.ics") == "https://x/cal/uid-1.ics"

    def test_variants(self) -> None:
        assert calendar_url_variants("https://x/cal/") == ["https://x/cal", "https://x/cal/"]

    def test_absolute_url(self) -> None:
        assert absolute_url("https://x/cal", "/cal/a.ics") == "https://x/cal/a.ics"
        assert absolute_url("https://x/cal", "a.ics") == "https://x/cal/a.ics"

    def test_same_resource(self) -> None:
        assert same_resource("https://x/cal/", "/cal")
        assert not same_resource("https://x/cal/a.ics", "/cal")
