#!/usr/bin/env python
"""
Async CalDAV client implementing the six transport operations the sync
engine needs: list calendars, fetch events, get sync token,
sync-collection, put event and delete event.
"""
import sys
from collections.abc import Mapping
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from types import TracebackType
from typing import List
from typing import Optional
from typing import Union
from urllib.parse import quote
from urllib.parse import urljoin

from niquests import AsyncSession
from niquests.auth import HTTPBasicAuth
from niquests.exceptions import RequestException

from calsync import __version__
from calsync.ics import decode_calendar_data
from calsync.ics import decode_results
from calsync.lib import error
from calsync.lib.error import log
from calsync.lib.python_utilities import to_normal_str
from calsync.lib.python_utilities import to_wire
from calsync.lib.url import absolute_url
from calsync.lib.url import normalize_calendar_url
from calsync.lib.url import resource_url
from calsync.lib.url import same_resource
from calsync.models import DEFAULT_EVENT_COLOR
from calsync.models import CalendarInfo
from calsync.models import Event
from calsync.models import SyncChanges
from calsync.protocol import DAVResponse
from calsync.protocol import build_calendar_query_body
from calsync.protocol import build_propfind_body
from calsync.protocol import build_sync_collection_body
from calsync.protocol import parse_calendar_color
from calsync.protocol import parse_calendar_home_set
from calsync.protocol import parse_calendar_list
from calsync.protocol import parse_current_user_principal
from calsync.protocol import parse_sync_collection_response
from calsync.protocol import parse_sync_token
from calsync.protocol.types import CalendarQueryResult
from calsync.protocol.types import quote_etag
from calsync.protocol.xml_builders import CALENDAR_LIST_PROPS

if sys.version_info < (3, 11):
    from typing_extensions import Self
else:
    from typing import Self

## default time window for fetch_events when no bounds are given
DEFAULT_WINDOW = timedelta(days=365)

## failures that make calendar discovery try the next path
_discovery_errors = (error.DAVError, RequestException)


def _redacted(headers: Mapping[str, str]) -> dict:
    return {
        k: ("***" if k.lower() == "authorization" else v) for k, v in headers.items()
    }


class AsyncCalDAVClient:
    """
    Async CalDAV client for one account.

    Every request carries Basic authentication for the configured
    credentials.  Any answer that is neither 2xx nor 207 Multi-Status is
    raised as a :class:`calsync.lib.error.DAVError` subclass carrying the
    status code and the body.

        async with AsyncCalDAVClient(url, "user", "secret") as client:
            calendars = await client.list_calendars()
    """

    def __init__(
        self,
        server_url: str,
        username: str,
        password: str,
        timeout: Optional[int] = None,
        ssl_verify_cert: Union[bool, str] = True,
        headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        """
        Args:
            server_url: CalDAV server base URL.
            username: Username for authentication.
            password: Password for authentication.
            timeout: Request timeout in seconds.
            ssl_verify_cert: SSL certificate verification (bool or CA bundle path).
            headers: Additional headers for all requests.
        """
        self.server_url = server_url.rstrip("/")
        self.username = username
        self.auth = HTTPBasicAuth(username, password)
        self.timeout = timeout
        self.ssl_verify_cert = ssl_verify_cert
        self.session = AsyncSession()

        self.headers: dict[str, str] = {
            "User-Agent": f"calsync/{__version__}",
        }
        self.headers.update(headers or {})

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the async session."""
        await self.session.close()

    @staticmethod
    def _build_method_headers(
        method: str, depth: Optional[int] = None, extra_headers: Optional[Mapping[str, str]] = None
    ) -> dict[str, str]:
        """
        Build headers for WebDAV methods.

        Args:
            method: HTTP method name.
            depth: Depth header value (for PROPFIND/REPORT).
            extra_headers: Additional headers to merge.
        """
        headers: dict[str, str] = {}

        if depth is not None:
            headers["Depth"] = str(depth)

        if method in ("REPORT", "PROPFIND"):
            headers["Content-Type"] = 'application/xml; charset="utf-8"'

        if extra_headers:
            headers.update(extra_headers)

        return headers

    async def request(
        self,
        url: str,
        method: str = "GET",
        body: Union[str, bytes, None] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> DAVResponse:
        """
        Send an async HTTP request.

        Raises AuthorizationError on 401 and 403, any other status is
        handed back to the caller.
        """
        combined_headers = self.headers.copy()
        combined_headers.update(headers or {})
        if not body and "Content-Type" in combined_headers:
            del combined_headers["Content-Type"]

        log.debug(
            f"sending request - method={method}, url={url}, headers={_redacted(combined_headers)}\nbody:\n{to_normal_str(body)}"
        )

        r = await self.session.request(
            method,
            url,
            data=to_wire(body),
            headers=combined_headers,
            auth=self.auth,
            timeout=self.timeout,
            verify=self.ssl_verify_cert,
        )
        log.debug(f"server responded with {r.status_code} {r.reason}")

        response = DAVResponse(
            status=r.status_code,
            headers=dict(r.headers or {}),
            body=r.content or b"",
            url=url,
        )

        if response.status in (401, 403):
            raise error.AuthorizationError(
                url=url, reason=response.reason, status=response.status, body=response.text
            )

        return response

    def _raise_unless_ok(self, response: DAVResponse, method: str) -> DAVResponse:
        if response.ok or response.is_multistatus:
            return response
        log.error(
            "%s %s failed: %s %s\n%s",
            method,
            response.url,
            response.status,
            response.reason,
            response.text[:500],
        )
        if response.status == 404:
            raise error.NotFoundError(
                url=response.url, reason=response.reason, status=404, body=response.text
            )
        raise error.exception_by_method[method.lower()](
            url=response.url,
            reason=response.reason,
            status=response.status,
            body=response.text,
        )

    async def propfind(self, url: str, props: List[str], depth: int = 0) -> DAVResponse:
        final_headers = self._build_method_headers("PROPFIND", depth)
        response = await self.request(url, "PROPFIND", build_propfind_body(props), final_headers)
        return self._raise_unless_ok(response, "PROPFIND")

    async def report(self, url: str, body: bytes, depth: int = 1) -> DAVResponse:
        final_headers = self._build_method_headers("REPORT", depth)
        response = await self.request(url, "REPORT", body, final_headers)
        return self._raise_unless_ok(response, "REPORT")

    ## Discovery

    async def list_calendars(self) -> List[CalendarInfo]:
        """
        Find the calendars of the account.

        The per-user calendar home ``<server>/calendars/<user>/`` is tried
        first.  If that fails or lists nothing, rfc6764-style discovery is
        done once through ``/.well-known/caldav``: current-user-principal,
        then calendar-home-set, then the children of the home.

        Raises CalendarsNotFoundError when nothing is found.
        """
        home = "%s/calendars/%s/" % (self.server_url, quote(self.username.split("@")[0]))
        try:
            response = await self.propfind(home, CALENDAR_LIST_PROPS, depth=1)
            calendars = parse_calendar_list(response.body, home, exclude_href=home)
        except _discovery_errors as err:
            log.info(f"calendar listing at {home} failed ({err}), trying well-known discovery")
            calendars = []

        if calendars:
            return calendars
        return await self._discover_via_well_known()

    async def _discover_via_well_known(self) -> List[CalendarInfo]:
        well_known = "%s/.well-known/caldav" % self.server_url
        try:
            response = await self.propfind(well_known, ["current-user-principal"], depth=0)
            principal = parse_current_user_principal(response.body)
            if not principal:
                raise error.CalendarsNotFoundError(
                    url=well_known, reason="no current-user-principal"
                )
            principal_url = urljoin(well_known, principal)

            response = await self.propfind(principal_url, ["calendar-home-set"], depth=0)
            home_set = parse_calendar_home_set(response.body)
            if home_set:
                collection = urljoin(principal_url, home_set)
            else:
                log.info("no calendar-home-set, listing the principal collection")
                collection = principal_url

            response = await self.propfind(collection, CALENDAR_LIST_PROPS, depth=1)
            calendars = parse_calendar_list(response.body, collection, exclude_href=collection)
        except (error.AuthorizationError, error.CalendarsNotFoundError):
            raise
        except _discovery_errors as err:
            raise error.CalendarsNotFoundError(url=well_known, reason=str(err)) from err

        if not calendars:
            raise error.CalendarsNotFoundError(url=collection)
        return calendars

    async def get_calendar_color(self, calendar_url: str) -> Optional[str]:
        """Color of the calendar, or None if the server does not tell"""
        try:
            response = await self.propfind(calendar_url, ["calendar-color"], depth=0)
        except _discovery_errors as err:
            log.debug(f"no color for {calendar_url}: {err}")
            return None
        return parse_calendar_color(response.body)

    ## Reading

    def _decode_results(
        self, results: List[CalendarQueryResult], calendar_url: str, color: str
    ) -> List[Event]:
        events = decode_results(results, color)
        for event in events:
            event.calendar_url = normalize_calendar_url(calendar_url)
        return events

    async def fetch_events(
        self,
        calendar_url: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Event]:
        """
        All events of a calendar within a time range, by default one year
        back and one year ahead.  The calendar color is looked up once and
        used for events that carry no color of their own.
        """
        now = datetime.now(timezone.utc)
        if start is None:
            start = now - DEFAULT_WINDOW
        if end is None:
            end = now + DEFAULT_WINDOW

        color = await self.get_calendar_color(calendar_url) or DEFAULT_EVENT_COLOR
        response = await self.report(calendar_url, build_calendar_query_body(start, end), depth=1)
        events = decode_calendar_data(response.body, color)
        for event in events:
            event.calendar_url = normalize_calendar_url(calendar_url)
        return events

    async def get_sync_token(self, calendar_url: str) -> Optional[str]:
        """The current sync-token of the collection, None if not exposed"""
        response = await self.propfind(calendar_url, ["sync-token"], depth=0)
        return parse_sync_token(response.body)

    async def sync_collection(self, calendar_url: str, sync_token: str) -> SyncChanges:
        """
        Changes since ``sync_token`` (rfc6578).

        Changed resources reported without calendar data are fetched one
        by one.  Removed resources (404/410) only set ``has_deletions``.
        """
        color = await self.get_calendar_color(calendar_url) or DEFAULT_EVENT_COLOR
        response = await self.report(
            calendar_url, build_sync_collection_body(sync_token), depth=1
        )
        result = parse_sync_collection_response(response.body)
        if not result.sync_token:
            error.weirdness("sync-collection response without a sync-token", calendar_url)

        events = self._decode_results(result.changed, calendar_url, color)
        missing = [
            r.href
            for r in result.changed
            if not r.calendar_data
            and 200 <= r.status < 300
            and not r.href.endswith("/")
            and not same_resource(r.href, calendar_url)
        ]
        for href in missing:
            events.extend(await self._fetch_resource(calendar_url, href, color))

        log.debug(
            f"sync-collection on {calendar_url}: {len(events)} changed, {len(result.deleted)} deleted"
        )
        return SyncChanges(
            events=events,
            sync_token=result.sync_token,
            has_deletions=bool(result.deleted),
            deleted=result.deleted,
        )

    async def _fetch_resource(self, calendar_url: str, href: str, color: str) -> List[Event]:
        url = absolute_url(calendar_url, href)
        try:
            response = await self.request(url, "GET")
        except _discovery_errors as err:
            log.warning(f"could not fetch {url}: {err}")
            return []
        if not response.ok:
            log.warning(f"could not fetch {url}: {response.status} {response.reason}")
            return []
        result = CalendarQueryResult(href=href, etag=response.etag, calendar_data=response.text)
        return self._decode_results([result], calendar_url, color)

    ## Writing

    async def put_event(
        self, calendar_url: str, uid: str, ics: str, etag: Optional[str] = None
    ) -> Optional[str]:
        """
        Create or overwrite ``<uid>.ics`` in the calendar.

        With an etag the write is conditional (If-Match); a changed remote
        resource raises PreconditionFailedError.  Returns the new etag if
        the server sends one.
        """
        url = resource_url(calendar_url, uid)
        headers = {"Content-Type": "text/calendar; charset=utf-8"}
        if etag:
            headers["If-Match"] = quote_etag(etag)

        response = await self.request(url, "PUT", ics, headers)
        if response.status == 412:
            raise error.PreconditionFailedError(url=url, status=412, body=response.text)
        self._raise_unless_ok(response, "PUT")
        return response.etag

    async def delete_event(self, calendar_url: str, uid: str, etag: Optional[str] = None) -> None:
        """Remove ``<uid>.ics``.  A resource that is already gone is fine."""
        url = resource_url(calendar_url, uid)
        headers = {}
        if etag:
            headers["If-Match"] = quote_etag(etag)

        response = await self.request(url, "DELETE", None, headers)
        if response.status in (404, 410):
            log.debug(f"{url} was already gone")
            return
        if response.status == 412:
            raise error.PreconditionFailedError(url=url, status=412, body=response.text)
        self._raise_unless_ok(response, "DELETE")
