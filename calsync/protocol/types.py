"""
Core protocol types for the sans-I/O CalDAV layer.

These dataclasses describe HTTP responses and parsed
multistatus results, independent of any I/O implementation.
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class DAVResponse:
    """
    Represents an HTTP response received.

    Attributes:
        status: HTTP status code
        headers: HTTP headers as dict
        body: Response body as bytes
        url: URL the request was sent to
    """

    status: int
    headers: dict[str, str]
    body: bytes
    url: str = ""

    @property
    def ok(self) -> bool:
        """True if status indicates success (2xx)."""
        return 200 <= self.status < 300

    @property
    def is_multistatus(self) -> bool:
        """True if this is a 207 Multi-Status response."""
        return self.status == 207

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace") if self.body else ""

    @property
    def etag(self) -> str | None:
        """ETag header with surrounding quotes (and a weak prefix) removed."""
        for key, value in self.headers.items():
            if key.lower() == "etag" and value:
                return strip_etag(value)
        return None

    @property
    def reason(self) -> str:
        """Return a reason phrase for the status code."""
        reasons = {
            200: "OK",
            201: "Created",
            204: "No Content",
            207: "Multi-Status",
            400: "Bad Request",
            401: "Unauthorized",
            403: "Forbidden",
            404: "Not Found",
            405: "Method Not Allowed",
            409: "Conflict",
            410: "Gone",
            412: "Precondition Failed",
            500: "Internal Server Error",
            502: "Bad Gateway",
            503: "Service Unavailable",
        }
        return reasons.get(self.status, "Unknown")


def strip_etag(etag: str) -> str:
    if etag.startswith("W/"):
        etag = etag[2:]
    return etag.strip('"')


def quote_etag(etag: str) -> str:
    """Quote an etag for If-Match exactly once."""
    if etag.startswith('"') or etag.startswith("W/"):
        return etag
    return '"%s"' % etag


@dataclass
class PropfindResult:
    """
    Parsed result of a PROPFIND request for a single resource.

    Attributes:
        href: URL/path of the resource as sent by the server
        properties: Dict of property local name -> value
        status: HTTP status for this resource (default 200)
    """

    href: str
    properties: dict[str, Any] = field(default_factory=dict)
    status: int = 200


@dataclass
class CalendarQueryResult:
    """
    Parsed result of a calendar-query REPORT for a single object.

    Attributes:
        href: URL/path of the calendar object
        etag: ETag of the object (for conditional updates)
        calendar_data: iCalendar data as string
        status: HTTP status for this resource (default 200)
    """

    href: str
    etag: str | None = None
    calendar_data: str | None = None
    status: int = 200


@dataclass
class SyncCollectionResult:
    """
    Parsed result of a sync-collection REPORT.

    Attributes:
        changed: List of changed/new resources
        deleted: List of deleted resource hrefs (status 404 or 410)
        sync_token: New sync token for next sync
    """

    changed: list[CalendarQueryResult] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    sync_token: str | None = None


@dataclass
class MultistatusResponse:
    """
    Parsed multi-status response containing multiple results.

    Attributes:
        responses: List of individual response results
        sync_token: Sync token if present (for sync-collection)
    """

    responses: list[PropfindResult] = field(default_factory=list)
    sync_token: str | None = None
