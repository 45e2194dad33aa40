"""
Pure functions for parsing CalDAV XML responses.

All functions in this module are pure - they take XML bytes in and return
structured data out, with no side effects or I/O.

Servers disagree on namespace prefixes (``d:``, ``D:``, ``cal:``, default
namespaces, or no namespace declaration at all), so elements are matched on
their local name only.
"""

import logging
from typing import Any
from urllib.parse import unquote
from urllib.parse import urljoin

from lxml import etree
from lxml.etree import _Element

from calsync.lib.url import normalize_calendar_url
from calsync.lib.url import same_resource
from calsync.models import CalendarInfo
from calsync.models import normalize_color

from .types import CalendarQueryResult, MultistatusResponse, PropfindResult, SyncCollectionResult

log = logging.getLogger(__name__)

## status codes in a sync-collection response meaning "gone"
DELETED_STATUSES = (404, 410)


def _parse_xml(body: bytes | str | None) -> _Element | None:
    """
    Parse a response body, recovering from what libxml2 can recover from.

    Returns None for an empty or unparseable body.
    """
    if not body:
        return None
    if isinstance(body, str):
        body = body.encode("utf-8")
    parser = etree.XMLParser(recover=True, resolve_entities=False)
    try:
        return etree.fromstring(body, parser)
    except etree.XMLSyntaxError:
        log.warning("could not parse XML response body")
        return None


def _localname(elem: _Element) -> str:
    """
    Local part of an element tag, lowercased.  Handles ``{ns}tag`` as well
    as ``prefix:tag``, which is what a recovering parser leaves when a
    prefix is never declared.
    """
    tag = elem.tag
    if not isinstance(tag, str):
        ## comments and processing instructions
        return ""
    return tag.rsplit("}", 1)[-1].rsplit(":", 1)[-1].lower()


def _children(elem: _Element, name: str) -> list[_Element]:
    return [child for child in elem if _localname(child) == name]


def _child(elem: _Element, name: str) -> _Element | None:
    for child in elem:
        if _localname(child) == name:
            return child
    return None


def _descendants(elem: _Element, name: str) -> list[_Element]:
    return [x for x in elem.iter() if _localname(x) == name]


def _text(elem: _Element | None) -> str | None:
    if elem is None or elem.text is None:
        return None
    return elem.text.strip() or None


def _parse_multistatus(body: bytes) -> MultistatusResponse:
    """
    Parse a 207 Multi-Status response body.

    Args:
        body: Raw XML response bytes

    Returns:
        Structured MultistatusResponse with parsed results
    """
    tree = _parse_xml(body)
    if tree is None:
        return MultistatusResponse()

    responses: list[PropfindResult] = []

    for elem in _descendants(tree, "response"):
        href, propstats, status = _parse_response_element(elem)
        responses.append(
            PropfindResult(
                href=href,
                properties=_extract_properties(propstats),
                status=status,
            )
        )

    return MultistatusResponse(responses=responses, sync_token=_top_level_sync_token(tree))


def _top_level_sync_token(tree: _Element) -> str | None:
    """The sync-token of a sync-collection report, as opposed to the property"""
    for elem in _descendants(tree, "sync-token"):
        parent = elem.getparent()
        if parent is not None and _localname(parent) == "prop":
            continue
        return _text(elem)
    return None


def _parse_response_element(
    response: _Element,
) -> tuple[str, list[_Element], int]:
    """
    Parse a single DAV:response element.

    Returns:
        Tuple of (href, propstat elements list, status code)
    """
    status: int | None = None
    href: str | None = None
    propstats: list[_Element] = []

    for elem in response:
        name = _localname(elem)
        if name == "status":
            status = _status_to_code(elem.text)
        elif name == "href" and href is None:
            href = (elem.text or "").strip()
        elif name == "propstat":
            propstats.append(elem)

    if status is None:
        ## no response level status.  A resource with at least one
        ## successful propstat exists, otherwise take the first status.
        codes = [
            _status_to_code(_text(_child(p, "status")))
            for p in propstats
            if _child(p, "status") is not None
        ]
        ok = [c for c in codes if 200 <= c < 300]
        status = ok[0] if ok else (codes[0] if codes else 200)

    return (href or "", propstats, status)


def _extract_properties(propstats: list[_Element]) -> dict[str, Any]:
    """
    Extract properties from propstat elements into a dict keyed by the
    property local name.  Properties in a non-2xx propstat are left out.
    """
    properties: dict[str, Any] = {}

    for propstat in propstats:
        status_elem = _child(propstat, "status")
        if status_elem is not None and not 200 <= _status_to_code(status_elem.text) < 300:
            continue

        for prop in _children(propstat, "prop"):
            for child in prop:
                name = _localname(child)
                if name:
                    properties[name] = _element_to_value(child)

    return properties


def _element_to_value(elem: _Element) -> Any:
    """
    Convert a property element to a Python value.

    resourcetype gives the list of child local names, properties wrapping
    an href give the href text, everything else gives the stripped text.
    """
    name = _localname(elem)

    if name == "resourcetype":
        return [_localname(child) for child in elem if _localname(child)]

    if name in ("current-user-principal", "calendar-home-set", "principal-url"):
        return _text(_child(elem, "href"))

    if name == "calendar-data":
        ## no stripping, the ics content is taken verbatim
        return elem.text

    return _text(elem)


def _status_to_code(status: str | None) -> int:
    """
    Extract status code from status string like "HTTP/1.1 200 OK".

    Returns 200 if parsing fails.
    """
    if not status:
        return 200

    parts = status.split()
    if len(parts) >= 2:
        try:
            return int(parts[1])
        except ValueError:
            pass

    return 200


def _display_name_from_href(href: str) -> str:
    segment = href.rstrip("/").rsplit("/", 1)[-1]
    return unquote(segment)


def parse_multistatus(body: bytes) -> MultistatusResponse:
    return _parse_multistatus(body)


def parse_calendar_list(
    body: bytes,
    base_url: str,
    exclude_href: str | None = None,
) -> list[CalendarInfo]:
    """
    Parse a Depth 1 PROPFIND on a calendar home into calendars.

    An entry counts as a calendar when its resourcetype has a calendar
    child, or, as a last resort, when the href contains "calendar".  The
    collection that was asked for (``exclude_href``) is never listed.

    Args:
        body: Raw XML response bytes
        base_url: URL relative hrefs are resolved against
        exclude_href: URL of the collection that was queried
    """
    calendars: list[CalendarInfo] = []
    for result in _parse_multistatus(body).responses:
        href = result.href
        if not href:
            continue
        if exclude_href and same_resource(href, exclude_href):
            continue
        if not 200 <= result.status < 300:
            continue

        props = result.properties
        resourcetype = props.get("resourcetype") or []
        if "calendar" not in resourcetype and "calendar" not in href.lower():
            continue

        calendars.append(
            CalendarInfo(
                display_name=props.get("displayname") or _display_name_from_href(href),
                url=normalize_calendar_url(urljoin(base_url, href)),
                color=normalize_color(props.get("calendar-color")),
            )
        )
    return calendars


def _first_property(body: bytes, name: str) -> Any:
    for result in _parse_multistatus(body).responses:
        value = result.properties.get(name)
        if value:
            return value
    return None


def parse_current_user_principal(body: bytes) -> str | None:
    return _first_property(body, "current-user-principal")


def parse_calendar_home_set(body: bytes) -> str | None:
    return _first_property(body, "calendar-home-set")


def parse_calendar_color(body: bytes) -> str | None:
    return normalize_color(_first_property(body, "calendar-color"))


def parse_sync_token(body: bytes) -> str | None:
    """The sync-token property of a Depth 0 PROPFIND, None when missing"""
    return _first_property(body, "sync-token")


def _query_result(result: PropfindResult) -> CalendarQueryResult:
    etag = result.properties.get("getetag")
    return CalendarQueryResult(
        href=result.href,
        etag=etag.strip('"') if etag else None,
        calendar_data=result.properties.get("calendar-data"),
        status=result.status,
    )


def parse_calendar_query_response(body: bytes) -> list[CalendarQueryResult]:
    """
    Parse a calendar-query REPORT response.

    Returns:
        List of CalendarQueryResult with calendar data
    """
    return [_query_result(r) for r in _parse_multistatus(body).responses]


def parse_sync_collection_response(body: bytes) -> SyncCollectionResult:
    """
    Parse a sync-collection REPORT response.

    Entries with status 404 or 410 are deleted resources, everything else
    is a changed (or new) resource.

    Returns:
        SyncCollectionResult with changed items, deleted hrefs, and new sync token
    """
    multistatus = _parse_multistatus(body)

    changed: list[CalendarQueryResult] = []
    deleted: list[str] = []

    for result in multistatus.responses:
        if result.status in DELETED_STATUSES:
            deleted.append(result.href)
            continue
        changed.append(_query_result(result))

    return SyncCollectionResult(
        changed=changed,
        deleted=deleted,
        sync_token=multistatus.sync_token,
    )
