"""
Pure functions for building CalDAV XML request bodies.

All functions in this module are pure - they take data in and return XML out,
with no side effects or I/O.
"""
from datetime import date
from datetime import datetime
from typing import Dict
from typing import List
from typing import Optional
from typing import Union

from lxml import etree

from calsync.elements import cdav
from calsync.elements import dav
from calsync.elements import ical
from calsync.elements.base import BaseElement

## Properties asked for when listing calendars
CALENDAR_LIST_PROPS = ["displayname", "resourcetype", "calendar-color"]


def build_propfind_body(props: Optional[List[str]] = None) -> bytes:
    """
    Build PROPFIND request body XML.

    Args:
        props: List of property names to retrieve.  Unknown names are
               ignored, an empty list yields an empty prop element.

    Returns:
        UTF-8 encoded XML bytes
    """
    prop_elements = []
    for prop_name in props or []:
        prop_element = _prop_name_to_element(prop_name)
        if prop_element is not None:
            prop_elements.append(prop_element)
    propfind = dav.Propfind() + (dav.Prop() + prop_elements)

    return etree.tostring(propfind.xmlelement(), encoding="utf-8", xml_declaration=True)


def build_calendar_query_body(
    start: Optional[Union[date, datetime]] = None,
    end: Optional[Union[date, datetime]] = None,
) -> bytes:
    """
    Build a calendar-query REPORT body asking for the etag and the
    calendar data of every VEVENT overlapping the time range.

    Args:
        start: Start of time range filter
        end: End of time range filter

    Returns:
        UTF-8 encoded XML bytes
    """
    prop = dav.Prop() + [dav.GetEtag(), cdav.CalendarData()]

    vevent = cdav.CompFilter("VEVENT")
    if start or end:
        vevent += cdav.TimeRange(start, end)
    vcalendar = cdav.CompFilter("VCALENDAR") + vevent

    root = cdav.CalendarQuery() + [prop, cdav.Filter() + vcalendar]

    return etree.tostring(root.xmlelement(), encoding="utf-8", xml_declaration=True)


def build_sync_collection_body(
    sync_token: Optional[str] = None,
    sync_level: str = "1",
) -> bytes:
    """
    Build sync-collection REPORT request body (rfc6578).

    Only changes after the given sync token are returned by the server.

    Args:
        sync_token: Previous sync token (empty string for initial sync)
        sync_level: Sync level (usually "1")

    Returns:
        UTF-8 encoded XML bytes
    """
    sync_collection = dav.SyncCollection() + [
        dav.SyncToken(sync_token or ""),
        dav.SyncLevel(sync_level),
        dav.Prop() + [dav.GetEtag(), cdav.CalendarData()],
    ]

    return etree.tostring(
        sync_collection.xmlelement(), encoding="utf-8", xml_declaration=True
    )


def _prop_name_to_element(name: str) -> Optional[BaseElement]:
    """
    Convert property name string to element object.

    Args:
        name: Property name (case-insensitive)

    Returns:
        BaseElement instance or None if unknown property
    """
    props: Dict[str, type] = {
        "displayname": dav.DisplayName,
        "resourcetype": dav.ResourceType,
        "getetag": dav.GetEtag,
        "current-user-principal": dav.CurrentUserPrincipal,
        "sync-token": dav.SyncToken,
        "calendar-data": cdav.CalendarData,
        "calendar-home-set": cdav.CalendarHomeSet,
        "calendar-color": ical.CalendarColor,
    }

    cls = props.get(name.lower().replace("_", "-"))
    if cls is None:
        return None
    return cls()
