#!/usr/bin/env python
"""
iCalendar encoding and decoding of :class:`calsync.models.Event`.

Decoding is deliberately shallow: UID, SUMMARY, DESCRIPTION, DTSTART,
DTEND and a color property are picked from each VEVENT, and date-times
are read as wall-clock components.  TZID parameters and a trailing ``Z``
are not interpreted, neither when decoding nor when encoding, so both
directions agree on the same naive reading of a time.
"""
import datetime
import logging
import re
import time
import uuid
from typing import Iterable
from typing import Iterator
from typing import List
from typing import Optional

import icalendar
from icalendar.parser import Contentline
from icalendar.parser import Contentlines
from icalendar.prop import vText

from calsync.lib.python_utilities import to_normal_str
from calsync.models import DEFAULT_EVENT_COLOR
from calsync.models import Event
from calsync.models import EventSource
from calsync.models import normalize_color
from calsync.protocol import CalendarQueryResult
from calsync.protocol import parse_calendar_query_response

log = logging.getLogger(__name__)

PRODID = "-//calsync//calsync//EN"

_vevent_re = re.compile(r"^BEGIN:VEVENT\s*$.*?^END:VEVENT\s*$", re.MULTILINE | re.DOTALL)

## properties picked from a VEVENT, the first occurrence wins
_wanted = (
    "UID",
    "SUMMARY",
    "DESCRIPTION",
    "DTSTART",
    "DTEND",
    "X-APPLE-CALENDAR-COLOR",
    "COLOR",
    "RECURRENCE-ID",
)


def generate_uid() -> str:
    """Time component plus random component"""
    return "calsync-%d-%s" % (int(time.time() * 1000), uuid.uuid4().hex[:12])


def iter_vevent_blocks(text: str) -> Iterator[str]:
    for match in _vevent_re.finditer(to_normal_str(text) or ""):
        yield match.group(0)


def _properties(block: str) -> dict:
    """
    Unfolded raw values of the interesting top-level VEVENT properties.
    Properties of nested components (VALARM and friends) are ignored.
    """
    found: dict = {}
    depth = 0
    for line in Contentlines.from_ical(block):
        if not line:
            continue
        try:
            name, params, value = Contentline(line).parts()
        except ValueError:
            log.debug("skipping unparseable content line %r", line)
            continue
        name = name.upper()
        if name == "BEGIN":
            depth += 1
            continue
        if name == "END":
            depth -= 1
            continue
        if depth == 1 and name in _wanted and name not in found:
            found[name] = value
    return found


def _parse_date_value(value: str):
    """
    8 characters is a date, 15 or more is a date-time whose
    year/month/day/hour/minute are taken as-is.  Returns a
    ``(date, time or None)`` tuple, or None for any other length.
    """
    value = value.strip()
    if len(value) == 8:
        return (datetime.date(int(value[0:4]), int(value[4:6]), int(value[6:8])), None)
    if len(value) >= 15:
        day = datetime.date(int(value[0:4]), int(value[4:6]), int(value[6:8]))
        return (day, datetime.time(int(value[9:11]), int(value[11:13])))
    return None


def decode_event(block: str, fallback_color: str = DEFAULT_EVENT_COLOR) -> Optional[Event]:
    """
    Decode one ``BEGIN:VEVENT...END:VEVENT`` block.

    Returns None when there is no usable DTSTART.  Raises on garbage
    inside the values, :func:`decode_events` takes care of that.
    """
    props = _properties(block)

    if "DTSTART" not in props:
        log.debug("VEVENT without DTSTART skipped")
        return None
    start = _parse_date_value(props["DTSTART"])
    if start is None:
        log.debug("VEVENT with unsupported DTSTART %r skipped", props["DTSTART"])
        return None
    end = _parse_date_value(props["DTEND"]) if props.get("DTEND") else None

    color = props.get("X-APPLE-CALENDAR-COLOR") or props.get("COLOR")

    return Event(
        date=start[0],
        title=vText.from_ical(props.get("SUMMARY", "")).strip(),
        memo=vText.from_ical(props.get("DESCRIPTION", "")).strip() or None,
        start_time=start[1],
        end_time=end[1] if end else None,
        color=normalize_color(color) or fallback_color,
        caldav_uid=props.get("UID", "").strip() or None,
        source=EventSource.CALDAV,
    )


def decode_events(text: str, fallback_color: str = DEFAULT_EVENT_COLOR) -> Iterator[Event]:
    """
    Lazily decode every VEVENT of an iCalendar text.

    A block that fails to decode is logged and skipped, the remaining
    blocks are still decoded.
    """
    for block in iter_vevent_blocks(text):
        try:
            event = decode_event(block, fallback_color)
        except Exception:
            log.warning("could not decode VEVENT block, skipping it", exc_info=True)
            continue
        if event is not None:
            yield event


def decode_resource(text: str, fallback_color: str = DEFAULT_EVENT_COLOR) -> Optional[Event]:
    """
    The one event stored in a calendar resource.

    A recurring event with overridden occurrences is a single resource
    holding several VEVENTs with the same UID.  The master (the VEVENT
    without RECURRENCE-ID) is the event; when there is none, the first
    decodable VEVENT is.
    """
    first = None
    for block in iter_vevent_blocks(text):
        try:
            event = decode_event(block, fallback_color)
        except Exception:
            log.warning("could not decode VEVENT block, skipping it", exc_info=True)
            continue
        if event is None:
            continue
        if "RECURRENCE-ID" not in _properties(block):
            return event
        if first is None:
            first = event
    return first


def decode_results(
    results: Iterable[CalendarQueryResult], fallback_color: str = DEFAULT_EVENT_COLOR
) -> List[Event]:
    """One event per resource, carrying the etag of the resource"""
    events = []
    for result in results:
        if not result.calendar_data:
            continue
        event = decode_resource(result.calendar_data, fallback_color)
        if event is None:
            continue
        event.etag = result.etag
        events.append(event)
    return events


def decode_calendar_data(xml_text, fallback_color: str = DEFAULT_EVENT_COLOR) -> List[Event]:
    """
    The events in the calendar-data payloads of a multistatus document,
    one per resource.
    """
    return decode_results(parse_calendar_query_response(xml_text), fallback_color)


def encode_event(event: Event, uid: Optional[str] = None) -> str:
    """
    A full VCALENDAR holding one VEVENT for the event.

    All-day events get a DATE DTSTART and a DTEND on the following day.
    Timed events get floating DTSTART/DTEND (no TZID, no ``Z``).  A
    start time without an end time gives a DTSTART without DTEND; an end
    time without a start time cannot be expressed and gives an all-day
    event.
    """
    my_instance = icalendar.Calendar()
    my_instance.add("prodid", PRODID)
    my_instance.add("version", "2.0")

    component = icalendar.Event()
    component.add("uid", uid or event.caldav_uid or generate_uid())
    component.add("summary", event.title or "")
    if event.memo:
        component.add("description", event.memo)
    component.add("dtstamp", datetime.datetime.now(tz=datetime.timezone.utc))

    if event.start_time is None:
        component.add("dtstart", event.date)
        component.add("dtend", event.date + datetime.timedelta(days=1))
    else:
        component.add("dtstart", datetime.datetime.combine(event.date, event.start_time))
        if event.end_time is not None:
            component.add("dtend", datetime.datetime.combine(event.date, event.end_time))

    my_instance.add_component(component)
    return my_instance.to_ical().decode("utf-8")

