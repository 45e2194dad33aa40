"""
Read-only subscription calendars: public ICS feeds (holidays and the like)
downloaded as a whole and expanded into plain events for a date window.
"""

import logging
from collections import Counter
from datetime import datetime
from datetime import timezone
from typing import List
from typing import Optional

import recurring_ical_events
from icalendar import Calendar
from niquests import AsyncSession

from calsync.models import SUBSCRIPTION_COLOR
from calsync.models import Event
from calsync.models import EventSource

log = logging.getLogger(__name__)

## occurrences kept per recurring event
MAX_OCCURRENCES = 2000

RECURRENCE_PROPERTIES = ("RRULE", "RDATE")


def _epoch_millis(value) -> int:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
    else:
        value = datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def expand_feed(
    ics: str, url: str, start: datetime, end: datetime
) -> List[Event]:
    """
    The events of the feed ``ics`` falling between ``start`` and ``end``.

    Every occurrence of a recurring event becomes an event of its own,
    its uid suffixed with the start of the occurrence in epoch millis.
    """
    calendar = Calendar.from_ical(ics)
    recurring_uids = {
        str(vevent.get("UID"))
        for vevent in calendar.walk("VEVENT")
        if any(p in vevent for p in RECURRENCE_PROPERTIES)
    }

    counts: Counter = Counter()
    events = []
    for occurrence in recurring_ical_events.of(calendar).between(start, end):
        dtstart = occurrence.get("DTSTART")
        if dtstart is None:
            continue
        dtstart = dtstart.dt
        uid = occurrence.get("UID")
        uid = str(uid) if uid is not None else None

        if uid in recurring_uids:
            counts[uid] += 1
            if counts[uid] > MAX_OCCURRENCES:
                continue
            caldav_uid = f"{uid}-{_epoch_millis(dtstart)}"
        else:
            caldav_uid = uid

        events.append(
            Event(
                date=dtstart.date() if isinstance(dtstart, datetime) else dtstart,
                title=str(occurrence.get("SUMMARY") or ""),
                memo=str(occurrence.get("DESCRIPTION") or "") or None,
                color=SUBSCRIPTION_COLOR,
                calendar_url=url,
                caldav_uid=caldav_uid,
                source=EventSource.CALDAV,
            )
        )
    return events


async def fetch_subscription_events(
    url: str,
    start: datetime,
    end: datetime,
    session: Optional[AsyncSession] = None,
) -> List[Event]:
    """
    Downloads the feed at ``url`` and expands it, see :func:`expand_feed`.
    Any failure is logged and gives an empty list.
    """
    own_session = session is None
    if own_session:
        session = AsyncSession()
    try:
        r = await session.get(url)
        if r.status_code is None or not 200 <= r.status_code < 300:
            log.error(f"fetching the subscription feed {url} failed: {r.status_code}")
            return []
        return expand_feed(r.text, url, start, end)
    except Exception:
        log.error(f"could not read the feed at {url}", exc_info=True)
        return []
    finally:
        if own_session:
            await session.close()
