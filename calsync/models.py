"""
Data model shared by the codec, the transports, the store and the engine.
"""

import re
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from datetime import date
from datetime import datetime
from datetime import time
from enum import Enum
from typing import Any
from typing import Optional

from calsync.lib.url import normalize_calendar_url

DEFAULT_EVENT_COLOR = "#3b82f6"
SUBSCRIPTION_COLOR = "#ef4444"
LOCAL_CALENDAR_PREFIX = "local:"

_hex_color_re = re.compile(r"^#?([0-9a-fA-F]{6})(?:[0-9a-fA-F]{2})?$")


def normalize_color(value: Optional[str]) -> Optional[str]:
    """
    ``#rrggbb`` for any six (or eight, with alpha) hex digit color,
    with or without the leading ``#``.  Anything else gives None.
    """
    if not value:
        return None
    match = _hex_color_re.match(value.strip())
    if not match:
        return None
    return "#" + match.group(1).lower()


def parse_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def parse_time(value: Any) -> Optional[time]:
    if value is None or value == "":
        return None
    if isinstance(value, time):
        return value
    hour, minute = str(value).split(":")[:2]
    return time(int(hour), int(minute))


def format_time(value: Optional[time]) -> Optional[str]:
    if value is None:
        return None
    return value.strftime("%H:%M")


class EventSource(Enum):
    MANUAL = "manual"
    CALDAV = "caldav"


class CalendarType(Enum):
    LOCAL = "local"
    SUBSCRIPTION = "subscription"
    CALDAV = "caldav"


@dataclass
class Event:
    """
    One calendar entry.

    ``calendar_url`` unset means a purely local event, ``caldav_uid``
    unset means the event was never confirmed to exist remotely.
    Start and end times are naive wall-clock times; both unset makes
    the event an all-day event.
    """

    date: date
    title: str = ""
    memo: Optional[str] = None
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    color: str = DEFAULT_EVENT_COLOR
    calendar_url: Optional[str] = None
    caldav_uid: Optional[str] = None
    source: EventSource = EventSource.MANUAL
    id: Optional[int] = None
    etag: Optional[str] = None

    def __post_init__(self) -> None:
        self.date = parse_date(self.date)
        self.start_time = parse_time(self.start_time)
        self.end_time = parse_time(self.end_time)
        self.calendar_url = normalize_calendar_url(self.calendar_url)
        if not isinstance(self.source, EventSource):
            self.source = EventSource(self.source)

    @property
    def is_all_day(self) -> bool:
        return self.start_time is None and self.end_time is None

    def details_key(self) -> tuple:
        """The identity used to match events that carry no UID"""
        return (
            self.title or "",
            self.date.isoformat(),
            format_time(self.start_time),
            format_time(self.end_time),
        )

    def copy(self, **changes) -> "Event":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        """Wire representation, as passed through the relay"""
        ret: dict = {
            "date": self.date.isoformat(),
            "title": self.title,
            "color": self.color,
        }
        if self.memo:
            ret["memo"] = self.memo
        if self.start_time is not None:
            ret["startTime"] = format_time(self.start_time)
        if self.end_time is not None:
            ret["endTime"] = format_time(self.end_time)
        if self.caldav_uid:
            ret["uid"] = self.caldav_uid
        if self.etag:
            ret["etag"] = self.etag
        return ret

    @classmethod
    def from_dict(cls, data: dict, calendar_url: Optional[str] = None) -> "Event":
        return cls(
            date=parse_date(data["date"]),
            title=data.get("title") or "",
            memo=data.get("memo") or None,
            start_time=data.get("startTime"),
            end_time=data.get("endTime"),
            color=normalize_color(data.get("color")) or DEFAULT_EVENT_COLOR,
            calendar_url=calendar_url or data.get("calendarUrl"),
            caldav_uid=data.get("uid") or data.get("caldavUid") or None,
            source=EventSource.CALDAV,
            etag=data.get("etag"),
        )


@dataclass
class CalendarInfo:
    """A calendar collection as found by discovery"""

    display_name: str
    url: str
    color: Optional[str] = None

    def to_dict(self) -> dict:
        ret = {"displayName": self.display_name, "url": self.url}
        if self.color:
            ret["color"] = self.color
        return ret

    @classmethod
    def from_dict(cls, data: dict) -> "CalendarInfo":
        return cls(
            display_name=data.get("displayName") or "",
            url=data["url"],
            color=data.get("color"),
        )


@dataclass
class CalendarMetadata:
    url: str
    display_name: str = ""
    color: str = DEFAULT_EVENT_COLOR
    is_local: bool = False
    is_visible: bool = True
    type: CalendarType = CalendarType.CALDAV
    subscription_url: Optional[str] = None

    def __post_init__(self) -> None:
        self.url = normalize_calendar_url(self.url)
        if not isinstance(self.type, CalendarType):
            self.type = CalendarType(self.type)
        if self.url.startswith(LOCAL_CALENDAR_PREFIX):
            self.is_local = True
            self.type = CalendarType.LOCAL

    @property
    def syncable(self) -> bool:
        """Only remote CalDAV calendars go through the sync engine"""
        return not self.is_local and self.type == CalendarType.CALDAV

    def to_dict(self) -> dict:
        ret = {
            "url": self.url,
            "displayName": self.display_name,
            "color": self.color,
            "isLocal": self.is_local,
            "isVisible": self.is_visible,
            "type": self.type.value,
        }
        if self.subscription_url:
            ret["subscriptionUrl"] = self.subscription_url
        return ret

    @classmethod
    def from_dict(cls, data: dict) -> "CalendarMetadata":
        return cls(
            url=data["url"],
            display_name=data.get("displayName", ""),
            color=data.get("color") or DEFAULT_EVENT_COLOR,
            is_local=bool(data.get("isLocal", False)),
            is_visible=bool(data.get("isVisible", True)),
            type=data.get("type") or CalendarType.CALDAV.value,
            subscription_url=data.get("subscriptionUrl"),
        )


@dataclass
class CalDAVConfig:
    server_url: str
    username: str
    password: str = field(repr=False, default="")
    selected_calendar_urls: list = field(default_factory=list)
    sync_interval_minutes: int = 60
    last_sync_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.server_url = self.server_url.rstrip("/")
        self.selected_calendar_urls = [
            normalize_calendar_url(u) for u in self.selected_calendar_urls
        ]


@dataclass
class SyncChanges:
    """
    What a sync-collection report brought back.

    Deleted resources are only reported through ``has_deletions`` (and
    the raw hrefs in ``deleted``), they are never turned into events.
    """

    events: list = field(default_factory=list)
    sync_token: Optional[str] = None
    has_deletions: bool = False
    deleted: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "events": [e.to_dict() for e in self.events],
            "syncToken": self.sync_token,
            "hasDeletions": self.has_deletions,
        }

    @classmethod
    def from_dict(cls, data: dict, calendar_url: Optional[str] = None) -> "SyncChanges":
        return cls(
            events=[Event.from_dict(e, calendar_url) for e in data.get("events") or []],
            sync_token=data.get("syncToken"),
            has_deletions=bool(data.get("hasDeletions", False)),
        )


@dataclass
class SyncResult:
    """
    Outcome of one sync pass.

    ``synced`` is the plain count of created plus updated events.
    ``state_changed`` tells that remote removals were applied and the
    caller has to reload what it shows rather than just report a count.
    """

    created: int = 0
    updated: int = 0
    skipped: int = 0
    deleted: int = 0
    errors: int = 0
    in_flight: bool = False

    @property
    def synced(self) -> int:
        return self.created + self.updated

    @property
    def state_changed(self) -> bool:
        return self.deleted > 0

    def __add__(self, other: "SyncResult") -> "SyncResult":
        return SyncResult(
            created=self.created + other.created,
            updated=self.updated + other.updated,
            skipped=self.skipped + other.skipped,
            deleted=self.deleted + other.deleted,
            errors=self.errors + other.errors,
            in_flight=self.in_flight or other.in_flight,
        )
