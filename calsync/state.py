"""
Small key-value persistence for client state: the sync-token map per
credential, the calendar metadata map and the set of visible calendars.
"""

import json
import logging
import os
from pathlib import Path
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional
from typing import Protocol
from typing import Union

from calsync.lib.url import normalize_calendar_url
from calsync.models import CalendarMetadata

log = logging.getLogger(__name__)


def token_key(server_url: str, username: str) -> str:
    """Storage key of the token map of one (server, username) credential"""
    return "caldavSyncTokens:%s:%s" % (server_url, username)


class SyncTokenStore(Protocol):
    """Where the sync engine keeps its ``calendar url -> token`` maps"""

    def load(self, server_url: str, username: str) -> Dict[str, str]:
        ...

    def save(self, server_url: str, username: str, tokens: Dict[str, str]) -> None:
        ...


class MemoryTokenStore:
    def __init__(self) -> None:
        self.data: Dict[str, Dict[str, str]] = {}

    def load(self, server_url: str, username: str) -> Dict[str, str]:
        return dict(self.data.get(token_key(server_url, username), {}))

    def save(self, server_url: str, username: str, tokens: Dict[str, str]) -> None:
        self.data[token_key(server_url, username)] = dict(tokens)


class JSONStateFile:
    """
    All client state in one JSON document.

    Layout::

        {
          "caldavSyncTokens:<server>:<user>": {"<calendar url>": "<token>"},
          "calendarMetadata": {"<url>": {...}},
          "localCalendarMetadata": {"<url>": {...}},
          "visibleCalendars": ["<url>", ...]
        }

    Remote calendar metadata is replaced as a whole whenever the calendar
    list is refreshed, local calendars are kept apart so that a refresh
    never drops them.
    """

    def __init__(self, path: Union[Path, str]) -> None:
        self.path = Path(path)

    def _read(self) -> dict:
        try:
            with open(self.path, "rb") as state_file:
                return json.load(state_file)
        except FileNotFoundError:
            return {}
        except ValueError:
            log.error(f"state file {self.path} is not valid json, starting from scratch")
            return {}

    def _write(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as state_file:
            json.dump(data, state_file, indent=2, sort_keys=True)
        os.replace(tmp, self.path)

    ## sync tokens

    def load(self, server_url: str, username: str) -> Dict[str, str]:
        return dict(self._read().get(token_key(server_url, username)) or {})

    def save(self, server_url: str, username: str, tokens: Dict[str, str]) -> None:
        data = self._read()
        data[token_key(server_url, username)] = dict(tokens)
        self._write(data)

    ## calendar metadata

    def save_calendar_metadata(self, items: Iterable[CalendarMetadata]) -> None:
        remote = {}
        local = {}
        for item in items:
            (local if item.is_local else remote)[item.url] = item.to_dict()
        data = self._read()
        data["calendarMetadata"] = remote
        if local:
            data["localCalendarMetadata"] = {
                **(data.get("localCalendarMetadata") or {}),
                **local,
            }
        self._write(data)

    def save_local_calendar_metadata(self, items: Iterable[CalendarMetadata]) -> None:
        data = self._read()
        data["localCalendarMetadata"] = {i.url: i.to_dict() for i in items if i.is_local}
        self._write(data)

    def calendar_metadata(self) -> Dict[str, CalendarMetadata]:
        """Remote and local calendars, keyed by normalized URL"""
        data = self._read()
        ret: Dict[str, CalendarMetadata] = {}
        for section in ("calendarMetadata", "localCalendarMetadata"):
            for item in (data.get(section) or {}).values():
                metadata = CalendarMetadata.from_dict(item)
                ret[metadata.url] = metadata
        return ret

    def get_calendar_metadata(self, url: str) -> Optional[CalendarMetadata]:
        return self.calendar_metadata().get(normalize_calendar_url(url))

    ## visible calendars

    def visible_calendars(self) -> List[str]:
        return list(self._read().get("visibleCalendars") or [])

    def set_visible_calendars(self, urls: Iterable[str]) -> None:
        data = self._read()
        data["visibleCalendars"] = sorted({normalize_calendar_url(u) for u in urls})
        self._write(data)
