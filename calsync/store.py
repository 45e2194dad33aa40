"""
Local event store.

:class:`EventStore` is what the sync engine talks to.  The methods are
coroutines so that a network-backed store fits behind the same
interface; :class:`SQLiteEventStore` is the bundled implementation.

Every comparison on ``calendar_url`` accepts both the normalized form and
the trailing-slash form, since older records may carry either.
"""

import abc
import logging
import sqlite3
from datetime import date
from pathlib import Path
from typing import Iterable
from typing import List
from typing import Optional
from typing import Union

from calsync.lib.error import EventStoreError
from calsync.lib.url import calendar_url_variants
from calsync.lib.url import normalize_calendar_url
from calsync.models import Event
from calsync.models import EventSource
from calsync.models import format_time

log = logging.getLogger(__name__)

DELETE_BATCH_SIZE = 50

## Event attribute -> column, for the attributes a caller may change
_columns = {
    "date": "date",
    "title": "title",
    "memo": "memo",
    "start_time": "start_time",
    "end_time": "end_time",
    "color": "color",
    "calendar_url": "calendar_url",
    "caldav_uid": "caldav_uid",
    "source": "source",
    "etag": "etag",
}


def _to_column_value(name: str, value):
    if value is None:
        return None
    if name == "date":
        return value.isoformat() if isinstance(value, date) else str(value)[:10]
    if name in ("start_time", "end_time"):
        return format_time(value) if not isinstance(value, str) else value
    if name == "source":
        return EventSource(value).value
    if name == "calendar_url":
        return normalize_calendar_url(value)
    return value


class EventStore(abc.ABC):
    """Queryable set of local events"""

    @abc.abstractmethod
    async def exists_by_uid(self, uid: str, calendar_url: str) -> bool:
        ...

    @abc.abstractmethod
    async def get_by_uid(self, uid: str, calendar_url: str) -> Optional[Event]:
        ...

    @abc.abstractmethod
    async def create(self, event: Event) -> Event:
        ...

    @abc.abstractmethod
    async def get(self, event_id: int) -> Optional[Event]:
        ...

    @abc.abstractmethod
    async def list_events(
        self, start: Optional[date] = None, end: Optional[date] = None
    ) -> List[Event]:
        ...

    @abc.abstractmethod
    async def update(self, event_id: int, changes: dict) -> bool:
        ...

    @abc.abstractmethod
    async def update_by_uid(self, uid: str, calendar_url: str, changes: dict) -> bool:
        ...

    @abc.abstractmethod
    async def attach_uid(self, event_id: int, uid: str, calendar_url: str) -> bool:
        ...

    @abc.abstractmethod
    async def find_by_details(self, event: Event, calendar_url: str) -> Optional[int]:
        ...

    @abc.abstractmethod
    async def exists_by_details(
        self, event: Event, calendar_url: Optional[str], source: EventSource = EventSource.CALDAV
    ) -> bool:
        ...

    @abc.abstractmethod
    async def list_caldav_events(self, calendar_url: str) -> List[Event]:
        ...

    @abc.abstractmethod
    async def delete(self, event_id: int) -> bool:
        ...

    @abc.abstractmethod
    async def delete_by_ids(self, ids: Iterable[int]) -> int:
        ...

    @abc.abstractmethod
    async def delete_duplicates(self) -> int:
        ...

    @abc.abstractmethod
    async def delete_caldav_events(self) -> int:
        ...


class SQLiteEventStore(EventStore):
    """Event store in a SQLite database file (or ``:memory:``)."""

    def __init__(self, db_path: Union[Path, str]):
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        """Initialize and connect to the database."""
        if str(self.db_path) != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path))
        self.conn.row_factory = sqlite3.Row  # Enable column access by name
        self._init_schema()

    def close(self):
        if self.conn:
            self.conn.close()
            self.conn = None

    def _init_schema(self):
        """
        Create the events table.  The two partial indexes enforce that a
        (uid, calendar) pair exists once, and that a UID-less caldav event
        exists once per (title, date, start, end, calendar).
        """
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                date TEXT NOT NULL,
                title TEXT NOT NULL DEFAULT '',
                memo TEXT,
                start_time TEXT,
                end_time TEXT,
                color TEXT NOT NULL,
                calendar_url TEXT,
                caldav_uid TEXT,
                source TEXT NOT NULL DEFAULT 'manual',
                etag TEXT
            );
            CREATE UNIQUE INDEX IF NOT EXISTS events_uid
                ON events(caldav_uid, calendar_url)
                WHERE caldav_uid IS NOT NULL;
            CREATE UNIQUE INDEX IF NOT EXISTS events_details
                ON events(title, date, COALESCE(start_time, ''), COALESCE(end_time, ''),
                          COALESCE(calendar_url, ''))
                WHERE source = 'caldav' AND caldav_uid IS NULL;
            CREATE INDEX IF NOT EXISTS events_date ON events(date);
        """)
        self.conn.commit()

    def _execute(self, sql: str, params=()) -> sqlite3.Cursor:
        if self.conn is None:
            raise EventStoreError("event store is not connected")
        try:
            cursor = self.conn.execute(sql, params)
            self.conn.commit()
            return cursor
        except sqlite3.IntegrityError as err:
            self.conn.rollback()
            raise EventStoreError(f"uniqueness violated: {err}") from err
        except sqlite3.Error as err:
            self.conn.rollback()
            raise EventStoreError(str(err)) from err

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> Event:
        return Event(
            id=row["id"],
            date=row["date"],
            title=row["title"],
            memo=row["memo"],
            start_time=row["start_time"],
            end_time=row["end_time"],
            color=row["color"],
            calendar_url=row["calendar_url"],
            caldav_uid=row["caldav_uid"],
            source=row["source"],
            etag=row["etag"],
        )

    def _set_clause(self, changes: dict):
        unknown = set(changes) - set(_columns)
        if unknown:
            raise EventStoreError(f"cannot update {', '.join(sorted(unknown))}")
        names = sorted(changes)
        clause = ", ".join(f"{_columns[n]} = ?" for n in names)
        return clause, [_to_column_value(n, changes[n]) for n in names]

    async def exists_by_uid(self, uid: str, calendar_url: str) -> bool:
        return await self.get_by_uid(uid, calendar_url) is not None

    async def get_by_uid(self, uid: str, calendar_url: str) -> Optional[Event]:
        row = self._execute(
            "SELECT * FROM events WHERE caldav_uid = ? AND calendar_url IN (?, ?) LIMIT 1",
            (uid, *calendar_url_variants(calendar_url)),
        ).fetchone()
        return self._row_to_event(row) if row else None

    async def create(self, event: Event) -> Event:
        values = {name: _to_column_value(name, getattr(event, name)) for name in _columns}
        names = sorted(values)
        cursor = self._execute(
            "INSERT INTO events (%s) VALUES (%s)"
            % (", ".join(names), ", ".join("?" for _ in names)),
            [values[n] for n in names],
        )
        return event.copy(id=cursor.lastrowid)

    async def get(self, event_id: int) -> Optional[Event]:
        row = self._execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone()
        return self._row_to_event(row) if row else None

    async def list_events(
        self, start: Optional[date] = None, end: Optional[date] = None
    ) -> List[Event]:
        sql = "SELECT * FROM events WHERE 1 = 1"
        params: list = []
        if start is not None:
            sql += " AND date >= ?"
            params.append(start.isoformat())
        if end is not None:
            sql += " AND date <= ?"
            params.append(end.isoformat())
        sql += " ORDER BY date, start_time, id"
        return [self._row_to_event(r) for r in self._execute(sql, params).fetchall()]

    async def update(self, event_id: int, changes: dict) -> bool:
        if not changes:
            return False
        clause, params = self._set_clause(changes)
        cursor = self._execute(f"UPDATE events SET {clause} WHERE id = ?", (*params, event_id))
        return cursor.rowcount > 0

    async def update_by_uid(self, uid: str, calendar_url: str, changes: dict) -> bool:
        if not changes:
            return False
        clause, params = self._set_clause(changes)
        cursor = self._execute(
            f"UPDATE events SET {clause} WHERE caldav_uid = ? AND calendar_url IN (?, ?)",
            (*params, uid, *calendar_url_variants(calendar_url)),
        )
        return cursor.rowcount > 0

    async def attach_uid(self, event_id: int, uid: str, calendar_url: str) -> bool:
        """Give a UID-less event its remote UID, promoting it to a caldav event"""
        cursor = self._execute(
            "UPDATE events SET caldav_uid = ?, calendar_url = ?, source = ? WHERE id = ?",
            (uid, normalize_calendar_url(calendar_url), EventSource.CALDAV.value, event_id),
        )
        return cursor.rowcount > 0

    def _details_where(self, event: Event) -> tuple:
        title, day, start, end = event.details_key()
        sql = "title = ? AND date = ?"
        params: list = [title, day]
        for column, value in (("start_time", start), ("end_time", end)):
            if value is None:
                sql += f" AND {column} IS NULL"
            else:
                sql += f" AND {column} = ?"
                params.append(value)
        return sql, params

    async def find_by_details(self, event: Event, calendar_url: str) -> Optional[int]:
        """Id of a UID-less caldav event with the same title, date and times"""
        where, params = self._details_where(event)
        row = self._execute(
            f"SELECT id FROM events WHERE {where} AND calendar_url IN (?, ?)"
            " AND source = ? AND caldav_uid IS NULL LIMIT 1",
            (*params, *calendar_url_variants(calendar_url), EventSource.CALDAV.value),
        ).fetchone()
        return row["id"] if row else None

    async def exists_by_details(
        self, event: Event, calendar_url: Optional[str], source: EventSource = EventSource.CALDAV
    ) -> bool:
        where, params = self._details_where(event)
        sql = f"SELECT id FROM events WHERE {where} AND source = ?"
        params.append(EventSource(source).value)
        if calendar_url:
            sql += " AND calendar_url IN (?, ?)"
            params.extend(calendar_url_variants(calendar_url))
        return self._execute(sql + " LIMIT 1", params).fetchone() is not None

    async def list_caldav_events(self, calendar_url: str) -> List[Event]:
        rows = self._execute(
            "SELECT * FROM events WHERE source = ? AND calendar_url IN (?, ?) ORDER BY id",
            (EventSource.CALDAV.value, *calendar_url_variants(calendar_url)),
        ).fetchall()
        return [self._row_to_event(r) for r in rows]

    async def delete(self, event_id: int) -> bool:
        return self._execute("DELETE FROM events WHERE id = ?", (event_id,)).rowcount > 0

    async def delete_by_ids(self, ids: Iterable[int]) -> int:
        """Delete one batch of events"""
        ids = list(ids)
        if not ids:
            return 0
        cursor = self._execute(
            "DELETE FROM events WHERE id IN (%s)" % ", ".join("?" for _ in ids), ids
        )
        return cursor.rowcount

    async def delete_duplicates(self) -> int:
        """
        Remove duplicate rows, keeping the first one.  Rows with a UID are
        duplicates when UID and calendar agree, other rows when title,
        date, times, calendar and source agree.  Returns the number of
        rows removed.
        """
        rows = self._execute("SELECT * FROM events ORDER BY date, id").fetchall()
        seen = set()
        duplicates = []
        for row in rows:
            url = normalize_calendar_url(row["calendar_url"]) or ""
            if row["caldav_uid"]:
                key = ("uid", row["caldav_uid"], url)
            else:
                key = (
                    "meta",
                    row["title"],
                    row["date"],
                    row["start_time"] or "",
                    row["end_time"] or "",
                    url,
                    row["source"],
                )
            if key in seen:
                duplicates.append(row["id"])
            else:
                seen.add(key)

        deleted = 0
        for i in range(0, len(duplicates), DELETE_BATCH_SIZE):
            batch = duplicates[i : i + DELETE_BATCH_SIZE]
            try:
                deleted += await self.delete_by_ids(batch)
            except EventStoreError:
                log.error(
                    f"could not delete duplicate batch {i // DELETE_BATCH_SIZE + 1}",
                    exc_info=True,
                )
        if deleted:
            log.info(f"removed {deleted} duplicate events")
        return deleted

    async def delete_caldav_events(self) -> int:
        """Forget everything that came from CalDAV, for disconnecting an account"""
        cursor = self._execute(
            "DELETE FROM events WHERE source = ?", (EventSource.CALDAV.value,)
        )
        return cursor.rowcount
