"""
The sync engine: one pass over the selected calendars of an account,
bringing the local event store in line with the CalDAV server.

Per calendar the pass

1. picks a strategy: sync-collection when a token is stored, otherwise
   (or when that fails or reports removals) a full fetch of one year back
   and one year ahead;
2. reconciles every remote event against the store (create, diff-update
   or skip, never re-create);
3. after a full fetch only, deletes local caldav events that are no longer
   on the server, behind the empty-fetch and runaway-deletion guards;
4. stores the new sync token.

Calendars are handled one after another; a failing calendar is logged and
the pass moves on.
"""

import asyncio
import logging
from datetime import datetime
from datetime import timezone
from typing import Dict
from typing import List
from typing import Mapping
from typing import Optional
from typing import Protocol
from typing import Set

from niquests.exceptions import RequestException

from calsync.ics import encode_event
from calsync.ics import generate_uid
from calsync.lib.error import DAVError
from calsync.lib.error import EventStoreError
from calsync.lib.url import normalize_calendar_url
from calsync.models import LOCAL_CALENDAR_PREFIX
from calsync.models import CalDAVConfig
from calsync.models import CalendarMetadata
from calsync.models import Event
from calsync.models import EventSource
from calsync.models import SyncChanges
from calsync.models import SyncResult
from calsync.state import SyncTokenStore
from calsync.store import DELETE_BATCH_SIZE
from calsync.store import EventStore

log = logging.getLogger(__name__)

## fields compared between a stored event and its remote version
TRACKED_FIELDS = ("title", "date", "memo", "start_time", "end_time", "color")

## runaway-deletion guard: (minimum existing events, share of them)
ABORT_DELETION = (10, 0.9)
WARN_DELETION = (5, 0.8)

_transport_errors = (DAVError, RequestException)

CREATED = "created"
UPDATED = "updated"
SKIPPED = "skipped"


class CalDAVTransport(Protocol):
    """
    The remote side of a sync.  Implemented by
    :class:`calsync.davclient.AsyncCalDAVClient` (direct) and
    :class:`calsync.relay_client.RelayClient` (through the relay).
    """

    async def fetch_events(
        self,
        calendar_url: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Event]:
        ...

    async def get_sync_token(self, calendar_url: str) -> Optional[str]:
        ...

    async def sync_collection(self, calendar_url: str, sync_token: str) -> SyncChanges:
        ...

    async def put_event(
        self, calendar_url: str, uid: str, ics: str, etag: Optional[str] = None
    ) -> Optional[str]:
        ...

    async def delete_event(self, calendar_url: str, uid: str, etag: Optional[str] = None) -> None:
        ...


def _shift_years(ts: datetime, years: int) -> datetime:
    try:
        return ts.replace(year=ts.year + years)
    except ValueError:
        ## february 29th
        return ts.replace(year=ts.year + years, day=28)


def _diff(existing: Event, remote: Event) -> dict:
    changes = {}
    for name in TRACKED_FIELDS:
        old = getattr(existing, name)
        new = getattr(remote, name)
        if name == "memo":
            old = old or None
            new = new or None
        if old != new:
            changes[name] = new
    return changes


class SyncEngine:
    """
    Syncs the calendars of one CalDAV account into an event store.

    Only one pass runs at a time per engine.  A call to :meth:`sync` while
    a pass is running returns at once with ``in_flight`` set and nothing
    done; it is dropped, not queued.  Use one engine per account so that
    different accounts can sync side by side.
    """

    def __init__(
        self,
        transport: CalDAVTransport,
        store: EventStore,
        token_store: SyncTokenStore,
        config: CalDAVConfig,
        metadata: Optional[Mapping[str, CalendarMetadata]] = None,
    ) -> None:
        self.transport = transport
        self.store = store
        self.token_store = token_store
        self.config = config
        self.metadata = metadata if metadata is not None else {}
        self._lock = asyncio.Lock()

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    def _syncable(self, calendar_url: str) -> bool:
        if calendar_url.startswith(LOCAL_CALENDAR_PREFIX):
            return False
        metadata = self.metadata.get(calendar_url)
        return metadata is None or metadata.syncable

    async def sync(self, calendar_urls: Optional[List[str]] = None) -> SyncResult:
        """
        One pass over ``calendar_urls`` (default: the selected calendars
        of the config).

        Returns the combined :class:`SyncResult`.  ``result.synced`` is
        the number of created and updated events, ``result.state_changed``
        tells that events were deleted.
        """
        if self._lock.locked():
            log.info("sync already in progress, skipping this call")
            return SyncResult(in_flight=True)

        async with self._lock:
            server_url = self.config.server_url
            username = self.config.username
            tokens = self.token_store.load(server_url, username)
            result = SyncResult()

            if calendar_urls is None:
                calendar_urls = self.config.selected_calendar_urls

            for raw_url in calendar_urls:
                calendar_url = normalize_calendar_url(raw_url)
                if not self._syncable(calendar_url):
                    log.debug(f"{calendar_url} is not a CalDAV calendar, not syncing it")
                    continue
                try:
                    result += await self._sync_calendar(calendar_url, tokens)
                except Exception:
                    log.error(f"sync of calendar {calendar_url} failed", exc_info=True)
                    result.errors += 1

            self.token_store.save(server_url, username, tokens)
            self.config.last_sync_at = datetime.now(timezone.utc)
            log.info(
                f"sync done: {result.created} created, {result.updated} updated, "
                f"{result.deleted} deleted, {result.skipped} unchanged, {result.errors} errors"
            )
            return result

    async def _sync_calendar(self, calendar_url: str, tokens: Dict[str, str]) -> SyncResult:
        changes: Optional[SyncChanges] = None
        token = tokens.get(calendar_url)
        if token:
            try:
                changes = await self.transport.sync_collection(calendar_url, token)
            except _transport_errors as err:
                log.warning(f"sync-collection failed for {calendar_url}, doing a full fetch: {err}")
                changes = None
            if changes is not None and changes.has_deletions:
                log.info(f"{calendar_url} reports removed events, doing a full fetch")
                changes = None

        full_fetch = changes is None
        if full_fetch:
            now = datetime.now(timezone.utc)
            events = await self.transport.fetch_events(
                calendar_url, _shift_years(now, -1), _shift_years(now, 1)
            )
        else:
            events = changes.events

        result = SyncResult()
        seen_uids: Set[str] = set()
        for remote in events:
            if remote.caldav_uid:
                if remote.caldav_uid in seen_uids:
                    log.debug(f"{calendar_url}: uid {remote.caldav_uid} listed twice, keeping the first")
                    continue
                seen_uids.add(remote.caldav_uid)
            try:
                outcome = await self._reconcile(remote, calendar_url)
            except EventStoreError as err:
                log.warning(f"could not store remote event {remote.caldav_uid or remote.title!r}: {err}")
                result.errors += 1
                continue
            setattr(result, outcome, getattr(result, outcome) + 1)

        log.debug(
            f"{calendar_url}: {result.created} created, {result.updated} updated, {result.skipped} unchanged"
        )

        if full_fetch:
            result.deleted = await self._delete_removed(calendar_url, events, seen_uids)

        if changes is not None and changes.sync_token:
            tokens[calendar_url] = changes.sync_token
        elif full_fetch:
            try:
                new_token = await self.transport.get_sync_token(calendar_url)
            except _transport_errors as err:
                log.warning(f"could not get a sync token for {calendar_url}: {err}")
                new_token = None
            if new_token:
                tokens[calendar_url] = new_token

        return result

    async def _reconcile(self, remote: Event, calendar_url: str) -> str:
        remote = remote.copy(calendar_url=calendar_url, source=EventSource.CALDAV, id=None)
        uid = remote.caldav_uid

        if not uid:
            if await self.store.exists_by_details(remote, calendar_url, EventSource.CALDAV):
                return SKIPPED
            await self.store.create(remote)
            return CREATED

        existing = await self.store.get_by_uid(uid, calendar_url)
        if existing is not None:
            changes = _diff(existing, remote)
            if changes:
                if remote.etag:
                    changes["etag"] = remote.etag
                await self.store.update_by_uid(uid, calendar_url, changes)
                return UPDATED
            if remote.etag and remote.etag != existing.etag:
                await self.store.update_by_uid(uid, calendar_url, {"etag": remote.etag})
            return SKIPPED

        legacy_id = await self.store.find_by_details(remote, calendar_url)
        if legacy_id is not None:
            log.debug(f"attaching uid {uid} to event {legacy_id}")
            await self.store.attach_uid(legacy_id, uid, calendar_url)
            if remote.etag:
                await self.store.update(legacy_id, {"etag": remote.etag})
            return SKIPPED

        await self.store.create(remote)
        return CREATED

    async def _delete_removed(
        self, calendar_url: str, remote_events: List[Event], seen_uids: Set[str]
    ) -> int:
        if not remote_events and not seen_uids:
            log.warning(
                f"full fetch of {calendar_url} returned no events, not looking for deletions"
            )
            return 0

        existing = await self.store.list_caldav_events(calendar_url)
        remote_keys = {e.details_key() for e in remote_events}
        to_delete = [
            e.id
            for e in existing
            if (e.caldav_uid and e.caldav_uid not in seen_uids)
            or (not e.caldav_uid and e.details_key() not in remote_keys)
        ]
        if not to_delete:
            return 0

        total = len(existing)
        if total >= ABORT_DELETION[0] and len(to_delete) > total * ABORT_DELETION[1]:
            log.warning(
                f"{calendar_url}: {len(to_delete)} of {total} events would be deleted, "
                f"not deleting anything ({len(remote_events)} remote events, {len(seen_uids)} uids)"
            )
            return 0
        if total >= WARN_DELETION[0] and len(to_delete) > total * WARN_DELETION[1]:
            log.warning(f"{calendar_url}: deleting {len(to_delete)} of {total} events")

        deleted = 0
        for i in range(0, len(to_delete), DELETE_BATCH_SIZE):
            batch = to_delete[i : i + DELETE_BATCH_SIZE]
            try:
                deleted += await self.store.delete_by_ids(batch)
            except EventStoreError:
                log.error(
                    f"{calendar_url}: could not delete batch {i // DELETE_BATCH_SIZE + 1}",
                    exc_info=True,
                )
        log.info(f"{calendar_url}: {deleted} events removed on the server were deleted")
        return deleted

    ## local changes going out

    async def push_event(self, event: Event, calendar_url: Optional[str] = None) -> Event:
        """
        Write a locally created or edited event to its calendar.

        An event without UID gets one and is promoted to a caldav event.
        An event with UID and etag is written conditionally, a remote
        change in between raises PreconditionFailedError.
        """
        calendar_url = normalize_calendar_url(calendar_url or event.calendar_url)
        if not calendar_url:
            raise ValueError("event has no calendar to be written to")

        uid = event.caldav_uid or generate_uid()
        etag = event.etag if event.caldav_uid else None
        new_etag = await self.transport.put_event(
            calendar_url, uid, encode_event(event, uid=uid), etag
        )

        if event.id is not None:
            if not event.caldav_uid or event.calendar_url != calendar_url:
                await self.store.attach_uid(event.id, uid, calendar_url)
            if new_etag:
                await self.store.update(event.id, {"etag": new_etag})

        return event.copy(
            caldav_uid=uid,
            calendar_url=calendar_url,
            source=EventSource.CALDAV,
            etag=new_etag or event.etag,
        )

    async def delete_event(self, event: Event) -> None:
        """
        Delete an event locally and, when it lives on the server, remotely.
        The remote delete goes first so that a refused delete keeps the
        local copy.
        """
        if event.caldav_uid and event.calendar_url:
            await self.transport.delete_event(event.calendar_url, event.caldav_uid, event.etag)
        if event.id is not None:
            await self.store.delete(event.id)

    async def reset(self) -> int:
        """Forget the sync tokens and every event that came from CalDAV"""
        async with self._lock:
            self.token_store.save(self.config.server_url, self.config.username, {})
            return await self.store.delete_caldav_events()
