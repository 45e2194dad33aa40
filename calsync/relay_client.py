"""
Client side of the CalDAV relay: the sync transport operations, sent as
JSON POST requests to a relay endpoint (see :mod:`calsync.relay`).
"""

import logging
import sys
from dataclasses import dataclass
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from types import TracebackType
from typing import Any
from typing import List
from typing import Optional
from typing import Protocol

from niquests import AsyncSession

from calsync.ics import encode_event
from calsync.ics import generate_uid
from calsync.lib import error
from calsync.models import CalDAVConfig
from calsync.models import CalendarInfo
from calsync.models import Event
from calsync.models import SyncChanges

if sys.version_info < (3, 11):
    from typing_extensions import Self
else:
    from typing import Self

log = logging.getLogger(__name__)

## refresh the session when it expires within this margin
REFRESH_MARGIN = timedelta(seconds=60)


@dataclass
class AuthSession:
    access_token: str
    expires_at: Optional[datetime] = None

    def expires_within(self, margin: timedelta) -> bool:
        if self.expires_at is None:
            return False
        return datetime.now(timezone.utc) > self.expires_at - margin


class SessionProvider(Protocol):
    """The authentication session of the application user (not CalDAV)"""

    async def get_session(self) -> Optional[AuthSession]:
        ...

    async def refresh_session(self) -> Optional[AuthSession]:
        ...


class RelayClient:
    """
    Implements the transport operations through the relay.

    A session expiring within a minute is refreshed before the request.
    A 401 from the relay is retried exactly once with a freshly refreshed
    session, after that the failure is raised.
    """

    def __init__(
        self,
        relay_url: str,
        session_provider: SessionProvider,
        config: CalDAVConfig,
        api_key: Optional[str] = None,
        timeout: Optional[int] = None,
    ) -> None:
        self.relay_url = relay_url
        self.session_provider = session_provider
        self.config = config
        self.api_key = api_key
        self.timeout = timeout
        self.session = AsyncSession()

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
        await self.session.close()

    async def _access_token(self, force_refresh: bool = False) -> str:
        session = None if force_refresh else await self.session_provider.get_session()
        if session is None or session.expires_within(REFRESH_MARGIN):
            session = await self.session_provider.refresh_session()
        if session is None or not session.access_token:
            raise error.AuthorizationError(
                url=self.relay_url, reason="no valid session, not calling the relay"
            )
        return session.access_token

    def _headers(self, token: str) -> dict:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {token}",
        }
        if self.api_key:
            headers["apikey"] = self.api_key
        return headers

    async def _invoke(self, action: str, **fields) -> Any:
        payload = {
            "serverUrl": self.config.server_url,
            "username": self.config.username,
            "password": self.config.password,
            "action": action,
        }
        payload.update({k: v for k, v in fields.items() if v is not None})

        token = await self._access_token()
        r = await self.session.post(
            self.relay_url, json=payload, headers=self._headers(token), timeout=self.timeout
        )
        if r.status_code == 401:
            log.info(f"relay answered 401 on {action}, refreshing the session once")
            token = await self._access_token(force_refresh=True)
            r = await self.session.post(
                self.relay_url, json=payload, headers=self._headers(token), timeout=self.timeout
            )

        if 200 <= r.status_code < 300:
            return r.json()

        body = r.text or ""
        log.error(f"relay {action} failed with {r.status_code}: {body[:500]}")
        if r.status_code == 412:
            raise error.PreconditionFailedError(url=self.relay_url, status=412, body=body)
        if r.status_code in (401, 403):
            raise error.AuthorizationError(
                url=self.relay_url, reason=body, status=r.status_code, body=body
            )
        if r.status_code == 404 and action == "listCalendars":
            raise error.CalendarsNotFoundError(url=self.relay_url, status=404, body=body)
        raise error.RelayError(
            url=self.relay_url,
            reason=f"relay returned {r.status_code}",
            status=r.status_code,
            body=body,
        )

    async def list_calendars(self) -> List[CalendarInfo]:
        data = await self._invoke("listCalendars")
        if not data:
            raise error.CalendarsNotFoundError(url=self.relay_url)
        return [CalendarInfo.from_dict(c) for c in data]

    async def fetch_events(
        self,
        calendar_url: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Event]:
        data = await self._invoke(
            "fetchEvents",
            calendarUrl=calendar_url,
            startDate=start.date().isoformat() if start else None,
            endDate=end.date().isoformat() if end else None,
        )
        if not isinstance(data, list):
            raise error.RelayError(url=self.relay_url, reason="fetchEvents did not return a list")
        return [Event.from_dict(e, calendar_url) for e in data]

    async def get_sync_token(self, calendar_url: str) -> Optional[str]:
        data = await self._invoke("getSyncToken", calendarUrl=calendar_url)
        return (data or {}).get("syncToken") or None

    async def sync_collection(self, calendar_url: str, sync_token: str) -> SyncChanges:
        data = await self._invoke("syncCollection", calendarUrl=calendar_url, syncToken=sync_token)
        return SyncChanges.from_dict(data or {}, calendar_url)

    async def put_event(
        self, calendar_url: str, uid: str, ics: str, etag: Optional[str] = None
    ) -> Optional[str]:
        data = await self._invoke(
            "updateEvent" if etag else "createEvent",
            calendarUrl=calendar_url,
            eventUid=uid,
            eventData=ics,
            etag=etag,
        )
        return (data or {}).get("etag")

    async def delete_event(self, calendar_url: str, uid: str, etag: Optional[str] = None) -> None:
        await self._invoke("deleteEvent", calendarUrl=calendar_url, eventUid=uid, etag=etag)

    async def create_event(self, calendar_url: str, event: Event) -> Event:
        """
        Create the event remotely.  The UID is fixed before encoding so the
        resource name and the UID inside the ics agree.
        """
        uid = event.caldav_uid or generate_uid()
        etag = await self.put_event(calendar_url, uid, encode_event(event, uid=uid))
        return event.copy(caldav_uid=uid, calendar_url=calendar_url, etag=etag)

    async def update_event(
        self, calendar_url: str, uid: str, event: Event, etag: Optional[str] = None
    ) -> Optional[str]:
        """Overwrite the event, conditionally when an etag is given"""
        return await self.put_event(calendar_url, uid, encode_event(event, uid=uid), etag)

    async def delete_remote_event(
        self, calendar_url: str, uid: str, etag: Optional[str] = None
    ) -> None:
        await self.delete_event(calendar_url, uid, etag)
