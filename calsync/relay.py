"""
Server side of the CalDAV relay.

Browsers cannot talk CalDAV to third-party servers (cross-origin rules),
so requests go as JSON to a relay endpoint which performs them with
:class:`calsync.davclient.AsyncCalDAVClient`.  :class:`RelayHandler`
holds everything except the HTTP framework glue:

    handler = RelayHandler(verify_token)
    response = await handler.handle_json(request_body, request.headers.get("Authorization"))
    return response.status, response.body
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Mapping
from typing import Optional

from niquests.exceptions import RequestException

from calsync.davclient import AsyncCalDAVClient
from calsync.lib import error

log = logging.getLogger(__name__)

## the supported actions, with the fields they need beyond serverUrl/username/password/action
REQUIRED_FIELDS = {
    "listCalendars": (),
    "fetchEvents": ("calendarUrl",),
    "getSyncToken": ("calendarUrl",),
    "syncCollection": ("calendarUrl", "syncToken"),
    "createEvent": ("calendarUrl", "eventData", "eventUid"),
    "updateEvent": ("calendarUrl", "eventData", "eventUid"),
    "deleteEvent": ("calendarUrl", "eventUid"),
}


@dataclass
class RelayResponse:
    status: int
    body: Any

    def json(self) -> str:
        return json.dumps(self.body)


def _error(status: int, message: str, details: Optional[str] = None) -> RelayResponse:
    body = {"error": message}
    if details is not None:
        body["details"] = details
    return RelayResponse(status, body)


def _mask(username: Optional[str]) -> str:
    if not username:
        return ""
    return username[:2] + "***"


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def default_client_factory(server_url: str, username: str, password: str) -> AsyncCalDAVClient:
    return AsyncCalDAVClient(server_url, username, password)


class RelayHandler:
    """
    Validates a relay request and runs it against the CalDAV server.

    ``verify_token`` is a coroutine function deciding whether a bearer
    token is valid; no CalDAV request is made before it says yes.
    """

    def __init__(
        self,
        verify_token: Callable[[str], Awaitable[bool]],
        client_factory: Callable[[str, str, str], Any] = default_client_factory,
    ) -> None:
        self.verify_token = verify_token
        self.client_factory = client_factory

    async def handle_json(self, body: bytes, authorization: Optional[str]) -> RelayResponse:
        try:
            payload = json.loads(body or b"null")
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            ## credentials are checked first, like for any other request
            denied = await self._check_authorization(authorization)
            return denied or _error(400, "request body must be a JSON object")
        return await self.handle(payload, authorization)

    async def _check_authorization(self, authorization: Optional[str]) -> Optional[RelayResponse]:
        if not authorization or not authorization.startswith("Bearer "):
            return _error(401, "missing bearer token")
        token = authorization[len("Bearer ") :].strip()
        try:
            valid = await self.verify_token(token)
        except Exception as err:
            log.error("token verification failed", exc_info=True)
            return _error(500, "could not verify token", str(err))
        if not valid:
            return _error(401, "invalid bearer token")
        return None

    def _validate(self, payload: Mapping[str, Any]) -> Optional[RelayResponse]:
        missing = [f for f in ("serverUrl", "username", "password", "action") if not payload.get(f)]
        if missing:
            return _error(400, "missing required fields: %s" % ", ".join(missing))
        action = payload["action"]
        if action not in REQUIRED_FIELDS:
            return _error(400, f"unsupported action {action!r}")
        missing = [f for f in REQUIRED_FIELDS[action] if not payload.get(f)]
        if missing:
            return _error(400, "%s requires %s" % (action, ", ".join(missing)))
        for field in ("startDate", "endDate"):
            try:
                _parse_date(payload.get(field))
            except (TypeError, ValueError):
                return _error(400, f"{field} is not an ISO 8601 date")
        return None

    async def handle(self, payload: Mapping[str, Any], authorization: Optional[str]) -> RelayResponse:
        denied = await self._check_authorization(authorization)
        if denied:
            return denied
        invalid = self._validate(payload)
        if invalid:
            return invalid

        action = payload["action"]
        log.info(
            f"relay {action} for {_mask(payload['username'])} at {payload['serverUrl']}"
        )
        try:
            async with self.client_factory(
                payload["serverUrl"], payload["username"], payload["password"]
            ) as client:
                body = await self._dispatch(client, action, payload)
        except error.PreconditionFailedError as err:
            return _error(412, "the event was changed on the server", str(err))
        except error.AuthorizationError as err:
            return _error(403, "the CalDAV server refused the credentials", str(err))
        except error.CalendarsNotFoundError as err:
            return _error(404, "calendars not found", str(err))
        except Exception as err:
            log.error(f"relay {action} failed", exc_info=True)
            return _error(500, str(err) or err.__class__.__name__, repr(err))
        return RelayResponse(200, body)

    async def _dispatch(self, client, action: str, payload: Mapping[str, Any]) -> Any:
        calendar_url = payload.get("calendarUrl")

        if action == "listCalendars":
            return [c.to_dict() for c in await client.list_calendars()]

        if action == "fetchEvents":
            events = await client.fetch_events(
                calendar_url,
                _parse_date(payload.get("startDate")),
                _parse_date(payload.get("endDate")),
            )
            return [e.to_dict() for e in events]

        if action == "getSyncToken":
            try:
                token = await client.get_sync_token(calendar_url)
            except (error.DAVError, RequestException) as err:
                log.warning(f"no sync token for {calendar_url}: {err}")
                token = None
            return {"syncToken": token}

        if action == "syncCollection":
            changes = await client.sync_collection(calendar_url, payload["syncToken"])
            return changes.to_dict()

        if action in ("createEvent", "updateEvent"):
            etag = await client.put_event(
                calendar_url, payload["eventUid"], payload["eventData"], payload.get("etag")
            )
            ret = {"success": True}
            if etag:
                ret["etag"] = etag
            return ret

        ## deleteEvent
        await client.delete_event(calendar_url, payload["eventUid"], payload.get("etag"))
        return {"success": True}
