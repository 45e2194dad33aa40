#!/usr/bin/env python
import logging
import os
from collections import defaultdict
from typing import Dict
from typing import Optional

from calsync import __version__

## Environment variables prepended with "PYTHON_CALSYNC" are for debugging,
## environment variables prepended with "CALSYNC_" carry connection settings.
## One of DEBUG_PDB, DEBUG, DEVELOPMENT, PRODUCTION
debugmode = os.environ.get("PYTHON_CALSYNC_DEBUGMODE")
if not debugmode:
    if "dev" in __version__:
        debugmode = "DEVELOPMENT"
    else:
        debugmode = "PRODUCTION"

log = logging.getLogger("calsync")
if debugmode.startswith("DEBUG"):
    log.setLevel(logging.DEBUG)
else:
    log.setLevel(logging.WARNING)


def weirdness(*reasons) -> None:
    reason = " : ".join(str(x) for x in reasons)
    log.warning(f"Deviation from expectations found: {reason}")
    if debugmode == "DEBUG_PDB":
        log.error(f"Dropping into debugger due to {reason}")
        import pdb

        pdb.set_trace()


class DAVError(Exception):
    url: Optional[str] = None
    reason: str = "no reason"
    status: Optional[int] = None
    body: Optional[str] = None

    def __init__(
        self,
        url: Optional[str] = None,
        reason: Optional[str] = None,
        status: Optional[int] = None,
        body: Optional[str] = None,
    ) -> None:
        if url:
            self.url = url
        if reason:
            self.reason = reason
        if status is not None:
            self.status = status
        if body is not None:
            self.body = body

    def __str__(self) -> str:
        ret = "%s at '%s', reason %s" % (
            self.__class__.__name__,
            self.url,
            self.reason,
        )
        if self.status is not None:
            ret += " (status %s)" % self.status
        return ret


class AuthorizationError(DAVError):
    """
    The server (or the relay) refused the credentials.  Terminal for
    the calendar being worked on, other calendars are still attempted.
    """

    pass


class PropfindError(DAVError):
    pass


class ReportError(DAVError):
    pass


class PutError(DAVError):
    pass


class DeleteError(DAVError):
    pass


class GetError(DAVError):
    pass


class NotFoundError(DAVError):
    pass


class PreconditionFailedError(DAVError):
    """
    A conditional write (If-Match) was rejected with 412 because the
    remote resource changed since it was last read.  Never swallowed,
    callers have to re-read and decide.
    """

    reason = "precondition failed"


class CalendarsNotFoundError(DAVError):
    reason = "calendars not found"


class RelayError(DAVError):
    pass


class EventStoreError(Exception):
    pass


class ConfigError(Exception):
    pass


exception_by_method: Dict[str, type] = defaultdict(lambda: DAVError)
for method in (
    "delete",
    "put",
    "get",
    "report",
    "propfind",
):
    exception_by_method[method] = locals()[method[0].upper() + method[1:] + "Error"]
