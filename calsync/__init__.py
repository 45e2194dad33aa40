#!/usr/bin/env python
import logging

__version__ = "0.3.0"

## Silence notification of no default logging handler.  Applications
## wanting sync diagnostics attach their own handler to "calsync".
log = logging.getLogger("calsync")


class NullHandler(logging.Handler):
    def emit(self, record) -> None:
        pass


log.addHandler(NullHandler())

from .davclient import AsyncCalDAVClient
from .models import CalDAVConfig
from .models import Event
from .models import SyncResult
from .sync import SyncEngine

__all__ = [
    "__version__",
    "AsyncCalDAVClient",
    "CalDAVConfig",
    "Event",
    "SyncEngine",
    "SyncResult",
]
