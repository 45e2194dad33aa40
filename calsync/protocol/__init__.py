"""
Sans-I/O CalDAV protocol layer.

Builds request bodies and parses response bodies as pure data
transformations; the I/O lives in :mod:`calsync.davclient`.

- types: Core data structures (DAVResponse, result types)
- xml_builders: Pure functions to build XML request bodies
- xml_parsers: Pure functions to parse XML response bodies
"""

from .types import (
    CalendarQueryResult,
    DAVResponse,
    MultistatusResponse,
    PropfindResult,
    SyncCollectionResult,
)
from .xml_builders import (
    build_calendar_query_body,
    build_propfind_body,
    build_sync_collection_body,
)
from .xml_parsers import (
    parse_calendar_color,
    parse_calendar_home_set,
    parse_calendar_list,
    parse_calendar_query_response,
    parse_current_user_principal,
    parse_multistatus,
    parse_sync_collection_response,
    parse_sync_token,
)

__all__ = [
    "CalendarQueryResult",
    "DAVResponse",
    "MultistatusResponse",
    "PropfindResult",
    "SyncCollectionResult",
    "build_calendar_query_body",
    "build_propfind_body",
    "build_sync_collection_body",
    "parse_calendar_color",
    "parse_calendar_home_set",
    "parse_calendar_list",
    "parse_calendar_query_response",
    "parse_current_user_principal",
    "parse_multistatus",
    "parse_sync_collection_response",
    "parse_sync_token",
]
