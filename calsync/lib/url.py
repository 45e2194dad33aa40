#!/usr/bin/env python
"""
Calendar URL helpers.

Calendar URLs are stored without trailing slashes.  Older records may
carry the trailing-slash form, so every lookup against the event store
has to accept both variants.
"""
from typing import List
from typing import Optional
from urllib.parse import urljoin
from urllib.parse import urlparse


def normalize_calendar_url(url: Optional[str]) -> Optional[str]:
    if url is None:
        return None
    return url.rstrip("/")


def calendar_url_variants(url: str) -> List[str]:
    """Both the normalized and the trailing-slash form of a calendar URL"""
    normalized = normalize_calendar_url(url)
    return [normalized, normalized + "/"]


def resource_url(calendar_url: str, uid: str) -> str:
    """
    URL of the ``<uid>.ics`` resource inside a calendar collection.

    A uid that already carries the ``.ics`` suffix is not suffixed twice.
    """
    name = uid if uid.endswith(".ics") else uid + ".ics"
    return "%s/%s" % (normalize_calendar_url(calendar_url), name)


def absolute_url(base: str, href: str) -> str:
    """
    Resolve an href from a multistatus response against the calendar URL.

    The base is treated as a collection, so relative hrefs land inside it.
    """
    if not base.endswith("/"):
        base = base + "/"
    return urljoin(base, href)


def url_path(url: str) -> str:
    return urlparse(url).path or "/"


def same_resource(a: str, b: str) -> bool:
    """True if the two URLs (or paths) point at the same collection"""
    return normalize_calendar_url(url_path(a)) == normalize_calendar_url(url_path(b))
