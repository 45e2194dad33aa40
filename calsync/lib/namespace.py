#!/usr/bin/env python
from typing import Dict
from typing import Optional

nsmap: Dict[str, str] = {
    "D": "DAV:",
    "C": "urn:ietf:params:xml:ns:caldav",
}

## The apple namespace carries calendar-color.  Most servers understand
## it, but it is not declared on every request, only where the color
## property is actually asked for.
nsmap2: Dict[str, str] = nsmap.copy()
nsmap2["I"] = "http://apple.com/ns/ical/"


def ns(prefix: str, tag: Optional[str] = None) -> str:
    name = "{%s}" % nsmap2[prefix]
    if tag is not None:
        name = "%s%s" % (name, tag)
    return name
