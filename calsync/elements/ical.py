#!/usr/bin/env python
from typing import ClassVar

from .base import ValuedBaseElement
from calsync.lib.namespace import ns
from calsync.lib.namespace import nsmap2


# Properties
class CalendarColor(ValuedBaseElement):
    tag: ClassVar[str] = ns("I", "calendar-color")
    extra_nsmap = {"I": nsmap2["I"]}
