"""Build a single-event iCalendar (VEVENT) document.

Basic usage:

    event = EventRecord({"summary": "Launch", "dtstart": "now + 1 hour"})
    event.set("location", "HQ")
    text = event.render()

Start and end times accept a datetime/date or a text expression such as
"now", "now + 1 hour", "30 minutes", "next monday + 9 hours" or
"2017-02-08 10:00:00".
"""
import datetime
import logging
import os
import re
import time

from dateutil import parser
from dateutil.relativedelta import relativedelta, MO, TU, WE, TH, FR, SA, SU
from dateutil.tz import gettz


DT_FORMAT = "%Y%m%dT%H%M%S"
DEFAULT_TZID = "America/Mexico_City"

ALLOWED_KEYS = (
    "description",
    "dtend",
    "dtstart",
    "location",
    "summary",
    "url",
    "alarm",
    "organizer",
    "attendee",
)
TIME_KEYS = ("dtstart", "dtend")

HEADER = (
    "BEGIN:VCALENDAR",
    "VERSION:2.0",
    "PRODID:-//hacksw/handcal//NONSGML v1.0//EN",
    "CALSCALE:GREGORIAN",
    "BEGIN:VEVENT",
)
FOOTER = (
    "END:VEVENT",
    "END:VCALENDAR",
)

_UNIT_PATTERN = r"(sec|second|min|minute|hour|day|week|fortnight|month|year)s?"
# An unsigned offset counts as positive
_OFFSET_RE = re.compile(r"(?:^|\s|(?<=[a-z]))\s*([+-]?)\s*(\d+)\s*" + _UNIT_PATTERN + r"\s*$")
_STEP_RE = re.compile(r"^(next|last)\s+" + _UNIT_PATTERN + r"$")
_WEEKDAY_RE = re.compile(r"^(next|last)\s+(monday|tuesday|wednesday|thursday|friday|saturday|sunday)$")
_WEEKDAYS = {
    "monday": MO,
    "tuesday": TU,
    "wednesday": WE,
    "thursday": TH,
    "friday": FR,
    "saturday": SA,
    "sunday": SU,
}
_OFFSET_UNITS = {
    "sec": ("seconds", 1),
    "second": ("seconds", 1),
    "min": ("minutes", 1),
    "minute": ("minutes", 1),
    "hour": ("hours", 1),
    "day": ("days", 1),
    "week": ("weeks", 1),
    "fortnight": ("weeks", 2),
    "month": ("months", 1),
    "year": ("years", 1),
}
_ESCAPE_RE = re.compile(r"([,;])")


class ICSError(Exception):
    def __init__(self, message, code=0):
        super().__init__(message)
        self.message = message
        self.code = code


class MissingStartTimeError(ICSError):
    def __init__(self, message="Event has no start time (dtstart)", code=1):
        super().__init__(message, code)


class InvalidTimeExpressionError(ICSError, ValueError):
    pass


def escape_text(value):
    """Backslash-escape commas and semicolons."""
    if not isinstance(value, str):
        raise TypeError(f"Expected text, got {type(value).__name__}")
    return _ESCAPE_RE.sub(r"\\\1", value)


def make_uid():
    # Nanosecond clock plus random bits, no shared state between calls
    return f"{time.time_ns():x}{os.urandom(8).hex()}"


class EventRecord:
    def __init__(self, props=None, tzid=DEFAULT_TZID):
        self.tzid = tzid
        self.tz = gettz(tzid)
        if self.tz is None:
            raise ValueError(f"Unknown time zone '{tzid}'")
        self._properties = {}
        if props:
            self.set_many(props)

    @property
    def properties(self):
        return dict(self._properties)

    def set(self, key, value):
        if key not in ALLOWED_KEYS:
            logging.debug(f"Ignoring unknown event property '{key}'")
            return
        self._properties[key] = self.sanitize(key, value)

    def set_many(self, props):
        for key, value in props.items():
            self.set(key, value)

    def sanitize(self, key, value):
        if key in TIME_KEYS:
            return self.format_timestamp(value)
        return escape_text(value)

    def now(self):
        return datetime.datetime.now(self.tz)

    def format_timestamp(self, value):
        return self.resolve_time(value).strftime(DT_FORMAT)

    def resolve_time(self, value):
        """Turn a datetime, date or time expression into a datetime in the record's zone.

        ``None`` and the empty string mean now. Text is an optional base (now,
        today, midnight, noon, tomorrow, yesterday, next/last <weekday>,
        next/last <unit>, or an absolute date) followed by any number of
        offsets such as "+1 week 2 days" or "- 30 minutes".
        """
        if value is None:
            value = ""
        if isinstance(value, datetime.datetime):
            if value.tzinfo is not None:
                return value.astimezone(self.tz)
            return value
        if isinstance(value, datetime.date):
            return datetime.datetime.combine(value, datetime.time.min)
        if not isinstance(value, str):
            raise InvalidTimeExpressionError(
                f"Cannot interpret {value!r} as a point in time"
            )

        text = value.strip().lower()
        offset = relativedelta()
        match = _OFFSET_RE.search(text)
        while match:
            sign, amount, unit = match.groups()
            field, factor = _OFFSET_UNITS[unit]
            delta = relativedelta(**{field: int(amount) * factor})
            offset = offset - delta if sign == "-" else offset + delta
            text = text[:match.start()]
            match = _OFFSET_RE.search(text)
        text = text.strip()

        now = self.now()
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        step = _STEP_RE.match(text)
        weekday = _WEEKDAY_RE.match(text)
        if text in ("", "now"):
            base = now
        elif text in ("today", "midnight"):
            base = midnight
        elif text == "noon":
            base = midnight + relativedelta(hours=12)
        elif text == "tomorrow":
            base = midnight + relativedelta(days=1)
        elif text == "yesterday":
            base = midnight - relativedelta(days=1)
        elif weekday:
            direction, name = weekday.groups()
            if direction == "next":
                base = midnight + relativedelta(days=1, weekday=_WEEKDAYS[name](+1))
            else:
                base = midnight - relativedelta(days=1, weekday=_WEEKDAYS[name](-1))
        elif step:
            direction, unit = step.groups()
            field, factor = _OFFSET_UNITS[unit]
            delta = relativedelta(**{field: factor})
            base = now + delta if direction == "next" else now - delta
        else:
            try:
                base = parser.parse(text, default=midnight.replace(tzinfo=None))
            except (ValueError, OverflowError) as ex:
                raise InvalidTimeExpressionError(
                    f"Cannot interpret {value!r} as a point in time"
                ) from ex
            if base.tzinfo is not None:
                base = base.astimezone(self.tz)
        try:
            return base + offset
        except (ValueError, OverflowError) as ex:
            raise InvalidTimeExpressionError(
                f"Time expression {value!r} is out of range"
            ) from ex

    def calendar_key(self, key):
        if key == "url":
            return "URL;VALUE=URI"
        if key in TIME_KEYS:
            return f"{key.upper()};TZID={self.tzid}"
        if key == "organizer":
            return "ORGANIZER:mailto"
        return key.upper()

    def build_lines(self):
        lines = list(HEADER)

        props = [(self.calendar_key(k), v) for k, v in self._properties.items()]
        props.append(("DTSTAMP", self.now().strftime(DT_FORMAT)))
        props.append(("UID", make_uid()))

        for k, v in props:
            if k != "ALARM":
                lines.append(f"{k}:{v}")

        if "alarm" in self._properties:
            lines.extend([
                "BEGIN:VALARM",
                f"TRIGGER:-PT{self._properties['alarm']}",
                "ACTION:DISPLAY",
                "END:VALARM",
            ])

        lines.extend(FOOTER)
        return lines

    def render(self):
        return "\r\n".join(self.build_lines())

    def __str__(self):
        return self.render()

    def emit_as_download(self, response, filename="ical.ics", charset="utf-8"):
        """Write the event to an HTTP response as a file attachment.

        ``response`` needs a ``headers`` mapping and a ``write`` method.
        """
        if "dtstart" not in self._properties:
            raise MissingStartTimeError()
        body = self.render()
        response.headers["Content-type"] = f"text/calendar; charset={charset}"
        response.headers["Content-Disposition"] = f"attachment; filename={filename}"
        response.write(body)
        logging.info(f"Sent {filename} ({len(body)} characters)")
