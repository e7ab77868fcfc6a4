"""Falco events: priorities, decoding and serialisation."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import IntEnum
from typing import Any, Mapping


class Priority(IntEnum):
    """Falco priority levels, ordered from least to most severe."""

    DEFAULT = 0
    DEBUG = 1
    INFORMATIONAL = 2
    NOTICE = 3
    WARNING = 4
    ERROR = 5
    CRITICAL = 6
    ALERT = 7
    EMERGENCY = 8

    def __str__(self) -> str:
        if self is Priority.DEFAULT:
            return ""
        return self.name.capitalize()


_PRIORITY_BY_NAME = {
    "emergency": Priority.EMERGENCY,
    "alert": Priority.ALERT,
    "critical": Priority.CRITICAL,
    "error": Priority.ERROR,
    "warning": Priority.WARNING,
    "notice": Priority.NOTICE,
    "informational": Priority.INFORMATIONAL,
    "info": Priority.INFORMATIONAL,
    "debug": Priority.DEBUG,
}


def parse_priority(value: str | None) -> Priority:
    """Return the priority named by ``value`` (case-insensitive), or DEFAULT."""
    if not value:
        return Priority.DEFAULT
    return _PRIORITY_BY_NAME.get(value.strip().lower(), Priority.DEFAULT)


ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

_RFC3339 = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})$"
)


def _parse_time(value: str) -> datetime:
    match = _RFC3339.match(value)
    if match is None:
        raise ValueError(f"invalid RFC 3339 time: {value!r}")
    year, month, day, hour, minute, second, fraction, zone = match.groups()
    micro = int((fraction or "").ljust(6, "0")[:6])
    if zone in ("Z", "z"):
        tz = timezone.utc
    else:
        sign = -1 if zone[0] == "-" else 1
        hours, minutes = int(zone[1:3]), int(zone[4:6])
        tz = timezone(sign * timedelta(hours=hours, minutes=minutes))
    return datetime(
        int(year), int(month), int(day), int(hour), int(minute), int(second), micro, tzinfo=tz
    )


def _format_time(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    text = (
        f"{moment.year:04d}-{moment.month:02d}-{moment.day:02d}"
        f"T{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d}"
    )
    fraction = f"{moment.microsecond:06d}".rstrip("0")
    if fraction:
        text += "." + fraction
    offset = moment.utcoffset() or timedelta(0)
    if offset == timedelta(0):
        return text + "Z"
    sign = "-" if offset < timedelta(0) else "+"
    minutes = abs(int(offset.total_seconds())) // 60
    return f"{text}{sign}{minutes // 60:02d}:{minutes % 60:02d}"


@dataclass
class FalcoPayload:
    """One event as sent by Falco."""

    output: str = ""
    priority: Priority = Priority.DEFAULT
    rule: str = ""
    time: datetime = ZERO_TIME
    output_fields: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Return the event as a JSON-ready dictionary."""
        return {
            "output": self.output,
            "priority": str(self.priority),
            "rule": self.rule,
            "time": _format_time(self.time),
            "output_fields": dict(self.output_fields),
        }

    def to_json(self) -> str:
        """Return the event serialised as compact JSON."""
        return json.dumps(self.to_dict(), separators=(",", ":"))


def _expect_str(document: Mapping[str, Any], key: str) -> str:
    value = document.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {key!r} must be a string")
    return value


def decode_payload(data: Any, customfields: Mapping[str, str] | None = None) -> FalcoPayload:
    """Decode a Falco event from JSON text, bytes or a readable object.

    Custom fields are merged into the event's output fields.
    Raises ValueError when the document is not a valid event.
    """
    if hasattr(data, "read"):
        data = data.read()
    if isinstance(data, (bytes, bytearray)):
        data = data.decode("utf-8")
    document = json.loads(data)
    if not isinstance(document, dict):
        raise ValueError("event must be a JSON object")

    raw_time = document.get("time")
    if raw_time is None:
        moment = ZERO_TIME
    elif isinstance(raw_time, str):
        moment = _parse_time(raw_time)
    else:
        raise ValueError("field 'time' must be a string")

    raw_fields = document.get("output_fields")
    if raw_fields is None:
        output_fields: dict[str, Any] = {}
    elif isinstance(raw_fields, dict):
        output_fields = dict(raw_fields)
    else:
        raise ValueError("field 'output_fields' must be an object")

    if customfields:
        output_fields.update(customfields)

    return FalcoPayload(
        output=_expect_str(document, "output"),
        priority=parse_priority(_expect_str(document, "priority")),
        rule=_expect_str(document, "rule"),
        time=moment,
        output_fields=output_fields,
    )