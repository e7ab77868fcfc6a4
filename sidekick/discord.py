"""Discord output: posts events as embeds to a Discord webhook."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sidekick.client import Client, OutputError
from sidekick.constants import DEFAULT_ICON_URL, ERROR, OK, PRIORITY, RULE, TIME, TOTAL
from sidekick.payload import FalcoPayload, Priority

logger = logging.getLogger(__name__)

DESTINATION = "discord"

_COLORS = {
    Priority.EMERGENCY: "15158332",  # red
    Priority.ALERT: "11027200",  # dark orange
    Priority.CRITICAL: "15105570",  # orange
    Priority.ERROR: "15844367",  # gold
    Priority.WARNING: "12745742",  # dark gold
    Priority.NOTICE: "3066993",  # teal
    Priority.INFORMATIONAL: "3447003",  # blue
    Priority.DEBUG: "12370112",  # light grey
}


def _time_string(moment: datetime) -> str:
    """Format a time as ``2006-01-02 15:04:05.999999 -0700 MST``."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    text = (
        f"{moment.year:04d}-{moment.month:02d}-{moment.day:02d} "
        f"{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d}"
    )
    fraction = f"{moment.microsecond:06d}".rstrip("0")
    if fraction:
        text += "." + fraction
    offset = moment.utcoffset() or timedelta(0)
    sign = "-" if offset < timedelta(0) else "+"
    minutes = abs(int(offset.total_seconds())) // 60
    numeric = f"{sign}{minutes // 60:02d}{minutes % 60:02d}"
    zone = "UTC" if offset == timedelta(0) else numeric
    return f"{text} {numeric} {zone}"


def _icon(config: Any) -> str:
    try:
        icon = config.discord.icon
    except (AttributeError, KeyError):
        icon = ""
    return icon or DEFAULT_ICON_URL


def _field(name: str, value: str) -> dict[str, Any]:
    return {"name": name, "value": value, "inline": True}


def new_discord_payload(falcopayload: FalcoPayload, config: Any) -> dict[str, Any]:
    """Build the webhook message for one event."""
    fields = [
        _field(name, f"```{value}```")
        for name, value in falcopayload.output_fields.items()
        if isinstance(value, str)
    ]
    fields.append(_field(RULE, falcopayload.rule))
    fields.append(_field(PRIORITY, str(falcopayload.priority)))
    fields.append(_field(TIME, _time_string(falcopayload.time)))

    embed = {
        "title": "",
        "url": "",
        "description": falcopayload.output,
        "color": _COLORS.get(falcopayload.priority, ""),
        "fields": fields,
    }
    return {"content": "", "avatar_url": _icon(config), "embeds": [embed]}


def discord_post(client: Client, falcopayload: FalcoPayload) -> None:
    """Send an event to Discord, counting the outcome."""
    client.record(DESTINATION, TOTAL)
    try:
        client.post(new_discord_payload(falcopayload, client.config))
    except OutputError as exc:
        client.record(DESTINATION, ERROR)
        logger.error("Discord - %s", exc)
        return
    client.record(DESTINATION, OK)