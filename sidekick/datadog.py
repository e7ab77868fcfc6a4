"""Datadog output: sends events to the Datadog event API."""

from __future__ import annotations

import logging
from typing import Any

from sidekick.client import Client, OutputError
from sidekick.constants import ERROR, INFO, OK, TOTAL, WARNING
from sidekick.payload import FalcoPayload, Priority

logger = logging.getLogger(__name__)

DESTINATION = "datadog"
DATADOG_PATH = "/api/v1/events"

_ERROR_PRIORITIES = frozenset(
    {Priority.EMERGENCY, Priority.ALERT, Priority.CRITICAL, Priority.ERROR}
)


def new_datadog_payload(falcopayload: FalcoPayload) -> dict[str, Any]:
    """Build a Datadog event; empty values are left out."""
    tags = [
        f"{name}:{value}"
        for name, value in falcopayload.output_fields.items()
        if isinstance(value, str)
    ]

    if falcopayload.priority in _ERROR_PRIORITIES:
        alert_type = ERROR
    elif falcopayload.priority is Priority.WARNING:
        alert_type = WARNING
    else:
        alert_type = INFO

    payload = {
        "title": falcopayload.rule,
        "text": falcopayload.output,
        "alert_type": alert_type,
        "source_type_name": "falco",
        "tags": tags,
    }
    return {key: value for key, value in payload.items() if value}


def datadog_post(client: Client, falcopayload: FalcoPayload) -> None:
    """Send an event to Datadog, counting the outcome."""
    client.record(DESTINATION, TOTAL)
    try:
        client.post(new_datadog_payload(falcopayload))
    except OutputError as exc:
        client.record(DESTINATION, ERROR)
        logger.error("Datadog - %s", exc)
        return
    client.record(DESTINATION, OK)