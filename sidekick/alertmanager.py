"""Alertmanager output: turns events into alerts."""

from __future__ import annotations

import logging
import re
from typing import Any

from sidekick.client import Client, OutputError
from sidekick.constants import ERROR, OK, TOTAL
from sidekick.payload import FalcoPayload, Priority

logger = logging.getLogger(__name__)

DESTINATION = "alertmanager"

# Alertmanager does not accept these characters in label names.
_LABEL_NAME = str.maketrans({".": "_", "[": "_", "]": None})
_INTEGER = re.compile(r"[+-]?\d+")


def _parse_drops(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and _INTEGER.fullmatch(value):
        return int(value)
    return None


def _drop_bucket(drops: int, raw: str) -> tuple[str, Priority]:
    """Reduce the cardinality of a syscall drop counter."""
    if drops == 0:
        return "0", Priority.WARNING
    if drops < 10:
        return "<10", Priority.WARNING
    if drops > 10000:
        return ">10000", Priority.CRITICAL
    if drops > 1000:
        return ">1000", Priority.CRITICAL
    if drops > 100:
        return ">100", Priority.CRITICAL
    if drops > 10:
        return ">10", Priority.WARNING
    return raw, Priority.CRITICAL


def new_alertmanager_payload(falcopayload: FalcoPayload) -> list[dict[str, dict[str, str]]]:
    """Build the list of alerts Alertmanager expects for one event."""
    labels: dict[str, str] = {}
    priority = falcopayload.priority

    for name, value in falcopayload.output_fields.items():
        if name.startswith("n_evts"):
            continue
        if name.startswith("n_drop"):
            drops = _parse_drops(value)
            if drops is not None:
                labels[name], priority = _drop_bucket(drops, str(value))
            continue
        if isinstance(value, str):
            labels[name.translate(_LABEL_NAME)] = value
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            labels[name.translate(_LABEL_NAME)] = str(value)

    labels["source"] = "falco"
    labels["rule"] = falcopayload.rule
    labels["priority"] = str(priority)

    annotations = {"info": falcopayload.output, "summary": falcopayload.rule}
    return [{"labels": labels, "annotations": annotations}]


def alertmanager_post(client: Client, falcopayload: FalcoPayload) -> None:
    """Send an event to Alertmanager, counting the outcome."""
    client.record(DESTINATION, TOTAL)
    try:
        client.post(new_alertmanager_payload(falcopayload))
    except OutputError as exc:
        client.record(DESTINATION, ERROR)
        logger.error("AlertManager - %s", exc)
        return
    client.record(DESTINATION, OK)