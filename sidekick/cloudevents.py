"""CloudEvents output: sends events in HTTP binary content mode."""

from __future__ import annotations

import json
import logging
import re
import uuid
from collections.abc import Mapping
from typing import Any

import requests

from sidekick.client import Client
from sidekick.constants import ERROR, OK, TOTAL
from sidekick.payload import FalcoPayload

logger = logging.getLogger(__name__)

DESTINATION = "cloudevents"
SPEC_VERSION = "1.0"
SOURCE = "falco.org"
EVENT_TYPE = "falco.rule.output.v1"
DATA_CONTENT_TYPE = "application/json"

_EXTENSION_NAME = re.compile(r"[a-z0-9]+")
_RESERVED = frozenset(
    {"specversion", "id", "source", "type", "time", "datacontenttype", "dataschema",
     "subject", "data"}
)


def build_cloudevent(
    falcopayload: FalcoPayload, extensions: Mapping[str, str] | None = None
) -> dict[str, Any]:
    """Return the event's context attributes and extensions, with the payload as ``data``."""
    event: dict[str, Any] = {
        "specversion": SPEC_VERSION,
        "id": str(uuid.uuid4()),
        "source": SOURCE,
        "type": EVENT_TYPE,
        "time": falcopayload.to_dict()["time"],
        "datacontenttype": DATA_CONTENT_TYPE,
        "priority": str(falcopayload.priority),
        "rule": falcopayload.rule,
    }
    for name, value in (extensions or {}).items():
        key = name.lower()
        if not _EXTENSION_NAME.fullmatch(key) or key in _RESERVED:
            logger.error("CloudEvents - invalid extension name %r", name)
            continue
        event[key] = value
    event["data"] = falcopayload.to_dict()
    return event


def _configured_extensions(config: Any) -> dict[str, str]:
    try:
        return dict(config.cloudevents.extensions)
    except (AttributeError, KeyError, TypeError):
        return {}


def cloudevents_send(client: Client, falcopayload: FalcoPayload) -> None:
    """Send an event to the CloudEvents consumer, counting the outcome.

    Only a failed delivery counts as an error; a consumer that answers with
    an error status has still received the event.
    """
    client.record(DESTINATION, TOTAL)
    event = build_cloudevent(falcopayload, _configured_extensions(client.config))

    headers = {"Content-Type": event["datacontenttype"]}
    for name, value in event.items():
        if name not in ("data", "datacontenttype"):
            headers[f"ce-{name}"] = str(value)

    try:
        response = requests.post(
            client.endpoint_url,
            data=json.dumps(event["data"]).encode("utf-8"),
            headers=headers,
            verify=client.check_cert,
        )
    except (requests.RequestException, OSError) as exc:
        client.record(DESTINATION, ERROR)
        logger.error("CloudEvents - %s", exc)
        return

    if not response.ok:
        logger.warning("CloudEvents - consumer answered %s", response.status_code)
    client.record(DESTINATION, OK)
    logger.info("CloudEvents - Send OK")