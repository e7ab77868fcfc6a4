"""Elasticsearch output: indexes events into time-suffixed indices."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from urllib.parse import urlsplit

from sidekick.client import Client, OutputError
from sidekick.constants import ERROR, OK, TOTAL
from sidekick.payload import FalcoPayload

logger = logging.getLogger(__name__)

DESTINATION = "elasticsearch"

_SUFFIX_FORMATS = {
    "none": None,
    "monthly": "%Y.%m",
    "annually": "%Y",
}
_DAILY_FORMAT = "%Y.%m.%d"


def elasticsearch_url(config: Any, now: datetime) -> str:
    """Return the document URL for the configured index and suffix at ``now``."""
    section = config.elasticsearch
    suffix = section.suffix
    date_format = _SUFFIX_FORMATS[suffix] if suffix in _SUFFIX_FORMATS else _DAILY_FORMAT
    index = section.index
    if date_format is not None:
        index = f"{index}-{now.strftime(date_format)}"
    return f"{section.host_port}/{index}/{section.type}"


def _error(client: Client, message: Any) -> None:
    client.record(DESTINATION, ERROR)
    logger.error("ElasticSearch - %s", message)


def elasticsearch_post(client: Client, falcopayload: FalcoPayload) -> None:
    """Index an event in Elasticsearch, counting the outcome."""
    client.record(DESTINATION, TOTAL)

    url = elasticsearch_url(client.config, datetime.now())
    try:
        urlsplit(url).port  # noqa: B018 - raises on an invalid port
    except ValueError as exc:
        _error(client, exc)
        return
    client.endpoint_url = url

    section = client.config.elasticsearch
    if section.username and section.password:
        client.basic_auth(section.username, section.password)

    try:
        client.post(falcopayload)
    except OutputError as exc:
        _error(client, exc)
        return
    client.record(DESTINATION, OK)