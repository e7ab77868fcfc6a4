"""HTTP client used by the outputs to deliver events."""

from __future__ import annotations

import base64
import json
import logging
import re
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from http import HTTPStatus
from typing import Any
from urllib.parse import urlsplit

import requests
from requests.structures import CaseInsensitiveDict

from sidekick.constants import FISSION, KUBELESS, OPENFAAS

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/json; charset=utf-8"

CONTENT_TYPE_HEADER_KEY = "Content-Type"
USER_AGENT_HEADER_KEY = "User-Agent"
AUTHORIZATION_HEADER_KEY = "Authorization"
USER_AGENT_HEADER_VALUE = "Falcosidekick"

MUTUAL_TLS_CLIENT_CERT_FILENAME = "/client.crt"
MUTUAL_TLS_CLIENT_KEY_FILENAME = "/client.key"
MUTUAL_TLS_CACERT_FILENAME = "/ca.crt"

DEFAULT_MUTUAL_TLS_FILES_PATH = "/etc/certs"


class OutputError(Exception):
    """An output failed to deliver an event."""


class ClientCreationError(OutputError):
    """A client could not be created."""

    def __init__(self, message: str = "Client creation Error") -> None:
        super().__init__(message)


class HeaderMissingError(OutputError):
    """The endpoint answered 400."""

    def __init__(self, message: str = "Header missing") -> None:
        super().__init__(message)


class AuthenticationError(OutputError):
    """The endpoint answered 401."""

    def __init__(self, message: str = "Authentication Error") -> None:
        super().__init__(message)


class ForbiddenError(OutputError):
    """The endpoint answered 403."""

    def __init__(self, message: str = "Access Denied") -> None:
        super().__init__(message)


class NotFoundError(OutputError):
    """The endpoint answered 404."""

    def __init__(self, message: str = "Resource not found") -> None:
        super().__init__(message)


class UnprocessableEntityError(OutputError):
    """The endpoint answered 422."""

    def __init__(self, message: str = "Bad Request") -> None:
        super().__init__(message)


class TooManyRequestsError(OutputError):
    """The endpoint answered 429."""

    def __init__(self, message: str = "Exceeding post rate limit") -> None:
        super().__init__(message)


class UnexpectedResponseError(OutputError):
    """The endpoint answered with a status the client does not expect."""

    def __init__(self, status_code: int, reason: str) -> None:
        self.status_code = status_code
        super().__init__(f"{status_code} {reason}")


_STATUS_ERRORS: dict[int, type[OutputError]] = {
    400: HeaderMissingError,
    401: AuthenticationError,
    403: ForbiddenError,
    404: NotFoundError,
    422: UnprocessableEntityError,
    429: TooManyRequestsError,
}

_SUCCESS_CODES = frozenset({200, 201, 202, 204})


class Statistics:
    """Thread-safe counters keyed by output and status."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: Counter[tuple[str, str]] = Counter()

    def add(self, output: str, status: str, count: int = 1) -> None:
        """Add ``count`` to the counter of ``output`` and ``status``."""
        with self._lock:
            self._counts[(output, status)] += count

    def get(self, output: str, status: str) -> int:
        """Return the current value of a counter."""
        with self._lock:
            return self._counts[(output, status)]


def _json_default(obj: Any) -> Any:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"cannot serialise {type(obj).__name__}")


def _encode(payload: Any) -> str:
    return json.dumps(payload, default=_json_default, separators=(",", ":")) + "\n"


_ENDPOINT_PATTERN = re.compile(r"(http|nats)(s?)://.*")
_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")
_CONTROL_CHARS = re.compile(r"[\x00-\x20\x7f]")


def _validate_endpoint(output_type: str, endpoint_url: str) -> None:
    if not _ENDPOINT_PATTERN.search(endpoint_url):
        logger.error("%s - Bad Endpoint", output_type)
        raise ClientCreationError()
    if _BAD_ESCAPE.search(endpoint_url) or _CONTROL_CHARS.search(endpoint_url):
        logger.error("%s - invalid URL %r", output_type, endpoint_url)
        raise ClientCreationError()
    try:
        parts = urlsplit(endpoint_url)
        parts.port  # noqa: B018 - raises on an invalid port
    except ValueError as exc:
        logger.error("%s - %s", output_type, exc)
        raise ClientCreationError() from exc
    if not parts.scheme:
        logger.error("%s - invalid URI for request", output_type)
        raise ClientCreationError()


@dataclass
class Client:
    """Sends events to one HTTP endpoint."""

    output_type: str
    endpoint_url: str
    mutual_tls_enabled: bool = False
    check_cert: bool = True
    header_list: list[tuple[str, str]] = field(default_factory=list)
    content_type: str = DEFAULT_CONTENT_TYPE
    config: Any = None
    stats: Statistics = field(default_factory=Statistics)

    @property
    def _debug(self) -> bool:
        return bool(getattr(self.config, "debug", False))

    @property
    def _files_path(self) -> str:
        return getattr(self.config, "mutual_tls_files_path", None) or DEFAULT_MUTUAL_TLS_FILES_PATH

    def record(self, destination: str, status: str) -> None:
        """Count one ``status`` outcome for ``destination``."""
        self.stats.add(destination, status)

    def add_header(self, key: str, value: str) -> None:
        """Add a header to the next request."""
        self.header_list.append((key, value))

    def basic_auth(self, username: str, password: str) -> None:
        """Add an HTTP Basic Authorization header to the next request."""
        credentials = base64.b64encode(f"{username}:{password}".encode()).decode("ascii")
        self.add_header(AUTHORIZATION_HEADER_KEY, "Basic " + credentials)

    def _headers(self) -> CaseInsensitiveDict:
        headers: CaseInsensitiveDict = CaseInsensitiveDict()
        pairs = [
            (CONTENT_TYPE_HEADER_KEY, self.content_type),
            (USER_AGENT_HEADER_KEY, USER_AGENT_HEADER_VALUE),
            *self.header_list,
        ]
        for key, value in pairs:
            headers[key] = f"{headers[key]}, {value}" if key in headers else value
        return headers

    def post(self, payload: Any) -> None:
        """POST ``payload`` as JSON; raise an OutputError when delivery fails."""
        body = _encode(payload)
        if self._debug:
            logger.debug("%s payload : %s", self.output_type, body)

        if self.mutual_tls_enabled:
            base = self._files_path
            cert = (base + MUTUAL_TLS_CLIENT_CERT_FILENAME, base + MUTUAL_TLS_CLIENT_KEY_FILENAME)
            verify: bool | str = base + MUTUAL_TLS_CACERT_FILENAME
        else:
            cert = None
            verify = self.check_cert

        try:
            response = requests.post(
                self.endpoint_url,
                data=body.encode("utf-8"),
                headers=self._headers(),
                cert=cert,
                verify=verify,
            )
        except (requests.RequestException, OSError) as exc:
            logger.error("%s - %s", self.output_type, exc)
            raise OutputError(str(exc)) from exc

        self.header_list = []
        code = response.status_code

        if code in _SUCCESS_CODES:
            logger.info("%s - Post OK (%s)", self.output_type, code)
            if self.output_type in (KUBELESS, OPENFAAS, FISSION):
                logger.info("%s - Function Response : %s", self.output_type, response.text)
            return

        error_class = _STATUS_ERRORS.get(code)
        if error_class is not None:
            error = error_class()
            logger.error("%s - %s (%s)", self.output_type, error, code)
            raise error

        logger.error("%s - Unexpected Response  (%s)", self.output_type, code)
        reason = response.reason
        if not reason:
            try:
                reason = HTTPStatus(code).phrase
            except ValueError:
                reason = ""
        raise UnexpectedResponseError(code, reason)


def new_client(
    output_type: str,
    endpoint_url: str,
    mutual_tls: bool,
    check_cert: bool,
    config: Any,
    stats: Statistics | None = None,
) -> Client:
    """Create a client for ``endpoint_url``; raise ClientCreationError if it is invalid."""
    _validate_endpoint(output_type, endpoint_url)
    return Client(
        output_type=output_type,
        endpoint_url=endpoint_url,
        mutual_tls_enabled=mutual_tls,
        check_cert=check_cert,
        header_list=[],
        content_type=DEFAULT_CONTENT_TYPE,
        config=config,
        stats=stats if stats is not None else Statistics(),
    )