"""HTTP entry points: accept Falco events and forward them to the enabled outputs."""

from __future__ import annotations

import argparse
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from importlib import metadata
from typing import Any, Callable

from sidekick.alertmanager import alertmanager_post
from sidekick.client import ClientCreationError, Statistics, new_client
from sidekick.cloudevents import cloudevents_send
from sidekick.config import ConfigError, load_config
from sidekick.constants import ACCEPTED, REJECTED, TOTAL
from sidekick.datadog import DATADOG_PATH, datadog_post
from sidekick.discord import discord_post
from sidekick.elasticsearch import elasticsearch_post
from sidekick.fission import fission_call, new_fission_client
from sidekick.payload import FalcoPayload, Priority, decode_payload, parse_priority

logger = logging.getLogger(__name__)

TEST_RULE = "Test rule"
REQUESTS = "requests"
FALCO = "falco"

_INVALID_BODY = "Please send a valid request body"
_NOT_POST = "Please send with post http method"


class RequestRejected(Exception):
    """An incoming request was refused; ``status`` is the HTTP status to answer."""

    def __init__(self, message: str, status: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


@dataclass
class _Output:
    name: str
    minimum_priority: Priority
    send: Callable[[FalcoPayload], None]


class Sidekick:
    """Receives events and dispatches them to every enabled output."""

    def __init__(self, config: Any) -> None:
        self.config = config
        self.stats = Statistics()
        self._outputs: list[_Output] = []
        self._build_outputs()
        self.enabled_outputs = [output.name for output in self._outputs]

    def _register(
        self,
        name: str,
        section: Any,
        factory: Callable[[], Any],
        sender: Callable[[Any, FalcoPayload], None],
    ) -> None:
        try:
            client = factory()
        except ClientCreationError as exc:
            logger.error("%s - %s", name, exc)
            return
        self._outputs.append(
            _Output(name, parse_priority(section.minimum_priority), partial(sender, client))
        )

    def _build_outputs(self) -> None:
        config = self.config
        stats = self.stats

        datadog = config.datadog
        if datadog.api_key:
            self._register(
                "datadog",
                datadog,
                lambda: new_client(
                    "Datadog",
                    f"{datadog.host}{DATADOG_PATH}?api_key={datadog.api_key}",
                    datadog.mutual_tls,
                    datadog.check_cert,
                    config,
                    stats,
                ),
                datadog_post,
            )

        discord = config.discord
        if discord.webhook_url:
            self._register(
                "discord",
                discord,
                lambda: new_client(
                    "Discord",
                    discord.webhook_url,
                    discord.mutual_tls,
                    discord.check_cert,
                    config,
                    stats,
                ),
                discord_post,
            )

        alertmanager = config.alertmanager
        if alertmanager.host_port:
            self._register(
                "alertmanager",
                alertmanager,
                lambda: new_client(
                    "AlertManager",
                    alertmanager.host_port + alertmanager.endpoint,
                    alertmanager.mutual_tls,
                    alertmanager.check_cert,
                    config,
                    stats,
                ),
                alertmanager_post,
            )

        elastic = config.elasticsearch
        if elastic.host_port:
            self._register(
                "elasticsearch",
                elastic,
                lambda: new_client(
                    "Elasticsearch",
                    f"{elastic.host_port}/{elastic.index}/{elastic.type}",
                    elastic.mutual_tls,
                    elastic.check_cert,
                    config,
                    stats,
                ),
                elasticsearch_post,
            )

        cloudevents = config.cloudevents
        if cloudevents.address:
            self._register(
                "cloudevents",
                cloudevents,
                lambda: new_client(
                    "CloudEvents",
                    cloudevents.address,
                    cloudevents.mutual_tls,
                    cloudevents.check_cert,
                    config,
                    stats,
                ),
                cloudevents_send,
            )

        fission = config.fission
        if fission.function:
            self._register(
                "fission",
                fission,
                lambda: new_fission_client(config, stats),
                fission_call,
            )

    def _reject(self, message: str, reason: str) -> RequestRejected:
        self.stats.add(REQUESTS, REJECTED)
        logger.debug("request rejected (%s)", reason)
        return RequestRejected(message)

    def _decode(self, body: Any) -> FalcoPayload:
        customfields = dict(getattr(self.config, "customfields", {}) or {})
        payload = decode_payload(body, customfields)
        self.stats.add(FALCO, str(payload.priority).lower())
        if getattr(self.config, "debug", False):
            logger.debug("Falco's payload : %s", payload.to_json())
        return payload

    def handle_event(self, method: str, body: Any) -> FalcoPayload:
        """Accept one incoming request and forward its event.

        Raises RequestRejected when the request is not a POST with a valid event.
        """
        self.stats.add(REQUESTS, TOTAL)
        if body is None:
            raise self._reject(_INVALID_BODY, "nobody")
        if method.upper() != "POST":
            raise self._reject(_NOT_POST, "nobody")
        try:
            payload = self._decode(body)
        except (ValueError, TypeError) as exc:
            raise self._reject(_INVALID_BODY, "invalidjson") from exc
        if not payload.output:
            raise self._reject(_INVALID_BODY, "invalidjson")
        self.stats.add(REQUESTS, ACCEPTED)
        self.forward_event(payload)
        return payload

    def test_event(self) -> FalcoPayload:
        """Send a test event to every enabled output."""
        now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        body = json.dumps(
            {
                "output": "This is a test from falcosidekick",
                "priority": "Debug",
                "rule": TEST_RULE,
                "time": now,
                "output_fields": {"proc.name": "falcosidekick", "user.name": "falcosidekick"},
            }
        )
        return self.handle_event("POST", body)

    def forward_event(self, falcopayload: FalcoPayload) -> list[str]:
        """Send the event in the background to each output whose threshold it meets.

        Returns the names of the outputs it was sent to.
        """
        sent: list[str] = []
        for output in self._outputs:
            if falcopayload.priority >= output.minimum_priority or falcopayload.rule == TEST_RULE:
                threading.Thread(
                    target=output.send,
                    args=(falcopayload,),
                    name=f"output-{output.name}",
                    daemon=True,
                ).start()
                sent.append(output.name)
        return sent


class _RequestHandler(BaseHTTPRequestHandler):
    server: "_SidekickServer"

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        logger.debug("%s - %s", self.address_string(), format % args)

    def _reply(self, status: int, body: bytes, content_type: str) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _body(self) -> bytes:
        length = int(self.headers.get("Content-Length") or 0)
        return self.rfile.read(length) if length > 0 else b""

    def _route(self) -> None:
        path = self.path.split("?", 1)[0]
        body = self._body()
        sidekick = self.server.sidekick
        if path == "/ping":
            self._reply(200, b"pong\n", "text/plain; charset=utf-8")
            return
        if path == "/healthz":
            self._reply(200, b'{"status": "ok"}', "application/json")
            return
        try:
            if path == "/test":
                sidekick.test_event()
            else:
                sidekick.handle_event(self.command, body)
        except RequestRejected as exc:
            self._reply(exc.status, (exc.message + "\n").encode(), "text/plain; charset=utf-8")
            return
        self._reply(200, b"", "text/plain; charset=utf-8")

    do_GET = _route
    do_POST = _route
    do_PUT = _route
    do_DELETE = _route
    do_PATCH = _route


class _SidekickServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], sidekick: Sidekick) -> None:
        self.sidekick = sidekick
        super().__init__(address, _RequestHandler)


def make_server(sidekick: Sidekick, host: str, port: int) -> ThreadingHTTPServer:
    """Return an HTTP server (not yet serving) bound to ``host``:``port``."""
    return _SidekickServer((host, port), sidekick)


def _version() -> str:
    try:
        return metadata.version("sidekick")
    except metadata.PackageNotFoundError:
        return "unknown"


def main(argv: list[str] | None = None) -> int:
    """Run the daemon; return the process exit status."""
    parser = argparse.ArgumentParser(prog="sidekick")
    parser.add_argument("-c", "--config-file", help="config file")
    parser.add_argument("-v", "--version", action="store_true", help="show the version")
    args = parser.parse_args(argv)

    if args.version:
        print(f"sidekick {_version()}")
        return 0

    logging.basicConfig(level=logging.INFO, format="%(levelname)s : %(message)s")
    try:
        config = load_config(args.config_file)
    except ConfigError as exc:
        logger.error("%s", exc)
        return 1

    if config.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    sidekick = Sidekick(config)
    logger.info("Enabled Outputs : %s", sidekick.enabled_outputs)
    server = make_server(sidekick, config.listen_address, config.listen_port)
    logger.info(
        "Falcosidekick is up and listening on %s:%s", config.listen_address, config.listen_port
    )
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()
    return 0