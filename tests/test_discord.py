import json
import threading
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from sidekick.client import Statistics, new_client
from sidekick.config import Configuration, load_config
from sidekick.constants import DEFAULT_ICON_URL
from sidekick.discord import discord_post, new_discord_payload
from sidekick.payload import FalcoPayload, Priority, decode_payload

FALCO_TEST_INPUT = (
    '{"output":"This is a test from falcosidekick","priority":"Debug","rule":"Test rule", '
    '"time":"2001-01-01T01:10:00Z","output_fields": {"proc.name":"falcosidekick", '
    '"proc.tty": 1234}}'
)


class _Recorder(BaseHTTPRequestHandler):
    def do_POST(self):
        length = int(self.headers.get("Content-Length", 0))
        body = self.rfile.read(length)
        self.server.requests.append((self.path, self.headers, body))
        self.send_response(self.server.status)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def log_message(self, *args):
        pass


@pytest.fixture
def server():
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), _Recorder)
    httpd.requests = []
    httpd.status = 204
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    yield httpd
    httpd.shutdown()
    httpd.server_close()


def _url(httpd, path=""):
    return f"http://127.0.0.1:{httpd.server_address[1]}{path}"


def _empty_discord_config():
    return Configuration({"Discord": Configuration({"Icon": ""})})


def test_new_discord_payload():
    expected_output = {
        "content": "",
        "avatar_url": DEFAULT_ICON_URL,
        "embeds": [
            {
                "title": "",
                "url": "",
                "description": "This is a test from falcosidekick",
                "color": "12370112",
                "fields": [
                    {"name": "proc.name", "value": "```falcosidekick```", "inline": True},
                    {"name": "rule", "value": "Test rule", "inline": True},
                    {"name": "priority", "value": "Debug", "inline": True},
                    {"name": "time", "value": "2001-01-01 01:10:00 +0000 UTC", "inline": True},
                ],
            }
        ],
    }
    payload = decode_payload(FALCO_TEST_INPUT)
    assert new_discord_payload(payload, _empty_discord_config()) == expected_output


def test_configured_icon_is_used():
    config = load_config(None, {})
    payload = decode_payload(FALCO_TEST_INPUT)
    result = new_discord_payload(payload, config)
    assert result["avatar_url"] == config.discord.icon
    assert result["avatar_url"] != DEFAULT_ICON_URL


@pytest.mark.parametrize(
    "priority, color",
    [
        (Priority.EMERGENCY, "15158332"),
        (Priority.WARNING, "12745742"),
        (Priority.INFORMATIONAL, "3447003"),
    ],
)
def test_color_follows_priority(priority, color):
    payload = FalcoPayload(rule="r", priority=priority)
    assert new_discord_payload(payload, _empty_discord_config())["embeds"][0]["color"] == color


def test_time_with_fraction():
    payload = FalcoPayload(rule="r", time=datetime(2001, 1, 1, 1, 10, 0, 500000, timezone.utc))
    fields = new_discord_payload(payload, _empty_discord_config())["embeds"][0]["fields"]
    assert fields[-1]["value"] == "2001-01-01 01:10:00.5 +0000 UTC"


def test_discord_post(server):
    stats = Statistics()
    client = new_client("Discord", _url(server), False, True, _empty_discord_config(), stats)
    discord_post(client, decode_payload(FALCO_TEST_INPUT))
    assert stats.get("discord", "ok") == 1
    body = json.loads(server.requests[0][2])
    assert body["embeds"][0]["description"] == "This is a test from falcosidekick"


def test_discord_post_error(server):
    server.status = 429
    stats = Statistics()
    client = new_client("Discord", _url(server), False, True, _empty_discord_config(), stats)
    discord_post(client, decode_payload(FALCO_TEST_INPUT))
    assert stats.get("discord", "error") == 1