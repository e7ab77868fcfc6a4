import json
import socket
import threading
import uuid
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from sidekick.client import Statistics, new_client
from sidekick.cloudevents import EVENT_TYPE, SOURCE, build_cloudevent, cloudevents_send
from sidekick.config import load_config
from sidekick.payload import FalcoPayload, Priority


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
    httpd.status = 202
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    yield httpd
    httpd.shutdown()
    httpd.server_close()


def _url(httpd):
    return f"http://127.0.0.1:{httpd.server_address[1]}"


EVENT = FalcoPayload(
    output="o",
    rule="Test rule",
    priority=Priority.WARNING,
    time=datetime(2001, 1, 1, 1, 10, tzinfo=timezone.utc),
    output_fields={"proc.name": "falcosidekick"},
)


def test_build_cloudevent_attributes():
    event = build_cloudevent(EVENT, {})
    assert event["source"] == "falco.org"
    assert event["type"] == "falco.rule.output.v1"
    assert event["priority"] == str(Priority.WARNING)
    assert event["rule"] == "Test rule"
    assert event["time"] == EVENT.to_dict()["time"]
    assert event["data"] == EVENT.to_dict()
    assert str(uuid.UUID(event["id"])) == event["id"]


def test_build_cloudevent_extensions():
    event = build_cloudevent(EVENT, {"Team": "security", "bad-name": "x", "id": "y"})
    assert event["team"] == "security"
    assert "bad-name" not in event
    assert event["id"] != "y"


def test_ids_are_unique():
    ids = [build_cloudevent(EVENT, {})["id"] for _ in range(20)]
    assert len(set(ids)) == 20
    assert all(str(uuid.UUID(event_id)) == event_id for event_id in ids)


def test_cloudevents_send(server):
    stats = Statistics()
    config = load_config(None, {"CLOUDEVENTS_EXTENSIONS": "team:security"})
    client = new_client("CloudEvents", _url(server), False, True, config, stats)
    cloudevents_send(client, EVENT)

    assert stats.get("cloudevents", "ok") == 1
    _, headers, body = server.requests[0]
    assert headers["ce-source"] == SOURCE
    assert headers["ce-type"] == EVENT_TYPE
    assert headers["ce-rule"] == "Test rule"
    assert headers["ce-team"] == "security"
    assert headers["Content-Type"] == "application/json"
    assert json.loads(body) == EVENT.to_dict()


def test_error_status_still_counts_as_delivered(server):
    server.status = 500
    stats = Statistics()
    client = new_client("CloudEvents", _url(server), False, True, load_config(None, {}), stats)
    cloudevents_send(client, EVENT)
    assert stats.get("cloudevents", "ok") == 1
    assert stats.get("cloudevents", "error") == 0


def test_undelivered_event_counts_as_error():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    stats = Statistics()
    client = new_client(
        "CloudEvents", f"http://127.0.0.1:{port}", False, True, load_config(None, {}), stats
    )
    cloudevents_send(client, EVENT)
    assert stats.get("cloudevents", "error") == 1
    assert stats.get("cloudevents", "total") == 1