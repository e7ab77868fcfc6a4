import json
import queue
import threading
import urllib.error
import urllib.request
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from sidekick.config import load_config
from sidekick.handlers import RequestRejected, Sidekick, main, make_server
from sidekick.payload import Priority

VALID_EVENT = (
    '{"output":"This is a test from falcosidekick","priority":"Debug","rule":"Test rule",'
    ' "time":"2001-01-01T01:10:00Z","output_fields": {"proc.name":"falcosidekick",'
    ' "proc.tty": 1234}}'
)


@pytest.fixture
def receiver():
    bodies: queue.Queue = queue.Queue()

    class Handler(BaseHTTPRequestHandler):
        def do_POST(self):
            length = int(self.headers.get("Content-Length") or 0)
            bodies.put((self.path, self.rfile.read(length)))
            self.send_response(200)
            self.send_header("Content-Length", "0")
            self.end_headers()

        def log_message(self, *args):
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}", bodies
    server.shutdown()
    server.server_close()


def _sidekick(environ=None):
    return Sidekick(load_config(None, environ or {}))


def test_non_post_is_rejected():
    sidekick = _sidekick()
    with pytest.raises(RequestRejected) as info:
        sidekick.handle_event("GET", VALID_EVENT)
    assert info.value.message == "Please send with post http method"
    assert info.value.status == 400
    assert sidekick.stats.get("requests", "rejected") == 1
    assert sidekick.stats.get("requests", "total") == 1


def test_missing_body_is_rejected():
    sidekick = _sidekick()
    with pytest.raises(RequestRejected) as info:
        sidekick.handle_event("POST", None)
    assert info.value.message == "Please send a valid request body"


def test_invalid_json_is_rejected():
    sidekick = _sidekick()
    with pytest.raises(RequestRejected):
        sidekick.handle_event("POST", "{not json")
    assert sidekick.stats.get("requests", "accepted") == 0
    assert sidekick.stats.get("requests", "rejected") == 1


def test_empty_output_is_rejected():
    sidekick = _sidekick()
    with pytest.raises(RequestRejected):
        sidekick.handle_event("POST", '{"output":"","priority":"Debug","rule":"r"}')


def test_valid_event_is_accepted():
    sidekick = _sidekick()
    payload = sidekick.handle_event("POST", VALID_EVENT)
    assert payload.rule == "Test rule"
    assert payload.priority is Priority.DEBUG
    assert payload.output_fields["proc.name"] == "falcosidekick"
    assert sidekick.stats.get("requests", "accepted") == 1
    assert sidekick.stats.get("falco", "debug") == 1


def test_customfields_are_merged():
    sidekick = _sidekick({"CUSTOMFIELDS": "env:prod"})
    payload = sidekick.handle_event("POST", VALID_EVENT)
    assert payload.output_fields["env"] == "prod"
    assert payload.output_fields["proc.name"] == "falcosidekick"


def test_no_outputs_enabled():
    sidekick = _sidekick()
    payload = sidekick.handle_event("POST", VALID_EVENT)
    assert sidekick.forward_event(payload) == []
    assert sidekick.enabled_outputs == []


def test_invalid_endpoint_disables_output():
    sidekick = _sidekick({"DISCORD_WEBHOOKURL": "not a url"})
    assert sidekick.enabled_outputs == []


def test_forward_respects_minimum_priority(receiver):
    url, _ = receiver
    sidekick = _sidekick(
        {"DISCORD_WEBHOOKURL": url + "/hook", "DISCORD_MINIMUMPRIORITY": "error"}
    )
    assert sidekick.enabled_outputs == ["discord"]

    low = sidekick.handle_event(
        "POST", '{"output":"o","priority":"Debug","rule":"other"}'
    )
    assert sidekick.forward_event(low) == []

    high = sidekick.handle_event(
        "POST", '{"output":"o","priority":"Critical","rule":"other"}'
    )
    assert sidekick.forward_event(high) == ["discord"]


def test_test_rule_bypasses_minimum_priority(receiver):
    url, _ = receiver
    sidekick = _sidekick(
        {"DISCORD_WEBHOOKURL": url + "/hook", "DISCORD_MINIMUMPRIORITY": "emergency"}
    )
    payload = sidekick.handle_event("POST", VALID_EVENT)
    assert sidekick.forward_event(payload) == ["discord"]


def test_test_event_reaches_output(receiver):
    url, bodies = receiver
    sidekick = _sidekick({"DISCORD_WEBHOOKURL": url + "/hook"})
    payload = sidekick.test_event()
    assert payload.rule == "Test rule"
    path, body = bodies.get(timeout=10)
    assert path == "/hook"
    message = json.loads(body)
    assert message["embeds"][0]["description"] == "This is a test from falcosidekick"


@pytest.fixture
def running_server():
    sidekick = _sidekick()
    server = make_server(sidekick, "127.0.0.1", 0)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}", sidekick
    server.shutdown()
    server.server_close()


def test_server_ping(running_server):
    base, _ = running_server
    with urllib.request.urlopen(base + "/ping") as response:
        assert response.read() == b"pong\n"


def test_server_health(running_server):
    base, _ = running_server
    with urllib.request.urlopen(base + "/healthz") as response:
        assert json.loads(response.read()) == {"status": "ok"}
        assert response.headers["Content-Type"] == "application/json"


def test_server_accepts_post(running_server):
    base, sidekick = running_server
    request = urllib.request.Request(base + "/", data=VALID_EVENT.encode(), method="POST")
    with urllib.request.urlopen(request) as response:
        assert response.status == 200
    assert sidekick.stats.get("requests", "accepted") == 1


def test_server_rejects_get(running_server):
    base, sidekick = running_server
    with pytest.raises(urllib.error.HTTPError) as info:
        urllib.request.urlopen(base + "/")
    assert info.value.code == 400
    assert info.value.read() == b"Please send with post http method\n"
    assert sidekick.stats.get("requests", "rejected") == 1


def test_main_missing_config_file(tmp_path):
    assert main(["--config-file", str(tmp_path / "missing.yaml")]) == 1


def test_main_version(capsys):
    assert main(["-v"]) == 0
    assert capsys.readouterr().out.startswith("sidekick ")