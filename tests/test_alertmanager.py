import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from sidekick.alertmanager import alertmanager_post, new_alertmanager_payload
from sidekick.client import Statistics, new_client
from sidekick.config import load_config
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
    httpd.status = 200
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    yield httpd
    httpd.shutdown()
    httpd.server_close()


def _url(httpd, path=""):
    return f"http://127.0.0.1:{httpd.server_address[1]}{path}"


def test_new_alertmanager_payload():
    expected_output = (
        '[{"labels":{"proc_name":"falcosidekick","priority":"Debug","proc_tty":"1234",'
        '"rule":"Test rule","source":"falco"},"annotations":{"info":"This is a test from '
        'falcosidekick","summary":"Test rule"}}]'
    )
    payload = decode_payload(FALCO_TEST_INPUT)
    result = json.loads(json.dumps(new_alertmanager_payload(payload)))
    assert result == json.loads(expected_output)


@pytest.mark.parametrize(
    "drops, label, priority",
    [
        ("0", "0", Priority.WARNING),
        ("5", "<10", Priority.WARNING),
        ("10", "10", Priority.CRITICAL),
        ("11", ">10", Priority.WARNING),
        ("101", ">100", Priority.CRITICAL),
        ("1001", ">1000", Priority.CRITICAL),
        ("10001", ">10000", Priority.CRITICAL),
    ],
)
def test_drop_counters_are_bucketed(drops, label, priority):
    payload = FalcoPayload(rule="r", priority=Priority.DEBUG, output_fields={"n_drops": drops})
    labels = new_alertmanager_payload(payload)[0]["labels"]
    assert labels["n_drops"] == label
    assert labels["priority"] == str(priority)


def test_event_counters_and_bad_drops_are_skipped():
    payload = FalcoPayload(
        rule="r", output_fields={"n_evts": "12", "n_drops_buffer": "many", "a.b[0]": "x"}
    )
    labels = new_alertmanager_payload(payload)[0]["labels"]
    assert "n_evts" not in labels
    assert "n_drops_buffer" not in labels
    assert labels["a_b_0"] == "x"


def test_original_payload_priority_is_untouched():
    payload = FalcoPayload(rule="r", priority=Priority.DEBUG, output_fields={"n_drops": "0"})
    new_alertmanager_payload(payload)
    assert payload.priority is Priority.DEBUG


def test_alertmanager_post_ok(server):
    stats = Statistics()
    client = new_client("AlertManager", _url(server, "/api/v1/alerts"), False, True,
                        load_config(None, {}), stats)
    alertmanager_post(client, decode_payload(FALCO_TEST_INPUT))
    assert stats.get("alertmanager", "total") == 1
    assert stats.get("alertmanager", "ok") == 1
    path, _, body = server.requests[0]
    assert path == "/api/v1/alerts"
    assert json.loads(body)[0]["labels"]["rule"] == "Test rule"


def test_alertmanager_post_error(server):
    server.status = 404
    stats = Statistics()
    client = new_client("AlertManager", _url(server), False, True, load_config(None, {}), stats)
    alertmanager_post(client, decode_payload(FALCO_TEST_INPUT))
    assert stats.get("alertmanager", "error") == 1
    assert stats.get("alertmanager", "ok") == 0