# sidekick

A small daemon that receives Falco events as JSON over HTTP and forwards each
one, in the background, to the outputs you have configured: Alertmanager,
Datadog, Discord, Elasticsearch, Fission functions and CloudEvents consumers.

## Installing

```
pip install .
```

For running the tests, install the `test` extra:

```
pip install ".[test]"
```

## Running

```
sidekick --config-file config.yaml
```

`sidekick --version` (or `-v`) prints the version and exits. The exit status
is 1 when the configuration is invalid (bad port, bad listen address, a
message template that does not compile, or a config file that does not exist).

The server listens on port 2801 by default. It answers on these paths:

- `/ping` replies `pong`.
- `/healthz` replies `{"status": "ok"}`.
- `/test` forwards a test event, with rule `Test rule` and priority `Debug`,
  to every enabled output.
- Any other path takes a Falco event in a `POST` body and forwards it. A
  request that is not a `POST`, or whose body is not a JSON event with a
  non-empty `output`, is answered with status 400.

## Configuration

Settings come from built-in defaults, an optional YAML (`.yaml`, `.yml`) or
JSON (`.json`) file, and environment variables, each overriding the one
before. Setting names are case-insensitive. Environment variable names are the
setting's path in upper case with dots replaced by underscores, for example
`DISCORD_WEBHOOKURL` or `ELASTICSEARCH_HOSTPORT`; empty variables are ignored.

```yaml
listenport: 2801
debug: false
customfields:
  environment: production
discord:
  webhookurl: "https://discord.example.com/api/webhooks/placeholder"
  minimumpriority: warning
elasticsearch:
  hostport: "http://localhost:9200"
  index: falco
  suffix: daily
```

`CUSTOMFIELDS`, `WEBHOOK_CUSTOMHEADERS` and `CLOUDEVENTS_EXTENSIONS` may also be
given as comma separated `key:value` pairs. Custom fields are added to the
output fields of every event received.

An output is enabled by its main setting:

| Output        | Enabled by                    |
|---------------|-------------------------------|
| Alertmanager  | `alertmanager.hostport`       |
| Datadog       | `datadog.apikey`              |
| Discord       | `discord.webhookurl`          |
| Elasticsearch | `elasticsearch.hostport`      |
| CloudEvents   | `cloudevents.address`         |
| Fission       | `fission.function`            |

An enabled output is sent an event when the event's priority is at least the
output's `minimumpriority`, which is one of `emergency`, `alert`, `critical`,
`error`, `warning`, `notice`, `informational` or `debug`; any other value means
no minimum. Events from the test rule go to every enabled output.

Elasticsearch indices get a date suffix chosen by `elasticsearch.suffix`:
`daily` (the default), `monthly`, `annually` or `none`. When
`elasticsearch.username` and `elasticsearch.password` are both set, requests
carry HTTP Basic authentication.

Fission is reached through its router service in the cluster, or, when
`fission.kubeconfig` names a kubeconfig file, through the Kubernetes API
server's service proxy.

For mutual TLS, set an output's `mutualtls` to true and place `client.crt`,
`client.key` and `ca.crt` in `mutualtlsfilespath` (default `/etc/certs`).
Setting `checkcert` to false turns off certificate verification.

## Using it as a library

```python
from sidekick.config import load_config
from sidekick.handlers import Sidekick, make_server

config = load_config("config.yaml")
sidekick = Sidekick(config)
server = make_server(sidekick, "0.0.0.0", 2801)
server.serve_forever()
```

`Sidekick.handle_event(method, body)` accepts one event and raises
`RequestRejected` when the request is refused; `Sidekick.forward_event`
returns the names of the outputs an event was sent to. Counters of requests,
events and output outcomes are kept in `Sidekick.stats`.

The payload builders can be used on their own:

```python
from sidekick.payload import decode_payload
from sidekick.datadog import new_datadog_payload

event = decode_payload(b'{"output": "x", "priority": "Warning", "rule": "r"}', {})
print(new_datadog_payload(event))
```

## What it does not do

The configuration accepts sections for many other destinations (Slack,
Rocket.Chat, Mattermost, Teams, AWS, GCP, Azure, Kafka, NATS, SMTP, syslog and
more) and checks their minimum priorities and message templates, but sidekick
sends events only to the six outputs listed above. It keeps its counters in
memory and does not publish them: there is no metrics endpoint and nothing is
sent to StatsD or similar collectors.