"""Configuration loading: defaults, config file, environment and validation."""

from __future__ import annotations

import ipaddress
import json
import logging
import os
import re
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any, Iterator

import yaml

logger = logging.getLogger(__name__)

_COLOR_ICON = (
    "https://raw.githubusercontent.com/falcosecurity/falcosidekick/master/imgs/"
    "falcosidekick_color.png"
)
_FOOTER = "https://github.com/falcosecurity/falcosidekick"

# Empty default for settings that hold credentials.
_UNSET = str()


def _chat_defaults() -> dict[str, Any]:
    return {
        "WebhookURL": "",
        "Footer": _FOOTER,
        "Username": "Falcosidekick",
        "Icon": _COLOR_ICON,
        "OutputFormat": "all",
        "MessageFormat": "",
        "MinimumPriority": "",
        "MutualTLS": False,
        "CheckCert": True,
    }


def _tls_defaults(**values: Any) -> dict[str, Any]:
    return {**values, "MutualTls": False, "CheckCert": True}


_DEFAULTS: dict[str, Any] = {
    "ListenAddress": "",
    "ListenPort": 2801,
    "Debug": False,
    "MutualTlsFilesPath": "/etc/certs",
    "Slack": _chat_defaults(),
    "Rocketchat": _chat_defaults(),
    "Mattermost": _chat_defaults(),
    "Teams": _tls_defaults(
        WebhookURL="", ActivityImage=_COLOR_ICON, OutputFormat="all", MinimumPriority=""
    ),
    "Datadog": _tls_defaults(
        APIKey=_UNSET, Host="https://api.datadoghq.com", MinimumPriority=""
    ),
    "Discord": _tls_defaults(WebhookURL="", MinimumPriority="", Icon=_COLOR_ICON),
    "Alertmanager": _tls_defaults(HostPort="", MinimumPriority="", Endpoint="/api/v1/alerts"),
    "Elasticsearch": _tls_defaults(
        HostPort="",
        Index="falco",
        Type="event",
        MinimumPriority="",
        Suffix="daily",
        Username="",
        Password=_UNSET,
    ),
    "Influxdb": _tls_defaults(
        HostPort="", Database="falco", User="", Password=_UNSET, MinimumPriority=""
    ),
    "Loki": _tls_defaults(HostPort="", MinimumPriority=""),
    "AWS": {
        "AccessKeyID": _UNSET,
        "SecretAccessKey": _UNSET,
        "Region": "",
        "Lambda": {
            "FunctionName": "",
            "InvocationType": "RequestResponse",
            "Logtype": "Tail",
            "MinimumPriority": "",
        },
        "SQS": {"URL": "", "MinimumPriority": ""},
        "SNS": {"TopicArn": "", "MinimumPriority": "", "RawJSON": False},
        "CloudWatchLogs": {"LogGroup": "", "LogStream": "", "MinimumPriority": ""},
        "S3": {"Bucket": "", "Prefix": "falco", "MinimumPriority": ""},
    },
    "SMTP": {
        "HostPort": "",
        "User": "",
        "Password": _UNSET,
        "From": "",
        "To": "",
        "OutputFormat": "html",
        "MinimumPriority": "",
    },
    "STAN": _tls_defaults(HostPort="", ClusterID="", ClientID=""),
    "NATS": _tls_defaults(HostPort="", ClusterID="", ClientID=""),
    "Opsgenie": _tls_defaults(Region="us", APIKey=_UNSET, MinimumPriority=""),
    "Statsd": {"Forwarder": "", "Namespace": "falcosidekick."},
    "Dogstatsd": {"Forwarder": "", "Namespace": "falcosidekick.", "Tags": []},
    "Webhook": _tls_defaults(Address="", MinimumPriority=""),
    "CloudEvents": _tls_defaults(Address="", MinimumPriority=""),
    "Azure": {"eventHub": {"Namespace": "", "Name": "", "MinimumPriority": ""}},
    "GCP": {
        "Credentials": _UNSET,
        "PubSub": {"ProjectID": "", "Topic": "", "MinimumPriority": ""},
        "Storage": {"Prefix": "", "Bucket": "", "MinimumPriority": ""},
        "CloudFunctions": {"Name": "", "MinimumPriority": ""},
        "CloudRun": {"Endpoint": "", "JWT": _UNSET, "MinimumPriority": ""},
    },
    "Googlechat": _tls_defaults(
        WebhookURL="", OutputFormat="all", MessageFormat="", MinimumPriority=""
    ),
    "Kafka": {"HostPort": "", "Topic": "", "MinimumPriority": ""},
    "KafkaRest": _tls_defaults(Address="", Version=2, MinimumPriority=""),
    "Pagerduty": _tls_defaults(RoutingKey=_UNSET, MinimumPriority=""),
    "Kubeless": _tls_defaults(
        Namespace="", Function="", Port=8080, Kubeconfig="", MinimumPriority=""
    ),
    "Openfaas": _tls_defaults(
        GatewayNamespace="openfaas",
        GatewayService="gateway",
        FunctionName="",
        FunctionNamespace="openfaas-fn",
        GatewayPort=8080,
        Kubeconfig="",
        MinimumPriority="",
    ),
    "Fission": _tls_defaults(
        RouterNamespace="fission",
        RouterService="router",
        RouterPort=80,
        FunctionNamespace="fission-function",
        Function="",
        Kubeconfig="",
        MinimumPriority="",
    ),
    "Webui": _tls_defaults(URL=""),
    "Rabbitmq": {"URL": "", "Queue": "", "MinimumPriority": ""},
    "Wavefront": {
        "EndpointType": "",
        "EndpointHost": "",
        "EndpointToken": _UNSET,
        "MetricName": "falco.alert",
        "EndpointMetricPort": 2878,
        "MinimumPriority": "",
        "FlushIntervalSecods": 1,
        "BatchSize": 10000,
    },
    "Grafana": _tls_defaults(
        HostPort="",
        DashboardID=0,
        PanelID=0,
        APIKey=_UNSET,
        AllFieldsAsTags=False,
        MinimumPriority="",
    ),
    "Yandex": {
        "AccessKeyID": _UNSET,
        "SecretAccessKey": _UNSET,
        "Region": "ru-central1",
        "S3": {
            "Endpoint": "https://storage.yandexcloud.net",
            "Bucket": "",
            "Prefix": "falco",
            "MinimumPriority": "",
        },
    },
    "Syslog": {"Host": "", "Port": "", "Protocol": "", "MinimumPriority": ""},
}

_MAP_PATHS = {
    ("customfields",): "CUSTOMFIELDS",
    ("webhook", "customheaders"): "WEBHOOK_CUSTOMHEADERS",
    ("cloudevents", "extensions"): "CLOUDEVENTS_EXTENSIONS",
}

_PRIORITY_SECTIONS = (
    "Slack", "Rocketchat", "Mattermost", "Teams", "Datadog", "Alertmanager",
    "Elasticsearch", "Influxdb", "Loki", "NATS", "STAN", "AWS.Lambda", "AWS.SQS",
    "AWS.SNS", "AWS.S3", "AWS.CloudWatchLogs", "Opsgenie", "Webhook", "CloudEvents",
    "Azure.eventHub", "GCP.PubSub", "GCP.Storage", "GCP.CloudFunctions", "GCP.CloudRun",
    "Googlechat", "Kafka", "KafkaRest", "Pagerduty", "Kubeless", "Openfaas", "Fission",
    "Rabbitmq", "Wavefront", "Yandex.S3", "Syslog",
)

_TEMPLATE_SECTIONS = ("Slack", "Rocketchat", "Mattermost", "Googlechat")

_PRIORITY_PATTERN = re.compile(
    r"(emergency|alert|critical|error|warning|notice|informational|debug)", re.IGNORECASE
)

_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}


class ConfigError(Exception):
    """The configuration cannot be used."""


def _stripped(name: str) -> str:
    return name.replace("_", "").lower()


class Configuration:
    """A tree of settings with case-insensitive attribute and item access.

    ``config.slack.webhook_url``, ``config["Slack"]["WebhookURL"]`` and
    ``config.section("Slack").webhookurl`` all name the same value.
    """

    def __init__(self, values: Mapping[str, Any] | None = None) -> None:
        object.__setattr__(self, "_values", {})
        for key, value in (values or {}).items():
            self[key] = value

    def _resolve(self, name: str) -> str:
        lowered = name.lower()
        if lowered in self._values:
            return lowered
        return _stripped(name)

    def __getitem__(self, name: str) -> Any:
        return self._values[self._resolve(name)]

    def __setitem__(self, name: str, value: Any) -> None:
        self._values[self._resolve(name)] = value

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self._resolve(name) in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self[name]
        except KeyError:
            raise AttributeError(name) from None

    def __setattr__(self, name: str, value: Any) -> None:
        self[name] = value

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Configuration):
            return NotImplemented
        return self._values == other._values

    def __repr__(self) -> str:
        return f"Configuration({self._values!r})"

    def section(self, name: str) -> Configuration:
        """Return the sub-section at a dotted path such as ``"AWS.Lambda"``."""
        node: Configuration = self
        for part in name.split("."):
            child = node[part]
            if not isinstance(child, Configuration):
                raise KeyError(name)
            node = child
        return node


def check_priority(prio: str) -> str:
    """Return ``prio`` if it names a priority, otherwise an empty string."""
    return prio if _PRIORITY_PATTERN.search(prio) else ""


def parse_key_values(value: str) -> dict[str, str]:
    """Parse ``"key:value,key:value"``; entries not of that shape are ignored."""
    result: dict[str, str] = {}
    for label in value.split(","):
        parts = label.split(":")
        if len(parts) == 2:
            result[parts[0]] = parts[1]
    return result


# --- message templates -------------------------------------------------------

_ACTION = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)
_LEXEME = re.compile(r'"(?:[^"\\]|\\.)*"|`[^`]*`|\S+')
_IDENT = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


def _parse_operand(word: str) -> tuple[str, Any]:
    if word.startswith("."):
        names = tuple(part for part in word[1:].split(".")) if word != "." else ()
        if any(not _IDENT.fullmatch(name) for name in names):
            raise ValueError(f"bad field name {word!r}")
        return ("field", names)
    if word.startswith('"'):
        return ("const", json.loads(word))
    if word.startswith("`"):
        return ("const", word[1:-1])
    if re.fullmatch(r"-?\d+", word):
        return ("const", int(word))
    raise ValueError(f'function "{word}" not defined')


def _lookup(obj: Any, name: str) -> Any:
    if isinstance(obj, Mapping):
        if name in obj:
            return obj[name]
        for key, value in obj.items():
            if isinstance(key, str) and _stripped(key) == _stripped(name):
                return value
        raise ValueError(f"can't evaluate field {name}")
    if isinstance(obj, Configuration):
        if name in obj:
            return obj[name]
        raise ValueError(f"can't evaluate field {name}")
    attributes = getattr(obj, "__dict__", {})
    for key, value in attributes.items():
        if _stripped(key) == _stripped(name):
            return value
    if hasattr(obj, name):
        return getattr(obj, name)
    raise ValueError(f"can't evaluate field {name} in type {type(obj).__name__}")


def _format_value(value: Any) -> str:
    if value is None:
        return "<no value>"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class _MessageTemplate:
    """A compiled message template with ``{{ .Field }}`` and ``index`` actions."""

    def __init__(self, name: str, source: str) -> None:
        self.name = name
        self.source = source
        self._parts = self._parse(source)

    @staticmethod
    def _parse(text: str) -> list[Any]:
        parts: list[Any] = []
        pos = 0
        trim_next = False
        for match in _ACTION.finditer(text):
            literal = text[pos:match.start()]
            if trim_next:
                literal = literal.lstrip()
            body = match.group(1)
            if re.match(r"-\s", body):
                literal = literal.rstrip()
                body = body[1:]
            trim_next = bool(re.search(r"\s-$", body))
            if trim_next:
                body = body[:-1]
            if literal:
                parts.append(literal)
            pos = match.end()
            body = body.strip()
            if body.startswith("/*") and body.endswith("*/"):
                continue
            words = _LEXEME.findall(body)
            if not words:
                raise ValueError("missing value for command")
            if "{{" in words or "}}" in words:
                raise ValueError("unexpected action delimiter")
            if words[0] == "index":
                if len(words) < 2:
                    raise ValueError("wrong number of args for index")
                parts.append(("index", [_parse_operand(w) for w in words[1:]]))
            elif len(words) == 1:
                parts.append(("value", _parse_operand(words[0])))
            else:
                raise ValueError(f'function "{words[0]}" not defined')
        rest = text[pos:]
        if "{{" in rest:
            raise ValueError("unclosed action")
        if trim_next:
            rest = rest.lstrip()
        if rest:
            parts.append(rest)
        return parts

    @staticmethod
    def _evaluate(operand: tuple[str, Any], data: Any) -> Any:
        kind, value = operand
        if kind == "const":
            return value
        current = data
        for name in value:
            current = _lookup(current, name)
        return current

    def render(self, data: Any) -> str:
        """Render the template against ``data``."""
        out: list[str] = []
        for part in self._parts:
            if isinstance(part, str):
                out.append(part)
                continue
            kind, argument = part
            if kind == "value":
                out.append(_format_value(self._evaluate(argument, data)))
                continue
            container = self._evaluate(argument[0], data)
            for operand in argument[1:]:
                key = self._evaluate(operand, data)
                if isinstance(container, Mapping):
                    container = container.get(key)
                elif isinstance(container, Sequence) and isinstance(key, int):
                    container = container[key]
                else:
                    raise ValueError(f"can't index item of type {type(container).__name__}")
            out.append(_format_value(container))
        return "".join(out)


def compile_message_template(output: str, template: str) -> _MessageTemplate | None:
    """Compile ``template`` for ``output``; None when empty, ConfigError when invalid."""
    if not template:
        return None
    try:
        return _MessageTemplate(output, template)
    except ValueError as exc:
        raise ConfigError(f"Error compiling {output} message template : {exc}") from exc


# --- loading -------------------------------------------------------------------


def _flatten(mapping: Mapping[Any, Any], prefix: tuple[str, ...] = ()) -> Iterator[
    tuple[tuple[str, ...], Any]
]:
    for key, value in mapping.items():
        path = prefix + (str(key).lower(),)
        if isinstance(value, Mapping) and path not in _MAP_PATHS:
            yield from _flatten(value, path)
        else:
            yield path, value


def _go_str(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def _coerce(value: Any, default: Any) -> Any:
    if default is None:
        return value
    if value is None:
        return type(default)()
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return value != 0
        if isinstance(value, str):
            if value in _TRUE:
                return True
            if value in _FALSE:
                return False
        raise ValueError(f"cannot parse {value!r} as bool")
    if isinstance(default, int):
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, (int, float)):
            return int(value)
        if isinstance(value, str):
            text = value.strip()
            try:
                return int(text, 0)
            except ValueError:
                return int(text, 10)
        raise ValueError(f"cannot parse {value!r} as int")
    if isinstance(default, list):
        if isinstance(value, str):
            return value.split(",") if value else []
        if isinstance(value, (list, tuple)):
            return [_go_str(item) for item in value]
        return [_go_str(value)]
    if isinstance(default, str):
        if isinstance(value, (str, bool, int, float)):
            if isinstance(value, bool):
                return "1" if value else "0"
            return str(value)
        raise ValueError(f"cannot use {value!r} as string")
    return value


def _read_config_file(config_file: str) -> dict[str, Any]:
    path = Path(config_file)
    suffix = path.suffix.lower()
    try:
        text = path.read_text(encoding="utf-8")
        if suffix in (".yaml", ".yml"):
            document = yaml.safe_load(text)
        elif suffix == ".json":
            document = json.loads(text)
        else:
            raise ValueError(f'Unsupported Config Type "{suffix.lstrip(".")}"')
    except (OSError, ValueError, yaml.YAMLError) as exc:
        logger.error("Error when reading config file : %s", exc)
        return {}
    if document is None:
        return {}
    if not isinstance(document, Mapping):
        logger.error("Error when reading config file : top level is not a mapping")
        return {}
    return dict(document)


def _insert(root: Configuration, path: tuple[str, ...], value: Any) -> None:
    node = root
    for part in path[:-1]:
        child = node._values.get(part)
        if child is None:
            child = Configuration()
            node._values[part] = child
        elif not isinstance(child, Configuration):
            logger.error("Error unmarshalling config : %s is not a section", ".".join(path))
            return
        node = child
    if isinstance(node._values.get(path[-1]), Configuration):
        logger.error("Error unmarshalling config : %s is a section", ".".join(path))
        return
    node._values[path[-1]] = value


def load_config(
    config_file: str | None = None, environ: Mapping[str, str] | None = None
) -> Configuration:
    """Build the configuration from defaults, an optional file and the environment.

    The environment overrides the file, which overrides the defaults.
    Raises ConfigError when the file is missing or the result is invalid.
    """
    env = os.environ if environ is None else environ
    defaults = dict(_flatten(_DEFAULTS))

    file_values: dict[tuple[str, ...], Any] = {}
    if config_file:
        if not Path(config_file).is_file():
            raise ConfigError(f"path '{config_file}' does not exist")
        file_values = dict(_flatten(_read_config_file(config_file)))

    settings: dict[tuple[str, ...], Any] = {}
    for path in [*defaults, *(p for p in file_values if p not in defaults)]:
        if path in _MAP_PATHS:
            continue
        default = defaults.get(path)
        env_value = env.get("_".join(path).upper())
        if env_value:
            raw = env_value
        elif path in file_values:
            raw = file_values[path]
        else:
            settings[path] = list(default) if isinstance(default, list) else default
            continue
        try:
            settings[path] = _coerce(raw, default)
        except ValueError as exc:
            logger.error("Error unmarshalling config : %s: %s", ".".join(path), exc)
            settings[path] = list(default) if isinstance(default, list) else default

    for path, env_name in _MAP_PATHS.items():
        mapping: dict[str, str] = {}
        from_file = file_values.get(path)
        if isinstance(from_file, Mapping):
            mapping.update({str(k).lower(): _go_str(v) for k, v in from_file.items()})
        elif from_file is not None:
            logger.error("Error unmarshalling config : %s is not a map", ".".join(path))
        if env_name in env:
            mapping.update(parse_key_values(env[env_name]))
        settings[path] = mapping

    config = Configuration()
    for path, value in settings.items():
        _insert(config, path, value)

    port = config.listen_port
    if port == 0 or port > 65536:
        raise ConfigError("Bad port number")

    address = config.listen_address
    if address:
        try:
            if "%" in address:
                raise ValueError(address)
            ipaddress.ip_address(address)
        except ValueError as exc:
            raise ConfigError("Failed to parse ListenAddress") from exc

    for name in _PRIORITY_SECTIONS:
        section = config.section(name)
        section.minimum_priority = check_priority(_go_str(getattr(section, "minimum_priority", "")))

    for name in _TEMPLATE_SECTIONS:
        section = config.section(name)
        section.message_format_template = compile_message_template(
            name, _go_str(getattr(section, "message_format", ""))
        )

    return config