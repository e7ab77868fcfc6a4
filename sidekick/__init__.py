"""Receive Falco events over HTTP and forward them to configured outputs."""

__version__ = "0.1.0"

__all__ = [
    "alertmanager",
    "client",
    "cloudevents",
    "config",
    "constants",
    "datadog",
    "discord",
    "elasticsearch",
    "fission",
    "handlers",
    "payload",
]