"""Fission output: calls a Fission function through its router."""

from __future__ import annotations

import base64
import logging
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import requests
import yaml

from sidekick.client import (
    CONTENT_TYPE_HEADER_KEY,
    USER_AGENT_HEADER_KEY,
    USER_AGENT_HEADER_VALUE,
    Client,
    ClientCreationError,
    OutputError,
    Statistics,
    new_client,
)
from sidekick.constants import ERROR, FISSION, OK, TOTAL
from sidekick.payload import FalcoPayload

logger = logging.getLogger(__name__)

DESTINATION = "fission"

FISSION_EVENT_ID_KEY = "event-id"
FISSION_EVENT_NAMESPACE_KEY = "event-namespace"
FISSION_CONTENT_TYPE = "application/json"


@dataclass
class _KubeConnection:
    """Credentials for talking to a Kubernetes API server."""

    server: str
    verify: bool | str = True
    cert: tuple[str, str] | None = None
    token: str = ""
    auth: tuple[str, str] | None = None


@dataclass
class _KubernetesClient(Client):
    """A client that reaches the function through the API server's service proxy."""

    kube: _KubeConnection | None = None


def _named(items: Any, name: Any, key: str) -> dict[str, Any]:
    for item in items or []:
        if isinstance(item, dict) and item.get("name") == name:
            value = item.get(key) or {}
            if isinstance(value, dict):
                return value
    raise ClientCreationError(f"kubeconfig: {key} {name!r} not found")


def _file_or_data(section: dict[str, Any], key: str, base: Path) -> str | None:
    data = section.get(f"{key}-data")
    if data:
        with tempfile.NamedTemporaryFile("wb", suffix=".pem", delete=False) as handle:
            handle.write(base64.b64decode(data))
        return handle.name
    path = section.get(key)
    if path:
        return str(base / path)
    return None


def _load_kubeconfig(path: str) -> _KubeConnection:
    kubeconfig = Path(path)
    try:
        document = yaml.safe_load(kubeconfig.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ClientCreationError(f"kubeconfig: {exc}") from exc
    if not isinstance(document, dict):
        raise ClientCreationError("kubeconfig: not a mapping")

    base = kubeconfig.parent
    context = _named(document.get("contexts"), document.get("current-context"), "context")
    cluster = _named(document.get("clusters"), context.get("cluster"), "cluster")
    user = _named(document.get("users"), context.get("user"), "user") if context.get(
        "user"
    ) else {}

    server = cluster.get("server")
    if not server:
        raise ClientCreationError("kubeconfig: cluster has no server")

    verify: bool | str
    if cluster.get("insecure-skip-tls-verify"):
        verify = False
    else:
        verify = _file_or_data(cluster, "certificate-authority", base) or True

    certificate = _file_or_data(user, "client-certificate", base)
    key = _file_or_data(user, "client-key", base)
    cert = (certificate, key) if certificate and key else None

    token = user.get("token") or ""
    token_file = user.get("tokenFile")
    if not token and token_file:
        try:
            token = (base / token_file).read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise ClientCreationError(f"kubeconfig: {exc}") from exc

    auth = None
    if user.get("username") and user.get("password"):
        auth = (user["username"], user["password"])

    return _KubeConnection(server=server, verify=verify, cert=cert, token=token, auth=auth)


def new_fission_client(config: Any, stats: Statistics | None = None) -> Client:
    """Create the Fission client, through Kubernetes when a kubeconfig is set."""
    section = config.fission
    stats = stats if stats is not None else Statistics()
    if section.kubeconfig:
        kube = _load_kubeconfig(section.kubeconfig)
        url = (
            f"{kube.server.rstrip('/')}/api/v1/namespaces/{section.router_namespace}"
            f"/services/{section.router_service}:{section.router_port}"
            f"/proxy/fission-function/{section.function}"
        )
        return _KubernetesClient(
            output_type=FISSION, endpoint_url=url, config=config, stats=stats, kube=kube
        )
    return new_client(
        FISSION,
        f"http://{section.router_service}.{section.router_namespace}.svc.cluster.local:"
        f"{section.router_port}/fission-function/{section.function}",
        section.mutual_tls,
        section.check_cert,
        config,
        stats,
    )


def _kube_post(client: Client, kube: _KubeConnection, falcopayload: FalcoPayload) -> str:
    headers = {
        FISSION_EVENT_ID_KEY: str(uuid.uuid4()),
        CONTENT_TYPE_HEADER_KEY: FISSION_CONTENT_TYPE,
        USER_AGENT_HEADER_KEY: USER_AGENT_HEADER_VALUE,
    }
    if kube.token:
        headers["Authorization"] = f"Bearer {kube.token}"
    try:
        response = requests.post(
            client.endpoint_url,
            data=falcopayload.to_json().encode("utf-8"),
            headers=headers,
            verify=kube.verify,
            cert=kube.cert,
            auth=kube.auth,
        )
    except (requests.RequestException, OSError) as exc:
        raise OutputError(str(exc)) from exc
    if not response.ok:
        raise OutputError(f"{response.status_code} {response.reason}: {response.text}")
    return response.text


def _function_name(client: Client) -> str:
    try:
        return str(client.config.fission.function)
    except (AttributeError, KeyError):
        return ""


def fission_call(client: Client, falcopayload: FalcoPayload) -> None:
    """Call the Fission function with an event, counting the outcome."""
    client.record(DESTINATION, TOTAL)
    kube = getattr(client, "kube", None)
    try:
        if kube is not None:
            body = _kube_post(client, kube, falcopayload)
            logger.info("%s - Function Response : %s", FISSION, body)
        else:
            client.add_header(FISSION_EVENT_ID_KEY, str(uuid.uuid4()))
            client.content_type = FISSION_CONTENT_TYPE
            client.post(falcopayload)
    except OutputError as exc:
        client.record(DESTINATION, ERROR)
        logger.error("%s - %s", FISSION, exc)
        return
    logger.info('%s - Call Function "%s" OK', FISSION, _function_name(client))
    client.record(DESTINATION, OK)