"""HTTP readiness probe for the InvenTree web server."""
from __future__ import annotations

import logging
from typing import NamedTuple

import httpx

from .config import DeploymentConfig
from .errors import ConfigurationError

logger = logging.getLogger("inventree_deploy.health")

_WILDCARD_HOSTS = {"0.0.0.0", "::", "[::]", ""}
DEFAULT_PORT = "8000"


class HealthResult(NamedTuple):
    healthy: bool
    detail: str


def health_url(deployment: DeploymentConfig, path: str = "/api/") -> str:
    """Derive a local URL for the server from its ``bind`` address."""

    if deployment.bind.startswith("unix:"):
        raise ConfigurationError(
            f"Cannot probe unix socket bind {deployment.bind!r} over HTTP; pass --url instead"
        )
    host, _, port = deployment.bind.rpartition(":")
    if not host:
        # gunicorn listens on 8000 when the bind names only a host.
        host, port = deployment.bind, DEFAULT_PORT
    if host in _WILDCARD_HOSTS:
        host = "127.0.0.1"
    return f"http://{host}:{port}{path}"


def check_health(url: str, *, timeout: float = 10.0) -> HealthResult:
    try:
        response = httpx.get(url, timeout=timeout, follow_redirects=False)
    except httpx.HTTPError as exc:
        logger.warning("Health check against %s failed: %s", url, exc)
        return HealthResult(False, f"Failed to contact {url}: {exc}")

    if 200 <= response.status_code < 400:
        return HealthResult(True, f"{url} responded with {response.status_code}")
    return HealthResult(False, f"{url} responded with {response.status_code}")


__all__ = ["HealthResult", "check_health", "health_url"]
