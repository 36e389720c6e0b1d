"""Rendering of the systemd units that supervise the server and the worker."""
from __future__ import annotations

import shlex
import sys
from pathlib import Path
from typing import Dict, Optional

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from .config import CONFIG_FILE_ENV, DeploymentConfig

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"
PROJECT_ROOT = Path(__file__).resolve().parent.parent

SERVER_UNIT = "inventree-server.service"
WORKER_UNIT = "inventree-worker.service"

# Migrations on a large database can take a while.
DEFAULT_START_TIMEOUT = 300

_environment = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    undefined=StrictUndefined,
    keep_trailing_newline=True,
    autoescape=False,
)


def prestart_command(
    deployment: DeploymentConfig,
    *,
    python: Optional[Path] = None,
    entrypoint: Optional[Path] = None,
) -> str:
    parts = [
        str(python or sys.executable),
        str(entrypoint or (PROJECT_ROOT / "main.py")),
        "prestart",
        "--deploy-config",
        str(deployment.path),
    ]
    return shlex.join(parts)


def render_units(
    deployment: DeploymentConfig,
    *,
    python: Optional[Path] = None,
    entrypoint: Optional[Path] = None,
    start_timeout: int = DEFAULT_START_TIMEOUT,
) -> Dict[str, str]:
    """Return unit file name → contents for both InvenTree services."""

    common = {
        "user": deployment.user,
        "group": deployment.group,
        "working_dir": str(deployment.data_dir),
        "config_env": CONFIG_FILE_ENV,
        "config_file": str(deployment.config_file),
    }
    server = _environment.get_template(f"{SERVER_UNIT}.j2").render(
        exec_start_pre=prestart_command(deployment, python=python, entrypoint=entrypoint),
        exec_start=shlex.join(deployment.server_command),
        start_timeout=start_timeout,
        **common,
    )
    worker = _environment.get_template(f"{WORKER_UNIT}.j2").render(
        server_unit=SERVER_UNIT,
        exec_start=shlex.join(deployment.worker_command),
        **common,
    )
    return {SERVER_UNIT: server, WORKER_UNIT: worker}


__all__ = [
    "DEFAULT_START_TIMEOUT",
    "SERVER_UNIT",
    "TEMPLATE_DIR",
    "WORKER_UNIT",
    "prestart_command",
    "render_units",
]
