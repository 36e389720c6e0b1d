"""Pre-start steps shared by the installer and the supervisor hooks."""
from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Dict, Iterable, Optional, Sequence

import yaml

from .config import CONFIG_FILE_ENV, DeploymentConfig, load_app_config
from .credentials import read_credential
from .database import connect_store
from .desired_state import load_desired_state
from .models import ReconcileReport
from .reconciler import UserReconciler

logger = logging.getLogger("inventree_deploy.lifecycle")

DIRECTORY_MODE = 0o750
CONFIG_FILE_MODE = 0o600


class CommandFailed(RuntimeError):
    """Raised when an external pre-start command exits with a non-zero status."""

    def __init__(self, command: Sequence[str], returncode: int) -> None:
        super().__init__(f"Command exited with status {returncode}: {shlex.join(command)}")
        self.command = tuple(command)
        self.returncode = returncode


def provision_directories(
    paths: Iterable[Path],
    *,
    mode: int = DIRECTORY_MODE,
    user: Optional[str] = None,
    group: Optional[str] = None,
) -> list[Path]:
    """Create ``paths`` if missing and return the ones that were created.

    ``mode`` applies to new directories only. Ownership is only changed when
    running as root.
    """

    created: list[Path] = []
    for path in paths:
        if not path.exists():
            path.mkdir(parents=True, exist_ok=True)
            created.append(path)
            path.chmod(mode)
            logger.info("Created directory %s", path)
        if (user or group) and hasattr(os, "geteuid") and os.geteuid() == 0:
            shutil.chown(path, user=user, group=group)
    return created


def render_app_config(deployment: DeploymentConfig) -> Dict[str, object]:
    """Build the application's ``config.yaml`` contents for ``deployment``."""

    database = deployment.database.to_app_dict()
    if deployment.database_password_file is not None:
        database["PASSWORD"] = read_credential(deployment.database_password_file)

    rendered: Dict[str, object] = dict(deployment.settings)
    rendered.update(
        {
            "database": database,
            "static_root": str(deployment.static_root),
            "media_root": str(deployment.media_root),
            "backup_dir": str(deployment.backup_dir),
        }
    )
    if deployment.site_url:
        rendered["site_url"] = deployment.site_url
    return rendered


def write_app_config(deployment: DeploymentConfig) -> bool:
    """Materialise the shared config file. Returns ``True`` when it changed."""

    contents = yaml.safe_dump(render_app_config(deployment), default_flow_style=False, sort_keys=True)
    target = deployment.config_file
    existing = target.read_text(encoding="utf-8") if target.exists() else None
    if existing == contents:
        logger.info("Configuration already up to date at %s", target)
        return False

    target.parent.mkdir(parents=True, exist_ok=True)
    # mkstemp creates the file with mode 0600.
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", dir=target.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(contents)
        os.chmod(tmp_name, CONFIG_FILE_MODE)
        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    logger.info("Wrote configuration to %s", target)
    return True


def run_migrations(deployment: DeploymentConfig) -> None:
    """Run the application's schema migrations against the shared config."""

    command = list(deployment.migrate_command)
    env = dict(os.environ)
    env[CONFIG_FILE_ENV] = str(deployment.config_file)
    logger.info("Running migrations: %s", shlex.join(command))
    try:
        result = subprocess.run(command, env=env, check=False)
    except FileNotFoundError as exc:
        raise CommandFailed(command, 127) from exc
    if result.returncode != 0:
        raise CommandFailed(command, result.returncode)


def sync_users(config_path: Path, users_path: Path) -> ReconcileReport:
    """Reconcile the declared users into the store named by ``config_path``."""

    records = load_desired_state(users_path)
    app_config = load_app_config(config_path)
    store = connect_store(app_config.database)
    logger.info("Reconciling %d declared user(s) into %s", len(records), store.description)
    return UserReconciler(store).reconcile(records)


def prepare(deployment: DeploymentConfig) -> None:
    provision_directories(deployment.directories)
    write_app_config(deployment)


def prestart(deployment: DeploymentConfig) -> Optional[ReconcileReport]:
    """Run every step the supervisor requires before the services start."""

    prepare(deployment)
    run_migrations(deployment)
    if deployment.users_file is None:
        logger.info("No users file configured; skipping user reconciliation")
        return None
    return sync_users(deployment.config_file, deployment.users_file)


__all__ = [
    "CommandFailed",
    "prepare",
    "prestart",
    "provision_directories",
    "render_app_config",
    "run_migrations",
    "sync_users",
    "write_app_config",
]
