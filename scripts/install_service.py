#!/usr/bin/env python3
"""Installer for the InvenTree server and worker services."""

from __future__ import annotations

import argparse
import importlib
import os
import shlex
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Iterable, Mapping, NamedTuple, Sequence

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from inventree_deploy.config import (
    DEFAULT_DEPLOY_CONFIG,
    DEPLOY_CONFIG_ENV,
    DeploymentConfig,
    load_deployment_config,
    resolve_config_path,
)
from inventree_deploy.errors import DeployError
from inventree_deploy.lifecycle import provision_directories, write_app_config
from inventree_deploy.systemd import SERVER_UNIT, WORKER_UNIT, render_units


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Install and enable the InvenTree services")
    parser.add_argument(
        "--deploy-config",
        dest="deploy_config",
        default=None,
        help=f"Path to the deployment description (defaults to {DEPLOY_CONFIG_ENV} or {DEFAULT_DEPLOY_CONFIG})",
    )
    parser.add_argument(
        "--skip-deps",
        action="store_true",
        help="Skip installing this project's Python dependencies via pip",
    )
    parser.add_argument(
        "--pip-extra-args",
        default="",
        help=(
            "Additional arguments forwarded to `pip install`. Provide them as a quoted "
            "string, e.g. --pip-extra-args='--proxy=http://proxy:3128'"
        ),
    )
    parser.add_argument(
        "--no-start",
        action="store_true",
        help="Write the units but do not enable or restart them",
    )
    return parser.parse_args(argv)


def run_command(command: Sequence[str]) -> None:
    printable = " ".join(shlex.quote(part) for part in command)
    print(f"-> {printable}")
    subprocess.check_call(command)


class PackageRequirement(NamedTuple):
    """Represents a runtime dependency and the modules that satisfy it."""

    package: str
    modules: tuple[str, ...]


REQUIRED_PACKAGES: tuple[PackageRequirement, ...] = (
    PackageRequirement("PyYAML", ("yaml",)),
    PackageRequirement("passlib", ("passlib",)),
    PackageRequirement("jinja2", ("jinja2",)),
    PackageRequirement("httpx", ("httpx",)),
    PackageRequirement("psycopg2-binary", ("psycopg2",)),
)

SERVICE_UNITS = (SERVER_UNIT, WORKER_UNIT)
SYSTEMD_DIR_ENV = "INVENTREE_SYSTEMD_DIR"
DEFAULT_SYSTEMD_DIR = Path("/etc/systemd/system")


def install_dependencies(extra_args: Sequence[str]) -> None:
    if not (ROOT / "pyproject.toml").exists():
        print("No pyproject.toml found; skipping dependency installation.")
        return

    command = [sys.executable, "-m", "pip", "install", str(ROOT)]
    if extra_args:
        command.extend(extra_args)

    print("Installing Python dependencies...")
    run_command(command)


def ensure_required_packages_installed(
    packages: Iterable[PackageRequirement | str] = REQUIRED_PACKAGES,
) -> None:
    """Verify that critical runtime dependencies can be imported."""

    missing: list[str] = []
    for requirement in packages:
        if isinstance(requirement, PackageRequirement):
            spec = requirement
        else:
            normalized = str(requirement)
            spec = PackageRequirement(normalized, (normalized,))

        for module_name in spec.modules:
            try:
                importlib.import_module(module_name)
            except ImportError:
                continue
            else:
                break
        else:
            missing.append(spec.package)

    if missing:
        names = ", ".join(sorted(missing))
        raise RuntimeError(
            "Missing required Python packages: "
            f"{names}. Re-run the installer or execute "
            f"`{sys.executable} -m pip install {ROOT}`."
        )


def _resolve_service_directory(service_dir: Path | None) -> Path:
    if service_dir is not None:
        return service_dir

    override = os.getenv(SYSTEMD_DIR_ENV)
    if override:
        return Path(override).expanduser()

    return DEFAULT_SYSTEMD_DIR


def _invoke_systemctl(*args: str) -> None:
    systemctl = shutil.which("systemctl")
    if not systemctl:
        print("systemctl not available; skipping:", "systemctl", *args)
        return

    run_command([systemctl, *args])


def write_units(units: Mapping[str, str], target_dir: Path) -> list[Path]:
    """Write ``units`` into ``target_dir``; return the paths whose content changed."""

    target_dir.mkdir(parents=True, exist_ok=True)
    changed: list[Path] = []
    for name, contents in units.items():
        unit_path = target_dir / name
        existing = unit_path.read_text(encoding="utf-8") if unit_path.exists() else None
        if existing == contents:
            print(f"Systemd unit already up to date at {unit_path}")
            continue
        unit_path.write_text(contents, encoding="utf-8")
        print(f"Wrote systemd unit to {unit_path}")
        changed.append(unit_path)
    return changed


def create_systemd_services(
    deployment: DeploymentConfig,
    *,
    service_dir: Path | None = None,
    python: Path | None = None,
    entrypoint: Path | None = None,
    start: bool = True,
) -> list[Path]:
    target_dir = _resolve_service_directory(service_dir)
    units = render_units(deployment, python=python, entrypoint=entrypoint)

    if write_units(units, target_dir):
        _invoke_systemctl("daemon-reload")

    if start:
        _invoke_systemctl("enable", *SERVICE_UNITS)
        _invoke_systemctl("restart", *SERVICE_UNITS)
    return [target_dir / name for name in units]


def prepare_state(deployment: DeploymentConfig) -> None:
    created = provision_directories(
        deployment.directories,
        user=deployment.user,
        group=deployment.group,
    )
    for path in created:
        print(f"Created directory {path}")
    if write_app_config(deployment):
        print(f"Wrote application configuration to {deployment.config_file}")
    else:
        print(f"Application configuration already up to date at {deployment.config_file}")
    if os.geteuid() == 0:
        shutil.chown(deployment.config_file, user=deployment.user, group=deployment.group)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    pip_args = shlex.split(args.pip_extra_args) if args.pip_extra_args else []

    try:
        if not args.skip_deps:
            install_dependencies(pip_args)
            ensure_required_packages_installed()
        config_path = resolve_config_path(args.deploy_config, DEPLOY_CONFIG_ENV, DEFAULT_DEPLOY_CONFIG)
        deployment = load_deployment_config(config_path)
        prepare_state(deployment)
        unit_paths = create_systemd_services(deployment, start=not args.no_start)
    except subprocess.CalledProcessError as exc:
        cmd = exc.cmd
        if isinstance(cmd, (list, tuple)):
            cmd_display = " ".join(shlex.quote(str(part)) for part in cmd)
        else:
            cmd_display = str(cmd)
        print(f"Command failed with exit code {exc.returncode}: {cmd_display}", file=sys.stderr)
        return exc.returncode or 1
    except (DeployError, RuntimeError, OSError) as exc:
        print(str(exc), file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInstallation aborted by user.")
        return 1

    print("\nInstallation complete!\n")
    print("Service details:")
    print(f"  • Web server listening on {deployment.bind}")
    print(f"  • Shared configuration at: {deployment.config_file}")
    print(f"  • Data directory: {deployment.data_dir}")
    if deployment.users_file is not None:
        print(f"  • Users reconciled from {deployment.users_file} before every start")
    for unit_path in unit_paths:
        print(f"  • systemd unit installed at: {unit_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
