from __future__ import annotations

import json
import os
import stat
import subprocess
from pathlib import Path
from typing import List

import pytest
import yaml

from inventree_deploy import lifecycle
from inventree_deploy.config import DeploymentConfig, load_deployment_config
from inventree_deploy.database import SqlUserStore
from inventree_deploy.errors import SecretError
from inventree_deploy.lifecycle import (
    CONFIG_FILE_MODE,
    CommandFailed,
    prestart,
    provision_directories,
    render_app_config,
    run_migrations,
    write_app_config,
)
from inventree_deploy.models import Outcome


@pytest.fixture()
def deployment(tmp_path: Path) -> DeploymentConfig:
    secrets_dir = tmp_path / "secrets"
    secrets_dir.mkdir()
    (secrets_dir / "db").write_text("db-pass\n", encoding="utf-8")
    path = tmp_path / "deploy.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "data_dir": "state",
                "site_url": "https://parts.example.com",
                "database": {"ENGINE": "sqlite3", "NAME": "inventree.sqlite3", "password_file": "secrets/db"},
                "settings": {"debug": False, "static_root": "/ignored"},
                "migrate_command": ["inventree-manage", "migrate"],
            }
        ),
        encoding="utf-8",
    )
    return load_deployment_config(path)


class FakeRun:
    def __init__(self, returncode: int = 0) -> None:
        self.returncode = returncode
        self.calls: List[dict] = []

    def __call__(self, command, env=None, check=False):
        self.calls.append({"command": list(command), "env": env})
        return subprocess.CompletedProcess(command, self.returncode)


def test_provision_directories_creates_missing_paths(tmp_path: Path) -> None:
    existing = tmp_path / "existing"
    existing.mkdir(mode=0o755)
    existing.chmod(0o755)
    fresh = tmp_path / "fresh" / "nested"

    created = provision_directories([existing, fresh])

    assert created == [fresh]
    assert fresh.is_dir()
    assert stat.S_IMODE(fresh.stat().st_mode) == 0o750
    assert stat.S_IMODE(existing.stat().st_mode) == 0o755


def test_provision_directories_is_idempotent(tmp_path: Path) -> None:
    target = tmp_path / "state"

    assert provision_directories([target]) == [target]
    assert provision_directories([target]) == []


def test_render_app_config_injects_managed_keys(deployment: DeploymentConfig) -> None:
    rendered = render_app_config(deployment)

    assert rendered["debug"] is False
    assert rendered["static_root"] == str(deployment.static_root)
    assert rendered["media_root"] == str(deployment.media_root)
    assert rendered["backup_dir"] == str(deployment.backup_dir)
    assert rendered["site_url"] == "https://parts.example.com"
    assert rendered["database"] == {
        "ENGINE": "sqlite3",
        "NAME": deployment.database.name,
        "PASSWORD": "db-pass",
    }


def test_render_app_config_requires_readable_database_secret(
    deployment: DeploymentConfig,
) -> None:
    deployment.database_password_file.unlink()

    with pytest.raises(SecretError):
        render_app_config(deployment)


def test_write_app_config_only_rewrites_on_change(deployment: DeploymentConfig) -> None:
    assert write_app_config(deployment) is True
    config_file = deployment.config_file
    assert stat.S_IMODE(config_file.stat().st_mode) == CONFIG_FILE_MODE
    loaded = yaml.safe_load(config_file.read_text(encoding="utf-8"))
    assert loaded["database"]["NAME"] == deployment.database.name

    assert write_app_config(deployment) is False

    config_file.write_text("debug: true\n", encoding="utf-8")
    config_file.chmod(0o644)
    assert write_app_config(deployment) is True
    assert stat.S_IMODE(config_file.stat().st_mode) == CONFIG_FILE_MODE


def test_write_app_config_never_exposes_secret_through_loose_file(
    deployment: DeploymentConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    config_file = deployment.config_file
    config_file.parent.mkdir(parents=True)
    config_file.write_text("debug: true\n", encoding="utf-8")
    config_file.chmod(0o644)
    seen = []
    real_replace = lifecycle.os.replace

    def checking_replace(src, dst):
        seen.append((stat.S_IMODE(os.stat(src).st_mode), config_file.read_text(encoding="utf-8")))
        real_replace(src, dst)

    monkeypatch.setattr(lifecycle.os, "replace", checking_replace)

    assert write_app_config(deployment) is True

    assert seen == [(CONFIG_FILE_MODE, "debug: true\n")]
    assert "db-pass" in config_file.read_text(encoding="utf-8")
    assert stat.S_IMODE(config_file.stat().st_mode) == CONFIG_FILE_MODE
    assert sorted(p.name for p in config_file.parent.iterdir()) == ["config.yaml"]


def test_write_app_config_failure_keeps_previous_file(
    deployment: DeploymentConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    config_file = deployment.config_file
    config_file.parent.mkdir(parents=True)
    config_file.write_text("debug: true\n", encoding="utf-8")

    def failing_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(lifecycle.os, "replace", failing_replace)

    with pytest.raises(OSError):
        write_app_config(deployment)

    assert config_file.read_text(encoding="utf-8") == "debug: true\n"
    assert sorted(p.name for p in config_file.parent.iterdir()) == ["config.yaml"]


def test_run_migrations_passes_config_location(
    deployment: DeploymentConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    fake_run = FakeRun()
    monkeypatch.setattr(lifecycle.subprocess, "run", fake_run)

    run_migrations(deployment)

    (call,) = fake_run.calls
    assert call["command"] == ["inventree-manage", "migrate"]
    assert call["env"]["INVENTREE_CONFIG_FILE"] == str(deployment.config_file)


def test_run_migrations_raises_on_failure(
    deployment: DeploymentConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(lifecycle.subprocess, "run", FakeRun(returncode=4))

    with pytest.raises(CommandFailed) as excinfo:
        run_migrations(deployment)

    assert excinfo.value.returncode == 4
    assert "inventree-manage migrate" in str(excinfo.value)


def test_run_migrations_reports_missing_executable(
    deployment: DeploymentConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    def missing(*args, **kwargs):
        raise FileNotFoundError("inventree-manage")

    monkeypatch.setattr(lifecycle.subprocess, "run", missing)

    with pytest.raises(CommandFailed) as excinfo:
        run_migrations(deployment)

    assert excinfo.value.returncode == 127


def test_prestart_without_users_file_skips_reconciliation(
    deployment: DeploymentConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    fake_run = FakeRun()
    monkeypatch.setattr(lifecycle.subprocess, "run", fake_run)

    assert prestart(deployment) is None
    assert deployment.config_file.exists()
    assert all(path.is_dir() for path in deployment.directories)
    assert len(fake_run.calls) == 1


def test_prestart_reconciles_declared_users(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / "admin.pw").write_text("letmein\n", encoding="utf-8")
    (tmp_path / "users.json").write_text(
        json.dumps({"admin": {"superuser": True, "password_file": "admin.pw"}}),
        encoding="utf-8",
    )
    path = tmp_path / "deploy.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "data_dir": "state",
                "users_file": "users.json",
                "database": {"ENGINE": "sqlite3", "NAME": "inventree.sqlite3"},
            }
        ),
        encoding="utf-8",
    )
    deployment = load_deployment_config(path)
    store = SqlUserStore.for_sqlite(Path(deployment.database.name), create=True)

    def migrate(command, env=None, check=False):
        # Stand-in for the application's migrations creating its user table.
        store.initialize()
        return subprocess.CompletedProcess(command, 0)

    monkeypatch.setattr(lifecycle.subprocess, "run", migrate)

    report = prestart(deployment)

    assert report is not None
    assert report.outcome_for("admin") is Outcome.CREATED
    assert store.find_user("admin").attributes["is_superuser"] is True
