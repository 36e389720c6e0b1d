import json
from pathlib import Path

import pytest
import yaml

import main as cli
from inventree_deploy.database import SqlUserStore
from inventree_deploy.errors import StoreUnavailable
from inventree_deploy.health import HealthResult
from main import _parse_args


def test_default_command_invokes_sync_users() -> None:
    args = _parse_args([])
    assert args.command == "sync-users"


def test_default_command_accepts_options_without_subcommand() -> None:
    args = _parse_args(["--config", "/etc/inventree/config.yaml", "--users", "users.json"])
    assert args.command == "sync-users"
    assert args.config == "/etc/inventree/config.yaml"
    assert args.users == "users.json"


def test_prestart_subcommand_still_available() -> None:
    args = _parse_args(["prestart", "--deploy-config", "/etc/inventree/deploy.yaml"])
    assert args.command == "prestart"
    assert args.deploy_config == "/etc/inventree/deploy.yaml"


@pytest.fixture()
def environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    for name in ("INVENTREE_CONFIG_FILE", "INVENTREE_USERS_FILE", "INVENTREE_DEPLOY_CONFIG"):
        monkeypatch.delenv(name, raising=False)
    (tmp_path / "config.yaml").write_text(
        yaml.safe_dump({"database": {"ENGINE": "sqlite3", "NAME": "inventree.sqlite3"}}),
        encoding="utf-8",
    )
    SqlUserStore.for_sqlite(tmp_path / "inventree.sqlite3", create=True).initialize()
    return tmp_path


def _write_users(directory: Path, users: object) -> Path:
    path = directory / "users.json"
    path.write_text(json.dumps(users), encoding="utf-8")
    return path


def _sync(directory: Path) -> int:
    return cli.main(["--config", str(directory / "config.yaml"), "--users", str(directory / "users.json")])


def test_sync_users_creates_declared_user(environment: Path, capsys: pytest.CaptureFixture[str]) -> None:
    (environment / "alice.pw").write_text("hunter2\n", encoding="utf-8")
    _write_users(environment, {"alice": {"superuser": True, "credentialRef": "alice.pw"}})

    assert _sync(environment) == cli.EXIT_OK

    out = capsys.readouterr().out
    assert "alice: created" in out
    assert "1 user(s): 1 created, 0 updated, 0 unchanged, 0 failed" in out
    user = SqlUserStore.for_sqlite(environment / "inventree.sqlite3").find_user("alice")
    assert user.attributes["is_superuser"] is True


def test_sync_users_reads_paths_from_environment(
    environment: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    users = _write_users(environment, {"bob": {}})
    monkeypatch.setenv("INVENTREE_CONFIG_FILE", str(environment / "config.yaml"))
    monkeypatch.setenv("INVENTREE_USERS_FILE", str(users))

    assert cli.main([]) == cli.EXIT_OK
    assert "bob: created" in capsys.readouterr().out


def test_sync_users_exits_non_zero_when_a_record_fails(
    environment: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    _write_users(environment, {"alice": {"password_file": "missing.pw"}, "bob": {}})

    assert _sync(environment) == cli.EXIT_RECORD_FAILURES

    out = capsys.readouterr().out
    assert "alice: failed:credential file" in out
    assert "bob: created" in out


def test_duplicate_identifiers_are_a_configuration_error(
    environment: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    (environment / "users.json").write_text('{"alice": {}, "alice": {"staff": true}}', encoding="utf-8")

    assert _sync(environment) == cli.EXIT_CONFIGURATION_ERROR

    assert "Duplicate user identifier" in capsys.readouterr().err
    assert SqlUserStore.for_sqlite(environment / "inventree.sqlite3").list_users() == []


def test_missing_users_path_is_a_configuration_error(environment: Path) -> None:
    assert cli.main(["sync-users", "--config", str(environment / "config.yaml")]) == cli.EXIT_CONFIGURATION_ERROR


def test_store_failure_prints_partial_report(
    environment: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    _write_users(environment, {"alice": {}, "bob": {}})
    original = SqlUserStore.find_user

    def flaky_find_user(self, identifier):
        if identifier == "bob":
            raise StoreUnavailable("Lost connection to the database")
        return original(self, identifier)

    monkeypatch.setattr(SqlUserStore, "find_user", flaky_find_user)

    assert _sync(environment) == cli.EXIT_STORE_ERROR

    captured = capsys.readouterr()
    assert "alice: created" in captured.out
    assert "Lost connection" in captured.err


def test_list_users(environment: Path, capsys: pytest.CaptureFixture[str]) -> None:
    store = SqlUserStore.for_sqlite(environment / "inventree.sqlite3")
    store.create_user("alice", {"email": "alice@example.com", "is_superuser": True}, "!x")

    assert cli.main(["list-users", "--config", str(environment / "config.yaml")]) == cli.EXIT_OK

    out = capsys.readouterr().out
    assert "1 user(s) found:" in out
    assert "alice@example.com" in out
    assert "superuser" in out


def test_healthcheck_uses_explicit_url(monkeypatch: pytest.MonkeyPatch) -> None:
    probed = []

    def fake_check(url, *, timeout):
        probed.append((url, timeout))
        return HealthResult(False, "down")

    monkeypatch.setattr(cli, "check_health", fake_check)

    assert cli.main(["healthcheck", "--url", "http://localhost:8000/", "--timeout", "2"]) == 1
    assert probed == [("http://localhost:8000/", 2.0)]
