from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest
from passlib.context import CryptContext

from inventree_deploy import database as database_module
from inventree_deploy.database import SqlUserStore


@pytest.fixture(autouse=True)
def fast_password_hashing(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep PBKDF2 cheap so the suite does not spend its time hashing."""

    monkeypatch.setattr(
        database_module,
        "_pwd_context",
        CryptContext(
            schemes=["django_pbkdf2_sha256"],
            django_pbkdf2_sha256__default_rounds=1000,
        ),
    )


@pytest.fixture()
def store(tmp_path: Path) -> SqlUserStore:
    user_store = SqlUserStore.for_sqlite(tmp_path / "inventree.sqlite3", create=True)
    user_store.initialize()
    return user_store


@pytest.fixture()
def write_secret(tmp_path: Path) -> Callable[[str, str], Path]:
    secrets_dir = tmp_path / "secrets"
    secrets_dir.mkdir()

    def _write(name: str, value: str) -> Path:
        path = secrets_dir / name
        path.write_text(value, encoding="utf-8")
        return path

    return _write
