from __future__ import annotations

import os
from pathlib import Path

import pytest

from inventree_deploy.credentials import read_credential, resolve_reference
from inventree_deploy.errors import CredentialUnavailable, SecretError


def test_read_credential_strips_trailing_newline(write_secret) -> None:
    path = write_secret("alice", "correct horse battery staple\n")

    assert read_credential(path) == "correct horse battery staple"


def test_read_credential_keeps_inner_whitespace(write_secret) -> None:
    path = write_secret("bob", "  spaced out  \r\n")

    assert read_credential(path) == "  spaced out  "


def test_missing_file(tmp_path: Path) -> None:
    with pytest.raises(CredentialUnavailable) as excinfo:
        read_credential(tmp_path / "nope")

    assert "is missing" in str(excinfo.value)
    assert isinstance(excinfo.value, SecretError)


def test_empty_file(write_secret) -> None:
    path = write_secret("empty", "\n")

    with pytest.raises(CredentialUnavailable, match="is empty"):
        read_credential(path)


def test_directory_is_not_a_credential(tmp_path: Path) -> None:
    with pytest.raises(CredentialUnavailable):
        read_credential(tmp_path)


@pytest.mark.skipif(hasattr(os, "geteuid") and os.geteuid() == 0, reason="root can read any file")
def test_unreadable_file(write_secret) -> None:
    path = write_secret("locked", "secret")
    path.chmod(0)
    try:
        with pytest.raises(CredentialUnavailable, match="not readable"):
            read_credential(path)
    finally:
        path.chmod(0o600)


def test_error_message_never_contains_the_secret(write_secret) -> None:
    path = write_secret("binary", "")
    path.write_bytes(b"\xff\xfehunter2")

    with pytest.raises(CredentialUnavailable) as excinfo:
        read_credential(path)

    assert "hunter2" not in str(excinfo.value)


def test_resolve_reference_relative_to_base(tmp_path: Path) -> None:
    assert resolve_reference("secrets/alice", tmp_path) == (tmp_path / "secrets" / "alice").resolve()
    assert resolve_reference("/run/secrets/alice", tmp_path) == Path("/run/secrets/alice").resolve()
