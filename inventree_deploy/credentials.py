"""Resolution of credential references to secret values."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

from .errors import CredentialUnavailable


def resolve_reference(raw: object, base_path: Optional[Path] = None) -> Path:
    """Turn a credential reference from configuration into an absolute path."""

    candidate = Path(str(raw)).expanduser()
    if not candidate.is_absolute() and base_path is not None:
        candidate = base_path / candidate
    return candidate.resolve(strict=False)


def read_credential(path: Path) -> str:
    """Return the secret stored in ``path``.

    A trailing newline is dropped so files written with ``echo`` work. The
    secret itself never appears in raised errors.
    """

    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise CredentialUnavailable(path, "is missing") from exc
    except IsADirectoryError as exc:
        raise CredentialUnavailable(path, "is a directory") from exc
    except PermissionError as exc:
        raise CredentialUnavailable(path, "is not readable") from exc
    except UnicodeDecodeError as exc:
        raise CredentialUnavailable(path, "is not valid UTF-8") from exc
    except OSError as exc:
        raise CredentialUnavailable(path, f"could not be read ({exc.strerror or exc})") from exc

    secret = raw.rstrip("\r\n")
    if not secret:
        raise CredentialUnavailable(path, "is empty")
    return secret


__all__ = ["read_credential", "resolve_reference"]
