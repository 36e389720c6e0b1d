"""Exception hierarchy shared by the deployment helpers and the user reconciler."""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover - import only for annotations
    from .models import ReconcileReport


class DeployError(Exception):
    """Base class for every error raised by :mod:`inventree_deploy`."""


class ConfigurationError(DeployError):
    """Raised when a configuration file or desired-state snapshot is malformed."""


class DuplicateIdentifier(ConfigurationError):
    """Raised when two desired-state records share the same identifier."""

    def __init__(self, identifier: str) -> None:
        super().__init__(f"Duplicate user identifier in desired state: {identifier!r}")
        self.identifier = identifier


class SecretError(DeployError):
    """Raised when a secret referenced by the configuration cannot be used."""


class CredentialUnavailable(SecretError):
    """Raised when a credential file is missing, unreadable or empty."""

    def __init__(self, path: object, reason: str) -> None:
        super().__init__(f"credential file {path} {reason}")
        self.path = path
        self.reason = reason


class StoreError(DeployError):
    """Raised when the user store rejects an operation.

    When raised while reconciling, ``report`` holds the outcomes of the
    records that completed before the failure.
    """

    def __init__(self, message: str, *, report: Optional["ReconcileReport"] = None) -> None:
        super().__init__(message)
        self.report = report


class StoreUnavailable(StoreError):
    """Raised when the connection to the user store is lost or refused."""


__all__ = [
    "DeployError",
    "ConfigurationError",
    "DuplicateIdentifier",
    "SecretError",
    "CredentialUnavailable",
    "StoreError",
    "StoreUnavailable",
]
