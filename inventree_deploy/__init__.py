"""Deployment helpers and declarative user reconciliation for InvenTree."""

from __future__ import annotations

from .database import SqlUserStore, UserStore, connect_store
from .errors import (
    ConfigurationError,
    CredentialUnavailable,
    DeployError,
    DuplicateIdentifier,
    SecretError,
    StoreError,
    StoreUnavailable,
)
from .models import Outcome, ReconcileReport, RecordResult, StoredUser, UserRecord
from .reconciler import UserReconciler, reconcile

__all__ = [
    "ConfigurationError",
    "CredentialUnavailable",
    "DeployError",
    "DuplicateIdentifier",
    "Outcome",
    "ReconcileReport",
    "RecordResult",
    "SecretError",
    "SqlUserStore",
    "StoreError",
    "StoreUnavailable",
    "StoredUser",
    "UserReconciler",
    "UserRecord",
    "UserStore",
    "connect_store",
    "reconcile",
]
