"""Converge the application's user table towards the declared user list.

The reconciler runs once per service start, before the HTTP server and the
background worker. It never deletes users: an account that disappears from
the desired state keeps its row untouched.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Dict, Optional, Sequence

from .credentials import read_credential
from .database import UserStore, hash_password, make_unusable_password
from .desired_state import validate_records
from .errors import SecretError, StoreError
from .models import AttributeValue, Outcome, ReconcileReport, RecordResult, StoredUser, UserRecord

logger = logging.getLogger("inventree_deploy.reconciler")


def attribute_changes(record: UserRecord, stored: StoredUser) -> Dict[str, AttributeValue]:
    """Return the declared attributes whose stored value differs."""

    return {
        name: value
        for name, value in record.attributes.items()
        if stored.attributes.get(name) != value
    }


class UserReconciler:
    """Applies a desired-state snapshot to a :class:`UserStore`."""

    def __init__(
        self,
        store: UserStore,
        *,
        credential_reader: Callable[[Path], str] = read_credential,
        password_hasher: Callable[[str], str] = hash_password,
    ) -> None:
        self._store = store
        self._read_credential = credential_reader
        self._hash_password = password_hasher

    def reconcile(self, records: Sequence[UserRecord]) -> ReconcileReport:
        """Create or update every record, collecting per-record outcomes.

        Raises :class:`~inventree_deploy.errors.ConfigurationError` before
        touching the store when identifiers are empty or repeated. A
        :class:`~inventree_deploy.errors.StoreError` aborts the remaining
        records; the partial report is attached to the exception.
        """

        validate_records(records)

        report = ReconcileReport()
        for record in records:
            try:
                result = self._apply(record)
            except SecretError as exc:
                logger.warning("Skipping user %s: %s", record.identifier, exc)
                result = RecordResult(record.identifier, Outcome.FAILED, reason=str(exc))
            except StoreError as exc:
                logger.error(
                    "User store failure while applying %s; %d of %d user(s) processed",
                    record.identifier,
                    len(report.results),
                    len(records),
                )
                exc.report = report
                raise
            report.add(result)
            logger.info("%s", result.describe())

        return report

    def _apply(self, record: UserRecord) -> RecordResult:
        password_hash: Optional[str] = None
        if record.credential_ref is not None:
            password_hash = self._hash_password(self._read_credential(record.credential_ref))

        stored = self._store.find_user(record.identifier)
        if stored is None:
            self._store.create_user(
                record.identifier,
                dict(record.attributes),
                password_hash or make_unusable_password(),
            )
            return RecordResult(
                record.identifier,
                Outcome.CREATED,
                changed_attributes=tuple(sorted(record.attributes)),
                credential_written=password_hash is not None,
            )

        changes = attribute_changes(record, stored)
        if changes or password_hash is not None:
            self._store.update_user(stored, changes, password_hash)

        # Password rewrites alone leave the outcome at UNCHANGED.
        return RecordResult(
            record.identifier,
            Outcome.UPDATED if changes else Outcome.UNCHANGED,
            changed_attributes=tuple(sorted(changes)),
            credential_written=password_hash is not None,
        )


def reconcile(store: UserStore, records: Sequence[UserRecord]) -> ReconcileReport:
    return UserReconciler(store).reconcile(records)


__all__ = ["UserReconciler", "attribute_changes", "reconcile"]
