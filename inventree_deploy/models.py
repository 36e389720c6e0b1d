"""Domain models for declarative user reconciliation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Union

AttributeValue = Union[str, bool]

# Columns of the wrapped application's user table that desired state may set.
STRING_ATTRIBUTES = ("email", "first_name", "last_name")
BOOLEAN_ATTRIBUTES = ("is_superuser", "is_staff", "is_active")
MANAGED_ATTRIBUTES = STRING_ATTRIBUTES + BOOLEAN_ATTRIBUTES

ATTRIBUTE_ALIASES: Dict[str, str] = {
    "superuser": "is_superuser",
    "staff": "is_staff",
    "active": "is_active",
}

# Values used for attributes a record does not declare when a user is created.
ATTRIBUTE_DEFAULTS: Dict[str, AttributeValue] = {
    "email": "",
    "first_name": "",
    "last_name": "",
    "is_superuser": False,
    "is_staff": False,
    "is_active": True,
}


@dataclass(frozen=True)
class UserRecord:
    """A user account as declared in the desired-state file."""

    identifier: str
    attributes: Mapping[str, AttributeValue] = field(default_factory=dict)
    credential_ref: Optional[Path] = None


@dataclass(frozen=True)
class StoredUser:
    """Represents a user row held by the application's user store."""

    id: int
    identifier: str
    attributes: Mapping[str, AttributeValue]
    date_joined: Optional[datetime] = None


class Outcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    FAILED = "failed"


@dataclass(frozen=True)
class RecordResult:
    identifier: str
    outcome: Outcome
    reason: Optional[str] = None
    changed_attributes: tuple[str, ...] = ()
    credential_written: bool = False

    def describe(self) -> str:
        if self.outcome is Outcome.FAILED:
            return f"{self.identifier}: failed:{self.reason or 'unknown error'}"
        line = f"{self.identifier}: {self.outcome.value}"
        if self.outcome is Outcome.UPDATED and self.changed_attributes:
            line += f" ({', '.join(self.changed_attributes)})"
        return line


@dataclass
class ReconcileReport:
    """Per-record outcomes of a single reconciliation run."""

    results: List[RecordResult] = field(default_factory=list)

    def add(self, result: RecordResult) -> None:
        self.results.append(result)

    def outcome_for(self, identifier: str) -> Optional[Outcome]:
        for result in self.results:
            if result.identifier == identifier:
                return result.outcome
        return None

    def count(self, outcome: Outcome) -> int:
        return sum(1 for result in self.results if result.outcome is outcome)

    @property
    def failed(self) -> List[RecordResult]:
        return [result for result in self.results if result.outcome is Outcome.FAILED]

    @property
    def succeeded(self) -> bool:
        return not self.failed

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    def summary_lines(self) -> List[str]:
        lines = [result.describe() for result in self.results]
        lines.append(
            "{total} user(s): {created} created, {updated} updated, "
            "{unchanged} unchanged, {failed} failed".format(
                total=len(self.results),
                created=self.count(Outcome.CREATED),
                updated=self.count(Outcome.UPDATED),
                unchanged=self.count(Outcome.UNCHANGED),
                failed=self.count(Outcome.FAILED),
            )
        )
        return lines


__all__ = [
    "ATTRIBUTE_ALIASES",
    "ATTRIBUTE_DEFAULTS",
    "BOOLEAN_ATTRIBUTES",
    "MANAGED_ATTRIBUTES",
    "STRING_ATTRIBUTES",
    "Outcome",
    "ReconcileReport",
    "RecordResult",
    "StoredUser",
    "UserRecord",
]
