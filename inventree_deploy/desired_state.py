"""Loading and validation of the declarative user list."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .credentials import resolve_reference
from .errors import ConfigurationError, DuplicateIdentifier
from .models import (
    ATTRIBUTE_ALIASES,
    BOOLEAN_ATTRIBUTES,
    STRING_ATTRIBUTES,
    AttributeValue,
    UserRecord,
)

_CREDENTIAL_KEYS = ("password_file", "credential_ref", "credentialRef")
_IDENTIFIER_KEYS = ("identifier", "username")


class _JSONObject(dict):
    """Decoded JSON object that remembers keys which appeared more than once."""

    def __init__(self, pairs: List[Tuple[str, object]]) -> None:
        super().__init__()
        self.duplicates: List[str] = []
        for key, value in pairs:
            if key in self:
                self.duplicates.append(key)
            self[key] = value


def _reject_repeated_keys(value: object, identifier: str) -> None:
    if isinstance(value, _JSONObject):
        if value.duplicates:
            raise ConfigurationError(
                f"User {identifier!r}: key {value.duplicates[0]!r} appears more than once"
            )
        for nested in value.values():
            _reject_repeated_keys(nested, identifier)


def _check_attribute(identifier: str, key: str, name: str, value: object) -> None:
    if name in BOOLEAN_ATTRIBUTES:
        if not isinstance(value, bool):
            raise ConfigurationError(f"User {identifier!r}: attribute {key!r} must be true or false")
    elif name in STRING_ATTRIBUTES:
        if not isinstance(value, str):
            raise ConfigurationError(f"User {identifier!r}: attribute {key!r} must be a string")
    else:
        raise ConfigurationError(f"User {identifier!r}: unknown attribute {key!r}")


def _normalise_attributes(identifier: str, raw: Mapping[str, object]) -> Dict[str, AttributeValue]:
    attributes: Dict[str, AttributeValue] = {}
    for key, value in raw.items():
        name = ATTRIBUTE_ALIASES.get(key, key)
        if name in attributes:
            raise ConfigurationError(f"User {identifier!r} declares attribute {name!r} more than once")
        _check_attribute(identifier, key, name, value)
        attributes[name] = value.strip() if isinstance(value, str) else value
    return attributes


def parse_record(
    identifier: object,
    entry: object,
    *,
    base_path: Optional[Path] = None,
) -> UserRecord:
    """Build a :class:`UserRecord` from one desired-state entry."""

    if not isinstance(identifier, str) or not identifier.strip():
        raise ConfigurationError("Desired-state entries require a non-empty identifier")
    identifier = identifier.strip()

    if entry is None:
        entry = {}
    if not isinstance(entry, dict):
        raise ConfigurationError(f"User {identifier!r}: entry must be an object")
    _reject_repeated_keys(entry, identifier)

    fields = dict(entry)
    for key in _IDENTIFIER_KEYS:
        fields.pop(key, None)

    credential_ref = None
    credential_keys = [key for key in _CREDENTIAL_KEYS if fields.get(key) is not None]
    if len(credential_keys) > 1:
        raise ConfigurationError(
            f"User {identifier!r}: only one of {', '.join(_CREDENTIAL_KEYS)} may be given"
        )
    for key in _CREDENTIAL_KEYS:
        value = fields.pop(key, None)
        if value is None:
            continue
        if not isinstance(value, str) or not value.strip():
            raise ConfigurationError(f"User {identifier!r}: {key!r} must be a non-empty path")
        credential_ref = resolve_reference(value.strip(), base_path)

    nested = fields.pop("attributes", None)
    if nested is not None:
        if not isinstance(nested, dict):
            raise ConfigurationError(f"User {identifier!r}: 'attributes' must be an object")
        overlap = set(nested) & set(fields)
        if overlap:
            raise ConfigurationError(
                f"User {identifier!r}: {', '.join(sorted(overlap))} given both inline and under 'attributes'"
            )
        fields.update(nested)

    return UserRecord(
        identifier=identifier,
        attributes=_normalise_attributes(identifier, fields),
        credential_ref=credential_ref,
    )


def parse_desired_state(raw: object, *, base_path: Optional[Path] = None) -> List[UserRecord]:
    """Convert decoded JSON into validated user records."""

    if raw is None:
        return []

    if isinstance(raw, dict):
        duplicates = getattr(raw, "duplicates", None)
        if duplicates:
            raise DuplicateIdentifier(duplicates[0].strip())
        records = [parse_record(key, value, base_path=base_path) for key, value in raw.items()]
    elif isinstance(raw, list):
        records = []
        for item in raw:
            if not isinstance(item, dict):
                raise ConfigurationError("Desired-state list entries must be objects")
            identifier = next((item[key] for key in _IDENTIFIER_KEYS if key in item), None)
            records.append(parse_record(identifier, item, base_path=base_path))
    else:
        raise ConfigurationError("Desired state must be a JSON object or list")

    validate_records(records)
    return records


def validate_records(records: Sequence[UserRecord]) -> None:
    """Reject the whole batch on empty or repeated identifiers and malformed attributes."""

    seen = set()
    for record in records:
        if not record.identifier or not record.identifier.strip():
            raise ConfigurationError("Desired-state entries require a non-empty identifier")
        if record.identifier in seen:
            raise DuplicateIdentifier(record.identifier)
        for name, value in record.attributes.items():
            _check_attribute(record.identifier, name, name, value)
        seen.add(record.identifier)


def load_desired_state(path: Path) -> List[UserRecord]:
    """Load user records from a JSON file written by the configuration layer."""

    try:
        with path.open("r", encoding="utf-8") as handle:
            raw = json.load(handle, object_pairs_hook=_JSONObject)
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Desired-state file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Desired-state file {path} is not valid JSON: {exc}") from exc
    except OSError as exc:
        raise ConfigurationError(f"Unable to read desired-state file {path}: {exc}") from exc

    return parse_desired_state(raw, base_path=path.parent)


__all__ = [
    "load_desired_state",
    "parse_desired_state",
    "parse_record",
    "validate_records",
]
