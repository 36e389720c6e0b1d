"""SQL-backed access to the wrapped application's user table."""
from __future__ import annotations

import logging
import secrets
import sqlite3
import string
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional

from passlib.context import CryptContext

from .config import DatabaseConfig
from .errors import StoreError, StoreUnavailable
from .models import (
    ATTRIBUTE_DEFAULTS,
    BOOLEAN_ATTRIBUTES,
    MANAGED_ATTRIBUTES,
    AttributeValue,
    StoredUser,
)

logger = logging.getLogger("inventree_deploy.database")

USER_TABLE = "auth_user"

_PBKDF2_ROUNDS = 600_000

# Hashes use the wrapped application's native "pbkdf2_sha256$rounds$salt$hash"
# layout so its login views can verify them.
_pwd_context = CryptContext(
    schemes=["django_pbkdf2_sha256"],
    django_pbkdf2_sha256__default_rounds=_PBKDF2_ROUNDS,
)

_UNUSABLE_PASSWORD_PREFIX = "!"
_UNUSABLE_PASSWORD_LENGTH = 40

_SQLITE_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS {USER_TABLE} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    password VARCHAR(128) NOT NULL,
    last_login TEXT NULL,
    is_superuser BOOLEAN NOT NULL,
    username VARCHAR(150) NOT NULL UNIQUE,
    first_name VARCHAR(150) NOT NULL,
    last_name VARCHAR(150) NOT NULL,
    email VARCHAR(254) NOT NULL,
    is_staff BOOLEAN NOT NULL,
    is_active BOOLEAN NOT NULL,
    date_joined TEXT NOT NULL
)
"""

_POSTGRESQL_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS {USER_TABLE} (
    id SERIAL PRIMARY KEY,
    password VARCHAR(128) NOT NULL,
    last_login TIMESTAMP WITH TIME ZONE NULL,
    is_superuser BOOLEAN NOT NULL,
    username VARCHAR(150) NOT NULL UNIQUE,
    first_name VARCHAR(150) NOT NULL,
    last_name VARCHAR(150) NOT NULL,
    email VARCHAR(254) NOT NULL,
    is_staff BOOLEAN NOT NULL,
    is_active BOOLEAN NOT NULL,
    date_joined TIMESTAMP WITH TIME ZONE NOT NULL
)
"""


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    return value.isoformat()


def _parse_datetime(value: object) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def hash_password(password: str) -> str:
    if not password:
        raise ValueError("Password must not be empty")
    return _pwd_context.hash(password)


def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed or hashed.startswith(_UNUSABLE_PASSWORD_PREFIX):
        return False
    try:
        return _pwd_context.verify(password, hashed)
    except ValueError:
        return False


def make_unusable_password() -> str:
    alphabet = string.ascii_letters + string.digits
    suffix = "".join(secrets.choice(alphabet) for _ in range(_UNUSABLE_PASSWORD_LENGTH))
    return _UNUSABLE_PASSWORD_PREFIX + suffix


class UserStore(ABC):
    """Capabilities the reconciler needs from the persistent user store."""

    @abstractmethod
    def find_user(self, identifier: str) -> Optional[StoredUser]:
        """Return the stored user with ``identifier`` or ``None``."""

    @abstractmethod
    def create_user(
        self,
        identifier: str,
        attributes: Mapping[str, AttributeValue],
        password_hash: str,
    ) -> StoredUser:
        """Insert a new user. Undeclared attributes take the store defaults."""

    @abstractmethod
    def update_user(
        self,
        user: StoredUser,
        changes: Mapping[str, AttributeValue],
        password_hash: Optional[str] = None,
    ) -> StoredUser:
        """Apply ``changes`` (and optionally a new password hash) atomically."""


class SqlUserStore(UserStore):
    """User store speaking DB-API 2.0 to SQLite or PostgreSQL.

    Every public method runs in its own transaction on a fresh connection, so
    a failure only ever loses the statement in flight.
    """

    def __init__(
        self,
        connect: Callable[[], Any],
        *,
        driver: Any,
        placeholder: str = "?",
        schema: str = _SQLITE_SCHEMA,
        description: str = "database",
    ) -> None:
        self._connect_fn = connect
        self._driver = driver
        self._placeholder = placeholder
        self._schema = schema
        self._description = description

    @classmethod
    def for_sqlite(cls, path: Path, *, create: bool = False) -> "SqlUserStore":
        """Open an existing SQLite file; ``create`` allows a new, empty one."""

        mode = "rwc" if create else "rw"
        uri = f"{Path(path).resolve(strict=False).as_uri()}?mode={mode}"

        def connect() -> sqlite3.Connection:
            return sqlite3.connect(uri, uri=True)

        return cls(connect, driver=sqlite3, placeholder="?", description=f"sqlite:{path}")

    @classmethod
    def for_postgresql(cls, config: DatabaseConfig) -> "SqlUserStore":
        import psycopg2

        params: Dict[str, Any] = {"dbname": config.name, "connect_timeout": 10}
        if config.host:
            params["host"] = config.host
        if config.port:
            params["port"] = config.port
        if config.user:
            params["user"] = config.user
        if config.password:
            params["password"] = config.password

        def connect() -> Any:
            return psycopg2.connect(**params)

        return cls(
            connect,
            driver=psycopg2,
            placeholder="%s",
            schema=_POSTGRESQL_SCHEMA,
            description=f"postgresql:{config.host or 'localhost'}/{config.name}",
        )

    @property
    def description(self) -> str:
        return self._description

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------
    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        try:
            conn = self._connect_fn()
        except self._driver.Error as exc:
            raise StoreUnavailable(f"Unable to connect to {self._description}: {exc}") from exc

        try:
            cursor = conn.cursor()
            try:
                yield cursor
            finally:
                cursor.close()
            conn.commit()
        except self._driver.Error as exc:
            self._rollback(conn)
            if isinstance(exc, (self._driver.OperationalError, self._driver.InterfaceError)):
                raise StoreUnavailable(f"Lost connection to {self._description}: {exc}") from exc
            raise StoreError(f"{self._description} rejected the operation: {exc}") from exc
        except BaseException:
            self._rollback(conn)
            raise
        finally:
            conn.close()

    def _rollback(self, conn: Any) -> None:
        try:
            conn.rollback()
        except self._driver.Error:
            logger.warning("Rollback on %s failed", self._description)

    def _sql(self, statement: str) -> str:
        return statement.replace("?", self._placeholder)

    @staticmethod
    def _rows(cursor: Any) -> List[Dict[str, Any]]:
        columns = [column[0] for column in cursor.description]
        return [dict(zip(columns, row)) for row in cursor.fetchall()]

    def initialize(self) -> None:
        """Create the user table when the application has not migrated yet."""

        with self._transaction() as cursor:
            cursor.execute(self._schema)

    # ------------------------------------------------------------------
    # User management
    # ------------------------------------------------------------------
    def find_user(self, identifier: str) -> Optional[StoredUser]:
        with self._transaction() as cursor:
            cursor.execute(
                self._sql(f"SELECT * FROM {USER_TABLE} WHERE username = ?"),
                (identifier,),
            )
            rows = self._rows(cursor)
        if not rows:
            return None
        return self._row_to_user(rows[0])

    def list_users(self) -> List[StoredUser]:
        with self._transaction() as cursor:
            cursor.execute(f"SELECT * FROM {USER_TABLE} ORDER BY username")
            rows = self._rows(cursor)
        return [self._row_to_user(row) for row in rows]

    def get_password_hash(self, identifier: str) -> Optional[str]:
        with self._transaction() as cursor:
            cursor.execute(
                self._sql(f"SELECT password FROM {USER_TABLE} WHERE username = ?"),
                (identifier,),
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return row[0]

    def create_user(
        self,
        identifier: str,
        attributes: Mapping[str, AttributeValue],
        password_hash: str,
    ) -> StoredUser:
        unknown = set(attributes) - set(MANAGED_ATTRIBUTES)
        if unknown:
            raise ValueError(f"Unsupported user attributes: {', '.join(sorted(unknown))}")

        values: Dict[str, AttributeValue] = dict(ATTRIBUTE_DEFAULTS)
        values.update(attributes)
        date_joined = _current_timestamp()

        columns = ["username", "password", *MANAGED_ATTRIBUTES, "date_joined"]
        params = [
            identifier,
            password_hash,
            *(values[name] for name in MANAGED_ATTRIBUTES),
            _serialize_datetime(date_joined),
        ]
        statement = "INSERT INTO {table} ({columns}) VALUES ({marks})".format(
            table=USER_TABLE,
            columns=", ".join(columns),
            marks=", ".join("?" for _ in columns),
        )

        with self._transaction() as cursor:
            cursor.execute(self._sql(statement), params)
            cursor.execute(
                self._sql(f"SELECT * FROM {USER_TABLE} WHERE username = ?"),
                (identifier,),
            )
            rows = self._rows(cursor)

        if not rows:
            raise StoreError(f"User {identifier!r} vanished from {self._description} after creation")
        return self._row_to_user(rows[0])

    def update_user(
        self,
        user: StoredUser,
        changes: Mapping[str, AttributeValue],
        password_hash: Optional[str] = None,
    ) -> StoredUser:
        unknown = set(changes) - set(MANAGED_ATTRIBUTES)
        if unknown:
            raise ValueError(f"Unsupported user attributes: {', '.join(sorted(unknown))}")

        updates: List[str] = []
        values: List[object] = []
        for name in MANAGED_ATTRIBUTES:
            if name not in changes:
                continue
            updates.append(f"{name} = ?")
            values.append(changes[name])
        if password_hash is not None:
            updates.append("password = ?")
            values.append(password_hash)

        if not updates:
            return user

        values.append(user.id)
        statement = f"UPDATE {USER_TABLE} SET {', '.join(updates)} WHERE id = ?"

        with self._transaction() as cursor:
            cursor.execute(self._sql(statement), values)
            if cursor.rowcount == 0:
                raise StoreError(f"User {user.identifier!r} no longer exists in {self._description}")
            cursor.execute(self._sql(f"SELECT * FROM {USER_TABLE} WHERE id = ?"), (user.id,))
            rows = self._rows(cursor)

        return self._row_to_user(rows[0])

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _row_to_user(self, row: Mapping[str, Any]) -> StoredUser:
        attributes: Dict[str, AttributeValue] = {}
        for name in MANAGED_ATTRIBUTES:
            value = row[name]
            if name in BOOLEAN_ATTRIBUTES:
                attributes[name] = bool(value)
            else:
                attributes[name] = "" if value is None else str(value)
        return StoredUser(
            id=int(row["id"]),
            identifier=str(row["username"]),
            attributes=attributes,
            date_joined=_parse_datetime(row.get("date_joined")),
        )


def connect_store(config: DatabaseConfig) -> SqlUserStore:
    """Open the user store described by the shared application configuration."""

    if config.engine == "sqlite3":
        return SqlUserStore.for_sqlite(Path(config.name).expanduser().resolve(strict=False))
    return SqlUserStore.for_postgresql(config)


__all__ = [
    "SqlUserStore",
    "USER_TABLE",
    "UserStore",
    "connect_store",
    "hash_password",
    "make_unusable_password",
    "verify_password",
]
