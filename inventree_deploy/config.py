"""Configuration management for the InvenTree deployment wrapper."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence, Tuple

import yaml

from .errors import ConfigurationError

CONFIG_FILE_ENV = "INVENTREE_CONFIG_FILE"
DEPLOY_CONFIG_ENV = "INVENTREE_DEPLOY_CONFIG"
USERS_FILE_ENV = "INVENTREE_USERS_FILE"

DEFAULT_DEPLOY_CONFIG = Path("/etc/inventree/deploy.yaml")
DEFAULT_CONFIG_FILE = Path("/var/lib/inventree/config.yaml")

_ENGINE_ALIASES = {
    "sqlite": "sqlite3",
    "sqlite3": "sqlite3",
    "postgres": "postgresql",
    "postgresql": "postgresql",
    "postgresql_psycopg2": "postgresql",
}


def normalise_engine(engine: str) -> str:
    """Map the application's engine spellings onto a supported backend name."""

    name = engine.strip().lower()
    if name.startswith("django.db.backends."):
        name = name[len("django.db.backends."):]
    try:
        return _ENGINE_ALIASES[name]
    except KeyError as exc:
        raise ValueError(
            f"Unsupported database engine '{engine}'. Supported engines: sqlite3, postgresql"
        ) from exc


def _resolve_path(raw: object, base_path: Path | None) -> Path:
    candidate = Path(str(raw)).expanduser()
    if not candidate.is_absolute() and base_path is not None:
        candidate = base_path / candidate
    return candidate.resolve(strict=False)


def _lookup(data: Mapping[str, object], key: str) -> object:
    """Read ``key`` in either the application's upper-case spelling or lower-case."""

    if key.upper() in data:
        return data[key.upper()]
    return data.get(key.lower())


def _command(raw: object, default: Sequence[str], field_name: str) -> Tuple[str, ...]:
    if raw is None:
        return tuple(default)
    if isinstance(raw, str):
        parts = raw.split()
    elif isinstance(raw, list) and all(isinstance(part, str) for part in raw):
        parts = list(raw)
    else:
        raise ValueError(f"'{field_name}' must be a string or a list of strings")
    if not parts:
        raise ValueError(f"'{field_name}' must not be empty")
    return tuple(parts)


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection settings shared by the server, the worker and the reconciler."""

    engine: str
    name: str
    host: Optional[str] = None
    port: Optional[int] = None
    user: Optional[str] = None
    password: Optional[str] = None

    @staticmethod
    def from_dict(data: Mapping[str, object], base_path: Path | None = None) -> "DatabaseConfig":
        """Create a :class:`DatabaseConfig` from a ``database`` section."""
        engine = _lookup(data, "engine")
        name = _lookup(data, "name")
        missing = [key for key, value in (("ENGINE", engine), ("NAME", name)) if not value]
        if missing:
            raise ValueError(f"Missing required database configuration fields: {', '.join(missing)}")

        normalised = normalise_engine(str(engine))
        if normalised == "sqlite3":
            db_name = str(_resolve_path(name, base_path))
        else:
            db_name = str(name)

        port = _lookup(data, "port")
        host = _lookup(data, "host")
        user = _lookup(data, "user")
        password = _lookup(data, "password")
        return DatabaseConfig(
            engine=normalised,
            name=db_name,
            host=str(host) if host else None,
            port=int(port) if port not in (None, "") else None,
            user=str(user) if user else None,
            password=str(password) if password is not None else None,
        )

    def to_app_dict(self) -> Dict[str, object]:
        """Render the section in the application's own ``config.yaml`` spelling."""
        section: Dict[str, object] = {"ENGINE": self.engine, "NAME": self.name}
        if self.host:
            section["HOST"] = self.host
        if self.port:
            section["PORT"] = self.port
        if self.user:
            section["USER"] = self.user
        if self.password is not None:
            section["PASSWORD"] = self.password
        return section


@dataclass(frozen=True)
class AppConfig:
    """The parts of the application's shared ``config.yaml`` this package reads."""

    path: Path
    database: DatabaseConfig


@dataclass(frozen=True)
class DeploymentConfig:
    """Declarative description of one InvenTree installation."""

    path: Path
    data_dir: Path
    config_file: Path
    static_root: Path
    media_root: Path
    backup_dir: Path
    database: DatabaseConfig
    database_password_file: Optional[Path] = None
    users_file: Optional[Path] = None
    site_url: Optional[str] = None
    bind: str = "127.0.0.1:8000"
    user: str = "inventree"
    group: str = "inventree"
    manage_command: Tuple[str, ...] = ("inventree-manage",)
    server_command: Tuple[str, ...] = ()
    worker_command: Tuple[str, ...] = ()
    migrate_command: Tuple[str, ...] = ()
    settings: Mapping[str, object] = field(default_factory=dict)

    @staticmethod
    def from_dict(data: Mapping[str, object], config_path: Path) -> "DeploymentConfig":
        """Create a :class:`DeploymentConfig` from raw dictionary data.

        Relative paths are resolved against the directory holding ``config_path``.
        """
        base_path = config_path.parent
        required_fields = {"data_dir", "database"}
        missing = required_fields - data.keys()
        if missing:
            raise ValueError(f"Missing required deployment configuration fields: {', '.join(sorted(missing))}")

        raw_database = data["database"]
        if not isinstance(raw_database, dict):
            raise ValueError("'database' must be a mapping")

        data_dir = _resolve_path(data["data_dir"], base_path)

        def directory(key: str, default: str) -> Path:
            value = data.get(key)
            if value:
                return _resolve_path(value, base_path)
            return data_dir / default

        password_file = raw_database.get("password_file")
        database_fields = {key: value for key, value in raw_database.items() if key != "password_file"}
        # A relative SQLite path lives inside the data directory.
        database = DatabaseConfig.from_dict(database_fields, base_path=data_dir)

        settings = data.get("settings") or {}
        if not isinstance(settings, dict):
            raise ValueError("'settings' must be a mapping")

        bind = str(data.get("bind", "127.0.0.1:8000"))
        manage_command = _command(data.get("manage_command"), ("inventree-manage",), "manage_command")
        users_file = data.get("users_file")

        return DeploymentConfig(
            path=config_path,
            data_dir=data_dir,
            config_file=directory("config_file", "config.yaml"),
            static_root=directory("static_root", "static"),
            media_root=directory("media_root", "media"),
            backup_dir=directory("backup_dir", "backup"),
            database=database,
            database_password_file=_resolve_path(password_file, base_path) if password_file else None,
            users_file=_resolve_path(users_file, base_path) if users_file else None,
            site_url=str(data["site_url"]) if data.get("site_url") else None,
            bind=bind,
            user=str(data.get("user", "inventree")),
            group=str(data.get("group", data.get("user", "inventree"))),
            manage_command=manage_command,
            server_command=_command(
                data.get("server_command"),
                ("gunicorn", "InvenTree.wsgi", "--bind", bind),
                "server_command",
            ),
            worker_command=_command(data.get("worker_command"), (*manage_command, "qcluster"), "worker_command"),
            migrate_command=_command(
                data.get("migrate_command"),
                (*manage_command, "migrate", "--noinput"),
                "migrate_command",
            ),
            settings=dict(settings),
        )

    @property
    def directories(self) -> Tuple[Path, ...]:
        return (self.data_dir, self.static_root, self.media_root, self.backup_dir)


def _read_yaml(path: Path) -> Dict[str, object]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Configuration file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Configuration file {path} is not valid YAML: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Configuration file {path} must contain a mapping")
    return raw


def load_app_config(config_path: Path) -> AppConfig:
    """Load the database section of the application's shared ``config.yaml``."""
    raw = _read_yaml(config_path)
    database_raw = raw.get("database")
    if not isinstance(database_raw, dict):
        raise ConfigurationError(f"Configuration file {config_path} has no 'database' section")
    try:
        database = DatabaseConfig.from_dict(database_raw, base_path=config_path.parent)
    except ValueError as exc:
        raise ConfigurationError(f"{config_path}: {exc}") from exc
    return AppConfig(path=config_path, database=database)


def load_deployment_config(config_path: Path) -> DeploymentConfig:
    """Load the deployment description from a YAML file."""
    raw = _read_yaml(config_path)
    try:
        return DeploymentConfig.from_dict(raw, config_path)
    except ValueError as exc:
        raise ConfigurationError(f"{config_path}: {exc}") from exc


def resolve_config_path(cli_value: Optional[str], env_var: str, default: Optional[Path] = None) -> Path:
    """Resolve a configuration path from the CLI, then the environment, then ``default``."""
    value = cli_value or os.getenv(env_var)
    if value:
        return Path(value).expanduser().resolve(strict=False)
    if default is None:
        raise ConfigurationError(f"No path given; pass it on the command line or set {env_var}")
    return default


__all__ = [
    "AppConfig",
    "CONFIG_FILE_ENV",
    "DEFAULT_CONFIG_FILE",
    "DEFAULT_DEPLOY_CONFIG",
    "DEPLOY_CONFIG_ENV",
    "DatabaseConfig",
    "DeploymentConfig",
    "USERS_FILE_ENV",
    "load_app_config",
    "load_deployment_config",
    "normalise_engine",
    "resolve_config_path",
]
