"""Command-line interface for the InvenTree deployment wrapper."""

from __future__ import annotations
import argparse
import logging
import sys
from typing import Sequence

from inventree_deploy.config import (
    CONFIG_FILE_ENV,
    DEFAULT_CONFIG_FILE,
    DEFAULT_DEPLOY_CONFIG,
    DEPLOY_CONFIG_ENV,
    USERS_FILE_ENV,
    DeploymentConfig,
    load_app_config,
    load_deployment_config,
    resolve_config_path,
)
from inventree_deploy.database import connect_store
from inventree_deploy.errors import ConfigurationError, SecretError, StoreError
from inventree_deploy.health import check_health, health_url
from inventree_deploy.lifecycle import CommandFailed, prepare, prestart, run_migrations, sync_users
from inventree_deploy.models import ReconcileReport

logger = logging.getLogger("inventree_deploy.main")

EXIT_OK = 0
EXIT_RECORD_FAILURES = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_STORE_ERROR = 3

_DEFAULT_COMMAND = "sync-users"


def _add_deploy_config_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--deploy-config",
        default=None,
        help=f"Path to the deployment description (defaults to {DEPLOY_CONFIG_ENV} or {DEFAULT_DEPLOY_CONFIG})",
    )


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="InvenTree deployment utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command=_DEFAULT_COMMAND)

    sync_parser = subparsers.add_parser(
        "sync-users", help="Reconcile the declared users into the application database"
    )
    sync_parser.add_argument(
        "--config",
        default=None,
        help=f"Shared application config.yaml (defaults to {CONFIG_FILE_ENV} or {DEFAULT_CONFIG_FILE})",
    )
    sync_parser.add_argument(
        "--users",
        default=None,
        help=f"Desired-state JSON file (defaults to {USERS_FILE_ENV})",
    )

    list_parser = subparsers.add_parser("list-users", help="List the users stored in the application database")
    list_parser.add_argument(
        "--config",
        default=None,
        help=f"Shared application config.yaml (defaults to {CONFIG_FILE_ENV} or {DEFAULT_CONFIG_FILE})",
    )

    _add_deploy_config_argument(
        subparsers.add_parser("prepare", help="Create state directories and write the shared config")
    )
    _add_deploy_config_argument(subparsers.add_parser("migrate", help="Run the application's migrations"))
    _add_deploy_config_argument(
        subparsers.add_parser(
            "prestart", help="Prepare, migrate and reconcile users before the services start"
        )
    )

    health_parser = subparsers.add_parser("healthcheck", help="Probe the running web server over HTTP")
    _add_deploy_config_argument(health_parser)
    health_parser.add_argument("--url", default=None, help="URL to probe instead of the configured bind address")
    health_parser.add_argument("--timeout", type=float, default=10.0, help="Request timeout in seconds")

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"sync-users", "list-users", "prepare", "migrate", "prestart", "healthcheck"}

    if not args_list:
        args_list = [_DEFAULT_COMMAND]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in known_commands:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = [_DEFAULT_COMMAND, *args_list]

    return parser.parse_args(args_list)


def _print_report(report: ReconcileReport) -> None:
    for line in report.summary_lines():
        print(line)


def _load_deployment(args: argparse.Namespace) -> DeploymentConfig:
    path = resolve_config_path(args.deploy_config, DEPLOY_CONFIG_ENV, DEFAULT_DEPLOY_CONFIG)
    return load_deployment_config(path)


def _sync_users(args: argparse.Namespace) -> int:
    config_path = resolve_config_path(args.config, CONFIG_FILE_ENV, DEFAULT_CONFIG_FILE)
    users_path = resolve_config_path(args.users, USERS_FILE_ENV)
    report = sync_users(config_path, users_path)
    _print_report(report)
    return EXIT_OK if report.succeeded else EXIT_RECORD_FAILURES


def _list_users(args: argparse.Namespace) -> int:
    config_path = resolve_config_path(args.config, CONFIG_FILE_ENV, DEFAULT_CONFIG_FILE)
    store = connect_store(load_app_config(config_path).database)
    users = store.list_users()
    if not users:
        print("No users are currently registered.")
        return EXIT_OK

    print(f"{len(users)} user(s) found:")
    print(f"{'ID':>4}  {'Username':<24}  {'Email':<32}  Flags")
    print("-" * 80)
    for user in users:
        flags = [name[3:] for name in ("is_superuser", "is_staff") if user.attributes.get(name)]
        if not user.attributes.get("is_active"):
            flags.append("inactive")
        email = user.attributes.get("email") or "<no email>"
        print(f"{user.id:>4}  {user.identifier:<24}  {email:<32}  {', '.join(flags)}")
    return EXIT_OK


def _prestart(args: argparse.Namespace) -> int:
    report = prestart(_load_deployment(args))
    if report is None:
        return EXIT_OK
    _print_report(report)
    return EXIT_OK if report.succeeded else EXIT_RECORD_FAILURES


def _healthcheck(args: argparse.Namespace) -> int:
    url = args.url or health_url(_load_deployment(args))
    result = check_health(url, timeout=args.timeout)
    print(result.detail)
    return EXIT_OK if result.healthy else 1


def _dispatch(args: argparse.Namespace) -> int:
    if args.command == "sync-users":
        return _sync_users(args)
    if args.command == "list-users":
        return _list_users(args)
    if args.command == "prepare":
        prepare(_load_deployment(args))
        return EXIT_OK
    if args.command == "migrate":
        run_migrations(_load_deployment(args))
        return EXIT_OK
    if args.command == "prestart":
        return _prestart(args)
    if args.command == "healthcheck":
        return _healthcheck(args)
    raise SystemExit(f"Unknown command: {args.command}")


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)

    try:
        return _dispatch(args)
    except (ConfigurationError, SecretError) as exc:
        logger.error("Configuration error: %s", exc)
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_CONFIGURATION_ERROR
    except StoreError as exc:
        logger.error("User store error: %s", exc)
        if exc.report is not None:
            _print_report(exc.report)
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_STORE_ERROR
    except CommandFailed as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return exc.returncode or 1


if __name__ == "__main__":
    raise SystemExit(main())
