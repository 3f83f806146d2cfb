"""Command-line interface for the VPN panel."""

from __future__ import annotations
import argparse
import csv
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Sequence, TextIO


def _running_in_virtualenv() -> bool:
    """Return ``True`` when the current interpreter is executing inside a venv."""

    base_prefix = getattr(sys, "base_prefix", sys.prefix)
    return sys.prefix != base_prefix


def _bootstrap_virtualenv() -> None:
    """Re-exec the script using the bundled virtualenv interpreter when available."""

    if _running_in_virtualenv():
        return

    root = Path(__file__).resolve().parent
    venv_dir = root / ".venv"
    if not venv_dir.is_dir():
        return

    candidates = (
        venv_dir / "bin" / "python",
        venv_dir / "bin" / "python3",
    )

    script = str(Path(__file__).resolve())
    for candidate in candidates:
        if candidate.exists():
            os.execv(str(candidate), [str(candidate), script, *sys.argv[1:]])


if __name__ == "__main__":
    _bootstrap_virtualenv()

try:
    import yaml  # noqa: F401
except ImportError as exc:  # pragma: no cover - exercised in environments missing deps
    raise SystemExit(
        "The 'PyYAML' package is required. Execute `pip install -e .` to install dependencies."
    ) from exc

from vpnpanel.application import Panel, build_panel, load_panel_config
from vpnpanel.errors import BackendError, DbError, LockError, NotFoundError, PanelError, ValidationError
from vpnpanel.models import STATUSES, UserRecord, ordered_services, serialize_datetime, serialize_expiry
from vpnpanel.security import generate_api_token

logger = logging.getLogger("vpnpanel.main")

EXIT_OK = 0
EXIT_VALIDATION = 2
EXIT_NOT_FOUND = 3
EXIT_LOCK = 4
EXIT_STORE = 5
EXIT_BACKEND = 6

_EXIT_CODES = (
    (ValidationError, EXIT_VALIDATION),
    (NotFoundError, EXIT_NOT_FOUND),
    (LockError, EXIT_LOCK),
    (DbError, EXIT_STORE),
    (BackendError, EXIT_BACKEND),
)

_COMMANDS = {
    "serve",
    "init",
    "create",
    "update-expiry",
    "disable",
    "enable",
    "delete",
    "sweep",
    "list",
    "info",
    "stats",
    "config-generated",
    "purge-inactive",
    "locks",
    "audit",
    "generate-token",
}


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default=None, help="Path to the panel YAML configuration")
    common.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    parser = argparse.ArgumentParser(description="VPN panel user lifecycle utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    serve_parser = subparsers.add_parser("serve", parents=[common], help="Start the HTTP API")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address for the API")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port for the API (default: 8080)")
    serve_parser.add_argument("--ssl-certfile", default=None, help="Path to the TLS certificate chain in PEM format")
    serve_parser.add_argument("--ssl-keyfile", default=None, help="Path to the TLS private key in PEM format")

    subparsers.add_parser("init", parents=[common], help="Create the state document and audit database")

    create_parser = subparsers.add_parser("create", parents=[common], help="Create a user")
    create_parser.add_argument("username")
    create_parser.add_argument(
        "--services",
        default="both",
        help="Comma separated services: ssh, proxy (alias xray) or both (default: both)",
    )
    create_parser.add_argument("--expiry", default="30", help="Days until expiry (1-3650) or 'never'")
    create_parser.add_argument("--secret", default=None, help="Account secret (generated when omitted)")
    create_parser.add_argument("--json", action="store_true", help="Print the result as JSON")

    expiry_parser = subparsers.add_parser(
        "update-expiry", parents=[common], help="Change a user's expiry (re-activates expired users)"
    )
    expiry_parser.add_argument("username")
    expiry_parser.add_argument("expiry", help="Days from now (1-3650) or 'never'")

    disable_parser = subparsers.add_parser("disable", parents=[common], help="Revoke access but keep the record")
    disable_parser.add_argument("username")

    enable_parser = subparsers.add_parser("enable", parents=[common], help="Restore a disabled user")
    enable_parser.add_argument("username")

    delete_parser = subparsers.add_parser("delete", parents=[common], help="Delete a user")
    delete_parser.add_argument("username")
    delete_parser.add_argument(
        "--force",
        action="store_true",
        help="Remove the record even when a backend could not be cleaned up",
    )

    subparsers.add_parser("sweep", parents=[common], help="Expire users whose expiry has passed")

    list_parser = subparsers.add_parser("list", parents=[common], help="List users")
    list_parser.add_argument("--status", choices=STATUSES, default=None)
    list_parser.add_argument("--pattern", default=None, help="Regular expression matched against usernames")
    list_parser.add_argument("--format", choices=("text", "json", "csv"), default="text")

    info_parser = subparsers.add_parser("info", parents=[common], help="Show one user")
    info_parser.add_argument("username")

    subparsers.add_parser("stats", parents=[common], help="Show aggregate counters")

    config_parser = subparsers.add_parser(
        "config-generated", parents=[common], help="Count a client configuration handed to a user"
    )
    config_parser.add_argument("username")

    purge_parser = subparsers.add_parser(
        "purge-inactive", parents=[common], help="Force-delete users inactive for a number of days"
    )
    purge_parser.add_argument("--days", type=int, default=90)

    locks_parser = subparsers.add_parser(
        "locks",
        parents=[common],
        help="Show lock holders",
        description=(
            "Lock files are never deleted while the panel runs, so the lock directory keeps one "
            "file per user ever managed. Remove idle files only while the panel is stopped."
        ),
    )
    locks_parser.add_argument(
        "--cleanup",
        action="store_true",
        help="Drop holder entries of dead processes (lock files themselves are kept)",
    )

    audit_parser = subparsers.add_parser("audit", parents=[common], help="Show recent audit events")
    audit_parser.add_argument("--limit", type=int, default=20)
    audit_parser.add_argument("--user", default=None)

    subparsers.add_parser("generate-token", parents=[common], help="Print a new random API token")

    args_list = list(argv) if argv is not None else sys.argv[1:]

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in _COMMANDS:
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _serve(panel: Panel, *, host: str, port: int, ssl_certfile: str | None, ssl_keyfile: str | None) -> None:
    from vpnpanel.application import create_application
    import uvicorn

    if bool(ssl_certfile) ^ bool(ssl_keyfile):
        raise SystemExit("Both --ssl-certfile and --ssl-keyfile must be provided together.")

    try:
        app = create_application(panel)
    except ValueError as exc:
        raise SystemExit(str(exc)) from exc

    protocol = "https" if ssl_certfile and ssl_keyfile else "http"
    logger.info("Starting panel API on %s://%s:%s", protocol, host, port)
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info",
        ssl_certfile=ssl_certfile,
        ssl_keyfile=ssl_keyfile,
    )


def _print_user(record: UserRecord, out: TextIO) -> None:
    print(f"Username:          {record.username}", file=out)
    print(f"Status:            {record.status}", file=out)
    print(f"Services:          {', '.join(ordered_services(record.services))}", file=out)
    print(f"Created:           {serialize_datetime(record.created_at)}", file=out)
    print(f"Expiry:            {serialize_expiry(record.expiry)}", file=out)
    print(f"Last modified:     {serialize_datetime(record.last_modified)}", file=out)
    print(f"Configs generated: {record.configs_generated}", file=out)


def _list_users(records: List[UserRecord], fmt: str, out: TextIO) -> None:
    if fmt == "json":
        print(json.dumps([record.to_public_dict() for record in records], indent=2), file=out)
        return

    if fmt == "csv":
        writer = csv.writer(out)
        writer.writerow(["username", "status", "services", "created_at", "expiry", "configs_generated"])
        for record in records:
            writer.writerow(
                [
                    record.username,
                    record.status,
                    "+".join(ordered_services(record.services)),
                    serialize_datetime(record.created_at),
                    serialize_expiry(record.expiry),
                    record.configs_generated,
                ]
            )
        return

    if not records:
        print("No users found.", file=out)
        return

    print(f"{len(records)} user(s) found:", file=out)
    print(f"{'Username':<20}  {'Status':<9}  {'Services':<10}  Expiry", file=out)
    print("-" * 72, file=out)
    for record in records:
        expiry = "never" if record.expiry is None else record.expiry.strftime("%Y-%m-%d %H:%M %Z")
        services = "+".join(ordered_services(record.services))
        print(f"{record.username:<20}  {record.status:<9}  {services:<10}  {expiry}", file=out)


def _run_command(args: argparse.Namespace, panel: Panel, out: TextIO) -> int:
    orchestrator = panel.orchestrator

    if args.command == "init":
        print(f"State document ready at {panel.store.path}", file=out)
        print(f"Audit database ready at {panel.config.audit_db_path}", file=out)
    elif args.command == "create":
        created = orchestrator.create(args.username, args.services, args.expiry, secret=args.secret)
        if args.json:
            payload = created.record.to_public_dict()
            payload["secret"] = created.secret
            print(json.dumps(payload, indent=2), file=out)
        else:
            print(f"Created user {created.record.username}", file=out)
            print(f"Secret: {created.secret}", file=out)
            print(f"Expiry: {serialize_expiry(created.record.expiry)}", file=out)
    elif args.command == "update-expiry":
        update = orchestrator.update_expiry(args.username, args.expiry)
        verb = "Re-activated" if update.reprovisioned else "Updated"
        print(f"{verb} {update.record.username}; expiry {serialize_expiry(update.record.expiry)}", file=out)
        if update.secret:
            print(f"New secret: {update.secret}", file=out)
    elif args.command == "disable":
        record = orchestrator.disable(args.username)
        print(f"User {record.username} is {record.status}", file=out)
    elif args.command == "enable":
        update = orchestrator.enable(args.username)
        print(f"User {update.record.username} is {update.record.status}", file=out)
        if update.secret:
            print(f"New secret: {update.secret}", file=out)
    elif args.command == "delete":
        record = orchestrator.delete(args.username, force=args.force)
        print(f"Deleted user {record.username}", file=out)
    elif args.command == "sweep":
        changed = orchestrator.expire_sweep()
        print("Expired users updated." if changed else "No users expired.", file=out)
    elif args.command == "list":
        _list_users(orchestrator.list_users(status=args.status, pattern=args.pattern), args.format, out)
    elif args.command == "info":
        _print_user(orchestrator.get_user(args.username), out)
    elif args.command == "stats":
        metadata = orchestrator.stats()
        print(json.dumps(metadata.to_dict(), indent=2), file=out)
    elif args.command == "config-generated":
        record = orchestrator.record_config_generated(args.username)
        print(f"{record.username} has {record.configs_generated} generated config(s)", file=out)
    elif args.command == "purge-inactive":
        removed = orchestrator.purge_inactive(args.days)
        print(f"Removed {len(removed)} inactive user(s)", file=out)
        for username in removed:
            print(f"  {username}", file=out)
    elif args.command == "locks":
        if args.cleanup:
            print(f"Removed {panel.locks.cleanup_stale()} stale holder(s)", file=out)
        for info in panel.locks.list_locks():
            holder = info.writer.pid if info.writer is not None else ",".join(str(r.pid) for r in info.readers)
            print(
                f"{info.name:<32}  {info.mode or '-':<5}  pids={holder or '-'}  waiting={len(info.waiting)}",
                file=out,
            )
        print(json.dumps(panel.locks.stats(), indent=2), file=out)
    elif args.command == "audit":
        for event in panel.audit.recent(args.limit, username=args.user):
            print(
                f"{serialize_datetime(event.timestamp)}  {event.event_code:<26}  "
                f"{event.status:<7}  {event.username}  {event.description}",
                file=out,
            )
    return EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    args = _parse_args(argv)
    level = logging.DEBUG if getattr(args, "verbose", False) else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(message)s")

    if args.command == "generate-token":
        print(generate_api_token())
        return EXIT_OK

    try:
        config = load_panel_config(getattr(args, "config", None))
    except (OSError, ValueError) as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return EXIT_VALIDATION

    try:
        panel = build_panel(config)
        if args.command == "serve":
            _serve(
                panel,
                host=args.host,
                port=args.port,
                ssl_certfile=args.ssl_certfile,
                ssl_keyfile=args.ssl_keyfile,
            )
            return EXIT_OK
        return _run_command(args, panel, sys.stdout)
    except PanelError as exc:
        print(f"Error [{exc.stage}]: {exc}", file=sys.stderr)
        for error_cls, code in _EXIT_CODES:
            if isinstance(exc, error_cls):
                return code
        return 1


if __name__ == "__main__":
    sys.exit(main())
