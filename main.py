#!/usr/bin/env python3
"""
subgate -- Multi-tenant gateway for a subscription-management engine.

Usage:
  python main.py serve [--host 0.0.0.0] [--port 8080]
  python main.py reset-password USERNAME
  python main.py sync-status
  python main.py set-sync-interval HOURS

Configuration comes from environment variables or .env (see core/config.py).
SECRET_KEY is required unless DEBUG=true.
"""

import argparse
import getpass
import sys
from datetime import datetime, timezone
from typing import Optional

from auth.store import UserStore
from auth.tokens import hash_password
from core.config import get_settings
from core.errors import GatewayError, NotFoundError
from core.sync_gate import SyncGate


def _fmt_time(ts: Optional[float]) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "asgi:app",
        host=args.host,
        port=args.port,
        proxy_headers=True,
        forwarded_allow_ips=settings.forwarded_allow_ips,
    )
    return 0


def _cmd_reset_password(args: argparse.Namespace) -> int:
    """Set a tenant's password from the terminal, e.g. when the last admin is locked out."""
    settings = get_settings()
    store = UserStore(settings.database_url)
    try:
        tenant = store.get_by_username(args.username)
        if tenant is None:
            raise NotFoundError(f"No tenant named '{args.username}'.")
        password = args.password or getpass.getpass(f"New password for {tenant.username}: ")
        if len(password) < settings.password_min_length:
            print(f"  [!] Password must be at least {settings.password_min_length} characters.")
            return 1
        store.update_credential(tenant.id, hash_password(password))
    finally:
        store.close()
    print(f"  Password updated for {tenant.username}.")
    return 0


def _cmd_sync_status(args: argparse.Namespace) -> int:
    settings = get_settings()
    gate = SyncGate(settings.sync_state_path, default_interval_hours=settings.default_sync_interval_hours)
    status = gate.status()
    print(f"  Interval:  {status['interval_hours']}h")
    print(f"  Last run:  {_fmt_time(status['last_run'])}")
    print(f"  Next run:  {_fmt_time(status['next_run']) if status['next_run'] else 'on next tick'}")
    return 0


def _cmd_set_sync_interval(args: argparse.Namespace) -> int:
    settings = get_settings()
    gate = SyncGate(settings.sync_state_path, default_interval_hours=settings.default_sync_interval_hours)
    result = gate.update_settings(args.hours)
    print(f"  Sync interval set to {result['interval_hours']}h.")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="subgate",
        description="Multi-tenant gateway for a subscription-management engine.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  DEBUG=true python main.py serve --port 8080
  python main.py reset-password admin
  python main.py set-sync-interval 6
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    serve = sub.add_parser("serve", help="Run the gateway with uvicorn")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8080)
    serve.set_defaults(func=_cmd_serve)

    reset = sub.add_parser("reset-password", help="Set a tenant's password")
    reset.add_argument("username")
    reset.add_argument("--password", help="New password (prompted if omitted)")
    reset.set_defaults(func=_cmd_reset_password)

    status = sub.add_parser("sync-status", help="Show the sync interval and last/next run")
    status.set_defaults(func=_cmd_sync_status)

    interval = sub.add_parser("set-sync-interval", help="Set the sync interval in hours")
    interval.add_argument("hours", type=int)
    interval.set_defaults(func=_cmd_set_sync_interval)

    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 0

    try:
        return args.func(args)
    except GatewayError as exc:
        print(f"  [!] {exc.message}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
