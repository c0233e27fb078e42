#!/usr/bin/env python3
"""
SSO Gateway -- sign in with Microsoft or GitHub, server-side sessions.

Usage:
  python main.py serve [--host 127.0.0.1] [--port 3000] [--reload]
  python main.py users
  python main.py delete-user USER_ID
  python main.py sweep
  python main.py stats

Environment variables (or .env):
  SECRET_KEY                         Signs the OAuth state cookie (>= 32 chars).
  BASE_URL                           Public URL; callbacks are {BASE_URL}/auth/callback/{provider}.
  MICROSOFT_CLIENT_ID / _SECRET      Azure app registration.
  GITHUB_CLIENT_ID / _SECRET         GitHub OAuth app.
  DATABASE_URL                       SQLAlchemy URL (default: SQLite in auth/).
  DEBUG=true                         Development mode: missing secrets only warn.
"""

import argparse
import logging
import sys
from urllib.parse import urlparse

from auth.errors import AuthError
from auth.sessions import SessionStore
from auth.store import UserStore
from core.config import get_settings

logger = logging.getLogger("ssogate.cli")


def _stores() -> tuple[UserStore, SessionStore]:
    user_store = UserStore(db_url=get_settings().database_url)
    return user_store, SessionStore(user_store)


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings = get_settings()
    port = args.port or urlparse(settings.base_url).port or 3000
    uvicorn.run("asgi:app", host=args.host, port=port, reload=args.reload)
    return 0


def cmd_users(args: argparse.Namespace) -> int:
    user_store, _ = _stores()
    try:
        users = user_store.get_all_users()
    finally:
        user_store.close()
    if not users:
        print("  No users.")
        return 0
    print(f"  {'ID':36}  {'PROVIDER':9}  {'USERNAME':24}  EMAIL")
    for u in users:
        print(f"  {u.id:36}  {u.provider:9}  {u.username[:24]:24}  {u.email}")
    print(f"\n  {len(users)} user(s).")
    return 0


def cmd_delete_user(args: argparse.Namespace) -> int:
    user_store, _ = _stores()
    try:
        deleted = user_store.delete_user(args.user_id)
    finally:
        user_store.close()
    if not deleted:
        print(f"  [!] No user with id {args.user_id}.")
        return 1
    print(f"  Deleted user {args.user_id} and their sessions.")
    return 0


def cmd_sweep(args: argparse.Namespace) -> int:
    user_store, session_store = _stores()
    try:
        removed = session_store.cleanup()
    finally:
        user_store.close()
    print(f"  Removed {removed} expired session(s).")
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    user_store, session_store = _stores()
    try:
        stats = session_store.get_session_stats()
        user_count = user_store.count_users()
    finally:
        user_store.close()
    print(f"  Users:            {user_count}")
    print(f"  Sessions total:   {stats.total}")
    print(f"  Sessions active:  {stats.active}")
    print(f"  Sessions expired: {stats.expired}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ssogate",
        description="SSO gateway server and administration commands.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py serve --reload
  python main.py users
  python main.py delete-user 3f2c9a1e-...
  python main.py sweep
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    serve = sub.add_parser("serve", help="Run the web server (uvicorn)")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=None, help="Port (default: taken from BASE_URL, else 3000)")
    serve.add_argument("--reload", action="store_true", help="Reload on code changes (development)")
    serve.set_defaults(func=cmd_serve)

    users = sub.add_parser("users", help="List users, newest first")
    users.set_defaults(func=cmd_users)

    delete = sub.add_parser("delete-user", help="Delete a user and all of their sessions")
    delete.add_argument("user_id", metavar="USER_ID")
    delete.set_defaults(func=cmd_delete_user)

    sweep = sub.add_parser("sweep", help="Delete expired sessions now")
    sweep.set_defaults(func=cmd_sweep)

    stats = sub.add_parser("stats", help="Show user and session counts")
    stats.set_defaults(func=cmd_stats)
    return parser


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 0
    try:
        return args.func(args)
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
