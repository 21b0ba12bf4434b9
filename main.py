#!/usr/bin/env python3
"""
SmartVal -- administration CLI for the session and access-control store.

Usage:
  python main.py create-user alice123 --tenant "Harbour Valuers" --role admin
  python main.py create-user bob12345 --tenant-id 3f1c... --role valuer
  python main.py list-users --tenant-id 3f1c...
  python main.py purge

Passwords are read with getpass (never from argv, where they would land in
shell history). SMARTVAL_PASSWORD may be set for non-interactive use.

Environment variables:
  SECRET_KEY     Required by the API; not used by these commands.
  DATABASE_URL   The shared store, read from the environment or .env like the
                 API does. Overridden by --database-url.
"""

import argparse
import getpass
import os
import sys
import time
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import Role, User
from auth.passwords import hash_password
from auth.ratelimit import RateLimiter
from auth.sessions import SessionStore
from auth.store import TenantStore, UserStore
from auth.validators import normalize_username, validate_password, validate_username
from core.config import get_database_url
from core.db import create_db_engine


def _read_password() -> str:
    env_pw = os.environ.get("SMARTVAL_PASSWORD")
    if env_pw:
        return env_pw
    first = getpass.getpass("Password: ")
    if first != getpass.getpass("Repeat password: "):
        raise SystemExit("  [!] Passwords do not match.")
    return first


def create_user(
    engine: Engine,
    username: str,
    password: str,
    role: Role,
    tenant_name: Optional[str] = None,
    tenant_id: Optional[str] = None,
) -> User:
    """Create a user, in an existing tenant (tenant_id) or a new one (tenant_name).

    Raises ValueError for a bad username, password, or tenant, and
    IntegrityError if the username is taken (a new tenant is not kept then).
    """
    for error in (validate_username(username), validate_password(password)):
        if error:
            raise ValueError(error)
    users = UserStore(engine)
    if tenant_id and TenantStore(engine).get(tenant_id) is None:
        raise ValueError(f"No tenant with id {tenant_id!r}.")

    user = User(
        username=username,
        password_hash=hash_password(password),
        role=role,
        tenant_id=tenant_id or "",
    )
    if tenant_id:
        user.id = users.create_user(user)
    else:
        users.create_user_in_new_tenant(user, tenant_name or normalize_username(username))
    user.username = normalize_username(username)
    return user


def list_users(engine: Engine, tenant_id: str) -> list[User]:
    return UserStore(engine).list_users(tenant_id)


def purge(engine: Engine, window_seconds: int = 3600) -> tuple[int, int]:
    """Delete expired sessions and stale limiter rows. Returns (sessions, limiter rows)."""
    sessions = SessionStore(engine).purge_expired(datetime.now(timezone.utc))
    limiter_rows = RateLimiter(engine, clock=time.time).purge_stale(window_seconds * 1000)
    return sessions, limiter_rows


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="smartval",
        description="Administer SmartVal users and sessions.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user alice123 --tenant "Harbour Valuers" --role admin
  python main.py list-users --tenant-id 3f1c...
  python main.py purge
        """,
    )
    parser.add_argument(
        "--database-url",
        metavar="URL",
        default=get_database_url(),
        help="SQLAlchemy URL of the shared store (default: DATABASE_URL from the environment or .env, "
        "else smartval.db beside the code, as the API uses)",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p_create = sub.add_parser("create-user", help="Create a user; the password is prompted for")
    p_create.add_argument("username", help="Letters and digits, at least 6 characters")
    group = p_create.add_mutually_exclusive_group()
    group.add_argument("--tenant", metavar="NAME", help="Create a new tenant with this name")
    group.add_argument("--tenant-id", metavar="ID", help="Add the user to an existing tenant")
    p_create.add_argument(
        "--role",
        choices=[r.value for r in Role],
        default=Role.valuer.value,
        help="Role of the new user (default: valuer)",
    )

    p_list = sub.add_parser("list-users", help="List the users of one tenant")
    p_list.add_argument("--tenant-id", metavar="ID", required=True)

    p_purge = sub.add_parser("purge", help="Delete expired sessions and stale rate-limit rows")
    p_purge.add_argument(
        "--window",
        type=int,
        default=3600,
        metavar="SECONDS",
        help="Rate-limit rows idle longer than this are deleted (default: 3600)",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    engine = create_db_engine(args.database_url)
    try:
        if args.command == "create-user":
            try:
                user = create_user(
                    engine,
                    args.username,
                    _read_password(),
                    Role(args.role),
                    tenant_name=args.tenant,
                    tenant_id=args.tenant_id,
                )
            except ValueError as e:
                print(f"  [!] {e}", file=sys.stderr)
                return 2
            except IntegrityError:
                print(f"  [!] Username '{args.username}' is already taken.", file=sys.stderr)
                return 2
            print(f"  Created {user.username} ({user.role.value}) id={user.id} tenant={user.tenant_id}")

        elif args.command == "list-users":
            users = list_users(engine, args.tenant_id)
            if not users:
                print("  No users in that tenant.")
            for u in users:
                print(f"  {u.username:<24} {u.role.value:<9} {u.id}  last_login={u.last_login or '-'}")

        elif args.command == "purge":
            sessions, limiter_rows = purge(engine, args.window)
            print(f"  Removed {sessions} expired session(s) and {limiter_rows} limiter row(s).")
    finally:
        engine.dispose()
    return 0


if __name__ == "__main__":
    sys.exit(main())
