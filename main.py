#!/usr/bin/env python3
"""
Back-office portal -- operator command line.

Usage:
  python main.py create-admin --email admin@example.com
  python main.py create-admin --email admin@example.com --password 's3cret-pass' --first-name Ada
  python main.py purge

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the portal database (default: portal.db beside this file)
  SECRET_KEY    Required unless DEBUG=true; not used by these commands but validated on load.
"""

import argparse
import getpass
import sys

from sqlalchemy.exc import IntegrityError

from auth.models import User
from auth.permissions import ADMIN
from auth.store import UserStore
from auth.tokens import hash_password
from core.config import get_settings

_PASSWORD_MIN = 8
_PASSWORD_MAX = 72


def _read_password(given: str | None) -> str | None:
    """Use --password when provided, otherwise prompt twice without echo."""
    if given is not None:
        return given
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Repeat:   ")
    if first != second:
        print("  [!] Passwords do not match.")
        return None
    return first


def create_admin(store: UserStore, email: str, password: str, first_name: str = "", last_name: str = "") -> int:
    """Create an admin account, or grant the admin role to an existing one.

    Re-running with the same email is safe: the password of an existing
    account is left unchanged.
    """
    existing = store.get_by_email(email)
    if existing is not None:
        if ADMIN not in existing.roles:
            store.add_user_role(existing.id, ADMIN)
        return existing.id
    user = User(
        email=email,
        password_hash=hash_password(password),
        first_name=first_name,
        last_name=last_name,
    )
    return store.create_user(user, [ADMIN])


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="portal",
        description="Operator commands for the back-office portal.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin --email admin@example.com
  python main.py purge
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    admin = sub.add_parser("create-admin", help="Create the first administrator (idempotent)")
    admin.add_argument("--email", required=True, metavar="EMAIL", help="Login email of the administrator")
    admin.add_argument(
        "--password",
        default=None,
        metavar="PASSWORD",
        help="Initial password. Prompted for when omitted, which keeps it out of shell history.",
    )
    admin.add_argument("--first-name", default="", metavar="NAME")
    admin.add_argument("--last-name", default="", metavar="NAME")

    sub.add_parser("purge", help="Delete expired refresh tokens and invites")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    store = UserStore(get_settings().database_url)
    try:
        if args.command == "create-admin":
            password = _read_password(args.password)
            if password is None:
                return 1
            if len(password) < _PASSWORD_MIN or len(password.encode("utf-8")) > _PASSWORD_MAX:
                print(f"  [!] Password must be {_PASSWORD_MIN} to {_PASSWORD_MAX} characters (bytes, if not ASCII).")
                return 1
            try:
                user_id = create_admin(store, args.email, password, args.first_name, args.last_name)
            except IntegrityError:
                print(f"  [!] Could not create '{args.email}': email already in use.")
                return 1
            print(f"  Administrator ready: {args.email.strip().lower()} (id {user_id})")

        elif args.command == "purge":
            tokens, invites = store.purge_expired()
            print(f"  Purged {tokens} refresh token(s) and {invites} invite(s).")
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
