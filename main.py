#!/usr/bin/env python3
"""
Admin auth -- command-line administration.

Usage:
  python main.py create-user --username admin --password 'S3cret!!' --role admin
  python main.py create-user --username alice --password 'p@ss1234' --email alice@example.com
  python main.py purge-codes

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the user store (default: SQLite file in auth/).
  BCRYPT_ROUNDS Password hashing work factor (default 12).
"""

import argparse
import sys

from auth.store import UserStore
from core.config import get_settings
from core.errors import AppError


def _create_user(store: UserStore, args: argparse.Namespace) -> int:
    roles = {"user"} | ({args.role} if args.role else set())
    try:
        user = store.register(
            username=args.username,
            password=args.password,
            email=args.email,
            real_name=args.real_name,
            roles=roles,
        )
    except AppError as e:
        print(f"  [!] {e.message}")
        return 1
    print(f"  Created user {user.username} (id={user.id}, roles={','.join(sorted(user.roles))})")
    return 0


def _purge_codes(store: UserStore, args: argparse.Namespace) -> int:
    removed = store.purge_expired_codes()
    print(f"  Removed {removed} expired code(s)")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Admin auth administration commands.")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-user", help="Create a password user.")
    create.add_argument("--username", required=True)
    create.add_argument("--password", required=True)
    create.add_argument("--email")
    create.add_argument("--real-name", dest="real_name")
    create.add_argument("--role", choices=["admin"], help="Extra role on top of 'user'.")
    create.set_defaults(handler=_create_user)

    purge = sub.add_parser("purge-codes", help="Delete expired one-time codes.")
    purge.set_defaults(handler=_purge_codes)

    args = parser.parse_args(argv)
    store = UserStore(get_settings().database_url)
    try:
        return args.handler(store, args)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
