#!/usr/bin/env python3
"""
Gatekeeper -- operator commands.

Usage:
  python main.py seed          Create the default SUPER_ADMIN if none exists
  python main.py seed --force  Create it even if another SUPER_ADMIN exists
  python main.py purge         Delete expired refresh tokens and invites

Environment variables (see core/config.py):
  DATABASE_URL                Database to operate on (default sqlite:///gatekeeper.db)
  DEFAULT_ADMIN_USERNAME      Seeded account username (default "admin")
  DEFAULT_ADMIN_EMAIL         Seeded account email
  DEFAULT_ADMIN_PASSWORD      Seeded account password -- change it after first login

Serve the API with:  uvicorn api.main:app
"""

import argparse
import sys
from typing import Optional

from admin.maintenance import purge_expired
from admin.store import AdminStore
from auth.models import Role, User
from auth.passwords import hash_password, validate_password_strength
from auth.store import UserStore
from core.config import get_settings


def seed(store: UserStore, force: bool = False) -> Optional[int]:
    """Create the default SUPER_ADMIN. Returns the new id, or None if skipped."""
    settings = get_settings()
    if store.has_super_admin() and not force:
        print("  A SUPER_ADMIN already exists -- nothing to do.")
        return None
    username = settings.default_admin_username.lower()
    email = settings.default_admin_email.lower()
    if store.get_by_username(username) or store.get_by_email(email):
        print(f"  [!] '{username}' or '{email}' is already taken by another account.")
        return None
    problem = validate_password_strength(settings.default_admin_password)
    if problem:
        print(f"  [!] DEFAULT_ADMIN_PASSWORD rejected: {problem}")
        return None
    user_id = store.create_user(
        User(
            username=username,
            email=email,
            role=Role.SUPER_ADMIN,
            hashed_password=hash_password(settings.default_admin_password),
        )
    )
    print(f"  Created SUPER_ADMIN '{username}' <{email}> (id {user_id}).")
    if settings.default_admin_password == "Admin123!":
        print("  [!] Using the default password. Change it after the first login.")
    return user_id


def purge(user_store: UserStore, admin_store: AdminStore) -> tuple[int, int]:
    tokens, invites = purge_expired(user_store, admin_store)
    print(f"  Purged {tokens} expired refresh token(s) and {invites} expired invite(s).")
    return tokens, invites


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="gatekeeper",
        description="Gatekeeper operator commands.",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    seed_parser = subparsers.add_parser("seed", help="Create the default SUPER_ADMIN account.")
    seed_parser.add_argument(
        "--force",
        action="store_true",
        help="Create the account even if a SUPER_ADMIN already exists.",
    )
    subparsers.add_parser("purge", help="Delete expired refresh tokens and invites.")

    args = parser.parse_args(argv)
    settings = get_settings()

    user_store = UserStore(settings.database_url)
    try:
        if args.command == "seed":
            seed(user_store, force=args.force)
        elif args.command == "purge":
            admin_store = AdminStore(settings.database_url)
            try:
                purge(user_store, admin_store)
            finally:
                admin_store.close()
    finally:
        user_store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
