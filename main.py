#!/usr/bin/env python3
"""
Inkwell Auth -- operator command line.

Usage:
  python main.py create-admin --username admin --email admin@example.com
  python main.py revoke-all alice
  python main.py cleanup

Environment variables:
  SECRET_KEY    Token signing key (>= 32 chars). Required unless DEBUG=true.
  AUTH_DB_URL   SQLAlchemy URL of the auth database.
"""

import argparse
import getpass
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.errors import AuthError
from auth.lifecycle import TokenLifecycleManager
from auth.models import User
from auth.passwords import hash_password
from auth.roles import Role
from auth.store import RefreshTokenStore, UserStore
from auth.tokens import TokenCodec
from core.config import Settings, get_settings


def create_admin(store: UserStore, username: str, email: str, password: str) -> Optional[int]:
    """Create an admin account. Returns the new user ID, or None if it already exists."""
    if len(password) < 6:
        print("  [!] Password must be at least 6 characters.")
        return None
    try:
        user_id = store.create_user(
            User(username=username, email=email, role=Role.admin.value, hashed_password=hash_password(password))
        )
    except IntegrityError:
        print(f"  [!] A user named '{username}' or with email '{email}' already exists.")
        return None
    print(f"  Created admin '{username}' (id={user_id}).")
    return user_id


def revoke_user_tokens(tokens: TokenLifecycleManager, store: UserStore, username: str) -> Optional[int]:
    """Revoke every refresh token of ``username``. Returns the count, or None if unknown."""
    user = store.get_by_username(username)
    if user is None:
        print(f"  [!] No user named '{username}'.")
        return None
    revoked = tokens.revoke_all(user.id)
    print(f"  Revoked {revoked} refresh token(s) for '{username}'.")
    return revoked


def _build(settings: Settings) -> tuple[UserStore, RefreshTokenStore, TokenLifecycleManager]:
    user_store = UserStore(settings.auth_db_url, timeout_seconds=settings.store_timeout_seconds)
    refresh_store = RefreshTokenStore(settings.auth_db_url, timeout_seconds=settings.store_timeout_seconds)
    tokens = TokenLifecycleManager(
        TokenCodec(settings.secret_key),
        refresh_store,
        access_ttl=settings.access_token_ttl,
        refresh_ttl=settings.refresh_token_ttl,
        rotate=settings.rotate_refresh_tokens,
    )
    return user_store, refresh_store, tokens


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="inkwell-auth",
        description="Operator tasks for the Inkwell authentication service.",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p_admin = sub.add_parser("create-admin", help="Create an admin account")
    p_admin.add_argument("--username", required=True)
    p_admin.add_argument("--email", required=True)
    p_admin.add_argument(
        "--password",
        default=None,
        help="Password (prompted for if omitted; avoid passing it on the command line)",
    )

    p_revoke = sub.add_parser("revoke-all", help="Revoke every refresh token of a user")
    p_revoke.add_argument("username")

    sub.add_parser("cleanup", help="Delete expired refresh-token records")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 1

    try:
        settings = get_settings()
    except ValueError as exc:
        print(f"  [!] Configuration error: {exc}")
        return 2

    user_store, refresh_store, tokens = _build(settings)
    try:
        if args.command == "create-admin":
            password = args.password or getpass.getpass("Password: ")
            return 0 if create_admin(user_store, args.username, args.email, password) is not None else 1
        if args.command == "revoke-all":
            return 0 if revoke_user_tokens(tokens, user_store, args.username) is not None else 1
        removed = tokens.cleanup_expired()
        print(f"  Removed {removed} expired refresh token record(s).")
        return 0
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        return 1
    finally:
        user_store.close()
        refresh_store.close()


if __name__ == "__main__":
    sys.exit(main())
