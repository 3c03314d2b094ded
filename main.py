#!/usr/bin/env python3
"""
OrgTree -- operator CLI for the authentication and audit store.

Usage:
  python main.py create-user --email ops@example.com --name "Ops" --role superuser
  python main.py cleanup
  python main.py revoke-sessions --email someone@example.com

Environment variables:
  DATABASE_URL  Store location (default: orgtree.db beside the package).
  SECRET_KEY    Required unless DEBUG=true. See core/config.py.
"""

import argparse
import getpass
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from audit.store import AuditLog
from auth.models import GLOBAL_ROLES, User
from auth.sessions import RefreshTokenManager
from auth.store import UserStore
from auth.tokens import AccessTokenCodec, hash_password
from core.config import Settings, get_settings
from core.database import create_db_engine


def _read_password(min_length: int, supplied: Optional[str]) -> Optional[str]:
    """Return the new password from --password or an interactive prompt, or None if rejected."""
    password = supplied if supplied is not None else getpass.getpass("  Password: ")
    if len(password) < min_length:
        print(f"  [!] Password must be at least {min_length} characters.")
        return None
    if supplied is None and getpass.getpass("  Confirm:  ") != password:
        print("  [!] Passwords do not match.")
        return None
    return password


def cmd_create_user(args: argparse.Namespace, settings: Settings, users: UserStore, audit: AuditLog) -> int:
    password = _read_password(settings.min_password_length, args.password)
    if password is None:
        return 1
    try:
        user_id = users.create_user(
            User(email=args.email, name=args.name, role=args.role, hashed_password=hash_password(password))
        )
    except IntegrityError:
        print(f"  [!] A user with email '{args.email}' already exists.")
        return 1
    audit.append(None, None, "user_created", "user", str(user_id), {"email": args.email, "role": args.role, "source": "cli"})
    print(f"  Created {args.role} '{args.email}' (id {user_id}).")
    return 0


def cmd_cleanup(manager: RefreshTokenManager, audit: AuditLog) -> int:
    tokens = manager.cleanup()
    entries = audit.cleanup()
    print(f"  Removed {tokens} refresh token(s) and {entries} audit entr{'y' if entries == 1 else 'ies'}.")
    return 0


def cmd_revoke_sessions(args: argparse.Namespace, users: UserStore, manager: RefreshTokenManager, audit: AuditLog) -> int:
    user = users.get_by_email(args.email)
    if user is None:
        print(f"  [!] No user with email '{args.email}'.")
        return 1
    count = manager.revoke_all(user.id)
    audit.append(None, None, "sessions_revoked", "security", str(user.id), {"count": count, "source": "cli"})
    print(f"  Revoked {count} session(s) for '{user.email}'.")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="orgtree",
        description="Operator tasks for the OrgTree authentication and audit store.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user --email admin@example.com --name Admin --role superuser
  python main.py cleanup
  python main.py revoke-sessions --email lost-laptop@example.com
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = sub.add_parser("create-user", help="Create a user account")
    create.add_argument("--email", required=True, help="Login email (stored lowercased)")
    create.add_argument("--name", required=True, help="Display name")
    create.add_argument(
        "--role",
        choices=GLOBAL_ROLES,
        default="user",
        help="Global role: user, admin, or superuser (default: user)",
    )
    create.add_argument(
        "--password",
        default=None,
        help="Password. Prompted for when omitted -- prefer the prompt, argv is visible in ps.",
    )

    sub.add_parser("cleanup", help="Delete expired/revoked refresh tokens and aged audit entries")

    revoke = sub.add_parser("revoke-sessions", help="Revoke every active session of a user")
    revoke.add_argument("--email", required=True, help="Email of the user to sign out everywhere")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    settings = get_settings()
    engine = create_db_engine(settings.database_url, timeout=settings.db_timeout_seconds)
    try:
        users = UserStore(engine)
        audit = AuditLog(engine, retention_days=settings.audit_retention_days)
        manager = RefreshTokenManager(
            engine,
            AccessTokenCodec(settings.secret_key, expire_seconds=settings.access_token_expire_seconds),
            expire_days=settings.refresh_token_expire_days,
            revoked_retention_days=settings.revoked_token_retention_days,
        )
        if args.command == "create-user":
            return cmd_create_user(args, settings, users, audit)
        if args.command == "cleanup":
            return cmd_cleanup(manager, audit)
        return cmd_revoke_sessions(args, users, manager, audit)
    finally:
        engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
