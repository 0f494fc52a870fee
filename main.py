#!/usr/bin/env python3
"""
Backoffice -- administration CLI for the multi-tenant back office API.

Usage:
  python main.py init-db
  python main.py create-admin --email admin@example.com [--tenant TENANT_ID] [--password PW]
  python main.py purge-sessions
  python main.py serve [--host 127.0.0.1] [--port 8000]

Environment variables (see core/config.py for the full list):
  DATABASE_URL   SQLAlchemy URL of the backoffice database (default sqlite:///backoffice.db)
  SECRET_KEY     Token signing key, at least 32 characters. Required unless DEBUG=true.
"""

import argparse
import getpass
import sys
import uuid
from typing import Optional

from sqlalchemy.exc import IntegrityError

from audit.store import AuditStore
from auth.models import Role, User
from auth.passwords import hash_password
from auth.session_store import SessionStore
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.tokens import TokenEngine
from core.config import get_settings

ADMIN_ROLE = "admin"


def init_db() -> None:
    """Create every table and seed the permission catalog. Idempotent."""
    settings = get_settings()
    users = UserStore(settings.database_url, settings.db_timeout_seconds)
    sessions = SessionStore(settings.database_url, settings.db_timeout_seconds)
    audit = AuditStore(settings.database_url, settings.db_timeout_seconds)
    try:
        seeded = users.ensure_permissions()
        print(f"  Database ready at {settings.database_url} ({seeded} permission(s) seeded).")
    finally:
        users.close()
        sessions.close()
        audit.close()


def ensure_admin_role(store: UserStore, tenant_id: str) -> Role:
    """Return the tenant's system admin role, creating it with *:* if missing."""
    role = store.get_role_by_name(tenant_id, ADMIN_ROLE)
    if role is not None:
        return role
    store.ensure_permissions()
    superuser = store.get_permission("*", "*")
    role_id = store.create_role(
        Role(tenant_id=tenant_id, name=ADMIN_ROLE, description="Full access", is_system=True),
        [superuser.id],
    )
    return store.get_role(role_id)


def create_admin(email: str, tenant_id: Optional[str], password: Optional[str]) -> int:
    """Create an active user holding the tenant's system admin role."""
    settings = get_settings()
    tenant_id = tenant_id or str(uuid.uuid4())
    if password is None:
        password = getpass.getpass("  Password: ")
        if password != getpass.getpass("  Repeat password: "):
            print("  [!] Passwords do not match.")
            return 1
    if len(password) < 8:
        print("  [!] Password must be at least 8 characters.")
        return 1

    store = UserStore(settings.database_url, settings.db_timeout_seconds)
    try:
        role = ensure_admin_role(store, tenant_id)
        try:
            user_id = store.create_user(User(tenant_id=tenant_id, email=email, password_hash=hash_password(password)))
        except IntegrityError:
            print(f"  [!] A user with email '{email}' already exists in tenant {tenant_id}.")
            return 1
        store.add_user_role(user_id, role.id)
    finally:
        store.close()

    print(f"  Created admin {email}")
    print(f"    user id:   {user_id}")
    print(f"    tenant id: {tenant_id}")
    return 0


def purge_sessions() -> None:
    """Delete expired refresh sessions."""
    settings = get_settings()
    users = UserStore(settings.database_url, settings.db_timeout_seconds)
    sessions = SessionStore(settings.database_url, settings.db_timeout_seconds)
    try:
        manager = SessionManager(sessions, users, TokenEngine.from_settings(settings))
        removed = manager.purge_expired()
    finally:
        users.close()
        sessions.close()
    print(f"  Purged {removed} expired session(s).")


def serve(host: str, port: int, reload: bool) -> None:
    import uvicorn

    uvicorn.run("api.main:app", host=host, port=port, reload=reload)


def main() -> int:
    parser = argparse.ArgumentParser(
        prog="backoffice",
        description="Administration commands for the backoffice API.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py init-db
  python main.py create-admin --email admin@example.com
  DATABASE_URL=sqlite:///prod.db python main.py purge-sessions
        """,
    )
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")

    commands.add_parser("init-db", help="Create tables and seed the permission catalog")

    admin = commands.add_parser("create-admin", help="Create a user with the tenant's system admin role")
    admin.add_argument("--email", required=True, help="Login email of the new admin")
    admin.add_argument(
        "--tenant",
        metavar="TENANT_ID",
        default=None,
        help="Tenant to create the admin in (default: a new random tenant id)",
    )
    admin.add_argument(
        "--password",
        default=None,
        help="Initial password (prompted for when omitted)",
    )

    commands.add_parser("purge-sessions", help="Delete expired refresh sessions")

    server = commands.add_parser("serve", help="Run the API with uvicorn")
    server.add_argument("--host", default="127.0.0.1")
    server.add_argument("--port", type=int, default=8000)
    server.add_argument("--reload", action="store_true", help="Reload on code changes (development)")

    args = parser.parse_args()

    if args.command == "init-db":
        init_db()
    elif args.command == "create-admin":
        return create_admin(args.email, args.tenant, args.password)
    elif args.command == "purge-sessions":
        purge_sessions()
    elif args.command == "serve":
        serve(args.host, args.port, args.reload)
    else:
        parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
