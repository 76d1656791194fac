#!/usr/bin/env python3
"""
Restaurant Identity -- operator command line.

Talks to the same databases as the API (AUTH_DB_URL, AUDIT_DB_URL) and goes
through the same services, so every change made here lands in the audit log.

Usage:
  python main.py create-user admin admin@example.com
  python main.py create-user kok1 kok@example.com --role Kok
  python main.py roles
  python main.py audit
  python main.py audit --limit 50 --action "Login mislukt"

Environment variables:
  SECRET_KEY    Required unless DEBUG=true (see core/config.py).
"""

import argparse
import getpass
import sys

from audit.logger import AuditLogger
from audit.store import AuditStore
from auth.models import User
from auth.results import AccountError
from auth.roles import Role, RoleAssignmentService
from auth.store import CredentialStore
from core.config import get_settings


def _build_services() -> tuple[CredentialStore, AuditStore, RoleAssignmentService]:
    settings = get_settings()
    credential_store = CredentialStore(settings.auth_db_url)
    audit_store = AuditStore(settings.audit_db_url)
    return credential_store, audit_store, RoleAssignmentService(credential_store, AuditLogger(audit_store))


def _read_password(provided: str | None) -> str:
    if provided:
        return provided
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        sys.exit(1)
    return first


def cmd_create_user(args: argparse.Namespace) -> int:
    """Create an account. The very first account always becomes the Owner.

    The CLI runs with operator rights, so any role may be requested.
    """
    try:
        requested = Role.parse(args.role) if args.role else None
    except AccountError as exc:
        print(f"  [!] {exc.message}")
        return 1

    credential_store, audit_store, roles = _build_services()
    try:
        password = _read_password(args.password)
        user = User(username=args.username, email=args.email, first_name=args.first_name, last_name=args.last_name)
        result = roles.bootstrap_first_user(user, password, requested, trusted=True)
        if not result.ok:
            for error in result.errors:
                label = f"{error.field}: " if error.field else ""
                print(f"  [!] {label}{error.message}")
            return 1
        created = result.value
        assigned = ", ".join(sorted(r.value for r in roles.roles_for(created)))
    finally:
        credential_store.close()
        audit_store.close()

    print(f"  Created '{created.username}' ({created.id}) with role {assigned}.")
    return 0


def cmd_roles(args: argparse.Namespace) -> int:
    credential_store, audit_store, roles = _build_services()
    try:
        for role in roles.list_roles():
            print(f"  {role.value:<24} {role.display_name}")
    finally:
        credential_store.close()
        audit_store.close()
    return 0


def cmd_audit(args: argparse.Namespace) -> int:
    audit_store = AuditStore(get_settings().audit_db_url)
    try:
        entries = AuditLogger(audit_store).recent(limit=args.limit, actor_id=args.actor, action=args.action)
    finally:
        audit_store.close()
    if not entries:
        print("  No audit entries.")
        return 0
    for entry in entries:
        print(f"  {entry.timestamp}  {entry.action:<28} {entry.actor_id:<34} {entry.message}")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="restaurant-identity",
        description="Operator tools for restaurant accounts, roles and the audit log.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = sub.add_parser("create-user", help="Create an account (the first account becomes Owner)")
    create.add_argument("username")
    create.add_argument("email")
    create.add_argument(
        "--role",
        metavar="ROLE",
        help="Role name or display name, e.g. Kok or Cook (default: Gebruiker)",
    )
    create.add_argument(
        "--password",
        metavar="PASSWORD",
        help="Password (prompted when omitted; avoid on shared machines, it ends up in shell history)",
    )
    create.add_argument("--first-name", default=None)
    create.add_argument("--last-name", default=None)
    create.set_defaults(func=cmd_create_user)

    roles = sub.add_parser("roles", help="List the known roles")
    roles.set_defaults(func=cmd_roles)

    audit = sub.add_parser("audit", help="Show the newest audit entries")
    audit.add_argument("--limit", type=int, default=20, help="Number of entries (default: 20)")
    audit.add_argument("--actor", metavar="USER_ID", default=None, help="Only entries of this actor id")
    audit.add_argument("--action", metavar="LABEL", default=None, help='Exact action label, e.g. "Login mislukt"')
    audit.set_defaults(func=cmd_audit)

    args = parser.parse_args()
    if not getattr(args, "func", None):
        parser.print_help()
        return
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
