"""
auth/roles.py -- Closed role set and the role assignment service.

Roles are reference data: the store seeds one row per Role member and rejects
any other name. A user holds at most one role at a time. Every assignment goes
through CredentialStore.replace_roles() or the create-user transaction, both
of which clear the previous roles before adding the new one.

First-user bootstrap: the account that brings the user count to 1 becomes
Owner whatever role was requested. The count and the assignment run in the
same transaction as the insert, after that transaction has locked the Owner
row of the roles table. Sign-ups therefore count one after another, and two
concurrent first sign-ups cannot both observe count == 1.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING

from audit.models import AuditAction
from auth.results import AccountError, AuthorizationError, Result, ValidationError

if TYPE_CHECKING:
    from audit.logger import AuditLogger
    from auth.models import User
    from auth.store import CredentialStore

logger = logging.getLogger("restaurant.auth")


class Role(str, Enum):
    OWNER = "Eigenaar"
    COOK = "Kok"
    WAITER = "Ober"
    ROOM_MANAGER = "ZaalVerantwoordelijke"
    USER = "Gebruiker"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @classmethod
    def parse(cls, name: str) -> Role:
        """Resolve a stored name, display name or member name (case-insensitive).

        Raises ValidationError for anything outside the closed set.
        """
        key = (name or "").strip().lower()
        for role in cls:
            if key in (role.value.lower(), role.display_name.lower(), role.name.lower()):
                return role
        raise ValidationError(f"Unknown role '{name}'.", field="role")


_DISPLAY_NAMES = {
    Role.OWNER: "Owner",
    Role.COOK: "Cook",
    Role.WAITER: "Waiter",
    Role.ROOM_MANAGER: "RoomManager",
    Role.USER: "User",
}

# Roles allowed to manage other users' accounts and read the audit log.
ADMIN_ROLES = frozenset({Role.OWNER})


class RoleAssignmentService:
    def __init__(self, store: CredentialStore, audit: AuditLogger) -> None:
        self.store = store
        self.audit = audit

    def list_roles(self) -> list[Role]:
        return self.store.list_roles()

    def roles_for(self, user: User) -> set[Role]:
        return self.store.get_roles_for(user.id)

    def is_admin(self, user: User | None) -> bool:
        return user is not None and bool(self.roles_for(user) & ADMIN_ROLES)

    @staticmethod
    def initial_role(user_count: int, requested: Role | None, actor_is_admin: bool = False) -> Role:
        """Pick the role for a freshly inserted user.

        user_count is the number of users including the new one. Only an admin
        may hand out anything above the default User role.
        """
        if user_count == 1:
            return Role.OWNER
        role = requested or Role.USER
        if role is not Role.USER and not actor_is_admin:
            raise AuthorizationError("Only an owner can assign this role.")
        return role

    def bootstrap_first_user(
        self,
        user: User,
        password: str,
        requested_role: Role | None = None,
        actor: User | None = None,
        trusted: bool = False,
    ) -> Result[User]:
        """Create a user and assign its initial role in one store transaction.

        trusted=True grants role choice without an Owner actor (operator CLI).
        """
        actor_is_admin = trusted or self.is_admin(actor)
        try:
            created, role = self.store.create_user(
                user,
                password,
                lambda count: self.initial_role(count, requested_role, actor_is_admin),
            )
        except AccountError as exc:
            return Result.failure(exc)

        if role is Role.OWNER and requested_role not in (None, Role.OWNER):
            logger.info("First account %s promoted to Owner (requested %s)", created.id, requested_role.value)
        self.audit.append(
            AuditAction.USER_CREATED,
            f"Nieuwe gebruiker '{created.username}' met rol '{role.value}' aangemaakt",
            created.id,
        )
        return Result.success(created)

    def set_exclusive_role(self, user: User, role: Role | None) -> Result[set[Role]]:
        """Replace all roles of the user with {role}, or clear them when role is None."""
        try:
            roles = self.store.replace_roles(user.id, role)
        except AccountError as exc:
            return Result.failure(exc)
        return Result.success(roles)
