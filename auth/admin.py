"""
auth/admin.py -- User management on behalf of another account.

Authorization: an Owner may manage any account. Any other user may only edit
their own profile. Role changes and password overrides are Owner-only;
a user changes their own password through AccountSelfService, which asks
for the current one. A request that needs the Owner role without having it
fails as a whole with AuthorizationError.

Last-owner guard: the only remaining Owner can neither be demoted nor deleted
through this service, since there would be no account left to grant the role
again.
"""

from __future__ import annotations

import logging

from audit.logger import AuditLogger
from audit.models import AuditAction
from auth.account import AccountSelfService
from auth.models import ProfilePatch, User
from auth.results import AccountError, AuthorizationError, NotFoundError, Result, ValidationError
from auth.roles import Role, RoleAssignmentService
from auth.store import CredentialStore

logger = logging.getLogger("restaurant.auth")


class _KeepRole:
    def __repr__(self) -> str:
        return "KEEP_ROLE"


# Default for edit_user(role=...): leave the role set untouched. None clears it.
KEEP_ROLE = _KeepRole()


class UserAdminService:
    def __init__(
        self,
        store: CredentialStore,
        roles: RoleAssignmentService,
        accounts: AccountSelfService,
        audit: AuditLogger,
    ) -> None:
        self.store = store
        self.roles = roles
        self.accounts = accounts
        self.audit = audit

    def list_users_by_role(self) -> dict[Role, list[User]]:
        """Group users under every known role. Users without a role are omitted."""
        grouped: dict[Role, list[User]] = {role: [] for role in self.roles.list_roles()}
        for user in self.store.list_users():
            for role in self.roles.roles_for(user):
                grouped.setdefault(role, []).append(user)
        return grouped

    def get_user(self, actor: User, user_id: str) -> Result[User]:
        try:
            self._authorize(actor, user_id)
        except AccountError as exc:
            return Result.failure(exc)
        user = self.store.get_by_id(user_id)
        if user is None:
            return Result.failure(NotFoundError())
        return Result.success(user)

    def create_user(
        self,
        user: User,
        password: str,
        requested_role: Role | None = None,
        actor: User | None = None,
    ) -> Result[User]:
        return self.roles.bootstrap_first_user(user, password, requested_role, actor)

    def edit_user(
        self,
        actor: User,
        user_id: str,
        patch: ProfilePatch,
        password: str | None = None,
        role: Role | None | _KeepRole = KEEP_ROLE,
    ) -> Result[User]:
        """Edit another account: password override, profile, then role."""
        changes_role = role is not KEEP_ROLE
        sets_password = bool(password and password.strip())
        try:
            self._authorize(actor, user_id, owner_only=changes_role or sets_password)
            target = self.store.get_by_id(user_id)
            if target is None:
                raise NotFoundError()
            if changes_role and role is not Role.OWNER:
                self._guard_last_owner(target)

            if sets_password:
                token = self.store.generate_reset_token(target.id)
                self.store.consume_reset_token(target.id, token, password)

            updated = self.accounts.apply_profile(target, patch)

            if changes_role:
                self.roles.set_exclusive_role(updated, role).unwrap()
        except AccountError as exc:
            return Result.failure(exc)

        self.audit.append(AuditAction.USER_EDITED, f"Gebruiker '{updated.username}' aangepast", updated.id)
        return Result.success(updated)

    def delete_user(self, actor: User, user_id: str) -> Result[bool]:
        """Delete another account. An unknown id is a no-op returning False."""
        try:
            self._authorize(actor, user_id)
            if actor.id == user_id:
                raise ValidationError("Use account deletion to remove your own account.")
            target = self.store.get_by_id(user_id)
            if target is None:
                return Result.success(False)
            self._guard_last_owner(target)
        except AccountError as exc:
            return Result.failure(exc)

        if not self.store.delete_user(target.id):
            return Result.success(False)
        self.audit.append(AuditAction.USER_DELETED, f"Gebruiker '{target.username}' is verwijderd", target.id)
        return Result.success(True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _authorize(self, actor: User, target_id: str, owner_only: bool = False) -> None:
        if self.roles.is_admin(actor):
            return
        if actor.id == target_id and not owner_only:
            return
        logger.warning("User %s denied management of account %s", actor.id, target_id)
        raise AuthorizationError()

    def _guard_last_owner(self, target: User) -> None:
        if Role.OWNER in self.roles.roles_for(target) and self.store.count_users_with_role(Role.OWNER) <= 1:
            raise ValidationError("The last owner account cannot lose the Owner role.", field="role")
