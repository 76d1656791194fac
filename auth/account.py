"""
auth/account.py -- Self-service account management.

Profile updates are partial: a blank or missing field keeps its stored value.
Each successful operation writes one audit entry after the store mutation has
committed; a failed store call returns its field errors and writes nothing.

Password change runs in two steps. The verified change (old + new) goes
first. If it fails, the same new password is set through a freshly issued
reset token. The token path has proven more tolerant of some inputs
(whitespace, special characters) than the direct one, so both paths are kept
and their errors are reported together when both fail. The fallback runs on
any direct failure, including a wrong current password; set
PASSWORD_CHANGE_FALLBACK=false to require the direct path only.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass

from audit.logger import AuditLogger
from audit.models import AuditAction
from auth.authentication import AuthenticationService
from auth.models import ProfilePatch, User
from auth.results import AccountError, FieldError, NotFoundError, Result, ValidationError
from auth.roles import Role, RoleAssignmentService
from auth.store import CredentialStore
from core.config import get_settings

logger = logging.getLogger("restaurant.auth")


@dataclass
class AccountView:
    user: User
    roles: set[Role]


def _blank(value: str | None) -> bool:
    return value is None or not value.strip()


class AccountSelfService:
    def __init__(
        self,
        store: CredentialStore,
        authentication: AuthenticationService,
        roles: RoleAssignmentService,
        audit: AuditLogger,
    ) -> None:
        self.store = store
        self.authentication = authentication
        self.roles = roles
        self.audit = audit

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def view_account(self, user_id: str) -> Result[AccountView]:
        user = self.store.get_by_id(user_id)
        if user is None:
            return Result.failure(NotFoundError())
        return Result.success(AccountView(user=user, roles=self.roles.roles_for(user)))

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def update_profile(self, user: User, patch: ProfilePatch) -> Result[User]:
        try:
            updated = self.apply_profile(user, patch)
        except AccountError as exc:
            return Result.failure(exc)
        self.audit.append(
            AuditAction.ACCOUNT_UPDATED, f"Gebruiker '{updated.username}' heeft account aangepast", updated.id
        )
        return Result.success(updated)

    def change_password(self, user: User, old_password: str | None, new_password: str | None) -> Result[None]:
        if _blank(new_password):
            return Result.failure(ValidationError("Enter a new password.", field="new_password"))
        try:
            self._change_password(user, old_password, new_password)
        except AccountError as exc:
            return Result.failure(exc)
        self.audit.append(
            AuditAction.PASSWORD_CHANGED, f"Gebruiker '{user.username}' heeft wachtwoord gewijzigd", user.id
        )
        return Result.success()

    def update_account(
        self,
        user: User,
        patch: ProfilePatch,
        old_password: str | None = None,
        new_password: str | None = None,
    ) -> Result[User]:
        """Profile update plus optional password change, audited as one action."""
        try:
            updated = self.apply_profile(user, patch)
            if not _blank(new_password):
                self._change_password(updated, old_password, new_password)
        except AccountError as exc:
            return Result.failure(exc)
        self.audit.append(
            AuditAction.ACCOUNT_UPDATED, f"Gebruiker '{updated.username}' heeft account aangepast", updated.id
        )
        return Result.success(self.store.get_by_id(updated.id) or updated)

    def delete_own_account(self, user: User) -> Result[None]:
        """End the user's sessions, then delete the account.

        The session revocation is not undone if the delete fails.
        """
        self.authentication.end_sessions(user)
        if not self.store.delete_user(user.id):
            return Result.failure(NotFoundError())
        self.audit.append(
            AuditAction.ACCOUNT_DELETED, f"Gebruiker '{user.username}' heeft eigen account verwijderd", user.id
        )
        return Result.success()

    # ------------------------------------------------------------------
    # Building blocks (raise AccountError, no audit)
    # ------------------------------------------------------------------

    def apply_profile(self, user: User, patch: ProfilePatch) -> User:
        """Apply the non-blank fields of patch and persist. Returns the stored user."""
        target = dataclasses.replace(user)
        changes = patch.changes()
        email = changes.pop("email", None)
        for name, value in changes.items():
            setattr(target, name, value)
        if email is not None and email != target.email:
            self.store.set_email(target, email)
        self.store.update_user(target)
        return self.store.get_by_id(target.id) or target

    def _change_password(self, user: User, old_password: str | None, new_password: str | None) -> None:
        if _blank(old_password):
            raise ValidationError("Supply your current password.", field="old_password")
        try:
            self.store.change_password(user.id, old_password, new_password)
            return
        except NotFoundError:
            raise
        except AccountError as direct:
            if not get_settings().password_change_fallback:
                raise
            logger.warning("Direct password change failed for user %s; retrying through reset token", user.id)
            try:
                token = self.store.generate_reset_token(user.id)
                self.store.consume_reset_token(user.id, token, new_password)
            except AccountError as fallback:
                raise ValidationError(errors=_union(direct.errors, fallback.errors)) from fallback


def _union(first: list[FieldError], second: list[FieldError]) -> list[FieldError]:
    merged: list[FieldError] = []
    for error in first + second:
        if error not in merged:
            merged.append(error)
    return merged
