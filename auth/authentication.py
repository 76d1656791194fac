"""
auth/authentication.py -- Login and logout.

Login states: Anonymous -> Authenticating -> Authenticated | LockedOut |
Rejected. Unknown usernames and wrong passwords produce the same outward
error, and bcrypt runs in both cases so response time does not reveal which.
The lockout check happens before any password comparison, so a locked
account's counter cannot be pushed further by guessing.
"""

from __future__ import annotations

import logging

from audit.logger import AuditLogger
from audit.models import AuditAction
from auth.models import User
from auth.results import AuthenticationError, AuthenticationFailure, Result
from auth.store import CredentialStore
from auth.tokens import DUMMY_HASH, verify_password

logger = logging.getLogger("restaurant.auth")


class AuthenticationService:
    def __init__(self, store: CredentialStore, audit: AuditLogger) -> None:
        self.store = store
        self.audit = audit

    def login(self, username: str, password: str) -> Result[User]:
        user = self.store.get_by_username(username)
        if user is None:
            # Equalize timing -- do NOT return before running bcrypt.
            verify_password(password or "", DUMMY_HASH)
            self.audit.append(AuditAction.LOGIN_FAILED, f"Gebruiker '{username}' niet gevonden")
            return Result.failure(AuthenticationError(AuthenticationFailure.INVALID_CREDENTIALS))

        if self.store.is_locked_out(user):
            logger.info("Login rejected for locked account %s", user.id)
            self.audit.append(AuditAction.LOGIN_LOCKED, f"Gebruiker '{user.username}' geblokkeerd", user.id)
            return Result.failure(AuthenticationError(AuthenticationFailure.LOCKED_OUT))

        if not self.store.check_password(user, password):
            self.audit.append(AuditAction.LOGIN_FAILED, f"Onjuist wachtwoord voor '{user.username}'", user.id)
            return Result.failure(AuthenticationError(AuthenticationFailure.INVALID_CREDENTIALS))

        self.audit.append(AuditAction.LOGIN_SUCCEEDED, f"Gebruiker '{user.username}' ingelogd", user.id)
        return Result.success(self.store.get_by_id(user.id) or user)

    def end_sessions(self, user: User) -> None:
        """Revoke every session token of the user without writing an audit entry."""
        self.store.rotate_security_stamp(user.id)

    def logout(self, user: User | None) -> None:
        """Revoke the user's sessions. A no-op for anonymous callers."""
        if user is None:
            return
        self.end_sessions(user)
        self.audit.append(AuditAction.LOGOUT, f"Gebruiker '{user.username}' uitgelogd", user.id)
