"""
auth/password_reset.py -- Forgot-password and reset-password flow.

request_reset() answers identically whether or not the email belongs to an
account, so the endpoint cannot be used to enumerate users. The token itself
is opaque here: the store issues it, stores only its hash and enforces the
single-use and expiry rules when it is consumed.
"""

from __future__ import annotations

import html
import logging
from enum import Enum
from urllib.parse import urlencode

from audit.logger import AuditLogger
from audit.models import AuditAction
from auth.results import AccountError, FieldError, Result, ValidationError
from auth.store import CredentialStore
from core.config import get_settings
from mail.service import MailService

logger = logging.getLogger("restaurant.auth")

RESET_SUBJECT = "Wachtwoord resetten"


class ResetOutcome(str, Enum):
    SUCCESS = "success"
    # Unknown email: nothing changed. Callers answer as for SUCCESS.
    INVALID_REQUEST = "invalid_request"


def build_reset_link(token: str, email: str) -> str:
    return f"{get_settings().reset_password_url}?{urlencode({'token': token, 'email': email})}"


def _reset_body(link: str) -> str:
    href = html.escape(link, quote=True)
    return (
        "<h2>Wachtwoord resetten</h2>"
        "<p>Klik op de link om uw wachtwoord te resetten:</p>"
        f"<p><a href='{href}'>Wachtwoord resetten</a></p>"
    )


class PasswordResetFlow:
    def __init__(self, store: CredentialStore, mailer: MailService, audit: AuditLogger) -> None:
        self.store = store
        self.mailer = mailer
        self.audit = audit

    def request_reset(self, email: str) -> Result[None]:
        """Send a reset link if the email is known. Always returns success."""
        user = self.store.get_by_email(email)
        if user is None:
            self.audit.append(AuditAction.FORGOT_PASSWORD, f"E-mail '{email}' niet gevonden")
            return Result.success()

        token = self.store.generate_reset_token(user.id)
        link = build_reset_link(token, user.email)
        sent, error = self.mailer.send_email(user.email, RESET_SUBJECT, _reset_body(link))
        if sent:
            self.audit.append(AuditAction.FORGOT_PASSWORD, f"Resetlink verstuurd naar '{user.email}'", user.id)
        else:
            logger.warning("Reset mail for user %s not delivered: %s", user.id, error)
            self.audit.append(
                AuditAction.FORGOT_PASSWORD, f"Versturen resetlink naar '{user.email}' mislukt", user.id
            )
        return Result.success()

    def reset_password(self, token: str, email: str, new_password: str) -> Result[ResetOutcome]:
        missing = [
            FieldError(name, f"{label} is required.")
            for name, label, value in (("token", "Token", token), ("email", "Email", email))
            if not value
        ]
        if missing:
            return Result.failure(ValidationError(errors=missing))

        user = self.store.get_by_email(email)
        if user is None:
            return Result.success(ResetOutcome.INVALID_REQUEST)

        try:
            self.store.consume_reset_token(user.id, token, new_password)
        except AccountError as exc:
            self.audit.append(
                AuditAction.RESET_FAILED, f"Gebruiker '{user.username}' fout bij reset wachtwoord", user.id
            )
            return Result.failure(exc)

        self.audit.append(
            AuditAction.RESET_SUCCEEDED, f"Gebruiker '{user.username}' heeft wachtwoord gereset", user.id
        )
        return Result.success(ResetOutcome.SUCCESS)
