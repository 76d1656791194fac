"""
audit/models.py -- Audit log entry and the fixed set of action labels.

Entries are immutable once built. The action labels are stored verbatim and
are what operators filter on, so they never change spelling.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

UNKNOWN_ACTOR = "Onbekend"


class AuditAction(str, Enum):
    LOGIN_SUCCEEDED = "Login succesvol"
    LOGIN_FAILED = "Login mislukt"
    LOGIN_LOCKED = "Login geblokkeerd"
    LOGOUT = "Logout"
    FORGOT_PASSWORD = "Wachtwoord vergeten"
    RESET_SUCCEEDED = "Reset wachtwoord succesvol"
    RESET_FAILED = "Reset wachtwoord mislukt"
    USER_CREATED = "Gebruiker aangemaakt"
    USER_EDITED = "Gebruiker bewerkt"
    USER_DELETED = "Gebruiker verwijderd"
    ACCOUNT_UPDATED = "Account bijgewerkt"
    PASSWORD_CHANGED = "Wachtwoord gewijzigd"
    ACCOUNT_DELETED = "Account verwijderd"


@dataclass(frozen=True)
class AuditLogEntry:
    timestamp: str  # ISO 8601 UTC
    actor_id: str
    action: str
    message: str
    id: int | None = None
