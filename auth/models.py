"""
auth/models.py -- Domain dataclasses for identity entities.

Pattern: Data class (pure data container, zero logic beyond small helpers).
Dataclasses own domain shape; the store and services do the work.

Layer rule: no imports from api/, audit/ or mail/.
"""

from __future__ import annotations

from dataclasses import dataclass, fields

# Profile fields a user (or an admin) may overwrite. Bookkeeping columns such
# as security_stamp and lockout state are owned by the store.
PROFILE_FIELDS = ("first_name", "last_name", "address", "house_number", "postal_code", "city")


@dataclass
class User:
    """A restaurant account.

    id is an opaque uuid4 hex string assigned by the store at creation.
    hashed_password is owned by the store: services never hash or compare it.
    security_stamp is embedded in every session token; rotating it revokes all
    sessions of the user.
    """

    username: str
    email: str
    id: str | None = None
    hashed_password: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    address: str | None = None
    house_number: str | None = None
    postal_code: str | None = None
    city: str | None = None
    email_confirmed: bool = False
    country_id: int | None = None
    security_stamp: str | None = None
    access_failed_count: int = 0
    lockout_end: str | None = None  # ISO 8601, None = not locked
    created_at: str | None = None
    last_login: str | None = None


@dataclass
class ProfilePatch:
    """Partial profile update. None or blank means "leave unchanged"."""

    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    address: str | None = None
    house_number: str | None = None
    postal_code: str | None = None
    city: str | None = None

    def changes(self) -> dict[str, str]:
        """Return only the fields that carry a non-blank value."""
        result: dict[str, str] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is not None and str(value).strip():
                result[f.name] = str(value).strip()
        return result


@dataclass
class Country:
    name: str
    id: int | None = None
