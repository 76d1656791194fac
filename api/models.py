"""
API request and response models for the identity REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py and
audit/models.py, which own the internal domain representation. Route handlers
map between the two.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from audit.models import AuditLogEntry
from auth.models import ProfilePatch, User
from auth.results import AccountError, FieldError
from auth.roles import Role

# ---------------------------------------------------------------------------
# Shared field helpers
# ---------------------------------------------------------------------------


def _parse_role(value: Optional[str]) -> Optional[str]:
    """Normalize a role name to its stored form. Blank means "no role"."""
    if value is None or not str(value).strip():
        return None
    try:
        return Role.parse(str(value)).value
    except AccountError as exc:
        raise ValueError(exc.message) from exc


class _ProfileFields(BaseModel):
    # No str_strip_whitespace here: subclasses carry passwords, and whitespace
    # is a legal password character. ProfilePatch.changes() strips profile values.

    email: Optional[EmailStr] = None
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    address: Optional[str] = Field(default=None, max_length=255)
    house_number: Optional[str] = Field(default=None, max_length=20)
    postal_code: Optional[str] = Field(default=None, max_length=20)
    city: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email", mode="before")
    @classmethod
    def blank_email_keeps_current(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def to_patch(self) -> ProfilePatch:
        return ProfilePatch(
            email=self.email,
            first_name=self.first_name,
            last_name=self.last_name,
            address=self.address,
            house_number=self.house_number,
            postal_code=self.postal_code,
            city=self.city,
        )


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=128)


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str
    expires_in: int
    user_id: str
    username: str
    roles: list[str]


class ForgotPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1, max_length=255)
    email: EmailStr
    password: str = Field(min_length=1, max_length=128)


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserCreate(_ProfileFields):
    """Request body for POST /api/v1/users (registration or owner-created account)."""

    username: str = Field(min_length=1, max_length=255)
    email: EmailStr
    password: str = Field(min_length=1, max_length=128)
    role: Optional[str] = None

    @field_validator("role")
    @classmethod
    def normalize_role(cls, value: Optional[str]) -> Optional[str]:
        return _parse_role(value)


class UserPatch(_ProfileFields):
    """Request body for PATCH /api/v1/users/{id}.

    role: omit to keep the current role, send "" or null to clear it.
    password: optional override (Owner only), applied through the reset-token path.
    """

    password: Optional[str] = Field(default=None, max_length=128)
    role: Optional[str] = None

    @field_validator("role")
    @classmethod
    def normalize_role(cls, value: Optional[str]) -> Optional[str]:
        return _parse_role(value)


class AccountUpdate(_ProfileFields):
    """Request body for PATCH /api/v1/account."""

    old_password: Optional[str] = Field(default=None, max_length=128)
    new_password: Optional[str] = Field(default=None, max_length=128)


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    username: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    address: Optional[str] = None
    house_number: Optional[str] = None
    postal_code: Optional[str] = None
    city: Optional[str] = None
    email_confirmed: bool
    roles: list[str] = Field(default_factory=list)
    created_at: str = ""
    last_login: Optional[str] = None

    @classmethod
    def from_user(cls, user: User, roles: set[Role] | list[Role]) -> "UserResponse":
        """Factory Method: build the transport model from the domain dataclass."""
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            address=user.address,
            house_number=user.house_number,
            postal_code=user.postal_code,
            city=user.city,
            email_confirmed=user.email_confirmed,
            roles=sorted(r.value for r in roles),
            created_at=user.created_at or "",
            last_login=user.last_login,
        )


class RoleInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    display_name: str


class RoleGroup(BaseModel):
    """One role with its members, for GET /api/v1/users."""

    model_config = ConfigDict(frozen=True)

    role: RoleInfo
    users: list[UserResponse]


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int]
    timestamp: str
    actor_id: str
    action: str
    message: str

    @classmethod
    def from_entry(cls, entry: AuditLogEntry) -> "AuditEntryResponse":
        return cls(
            id=entry.id,
            timestamp=entry.timestamp,
            actor_id=entry.actor_id,
            action=entry.action,
            message=entry.message,
        )


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class FieldErrorModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    message: str

    @classmethod
    def from_error(cls, error: FieldError) -> "FieldErrorModel":
        return cls(field=error.field, message=error.message)


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    field_errors: list[FieldErrorModel] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
