"""
auth/results.py -- Error taxonomy and the Result envelope returned by services.

Pattern: every service operation returns a Result instead of mutating a shared
error bag. A Result holds either a value or exactly one AccountError, and the
error holds an ordered list of field-scoped messages for redisplay.

The store raises AccountError subclasses; services catch them and wrap them
with Result.failure(). Route handlers turn the error class into an HTTP
status (see api/main.py).

Layer rule: stdlib only.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")

# Field name used for messages that do not belong to a single input.
GENERAL = ""


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str


class AccountError(Exception):
    """Base class for every expected failure of an identity operation."""

    code = "account_error"

    def __init__(self, message: str = "", field: str = GENERAL, errors: list[FieldError] | None = None) -> None:
        if errors is None:
            errors = [FieldError(field, message)] if message else []
        self.errors: list[FieldError] = list(errors)
        super().__init__(message or "; ".join(e.message for e in self.errors))

    @property
    def message(self) -> str:
        return self.errors[0].message if self.errors else str(self)


class ValidationError(AccountError):
    """Bad or missing input, including password policy violations."""

    code = "validation_error"


class AuthenticationFailure(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    LOCKED_OUT = "locked_out"


class AuthenticationError(AccountError):
    """Login rejected. The message is deliberately generic."""

    code = "authentication_error"

    _MESSAGES = {
        AuthenticationFailure.INVALID_CREDENTIALS: "Invalid username or password.",
        AuthenticationFailure.LOCKED_OUT: "Account locked. Try again later.",
    }

    def __init__(self, reason: AuthenticationFailure) -> None:
        self.reason = reason
        super().__init__(self._MESSAGES[reason])


class AuthorizationError(AccountError):
    """Acting on another user's resource without the required role."""

    code = "forbidden"

    def __init__(self, message: str = "You are not allowed to perform this action.") -> None:
        super().__init__(message)


class NotFoundError(AccountError):
    code = "not_found"

    def __init__(self, message: str = "User not found.") -> None:
        super().__init__(message)


class ConflictError(AccountError):
    """Duplicate username or email."""

    code = "conflict"


class TokenError(AccountError):
    """Invalid, expired or already consumed reset token."""

    code = "invalid_token"

    def __init__(self, message: str = "Invalid or expired password reset link.") -> None:
        super().__init__(message, field="token")


@dataclass
class Result(Generic[T]):
    """Outcome of a service operation: a value on success, an error otherwise."""

    value: T | None = None
    error: AccountError | None = None

    @classmethod
    def success(cls, value: T | None = None) -> Result[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: AccountError) -> Result[T]:
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def errors(self) -> list[FieldError]:
        return list(self.error.errors) if self.error is not None else []

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]
