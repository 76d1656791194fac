"""
api/routes/v1/auth.py -- Login, logout and password reset endpoints.

Routes:
  POST /api/v1/auth/login            -- password login; sets JWT cookie
  POST /api/v1/auth/logout           -- revokes sessions, clears cookie; 200
  GET  /api/v1/auth/me               -- current user info (requires auth)
  POST /api/v1/auth/forgot-password  -- mail a reset link; always 202
  POST /api/v1/auth/reset-password   -- consume a reset token

Security:
  POST /login is rate-limited per IP (LOGIN_RATE_LIMIT) on top of the
  per-account lockout kept by the credential store.
  Unknown username and wrong password return the same 401 body.
  Cache-Control: no-store on login responses.
  forgot-password answers identically for known and unknown addresses, and
  reset-password answers identically for an unknown address and a success.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit, reset_rate_limit
from api.models import (
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    ResetPasswordRequest,
    UserResponse,
)
from auth.authentication import AuthenticationService
from auth.dependencies import get_current_user, try_get_current_user
from auth.models import User
from auth.password_reset import PasswordResetFlow
from auth.roles import RoleAssignmentService
from auth.tokens import create_access_token, set_auth_cookie
from core.config import get_settings

# Auth policy:
# - POST /api/v1/auth/login:            public
# - POST /api/v1/auth/logout:           public -- anonymous callers only lose the cookie
# - GET  /api/v1/auth/me:               requires auth (get_current_user)
# - POST /api/v1/auth/forgot-password:  public
# - POST /api/v1/auth/reset-password:   public -- the reset token is the credential
router = APIRouter()

RESET_ACCEPTED = "If the address is registered, a reset link has been sent."
RESET_DONE = "Your password has been reset. You can now log in."


def issue_session(user: User, roles: RoleAssignmentService) -> JSONResponse:
    """Sign a token for the user's current security stamp and return it as cookie and body."""
    role_names = sorted(r.value for r in roles.roles_for(user))
    expires_in = get_settings().token_expire_seconds
    token = create_access_token(user.id, user.username, role_names, user.security_stamp or "")
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=expires_in,
            user_id=user.id,
            username=user.username,
            roles=role_names,
        ).model_dump(),
    )
    set_auth_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; set JWT cookie.

    Wrong username, wrong password and locked accounts all surface as an
    AuthenticationError with generic text. The audit log records which one.
    """
    authentication: AuthenticationService = request.app.state.authentication
    user = authentication.login(body.username, body.password).unwrap()
    return issue_session(user, request.app.state.roles)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, current_user: User | None = Depends(try_get_current_user)) -> JSONResponse:
    """Revoke every session of the caller and clear the cookie."""
    authentication: AuthenticationService = request.app.state.authentication
    authentication.logout(current_user)
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    resp.delete_cookie("access_token")
    return resp


@router.get("/auth/me", response_model=UserResponse)
def me(request: Request, current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return identity information for the currently authenticated user."""
    return UserResponse.from_user(current_user, request.app.state.roles.roles_for(current_user))


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@limiter.limit(reset_rate_limit)
@router.post("/auth/forgot-password", response_model=MessageResponse, status_code=202)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    flow: PasswordResetFlow = request.app.state.password_reset
    flow.request_reset(body.email).unwrap()
    return MessageResponse(message=RESET_ACCEPTED)


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    """Consume a reset token.

    An unknown address gets the success message so the endpoint cannot be used
    to probe for registered emails.
    """
    flow: PasswordResetFlow = request.app.state.password_reset
    flow.reset_password(body.token, body.email, body.password).unwrap()
    return MessageResponse(message=RESET_DONE)
