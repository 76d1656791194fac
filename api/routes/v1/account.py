"""
api/routes/v1/account.py -- Self-service endpoints for the signed-in user.

Routes:
  GET    /api/v1/account   -- own profile and roles
  PATCH  /api/v1/account   -- profile update, optional password change
  DELETE /api/v1/account   -- delete own account; clears cookie; 204

A password change rotates the security stamp, which invalidates the cookie
that carried this very request. PATCH therefore issues a fresh session for the
caller whenever a new password was accepted.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.models import AccountUpdate, UserResponse
from auth.account import AccountSelfService
from auth.dependencies import get_current_user
from auth.models import User
from auth.tokens import create_access_token, set_auth_cookie

# Auth policy: every route requires auth (get_current_user) and only ever
# touches the caller's own account.
router = APIRouter()


@router.get("/account", response_model=UserResponse)
def view_account(request: Request, current_user: User = Depends(get_current_user)) -> UserResponse:
    accounts: AccountSelfService = request.app.state.accounts
    view = accounts.view_account(current_user.id).unwrap()
    return UserResponse.from_user(view.user, view.roles)


@router.patch("/account", response_model=UserResponse)
def update_account(
    request: Request,
    body: AccountUpdate,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    accounts: AccountSelfService = request.app.state.accounts
    updated = accounts.update_account(
        current_user,
        body.to_patch(),
        old_password=body.old_password,
        new_password=body.new_password,
    ).unwrap()

    roles = request.app.state.roles.roles_for(updated)
    resp = JSONResponse(content=UserResponse.from_user(updated, roles).model_dump())
    if updated.security_stamp != current_user.security_stamp:
        token = create_access_token(
            updated.id, updated.username, sorted(r.value for r in roles), updated.security_stamp or ""
        )
        set_auth_cookie(resp, token)
    return resp


@router.delete("/account", status_code=204)
def delete_account(request: Request, current_user: User = Depends(get_current_user)) -> Response:
    accounts: AccountSelfService = request.app.state.accounts
    accounts.delete_own_account(current_user).unwrap()
    resp = Response(status_code=204)
    resp.delete_cookie("access_token")
    return resp
