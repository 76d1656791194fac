"""
api/routes/v1/users.py -- User management and role listing endpoints.

Routes:
  GET    /api/v1/users        -- users grouped by role (requires auth)
  POST   /api/v1/users        -- register or create an account; 201
  GET    /api/v1/users/{id}   -- one account (owner, or the user themselves)
  PATCH  /api/v1/users/{id}   -- edit profile, password override and role
  DELETE /api/v1/users/{id}   -- delete another account; 204
  GET    /api/v1/roles        -- every known role with its display name

POST /users is open to anonymous callers: the very first account becomes the
Owner, every later anonymous registration gets the User role. Only an Owner
may request any other role.

Authorization for the {id} routes lives in UserAdminService, so a 403 from
here means the service refused, not the router.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import RoleGroup, RoleInfo, UserCreate, UserPatch, UserResponse
from auth.admin import KEEP_ROLE, UserAdminService
from auth.dependencies import get_current_user, try_get_current_user
from auth.models import User
from auth.roles import Role, RoleAssignmentService

# Auth policy:
# - GET    /api/v1/users:        requires auth (get_current_user)
# - POST   /api/v1/users:        public; role choice beyond User needs an Owner session
# - GET    /api/v1/users/{id}:   requires auth; service checks owner-or-self
# - PATCH  /api/v1/users/{id}:   requires auth; service checks owner-or-self
# - DELETE /api/v1/users/{id}:   requires auth; service checks owner
# - GET    /api/v1/roles:        requires auth (get_current_user)
router = APIRouter()


def _role_info(role: Role) -> RoleInfo:
    return RoleInfo(name=role.value, display_name=role.display_name)


def _response(request: Request, user: User) -> UserResponse:
    roles: RoleAssignmentService = request.app.state.roles
    return UserResponse.from_user(user, roles.roles_for(user))


@router.get("/users", response_model=list[RoleGroup])
def list_users(request: Request, current_user: User = Depends(get_current_user)) -> list[RoleGroup]:
    """Every role with its members. Users without a role are not listed."""
    admin: UserAdminService = request.app.state.user_admin
    grouped = admin.list_users_by_role()
    return [
        RoleGroup(
            role=_role_info(role),
            users=[UserResponse.from_user(u, {role}) for u in members],
        )
        for role, members in grouped.items()
    ]


@router.post("/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    current_user: User | None = Depends(try_get_current_user),
) -> UserResponse:
    admin: UserAdminService = request.app.state.user_admin
    profile = body.to_patch().changes()
    profile.pop("email", None)
    new_user = User(username=body.username, email=body.email, **profile)
    requested = Role(body.role) if body.role else None
    created = admin.create_user(new_user, body.password, requested, current_user).unwrap()
    return _response(request, created)


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(request: Request, user_id: str, current_user: User = Depends(get_current_user)) -> UserResponse:
    admin: UserAdminService = request.app.state.user_admin
    return _response(request, admin.get_user(current_user, user_id).unwrap())


@router.patch("/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: str,
    body: UserPatch,
    current_user: User = Depends(get_current_user),
) -> UserResponse:
    """Edit an account.

    Omitting "role" keeps the current role; sending null or "" clears it.
    """
    admin: UserAdminService = request.app.state.user_admin
    if "role" in body.model_fields_set:
        role = Role(body.role) if body.role else None
    else:
        role = KEEP_ROLE
    updated = admin.edit_user(current_user, user_id, body.to_patch(), password=body.password, role=role).unwrap()
    return _response(request, updated)


@router.delete("/users/{user_id}", status_code=204)
def delete_user(request: Request, user_id: str, current_user: User = Depends(get_current_user)) -> Response:
    """Delete an account. An unknown id is a no-op and still answers 204."""
    admin: UserAdminService = request.app.state.user_admin
    admin.delete_user(current_user, user_id).unwrap()
    return Response(status_code=204)


@router.get("/roles", response_model=list[RoleInfo])
def list_roles(request: Request, current_user: User = Depends(get_current_user)) -> list[RoleInfo]:
    roles: RoleAssignmentService = request.app.state.roles
    return [_role_info(r) for r in roles.list_roles()]
