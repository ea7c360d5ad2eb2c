"""
api/routes/v1/admin.py -- Role-gated account administration.

Routes:
  GET    /api/v1/admin/users                       -- list (owner: all; admin: role "user" only)
  GET    /api/v1/admin/users/{id}                  -- detail (admins: "user" accounts only)
  PATCH  /api/v1/admin/users/{id}/role             -- change role (owner only)
  POST   /api/v1/admin/create-admin                -- create admin account (owner only)
  DELETE /api/v1/admin/users/{id}                  -- delete account (owner only)
  POST   /api/v1/admin/users/{id}/reset-password   -- set/generate a password (admin, owner)
  POST   /api/v1/admin/users/{id}/suspend          -- suspend (admin, owner)
  POST   /api/v1/admin/users/{id}/reactivate       -- lift suspension (admin, owner)

Security:
  Route dependencies do the role allow-list check (require_admin /
  require_owner). AuthService then applies the ownership rules: the owner is
  never a valid target, and admin targets need the owner as actor.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.models import (
    AdminPasswordResetRequest,
    AdminPasswordResetResponse,
    MessageResponse,
    RegisterRequest,
    RoleChangeRequest,
    SuspendRequest,
    UserEnvelope,
    UserListResponse,
    UserResponse,
)
from auth.dependencies import require_admin, require_owner
from auth.models import AuthContext
from auth.service import AuthService

router = APIRouter()


@router.get("/admin/users", response_model=UserListResponse)
def list_users(request: Request, ctx: AuthContext = Depends(require_admin)) -> UserListResponse:
    service: AuthService = request.app.state.auth
    users = service.list_users(ctx.user)
    return UserListResponse(
        message="Users retrieved.",
        users=[UserResponse.from_user(u) for u in users],
        count=len(users),
    )


@router.get("/admin/users/{user_id}", response_model=UserEnvelope)
def get_user(request: Request, user_id: int, ctx: AuthContext = Depends(require_admin)) -> UserEnvelope:
    service: AuthService = request.app.state.auth
    return UserEnvelope(message="User retrieved.", user=UserResponse.from_user(service.get_user(ctx.user, user_id)))


@router.patch("/admin/users/{user_id}/role", response_model=UserEnvelope)
def change_role(
    request: Request,
    user_id: int,
    body: RoleChangeRequest,
    ctx: AuthContext = Depends(require_owner),
) -> UserEnvelope:
    service: AuthService = request.app.state.auth
    user = service.change_role(ctx.user, user_id, body.role.value)
    return UserEnvelope(message="User role updated.", user=UserResponse.from_user(user))


@router.post("/admin/create-admin", response_model=UserEnvelope, status_code=201)
def create_admin(request: Request, body: RegisterRequest, ctx: AuthContext = Depends(require_owner)) -> JSONResponse:
    service: AuthService = request.app.state.auth
    user = service.create_admin(ctx.user, body.email, body.password, body.name)
    return JSONResponse(
        status_code=201,
        content=UserEnvelope(message="Admin created successfully.", user=UserResponse.from_user(user)).model_dump(),
    )


@router.delete("/admin/users/{user_id}", response_model=MessageResponse)
def delete_user(request: Request, user_id: int, ctx: AuthContext = Depends(require_owner)) -> MessageResponse:
    service: AuthService = request.app.state.auth
    service.delete_user(ctx.user, user_id)
    return MessageResponse(message="User deleted successfully.")


@router.post("/admin/users/{user_id}/reset-password", response_model=AdminPasswordResetResponse)
def reset_password(
    request: Request,
    user_id: int,
    body: AdminPasswordResetRequest | None = None,
    ctx: AuthContext = Depends(require_admin),
) -> JSONResponse:
    """Set the given password, or generate one. The password is returned once."""
    service: AuthService = request.app.state.auth
    password = service.admin_reset_password(ctx.user, user_id, body.new_password if body else None)
    resp = JSONResponse(
        content=AdminPasswordResetResponse(
            message="Password reset successfully.",
            temporary_password=password,
        ).model_dump()
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/admin/users/{user_id}/suspend", response_model=UserEnvelope)
def suspend_user(
    request: Request,
    user_id: int,
    body: SuspendRequest,
    ctx: AuthContext = Depends(require_admin),
) -> UserEnvelope:
    service: AuthService = request.app.state.auth
    user = service.suspend_user(ctx.user, user_id, body.reason, body.category.value, body.duration_days)
    return UserEnvelope(message="User suspended successfully.", user=UserResponse.from_user(user))


@router.post("/admin/users/{user_id}/reactivate", response_model=UserEnvelope)
def reactivate_user(request: Request, user_id: int, ctx: AuthContext = Depends(require_admin)) -> UserEnvelope:
    service: AuthService = request.app.state.auth
    user = service.reactivate_user(ctx.user, user_id)
    return UserEnvelope(message="User reactivated successfully.", user=UserResponse.from_user(user))
