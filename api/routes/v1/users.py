"""
api/routes/v1/users.py -- Self-service profile endpoints.

Routes:
  GET /api/v1/users/profile  -- own profile (requires auth)
  PUT /api/v1/users/profile  -- update name, phone_number, address, bio (requires auth)
  GET /api/v1/users/devices  -- devices the account has logged in from (requires auth)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import DeviceListResponse, DeviceResponse, ProfileUpdateRequest, UserEnvelope, UserResponse
from auth.dependencies import get_auth_context
from auth.models import AuthContext
from auth.service import AuthService

router = APIRouter()


@router.get("/users/profile", response_model=UserEnvelope)
def get_profile(ctx: AuthContext = Depends(get_auth_context)) -> UserEnvelope:
    return UserEnvelope(message="Profile retrieved.", user=UserResponse.from_user(ctx.user))


@router.put("/users/profile", response_model=UserEnvelope)
def update_profile(
    request: Request,
    body: ProfileUpdateRequest,
    ctx: AuthContext = Depends(get_auth_context),
) -> UserEnvelope:
    """Only fields present in the body are changed."""
    service: AuthService = request.app.state.auth
    user = service.update_profile(ctx.user, **body.model_dump(exclude_unset=True))
    return UserEnvelope(message="Profile updated successfully.", user=UserResponse.from_user(user))


@router.get("/users/devices", response_model=DeviceListResponse)
def list_devices(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> DeviceListResponse:
    service: AuthService = request.app.state.auth
    devices = service.list_devices(ctx.user)
    return DeviceListResponse(message="Devices retrieved.", devices=[DeviceResponse.from_device(d) for d in devices])
