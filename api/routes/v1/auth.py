"""
api/routes/v1/auth.py -- Registration, login and session endpoints.

Routes:
  POST /api/v1/auth/register        -- create a "user" account; returns a token
  POST /api/v1/auth/register/admin  -- create an "admin" account (ADMIN_SECRET)
  POST /api/v1/auth/setup-owner     -- one-time owner bootstrap
  POST /api/v1/auth/login           -- password (+ second factor) login; sets JWT cookie
  POST /api/v1/auth/logout          -- clears the cookie
  GET  /api/v1/auth/me              -- current user (requires auth)

Security:
  [H2] POST /login and the registration routes are rate-limited per IP.
  [C1] AuthService.login() runs bcrypt for unknown emails too -- never inline
       a lookup + verify here.
  [M5] Cache-Control: no-store on every response that carries a token.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    AdminRegisterRequest,
    AuthResponse,
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    UserEnvelope,
    UserResponse,
)
from auth.dependencies import get_auth_context
from auth.models import AuthContext, User
from auth.service import AuthService
from auth.tokens import set_auth_cookie
from core.config import get_settings

# Auth policy:
# - POST /auth/register, /auth/register/admin, /auth/setup-owner: public
#   (admin needs the shared secret; owner bootstrap works exactly once)
# - POST /auth/login, /auth/logout: public
# - GET  /auth/me: requires auth (get_auth_context)
router = APIRouter()

_settings = get_settings()


def _token_response(
    service: AuthService,
    user: User,
    token: str,
    message: str,
    status_code: int = 200,
    new_device: bool = False,
) -> JSONResponse:
    resp = JSONResponse(
        status_code=status_code,
        content=AuthResponse(
            message=message,
            access_token=token,
            expires_in=service.issuer.lifetime_seconds,
            user=UserResponse.from_user(user),
            new_device=new_device,
        ).model_dump(),
    )
    set_auth_cookie(resp, token, service.issuer.lifetime_seconds, secure=_settings.secure_cookies)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a standard user account. Duplicate email -> 409."""
    service: AuthService = request.app.state.auth
    user = service.register(body.email, body.password, body.name)
    return _token_response(service, user, service.issue_token(user), "User registered successfully.", status_code=201)


@limiter.limit(_settings.login_rate_limit)
@router.post("/auth/register/admin", response_model=AuthResponse, status_code=201)
def register_admin(request: Request, body: AdminRegisterRequest) -> JSONResponse:
    """Create an admin account. Requires ADMIN_SECRET; disabled when it is unset."""
    service: AuthService = request.app.state.auth
    user = service.register_admin(body.email, body.password, body.name, body.admin_secret)
    return _token_response(service, user, service.issue_token(user), "Admin registered successfully.", status_code=201)


@limiter.limit(_settings.login_rate_limit)
@router.post("/auth/setup-owner", response_model=AuthResponse, status_code=201)
def setup_owner(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create the owner account. Refuses with 409 once an owner exists.

    [M1] The owner check and the insert are one statement in the store, so
    two concurrent bootstrap requests cannot both succeed.
    """
    service: AuthService = request.app.state.auth
    user = service.bootstrap_owner(body.email, body.password, body.name)
    return _token_response(service, user, service.issue_token(user), "Owner account created successfully.", status_code=201)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # [H2] brute-force mitigation
@router.post("/auth/login", response_model=AuthResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password, plus a second factor when enrolled.

    401 invalid_credentials     -- unknown email or wrong password (same body)
    403 account_suspended       -- carries the suspension reason/category
    401 second_factor_required  -- carries user_id and requires_2fa=true
    401 invalid_second_factor   -- wrong code (no backup code is consumed)
    """
    service: AuthService = request.app.state.auth
    result = service.login(
        body.email,
        body.password,
        body.two_factor_code,
        body.is_backup_code,
        user_agent=request.headers.get("User-Agent", ""),
        ip=request.client.host if request.client else "",
    )
    return _token_response(service, result.user, result.token, "Login successful.", new_device=result.new_device)


@router.post("/auth/logout", response_model=MessageResponse)
async def logout() -> JSONResponse:
    """Clear the JWT cookie. Bearer tokens simply expire."""
    resp = JSONResponse(content=MessageResponse(message="Logged out successfully.").model_dump())
    resp.delete_cookie("access_token")
    return resp


@router.get("/auth/me", response_model=UserEnvelope)
def me(ctx: AuthContext = Depends(get_auth_context)) -> UserEnvelope:
    """Return the live record of the authenticated user."""
    return UserEnvelope(message="Current user.", user=UserResponse.from_user(ctx.user))
