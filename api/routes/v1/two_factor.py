"""
api/routes/v1/two_factor.py -- TOTP enrollment endpoints.

Routes:
  POST /api/v1/2fa/setup     -- start enrollment: secret, QR code, backup codes (requires auth)
  POST /api/v1/2fa/verify    -- confirm enrollment with a TOTP code (requires auth)
  POST /api/v1/2fa/disable   -- turn 2FA off, TOTP code required (requires auth)
  POST /api/v1/2fa/validate  -- stand-alone code check during login (public)

Security:
  [H2] verify, disable and validate are rate-limited per IP (code guessing).
  Backup codes are returned once by /setup and only their HMACs are stored.
  Malformed codes are rejected with 400 before any comparison.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import MessageResponse, TwoFactorCodeRequest, TwoFactorSetupResponse, TwoFactorValidateRequest
from auth.dependencies import get_auth_context
from auth.models import AuthContext
from auth.service import AuthService
from core.config import get_settings

router = APIRouter()

_settings = get_settings()


@router.post("/2fa/setup", response_model=TwoFactorSetupResponse)
def setup(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> JSONResponse:
    """Create a pending enrollment. 409 if 2FA is already enabled."""
    service: AuthService = request.app.state.auth
    result = service.setup_two_factor(ctx.user)
    resp = JSONResponse(
        content=TwoFactorSetupResponse(
            message="Scan the QR code and confirm with a code to enable two-factor authentication.",
            secret=result.secret,
            otpauth_url=result.otpauth_url,
            qr_code=result.qr_code,
            backup_codes=result.backup_codes,
        ).model_dump()
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@limiter.limit(_settings.two_factor_rate_limit)
@router.post("/2fa/verify", response_model=MessageResponse)
def verify(request: Request, body: TwoFactorCodeRequest, ctx: AuthContext = Depends(get_auth_context)) -> MessageResponse:
    service: AuthService = request.app.state.auth
    service.verify_two_factor(ctx.user, body.code)
    return MessageResponse(message="Two-factor authentication enabled.")


@limiter.limit(_settings.two_factor_rate_limit)
@router.post("/2fa/disable", response_model=MessageResponse)
def disable(request: Request, body: TwoFactorCodeRequest, ctx: AuthContext = Depends(get_auth_context)) -> MessageResponse:
    service: AuthService = request.app.state.auth
    service.disable_two_factor(ctx.user, body.code)
    return MessageResponse(message="Two-factor authentication disabled.")


@limiter.limit(_settings.two_factor_rate_limit)
@router.post("/2fa/validate", response_model=MessageResponse)
def validate(request: Request, body: TwoFactorValidateRequest) -> MessageResponse:
    """Check a TOTP or backup code for a user mid-login. A backup code is consumed on success."""
    service: AuthService = request.app.state.auth
    service.validate_two_factor(body.user_id, body.code, body.is_backup_code)
    return MessageResponse(message="Code verified.")
