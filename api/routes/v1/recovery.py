"""
api/routes/v1/recovery.py -- Password reset and account recovery endpoints.

Routes:
  POST /api/v1/password/forgot-password  -- send a reset link (public)
  POST /api/v1/password/reset-password   -- redeem a reset token (public)
  POST /api/v1/recovery/setup            -- store security questions (requires auth)
  POST /api/v1/recovery/initiate         -- send a recovery link (public)
  POST /api/v1/recovery/questions        -- question texts for a recovery token (public)
  POST /api/v1/recovery/verify           -- answer the questions; returns a reset token (public)

Security:
  [H2] Every public route here is rate-limited per IP.
  forgot-password and initiate answer identically whether or not the email
  is registered (no account enumeration).
  Tokens are single-use; a second redemption fails with 400 token_used.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.limiter import limiter
from api.models import (
    ForgotPasswordRequest,
    MessageResponse,
    RecoveryInitiateRequest,
    RecoveryQuestionsResponse,
    RecoverySetupRequest,
    RecoveryTokenRequest,
    RecoveryVerifyRequest,
    RecoveryVerifyResponse,
    ResetPasswordRequest,
)
from auth.dependencies import get_auth_context
from auth.models import AuthContext
from auth.service import AuthService
from core.config import get_settings

router = APIRouter()

_settings = get_settings()

FORGOT_PASSWORD_MESSAGE = "If your email is registered, you will receive a password reset link."
RECOVERY_INITIATE_MESSAGE = "If your email is registered, you will receive recovery instructions."


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@limiter.limit(_settings.recovery_rate_limit)
@router.post("/password/forgot-password", response_model=MessageResponse)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    service: AuthService = request.app.state.auth
    service.forgot_password(body.email)
    return MessageResponse(message=FORGOT_PASSWORD_MESSAGE)


@limiter.limit(_settings.recovery_rate_limit)
@router.post("/password/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    service: AuthService = request.app.state.auth
    service.reset_password(body.token, body.new_password)
    return MessageResponse(message="Password has been reset successfully.")


# ---------------------------------------------------------------------------
# Account recovery
# ---------------------------------------------------------------------------


@router.post("/recovery/setup", response_model=MessageResponse)
def setup_recovery(
    request: Request,
    body: RecoverySetupRequest,
    ctx: AuthContext = Depends(get_auth_context),
) -> MessageResponse:
    """Store (or replace) the caller's security questions."""
    service: AuthService = request.app.state.auth
    service.setup_recovery(ctx.user, [(q.question, q.answer) for q in body.questions], body.recovery_email)
    return MessageResponse(message="Account recovery options configured successfully.")


@limiter.limit(_settings.recovery_rate_limit)
@router.post("/recovery/initiate", response_model=MessageResponse)
def initiate_recovery(request: Request, body: RecoveryInitiateRequest) -> MessageResponse:
    service: AuthService = request.app.state.auth
    service.initiate_recovery(body.email)
    return MessageResponse(message=RECOVERY_INITIATE_MESSAGE)


@limiter.limit(_settings.recovery_rate_limit)
@router.post("/recovery/questions", response_model=RecoveryQuestionsResponse)
def recovery_questions(request: Request, body: RecoveryTokenRequest) -> RecoveryQuestionsResponse:
    service: AuthService = request.app.state.auth
    questions = service.recovery_questions(body.token)
    return RecoveryQuestionsResponse(message="Answer the security questions.", questions=questions)


@limiter.limit(_settings.recovery_rate_limit)
@router.post("/recovery/verify", response_model=RecoveryVerifyResponse)
def verify_recovery(request: Request, body: RecoveryVerifyRequest) -> RecoveryVerifyResponse:
    """All answers must match; any mismatch fails the whole attempt."""
    service: AuthService = request.app.state.auth
    reset_token = service.verify_recovery(body.token, body.answers)
    return RecoveryVerifyResponse(message="Security questions verified.", reset_token=reset_token)
