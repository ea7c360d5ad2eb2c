"""
API request and response models for AccountGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Every success body carries a top-level "message"; every error body is an
ErrorResponse. Credential hashes, TOTP secrets (outside setup) and one-time
code hashes never appear in a response model.
"""

from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

from auth.models import LoginDevice, User
from auth.policy import suspension_details

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"

# bcrypt reads 72 bytes; the cap only bounds request size.
_PASSWORD_MAX = 255

# Secrets are compared byte for byte, so the model-level whitespace stripping
# must not touch them.
RawSecret = Annotated[str, StringConstraints(strip_whitespace=False, min_length=1, max_length=_PASSWORD_MAX)]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class AssignableRoleEnum(str, Enum):
    admin = "admin"
    user = "user"


class SuspensionCategoryEnum(str, Enum):
    violation = "violation"
    spam = "spam"
    abuse = "abuse"
    security = "security"
    other = "other"


# ---------------------------------------------------------------------------
# Request models -- authentication
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /auth/register, /auth/setup-owner and /admin/create-admin."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: RawSecret
    name: str = Field(min_length=1, max_length=255)


class AdminRegisterRequest(RegisterRequest):
    """Request body for POST /auth/register/admin."""

    admin_secret: RawSecret


class LoginRequest(BaseModel):
    """Request body for POST /auth/login.

    two_factor_code is optional: omitted for accounts without 2FA, and on the
    first attempt of a 2FA account (the response then asks for it).
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=255)
    password: RawSecret
    two_factor_code: Optional[str] = Field(default=None, max_length=16)
    is_backup_code: bool = False


# ---------------------------------------------------------------------------
# Request models -- second factor
# ---------------------------------------------------------------------------


class TwoFactorCodeRequest(BaseModel):
    """Request body for POST /2fa/verify and /2fa/disable."""

    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(min_length=1, max_length=16)


class TwoFactorValidateRequest(BaseModel):
    """Request body for POST /2fa/validate (mid-login, unauthenticated)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    user_id: int = Field(ge=1)
    code: str = Field(min_length=1, max_length=16)
    is_backup_code: bool = False


# ---------------------------------------------------------------------------
# Request models -- recovery
# ---------------------------------------------------------------------------


class ForgotPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=255)


class ResetPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    token: str = Field(min_length=1, max_length=128)
    new_password: RawSecret


class SecurityQuestionIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    question: str = Field(min_length=1, max_length=500)
    answer: str = Field(min_length=1, max_length=255)


class RecoverySetupRequest(BaseModel):
    """Request body for POST /recovery/setup. At least two questions."""

    model_config = ConfigDict(str_strip_whitespace=True)

    questions: list[SecurityQuestionIn] = Field(min_length=2, max_length=10)
    recovery_email: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN, max_length=255)


class RecoveryInitiateRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=255)


class RecoveryTokenRequest(BaseModel):
    """Request body for POST /recovery/questions."""

    model_config = ConfigDict(str_strip_whitespace=True)

    token: str = Field(min_length=1, max_length=128)


class RecoveryVerifyRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    token: str = Field(min_length=1, max_length=128)
    answers: list[str] = Field(min_length=1, max_length=10)


# ---------------------------------------------------------------------------
# Request models -- administration and profile
# ---------------------------------------------------------------------------


class RoleChangeRequest(BaseModel):
    role: AssignableRoleEnum


class SuspendRequest(BaseModel):
    """Request body for POST /admin/users/{id}/suspend.

    duration_days omitted = indefinite suspension.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    reason: str = Field(min_length=1, max_length=1000)
    category: SuspensionCategoryEnum = SuspensionCategoryEnum.other
    duration_days: Optional[int] = Field(default=None, ge=1, le=3650)


class AdminPasswordResetRequest(BaseModel):
    """Request body for POST /admin/users/{id}/reset-password. Empty = generate one."""

    new_password: Optional[RawSecret] = None


class ProfileUpdateRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    phone_number: Optional[str] = Field(default=None, max_length=50)
    address: Optional[str] = Field(default=None, max_length=500)
    bio: Optional[str] = Field(default=None, max_length=2000)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Redacted user projection. Never includes the credential hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: str
    role: str
    is_active: bool
    suspension: Optional[dict[str, Any]] = None
    phone_number: Optional[str] = None
    address: Optional[str] = None
    bio: Optional[str] = None
    created_at: Optional[str] = None
    last_login: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        """Factory Method: the domain-to-transport mapping lives beside the model."""
        suspension = suspension_details(user) if not user.is_active else None
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            is_active=user.is_active,
            suspension=suspension,
            phone_number=user.phone_number,
            address=user.address,
            bio=user.bio,
            created_at=user.created_at,
            last_login=user.last_login,
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class AuthResponse(BaseModel):
    """Response for login, register and owner bootstrap."""

    model_config = ConfigDict(frozen=True)

    message: str
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse
    new_device: bool = False


class UserEnvelope(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    user: UserResponse


class UserListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    users: list[UserResponse]
    count: int


class TwoFactorSetupResponse(BaseModel):
    """Response for POST /2fa/setup. Backup codes are shown exactly once."""

    model_config = ConfigDict(frozen=True)

    message: str
    secret: str
    otpauth_url: str
    qr_code: str
    backup_codes: list[str]


class RecoveryQuestionsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    questions: list[str]


class RecoveryVerifyResponse(BaseModel):
    """reset_token is a password-reset token for POST /password/reset-password."""

    model_config = ConfigDict(frozen=True)

    message: str
    reset_token: str


class AdminPasswordResetResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    temporary_password: str


class DeviceResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_id: str
    user_agent: str
    ip: str
    is_verified: bool
    last_used: Optional[str]
    created_at: Optional[str]

    @classmethod
    def from_device(cls, device: LoginDevice) -> "DeviceResponse":
        return cls(
            device_id=device.device_id,
            user_agent=device.user_agent,
            ip=device.ip,
            is_verified=device.is_verified,
            last_used=device.last_used.isoformat() if device.last_used else None,
            created_at=device.created_at.isoformat() if device.created_at else None,
        )


class DeviceListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    devices: list[DeviceResponse]


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    detail: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    message: str
    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
