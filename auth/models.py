"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores own persistence,
auth/policy.py owns the rules, auth/service.py composes them.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

ROLES = ("owner", "admin", "user")
SUSPENSION_CATEGORIES = ("violation", "spam", "abuse", "security", "other")


@dataclass
class User:
    """An account holder.

    email is stored lower-cased; the store normalizes on every read and write
    so lookups are case-insensitive.

    Suspension fields travel together. is_active=False implies a reason and an
    actor (suspended_by); is_active=True implies all of them are None. The
    store validates this on save (see auth/policy.validate_suspension_fields).
    """

    email: str
    name: str
    role: str = "user"  # "owner", "admin", "user"
    id: int | None = None
    hashed_password: str | None = None
    is_active: bool = True
    suspended_at: datetime | None = None
    suspended_by: int | None = None
    suspension_reason: str | None = None
    suspension_category: str | None = None
    suspension_end: datetime | None = None  # None = indefinite
    phone_number: str | None = None
    address: str | None = None
    bio: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    last_login: str | None = None


@dataclass
class TwoFactorEnrollment:
    """TOTP enrollment for one user.

    Created pending (enabled=False) by setup, flipped to enabled by the first
    successful verification, deleted on disable. Backup code hashes are kept
    in their own table and counted here for display only.
    """

    user_id: int
    secret: str
    enabled: bool = False
    backup_codes_remaining: int = 0
    last_used: datetime | None = None
    verified_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class SecurityQuestion:
    question: str
    answer_hash: str


@dataclass
class PasswordReset:
    """Single-use password reset record. Only the HMAC of the token is kept."""

    user_id: int
    token_hash: str
    expires_at: datetime
    used: bool = False
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class AccountRecovery:
    """Security-question recovery record, one per user."""

    user_id: int
    token_hash: str
    expires_at: datetime
    questions: list[SecurityQuestion] = field(default_factory=list)
    recovery_email: str | None = None
    used: bool = False
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class LoginDevice:
    """A device a user has logged in from. Trust signal only, never a gate."""

    user_id: int
    device_id: str  # SHA-256 fingerprint
    user_agent: str = ""
    ip: str = ""
    is_verified: bool = False
    last_used: datetime | None = None
    created_at: datetime | None = None
    id: int | None = None


@dataclass(frozen=True)
class TokenClaims:
    """Verified bearer token claims. Trusted for identity only."""

    user_id: int
    email: str
    role: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class AuthContext:
    """Produced once per request by the authorization gate.

    user is the live record re-read from the store (after suspension
    reconciliation), not the role/state claimed by the token.
    """

    user: User
    claims: TokenClaims
