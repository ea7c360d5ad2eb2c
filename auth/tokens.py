"""
auth/tokens.py -- JWT issuance, password hashing, and one-time secret hashing.

Security design decisions:
  JWT: python-jose with HS256. TokenIssuer is a frozen dataclass built once at
       startup from Settings; the signing key is never mutated at runtime.
       Tokens carry sub (user id), email, role, iat and exp. verify() returns
       None on any failure -- the authorization gate turns that into a 401.

  Passwords: bcrypt directly (no passlib wrapper). The dummy hash enables
       timing equalization in authenticate_user() so response time does not
       reveal whether an email is registered [C1].

  One-time secrets (backup codes, recovery tokens): HMAC-SHA256 keyed with the
       signing key. The hash is deterministic, so the store can find and
       consume a code in one conditional statement instead of scanning rows.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.models import TokenClaims
from core.config import MAX_TOKEN_LIFETIME_SECONDS

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("accountgate.auth")

_ALGORITHM = "HS256"

# bcrypt only looks at the first 72 bytes; bcrypt>=5 rejects longer input.
_BCRYPT_MAX_BYTES = 72

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def _encode(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash (random per-record salt) of the given plaintext."""
    return bcrypt.hashpw(_encode(plain), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(_encode(plain), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


@lru_cache(maxsize=None)
def _dummy_hash(rounds: int) -> str:
    """Timing equalization hash [C1], one per cost factor in use."""
    return hash_password("accountgate_timing_dummy", rounds)


def authenticate_user(store: UserStore, email: str, password: str, rounds: int = 12) -> User | None:
    """Check an email/password pair with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown email: bcrypt runs against the dummy hash (same cost)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Suspension is NOT checked here; the login state machine does that after
    the credential check so it can report the suspension details.
    """
    user = store.find_by_email(email)
    if user is None or not user.hashed_password:
        verify_password(password, _dummy_hash(rounds))
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user


# ---------------------------------------------------------------------------
# One-time secrets
# ---------------------------------------------------------------------------


def generate_token() -> str:
    """32 random bytes as 64 hex chars. Used for recovery tokens."""
    return secrets.token_hex(32)


def hash_secret(key: str, raw: str) -> str:
    """Return HMAC-SHA256(key, raw) as a hex string.

    Keying with the signing secret means a stolen DB alone does not let an
    attacker test guesses offline.
    """
    return hmac.new(key.encode(), raw.encode(), hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# Bearer tokens
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenIssuer:
    """Creates and verifies signed bearer tokens.

    Holds no mutable state: verify() is a pure function of the token, the
    clock and the signing key. Revocation is not a token concern -- the
    authorization gate re-reads the live account on every request.
    """

    secret_key: str
    lifetime_seconds: int = MAX_TOKEN_LIFETIME_SECONDS
    algorithm: str = _ALGORITHM

    def __post_init__(self) -> None:
        if not 0 < self.lifetime_seconds <= MAX_TOKEN_LIFETIME_SECONDS:
            raise ValueError(f"Token lifetime must be between 1 and {MAX_TOKEN_LIFETIME_SECONDS} seconds.")

    def issue(self, user: User, now: datetime | None = None) -> str:
        """Encode a signed JWT for the user. Claims are built deterministically."""
        issued = now or datetime.now(timezone.utc)
        payload = {
            "sub": str(user.id),
            "email": user.email,
            "role": user.role,
            "iat": int(issued.timestamp()),
            "exp": int((issued + timedelta(seconds=self.lifetime_seconds)).timestamp()),
        }
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def verify(self, token: str) -> TokenClaims | None:
        """Decode and verify a JWT. Returns None on any failure.

        Covers bad signatures, malformed tokens, expired tokens and tokens
        missing any of the identity claims.
        """
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError:
            return None
        try:
            return TokenClaims(
                user_id=int(payload["sub"]),
                email=str(payload["email"]),
                role=str(payload["role"]),
                issued_at=datetime.fromtimestamp(payload["iat"], timezone.utc),
                expires_at=datetime.fromtimestamp(payload["exp"], timezone.utc),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("Rejected signed token with malformed claims")
            return None


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, max_age: int, secure: bool = False) -> None:
    """Write the JWT as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST (CSRF mitigation).
    max_age matches the JWT expiry so both expire together.
    """
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=max_age,
    )
