"""
auth/two_factor.py -- TOTP enrollment and single-use backup codes.

Enrollment lifecycle:
  absent (disabled) -> pending (begin_setup) -> enabled (enable) -> absent (disable)

Security design decisions:
  TOTP: pyotp, 30 s step, +/-1 step clock-skew tolerance. The consumed time
        window is not persisted, so a code can be replayed inside its
        tolerance window. Accepted risk.

  Backup codes: 8 lowercase hex chars from secrets.token_hex(4). Only the
        HMAC-SHA256 of each code is stored, one row per code. Consumption is a
        single DELETE ... WHERE user_id=? AND code_hash=?; rowcount == 1 is the
        success signal, so exactly one of N concurrent presentations of the
        same code can win.

  Formats are checked before any hashing or comparison.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import base64
import io
import logging
import re
import secrets
from datetime import datetime

import pyotp
import qrcode
from sqlalchemy import func, select
from sqlalchemy.engine import Engine

from auth.errors import Conflict, ValidationError
from auth.models import TwoFactorEnrollment
from auth.store import backup_codes, from_iso, open_connection, to_iso, two_factor, utcnow
from auth.tokens import hash_secret

logger = logging.getLogger("accountgate.two_factor")

_TOTP_RE = re.compile(r"^\d{6}$")
_BACKUP_CODE_RE = re.compile(r"^[0-9a-f]{8}$")

# pyotp counts tolerance in whole time steps on each side of "now".
_VALID_WINDOW = 1

# ---------------------------------------------------------------------------
# Code helpers
# ---------------------------------------------------------------------------


def generate_secret() -> str:
    return pyotp.random_base32()


def provisioning_uri(secret: str, account_name: str, issuer: str) -> str:
    """otpauth:// URI understood by authenticator apps."""
    return pyotp.TOTP(secret).provisioning_uri(name=account_name, issuer_name=issuer)


def qr_data_url(uri: str) -> str:
    """Render the provisioning URI as a PNG and return it as a data URL."""
    img = qrcode.make(uri)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


def generate_backup_codes(count: int = 8) -> list[str]:
    return [secrets.token_hex(4) for _ in range(count)]


def is_valid_totp_format(code: str) -> bool:
    return bool(_TOTP_RE.match(code or ""))


def is_valid_backup_code_format(code: str) -> bool:
    return bool(_BACKUP_CODE_RE.match(code or ""))


def verify_totp(secret: str, code: str, now: datetime | None = None) -> bool:
    """Check a 6-digit code against the secret with +/-1 step tolerance."""
    if not is_valid_totp_format(code):
        return False
    return pyotp.TOTP(secret).verify(code, for_time=now, valid_window=_VALID_WINDOW)


def check_code_format(code: str, is_backup_code: bool) -> None:
    """Reject malformed codes before any comparison work."""
    if is_backup_code:
        if not is_valid_backup_code_format(code):
            raise ValidationError("Backup codes are 8 lowercase hexadecimal characters.", code="invalid_code_format")
    elif not is_valid_totp_format(code):
        raise ValidationError("Verification codes are 6 digits.", code="invalid_code_format")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class TwoFactorStore:
    """Persistence for TOTP enrollments and backup-code hashes.

    Shares the engine (and schema) of UserStore:
        tfa = TwoFactorStore(user_store.engine, settings.secret_key)
    """

    def __init__(self, engine: Engine, secret_key: str) -> None:
        self.engine = engine
        self._key = secret_key

    def _connect(self, transactional: bool = False):
        return open_connection(self.engine, transactional=transactional)

    def _hash(self, code: str) -> str:
        return hash_secret(self._key, code)

    def get(self, user_id: int) -> TwoFactorEnrollment | None:
        """Return the enrollment (pending or enabled), or None if absent."""
        with self._connect() as conn:
            row = conn.execute(two_factor.select().where(two_factor.c.user_id == user_id)).fetchone()
            if row is None:
                return None
            remaining = conn.execute(
                select(func.count()).select_from(backup_codes).where(backup_codes.c.user_id == user_id)
            ).scalar()
        return _row_to_enrollment(row, remaining or 0)

    def is_enabled(self, user_id: int) -> bool:
        enrollment = self.get(user_id)
        return enrollment is not None and enrollment.enabled

    def begin_setup(self, user_id: int, count: int = 8) -> tuple[str, list[str]]:
        """Create or replace a pending enrollment and its backup codes.

        Returns (secret, plaintext codes). The plaintext codes are returned
        exactly once and never stored. Refuses with Conflict if 2FA is already
        enabled for the user.
        """
        secret = generate_secret()
        codes = generate_backup_codes(count)
        now = to_iso(utcnow())
        with self._connect(transactional=True) as conn:
            existing = conn.execute(
                select(two_factor.c.enabled).where(two_factor.c.user_id == user_id)
            ).fetchone()
            if existing is not None and existing.enabled:
                raise Conflict("Two-factor authentication is already enabled.")
            if existing is None:
                conn.execute(two_factor.insert().values(user_id=user_id, secret=secret, enabled=0, created_at=now))
            else:
                # Pending row: only an un-enabled enrollment may be overwritten.
                result = conn.execute(
                    two_factor.update()
                    .where((two_factor.c.user_id == user_id) & (two_factor.c.enabled == 0))
                    .values(secret=secret, created_at=now, verified_at=None, last_used=None)
                )
                if result.rowcount != 1:
                    raise Conflict("Two-factor authentication is already enabled.")
            conn.execute(backup_codes.delete().where(backup_codes.c.user_id == user_id))
            conn.execute(
                backup_codes.insert(),
                [{"user_id": user_id, "code_hash": self._hash(c)} for c in codes],
            )
        logger.info("2FA setup started for user %s", user_id)
        return secret, codes

    def enable(self, user_id: int) -> bool:
        """Flip pending -> enabled. Returns False if there was no pending row."""
        with self._connect() as conn:
            result = conn.execute(
                two_factor.update()
                .where((two_factor.c.user_id == user_id) & (two_factor.c.enabled == 0))
                .values(enabled=1, verified_at=to_iso(utcnow()))
            )
            conn.commit()
        return result.rowcount == 1

    def disable(self, user_id: int) -> bool:
        """Remove the enrollment and every remaining backup code."""
        with self._connect(transactional=True) as conn:
            result = conn.execute(two_factor.delete().where(two_factor.c.user_id == user_id))
            conn.execute(backup_codes.delete().where(backup_codes.c.user_id == user_id))
        return result.rowcount > 0

    def touch_last_used(self, user_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                two_factor.update().where(two_factor.c.user_id == user_id).values(last_used=to_iso(utcnow()))
            )
            conn.commit()

    def consume_backup_code(self, user_id: int, code: str) -> bool:
        """Atomically remove a backup code. True only for the one caller that removed it."""
        if not is_valid_backup_code_format(code):
            return False
        with self._connect(transactional=True) as conn:
            result = conn.execute(
                backup_codes.delete().where(
                    (backup_codes.c.user_id == user_id) & (backup_codes.c.code_hash == self._hash(code))
                )
            )
            if result.rowcount != 1:
                return False
            conn.execute(
                two_factor.update().where(two_factor.c.user_id == user_id).values(last_used=to_iso(utcnow()))
            )
        logger.info("Backup code consumed for user %s", user_id)
        return True

    def verify_second_factor(
        self,
        user_id: int,
        code: str,
        is_backup_code: bool = False,
        *,
        require_enabled: bool = True,
    ) -> bool:
        """Check a TOTP or backup code for the user.

        Raises ValidationError for malformed codes. Returns False for a
        well-formed code that does not match, or when no usable enrollment
        exists. A wrong TOTP never touches the backup-code table.
        """
        check_code_format(code, is_backup_code)
        enrollment = self.get(user_id)
        if enrollment is None or (require_enabled and not enrollment.enabled):
            return False
        if is_backup_code:
            return self.consume_backup_code(user_id, code)
        if not verify_totp(enrollment.secret, code):
            return False
        self.touch_last_used(user_id)
        return True


def _row_to_enrollment(row, remaining: int) -> TwoFactorEnrollment:
    return TwoFactorEnrollment(
        user_id=row.user_id,
        secret=row.secret,
        enabled=bool(row.enabled),
        backup_codes_remaining=remaining,
        last_used=from_iso(row.last_used),
        verified_at=from_iso(row.verified_at),
        created_at=from_iso(row.created_at),
    )
