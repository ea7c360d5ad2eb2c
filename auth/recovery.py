"""
auth/recovery.py -- Password reset and security-question account recovery.

Both flows hand out a random token (32 bytes, hex) and keep only its
HMAC-SHA256. Issuing a new token replaces the user's previous record.

Redemption is at-most-once: the "mark used" step is a single conditional
UPDATE ... WHERE used=0 AND expires_at > now, and the follow-up write (new
password, or the password-reset handoff) happens in the same transaction.
A crash cannot leave a consumed token next to an unchanged password, or the
reverse.

Expiry: every lookup filters on expires_at, so an expired record is dead the
moment it expires. purge_expired() only reclaims space.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.engine import Connection, Engine

from auth.errors import AlreadyUsed, Expired, NotFound, ValidationError
from auth.models import AccountRecovery, SecurityQuestion
from auth.store import (
    account_recoveries,
    from_iso,
    open_connection,
    password_resets,
    to_iso,
    users,
    utcnow,
)
from auth.tokens import generate_token, hash_password, hash_secret, verify_password

logger = logging.getLogger("accountgate.recovery")

MIN_SECURITY_QUESTIONS = 2


def normalize_answer(answer: str) -> str:
    return answer.strip().lower()


class RecoveryLedger:
    """Issues and redeems password-reset and account-recovery tokens."""

    def __init__(
        self,
        engine: Engine,
        secret_key: str,
        reset_ttl_seconds: int = 3600,
        recovery_ttl_seconds: int = 86400,
        bcrypt_rounds: int = 12,
    ) -> None:
        self.engine = engine
        self._key = secret_key
        self.reset_ttl = timedelta(seconds=reset_ttl_seconds)
        self.recovery_ttl = timedelta(seconds=recovery_ttl_seconds)
        self.bcrypt_rounds = bcrypt_rounds

    def _connect(self, transactional: bool = False):
        return open_connection(self.engine, transactional=transactional)

    def _hash(self, token: str) -> str:
        return hash_secret(self._key, token)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def _write_password_reset(self, conn: Connection, user_id: int, now: datetime) -> str:
        token = generate_token()
        conn.execute(password_resets.delete().where(password_resets.c.user_id == user_id))
        conn.execute(
            password_resets.insert().values(
                user_id=user_id,
                token_hash=self._hash(token),
                expires_at=to_iso(now + self.reset_ttl),
                used=0,
                created_at=to_iso(now),
            )
        )
        return token

    def issue_password_reset(self, user_id: int, now: datetime | None = None) -> str:
        """Create a reset token for the user, replacing any earlier one."""
        now = now or utcnow()
        with self._connect(transactional=True) as conn:
            token = self._write_password_reset(conn, user_id, now)
        logger.info("Password reset issued for user %s", user_id)
        return token

    def redeem_password_reset(self, token: str, new_hashed_password: str, now: datetime | None = None) -> int:
        """Consume the token and set the new password hash. Returns the user ID.

        Raises NotFound (unknown token), AlreadyUsed or Expired.
        """
        now = now or utcnow()
        token_hash = self._hash(token)
        with self._connect(transactional=True) as conn:
            result = conn.execute(
                password_resets.update()
                .where(
                    (password_resets.c.token_hash == token_hash)
                    & (password_resets.c.used == 0)
                    & (password_resets.c.expires_at > to_iso(now))
                )
                .values(used=1)
            )
            if result.rowcount == 1:
                user_id = conn.execute(
                    select(password_resets.c.user_id).where(password_resets.c.token_hash == token_hash)
                ).scalar_one()
                updated = conn.execute(
                    users.update()
                    .where(users.c.id == user_id)
                    .values(hashed_password=new_hashed_password, updated_at=to_iso(now))
                )
                if updated.rowcount != 1:
                    # Raising rolls back the mark-used above.
                    raise NotFound("Invalid or expired token.", detail=f"reset token for missing user {user_id}")
                logger.info("Password reset redeemed for user %s", user_id)
                return user_id
        _classify_failure(self.engine, password_resets, token_hash, now, "password reset")

    # ------------------------------------------------------------------
    # Account recovery
    # ------------------------------------------------------------------

    def issue_account_recovery(
        self,
        user_id: int,
        questions: list[tuple[str, str]],
        recovery_email: str | None = None,
        now: datetime | None = None,
    ) -> str:
        """Store (question, answer) pairs for the user and return a recovery token.

        Answers are trimmed, lower-cased and bcrypt-hashed. Replaces any
        earlier setup.
        """
        if len(questions) < MIN_SECURITY_QUESTIONS:
            raise ValidationError(f"At least {MIN_SECURITY_QUESTIONS} security questions are required.")
        cleaned = []
        for question, answer in questions:
            if not question.strip() or not normalize_answer(answer):
                raise ValidationError("Security questions and answers cannot be empty.")
            cleaned.append(
                {
                    "question": question.strip(),
                    "answer_hash": hash_password(normalize_answer(answer), self.bcrypt_rounds),
                }
            )
        now = now or utcnow()
        token = generate_token()
        with self._connect(transactional=True) as conn:
            conn.execute(account_recoveries.delete().where(account_recoveries.c.user_id == user_id))
            conn.execute(
                account_recoveries.insert().values(
                    user_id=user_id,
                    token_hash=self._hash(token),
                    questions=json.dumps(cleaned),
                    recovery_email=recovery_email,
                    expires_at=to_iso(now + self.recovery_ttl),
                    used=0,
                    created_at=to_iso(now),
                )
            )
        logger.info("Account recovery configured for user %s", user_id)
        return token

    def rotate_account_recovery(self, user_id: int, now: datetime | None = None) -> str | None:
        """Issue a fresh token for an existing setup. None if the user has none."""
        now = now or utcnow()
        token = generate_token()
        with self._connect() as conn:
            result = conn.execute(
                account_recoveries.update()
                .where(account_recoveries.c.user_id == user_id)
                .values(
                    token_hash=self._hash(token),
                    used=0,
                    expires_at=to_iso(now + self.recovery_ttl),
                    created_at=to_iso(now),
                )
            )
            conn.commit()
        return token if result.rowcount == 1 else None

    def get_account_recovery(self, user_id: int) -> AccountRecovery | None:
        with self._connect() as conn:
            row = conn.execute(
                account_recoveries.select().where(account_recoveries.c.user_id == user_id)
            ).fetchone()
        return _row_to_recovery(row) if row is not None else None

    def _live_recovery(self, conn: Connection, token_hash: str, now: datetime):
        return conn.execute(
            account_recoveries.select().where(
                (account_recoveries.c.token_hash == token_hash)
                & (account_recoveries.c.used == 0)
                & (account_recoveries.c.expires_at > to_iso(now))
            )
        ).fetchone()

    def recovery_questions(self, token: str, now: datetime | None = None) -> list[str]:
        """Question texts for a live recovery token, in stored order."""
        now = now or utcnow()
        token_hash = self._hash(token)
        with self._connect() as conn:
            row = self._live_recovery(conn, token_hash, now)
        if row is None:
            _classify_failure(self.engine, account_recoveries, token_hash, now, "account recovery")
        return [q.question for q in _row_to_recovery(row).questions]

    def redeem_account_recovery(self, token: str, answers: list[str], now: datetime | None = None) -> str:
        """Check every answer and, on success, return a password-reset handoff token.

        All answers must match positionally and the count must equal the
        number of stored questions. Any mismatch fails the whole attempt and
        leaves the recovery record unused.
        """
        now = now or utcnow()
        token_hash = self._hash(token)
        with self._connect() as conn:
            row = self._live_recovery(conn, token_hash, now)
        if row is None:
            _classify_failure(self.engine, account_recoveries, token_hash, now, "account recovery")
        record = _row_to_recovery(row)

        # bcrypt runs for every answer so timing does not reveal which one failed.
        matches = [
            verify_password(normalize_answer(answer or ""), q.answer_hash)
            for q, answer in zip(record.questions, answers)
        ]
        if len(answers) != len(record.questions) or not all(matches):
            logger.info("Account recovery answers rejected for user %s", record.user_id)
            raise ValidationError("Incorrect answers to security questions.", code="incorrect_answers")

        with self._connect(transactional=True) as conn:
            result = conn.execute(
                account_recoveries.update()
                .where(
                    (account_recoveries.c.token_hash == token_hash)
                    & (account_recoveries.c.used == 0)
                    & (account_recoveries.c.expires_at > to_iso(now))
                )
                .values(used=1)
            )
            if result.rowcount != 1:
                raise AlreadyUsed(detail=f"account recovery for user {record.user_id} consumed concurrently")
            handoff = self._write_password_reset(conn, record.user_id, now)
        logger.info("Account recovery verified for user %s", record.user_id)
        return handoff

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def purge_expired(self, now: datetime | None = None) -> int:
        """Delete expired reset and recovery records. Returns rows removed."""
        cutoff = to_iso(now or utcnow())
        removed = 0
        with self._connect(transactional=True) as conn:
            for table in (password_resets, account_recoveries):
                removed += conn.execute(table.delete().where(table.c.expires_at <= cutoff)).rowcount
        if removed:
            logger.info("Purged %d expired recovery record(s)", removed)
        return removed


def _classify_failure(engine: Engine, table, token_hash: str, now: datetime, kind: str):
    """Raise the precise error for a token that failed the live-record filter."""
    with open_connection(engine) as conn:
        row = conn.execute(select(table.c.used, table.c.expires_at).where(table.c.token_hash == token_hash)).fetchone()
    if row is None:
        raise NotFound("Invalid or expired token.", detail=f"unknown {kind} token")
    if row.used:
        raise AlreadyUsed(detail=f"{kind} token already used")
    raise Expired(detail=f"{kind} token expired at {row.expires_at} (now {to_iso(now)})")


def _row_to_recovery(row) -> AccountRecovery:
    return AccountRecovery(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        questions=[SecurityQuestion(**q) for q in json.loads(row.questions)],
        recovery_email=row.recovery_email,
        expires_at=from_iso(row.expires_at),
        used=bool(row.used),
        created_at=from_iso(row.created_at),
    )
