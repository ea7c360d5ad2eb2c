"""
tests/test_two_factor.py -- Unit tests for auth/two_factor.py.

Covers:
  - code format validators and backup code generation
  - TOTP verification with +/-1 step tolerance
  - enrollment lifecycle: pending -> enabled -> absent
  - backup codes: single use, wrong TOTP never consumes one
  - at-most-once consumption under concurrent presentation
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pyotp
import pytest

from auth.errors import Conflict, ValidationError
from auth.models import User
from auth.store import UserStore
from auth.tokens import hash_password
from auth.two_factor import (
    TwoFactorStore,
    generate_backup_codes,
    generate_secret,
    is_valid_backup_code_format,
    is_valid_totp_format,
    provisioning_uri,
    qr_data_url,
    verify_totp,
)
from conftest import wrong_totp

KEY = "k" * 40


@pytest.fixture
def store(tmp_path):
    s = UserStore(f"sqlite:///{tmp_path / 'tfa.db'}")
    yield s
    s.close()


@pytest.fixture
def tfa(store):
    return TwoFactorStore(store.engine, KEY)


@pytest.fixture
def uid(store) -> int:
    return store.create_user(User(email="wendy@example.com", name="Wendy", hashed_password=hash_password("pw", 4)))


def _enabled(tfa: TwoFactorStore, uid: int) -> tuple[str, list[str]]:
    secret, codes = tfa.begin_setup(uid)
    assert tfa.enable(uid)
    return secret, codes


class TestFormats:
    @pytest.mark.parametrize("code,ok", [("123456", True), ("12345", False), ("1234567", False), ("12345a", False), ("", False)])
    def test_totp_format(self, code: str, ok: bool) -> None:
        assert is_valid_totp_format(code) is ok

    @pytest.mark.parametrize(
        "code,ok", [("deadbeef", True), ("DEADBEEF", False), ("deadbee", False), ("deadbeefa", False), ("deadbeeg", False)]
    )
    def test_backup_code_format(self, code: str, ok: bool) -> None:
        assert is_valid_backup_code_format(code) is ok

    def test_generated_backup_codes_are_well_formed(self) -> None:
        codes = generate_backup_codes(8)
        assert len(codes) == 8
        assert all(is_valid_backup_code_format(c) for c in codes)


class TestTotp:
    def test_current_code_verifies(self) -> None:
        secret = generate_secret()
        assert verify_totp(secret, pyotp.TOTP(secret).now())

    def test_wrong_code_fails(self) -> None:
        secret = generate_secret()
        assert not verify_totp(secret, wrong_totp(secret))

    def test_one_step_of_clock_skew_is_tolerated(self) -> None:
        secret = generate_secret()
        t = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
        code = pyotp.TOTP(secret).at(t)
        assert verify_totp(secret, code, now=t + timedelta(seconds=30))
        assert not verify_totp(secret, code, now=t + timedelta(minutes=5))

    def test_provisioning_uri_and_qr(self) -> None:
        uri = provisioning_uri(generate_secret(), "wendy@example.com", "AccountGate")
        assert uri.startswith("otpauth://totp/")
        assert "issuer=AccountGate" in uri
        assert qr_data_url(uri).startswith("data:image/png;base64,")


class TestEnrollmentLifecycle:
    def test_setup_creates_pending_enrollment(self, tfa, uid) -> None:
        secret, codes = tfa.begin_setup(uid, count=8)
        enrollment = tfa.get(uid)
        assert enrollment.secret == secret
        assert not enrollment.enabled
        assert enrollment.backup_codes_remaining == 8
        assert len(codes) == 8

    def test_enable_is_one_shot(self, tfa, uid) -> None:
        tfa.begin_setup(uid)
        assert tfa.enable(uid)
        assert not tfa.enable(uid)
        enrollment = tfa.get(uid)
        assert enrollment.enabled and enrollment.verified_at is not None

    def test_setup_refused_when_enabled(self, tfa, uid) -> None:
        _enabled(tfa, uid)
        with pytest.raises(Conflict):
            tfa.begin_setup(uid)

    def test_repeated_setup_replaces_pending_codes(self, tfa, uid) -> None:
        _, old_codes = tfa.begin_setup(uid)
        _, new_codes = tfa.begin_setup(uid)
        assert not tfa.consume_backup_code(uid, old_codes[0])
        assert tfa.get(uid).backup_codes_remaining == len(new_codes)

    def test_disable_removes_enrollment_and_codes(self, tfa, uid) -> None:
        _, codes = _enabled(tfa, uid)
        assert tfa.disable(uid)
        assert tfa.get(uid) is None
        assert not tfa.consume_backup_code(uid, codes[0])


class TestSecondFactorVerification:
    def test_totp_path_stamps_last_used(self, tfa, uid) -> None:
        secret, _ = _enabled(tfa, uid)
        assert tfa.verify_second_factor(uid, pyotp.TOTP(secret).now())
        assert tfa.get(uid).last_used is not None

    def test_malformed_code_rejected_before_comparison(self, tfa, uid) -> None:
        _enabled(tfa, uid)
        with pytest.raises(ValidationError):
            tfa.verify_second_factor(uid, "12ab56")
        with pytest.raises(ValidationError):
            tfa.verify_second_factor(uid, "123456", is_backup_code=True)

    def test_pending_enrollment_does_not_count(self, tfa, uid) -> None:
        secret, _ = tfa.begin_setup(uid)
        assert not tfa.verify_second_factor(uid, pyotp.TOTP(secret).now())
        assert tfa.verify_second_factor(uid, pyotp.TOTP(secret).now(), require_enabled=False)

    def test_backup_code_works_once(self, tfa, uid) -> None:
        _, codes = _enabled(tfa, uid)
        assert tfa.verify_second_factor(uid, codes[0], is_backup_code=True)
        assert not tfa.verify_second_factor(uid, codes[0], is_backup_code=True)
        assert tfa.get(uid).backup_codes_remaining == len(codes) - 1

    def test_wrong_totp_consumes_no_backup_code(self, tfa, uid) -> None:
        secret, codes = _enabled(tfa, uid)
        assert not tfa.verify_second_factor(uid, wrong_totp(secret))
        assert tfa.get(uid).backup_codes_remaining == len(codes)

    def test_codes_are_per_user(self, tfa, store, uid) -> None:
        other = store.create_user(User(email="xena@example.com", name="Xena", hashed_password="x"))
        _, codes = _enabled(tfa, uid)
        _enabled(tfa, other)
        assert not tfa.consume_backup_code(other, codes[0])
        assert tfa.consume_backup_code(uid, codes[0])


class TestConcurrentConsumption:
    """Exactly one of N concurrent presentations of the same code succeeds."""

    def test_same_backup_code_in_parallel(self, tfa, uid) -> None:
        _, codes = _enabled(tfa, uid)
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: tfa.consume_backup_code(uid, codes[0]), range(8)))
        assert results.count(True) == 1, f"Expected exactly one success, got {results}"
        assert tfa.get(uid).backup_codes_remaining == len(codes) - 1
