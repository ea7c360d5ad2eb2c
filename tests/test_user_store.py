"""
tests/test_user_store.py -- Unit tests for auth/store.py (UserStore).

Covers:
  - create/find with email normalization and duplicate rejection
  - atomic owner bootstrap
  - save(): suspension reconciliation and field validation
  - conditional suspend / expire_suspension / set_role (owner rows never match)
  - delete_user() cascade across 2FA, recovery and device tables
  - login device familiarity window
  - infrastructure failures surface as StoreUnavailable
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.exc import IntegrityError

from auth.errors import NotFound, StoreUnavailable, ValidationError
from auth.models import User
from auth.recovery import RecoveryLedger
from auth.store import UserStore, open_connection, utcnow
from auth.tokens import hash_password
from auth.two_factor import TwoFactorStore

KEY = "k" * 40


@pytest.fixture
def store(tmp_path):
    s = UserStore(f"sqlite:///{tmp_path / 'store.db'}")
    yield s
    s.close()


def _new(store: UserStore, email: str, role: str = "user") -> int:
    return store.create_user(User(email=email, name=email.split("@")[0], role=role, hashed_password=hash_password("pw", 4)))


class TestCreateAndFind:
    def test_email_is_normalized(self, store) -> None:
        uid = _new(store, "  Grace@Example.COM ")
        user = store.find_by_email("grace@example.com")
        assert user is not None and user.id == uid
        assert user.email == "grace@example.com"

    def test_duplicate_email_rejected(self, store) -> None:
        _new(store, "heidi@example.com")
        with pytest.raises(IntegrityError):
            _new(store, "HEIDI@example.com")

    def test_missing_user_returns_none(self, store) -> None:
        assert store.find_by_id(999) is None
        assert store.find_by_email("nobody@example.com") is None

    def test_create_requires_hash(self, store) -> None:
        with pytest.raises(ValidationError):
            store.create_user(User(email="x@example.com", name="X"))

    def test_owner_cannot_be_created_directly(self, store) -> None:
        with pytest.raises(ValidationError):
            store.create_user(User(email="o@example.com", name="O", role="owner", hashed_password="x"))

    def test_created_at_is_stamped(self, store) -> None:
        user = store.find_by_id(_new(store, "ivan@example.com"))
        assert user.created_at and user.updated_at

    def test_list_users_filters_by_role(self, store) -> None:
        _new(store, "a@example.com")
        _new(store, "b@example.com", role="admin")
        assert [u.email for u in store.list_users(role="user")] == ["a@example.com"]
        assert len(store.list_users()) == 2


class TestOwnerBootstrap:
    def test_second_owner_refused(self, store) -> None:
        first = store.create_owner(User(email="o1@example.com", name="O1", hashed_password=hash_password("pw", 4)))
        second = store.create_owner(User(email="o2@example.com", name="O2", hashed_password=hash_password("pw", 4)))
        assert first is not None
        assert second is None
        assert store.owner_exists()
        assert store.find_by_email("o2@example.com") is None

    def test_owner_role_is_assigned(self, store) -> None:
        uid = store.create_owner(User(email="o@example.com", name="O", role="user", hashed_password="x"))
        assert store.find_by_id(uid).role == "owner"


class TestSaveAndUpdate:
    def test_save_rejects_half_suspended_record(self, store) -> None:
        user = store.find_by_id(_new(store, "judy@example.com"))
        user.is_active = False
        with pytest.raises(ValidationError):
            store.save(user)

    def test_save_lifts_elapsed_suspension(self, store) -> None:
        uid = _new(store, "ken@example.com")
        user = store.find_by_id(uid)
        user.is_active = False
        user.suspended_by = 1
        user.suspension_reason = "spam"
        user.suspension_end = utcnow() - timedelta(minutes=1)
        saved = store.save(user)
        assert saved.is_active
        reloaded = store.find_by_id(uid)
        assert reloaded.is_active and reloaded.suspension_reason is None

    def test_update_user_rejects_unknown_fields(self, store) -> None:
        uid = _new(store, "leo@example.com")
        with pytest.raises(ValueError):
            store.update_user(uid, is_admin=True)

    def test_update_profile_only_touches_profile_fields(self, store) -> None:
        uid = _new(store, "mia@example.com")
        with pytest.raises(ValueError):
            store.update_profile(uid, role="admin")
        assert store.update_profile(uid, bio="hello", phone_number="555-0100")
        user = store.find_by_id(uid)
        assert (user.bio, user.phone_number, user.role) == ("hello", "555-0100", "user")

    def test_set_role_never_matches_owner(self, store) -> None:
        owner_id = store.create_owner(User(email="o@example.com", name="O", hashed_password="x"))
        assert not store.set_role(owner_id, "user")
        assert store.find_by_id(owner_id).role == "owner"


class TestSuspension:
    def test_suspend_writes_whole_group(self, store) -> None:
        uid = _new(store, "nick@example.com")
        until = utcnow() + timedelta(days=3)
        assert store.suspend(uid, actor_id=1, reason="abuse", category="abuse", until=until)
        user = store.find_by_id(uid)
        assert not user.is_active
        assert (user.suspended_by, user.suspension_reason, user.suspension_category) == (1, "abuse", "abuse")
        assert user.suspended_at is not None
        assert abs((user.suspension_end - until).total_seconds()) < 1

    def test_owner_cannot_be_suspended(self, store) -> None:
        owner_id = store.create_owner(User(email="o@example.com", name="O", hashed_password="x"))
        assert not store.suspend(owner_id, actor_id=owner_id, reason="x", category="other")
        assert store.find_by_id(owner_id).is_active

    def test_blank_reason_rejected(self, store) -> None:
        uid = _new(store, "olga@example.com")
        with pytest.raises(ValidationError):
            store.suspend(uid, actor_id=1, reason="   ", category="other")

    def test_expire_only_lifts_elapsed_suspensions(self, store) -> None:
        running = _new(store, "pat@example.com")
        elapsed = _new(store, "quinn@example.com")
        now = utcnow()
        store.suspend(running, actor_id=1, reason="r", category="spam", until=now + timedelta(days=1))
        store.suspend(elapsed, actor_id=1, reason="r", category="spam", until=now - timedelta(seconds=1), now=now - timedelta(days=1))
        assert not store.expire_suspension(running)
        assert store.expire_suspension(elapsed)
        assert not store.find_by_id(running).is_active
        assert store.find_by_id(elapsed).is_active

    def test_reactivate_clears_fields(self, store) -> None:
        uid = _new(store, "rita@example.com")
        store.suspend(uid, actor_id=1, reason="r", category="violation")
        assert store.reactivate(uid)
        user = store.find_by_id(uid)
        assert user.is_active
        assert user.suspended_at is None and user.suspension_category is None


class TestDelete:
    def test_delete_cascades(self, store) -> None:
        uid = _new(store, "sam@example.com")
        tfa = TwoFactorStore(store.engine, KEY)
        ledger = RecoveryLedger(store.engine, KEY, bcrypt_rounds=4)
        tfa.begin_setup(uid)
        token = ledger.issue_password_reset(uid)
        ledger.issue_account_recovery(uid, [("q1", "a1"), ("q2", "a2")])
        store.touch_device(uid, "dev-1")

        assert store.delete_user(uid)

        assert store.find_by_id(uid) is None
        assert tfa.get(uid) is None
        assert ledger.get_account_recovery(uid) is None
        assert store.list_devices(uid) == []
        with pytest.raises(NotFound):
            ledger.redeem_password_reset(token, "new-hash")

    def test_owner_is_not_deletable(self, store) -> None:
        owner_id = store.create_owner(User(email="o@example.com", name="O", hashed_password="x"))
        assert not store.delete_user(owner_id)
        assert store.find_by_id(owner_id) is not None


class TestDevices:
    def test_first_login_is_unfamiliar_then_familiar(self, store) -> None:
        uid = _new(store, "tara@example.com")
        assert store.touch_device(uid, "fp", user_agent="ua", ip="10.0.0.1") is False
        assert store.touch_device(uid, "fp", user_agent="ua", ip="10.0.0.1") is True

    def test_device_unused_for_30_days_is_unfamiliar(self, store) -> None:
        uid = _new(store, "uma@example.com")
        store.touch_device(uid, "fp")
        assert store.touch_device(uid, "fp", now=utcnow() + timedelta(days=31)) is False

    def test_verified_flag_is_sticky(self, store) -> None:
        uid = _new(store, "vic@example.com")
        store.touch_device(uid, "fp", verified=True)
        store.touch_device(uid, "fp", verified=False)
        [device] = store.list_devices(uid)
        assert device.is_verified


class TestInfrastructure:
    def test_unreachable_database_is_store_unavailable(self, tmp_path) -> None:
        engine = create_engine(f"sqlite:///{tmp_path / 'missing' / 'dir' / 'x.db'}")
        with pytest.raises(StoreUnavailable):
            with open_connection(engine) as conn:
                conn.execute(text("SELECT 1"))

    def test_ping(self, store) -> None:
        assert store.ping()
