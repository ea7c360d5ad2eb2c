"""
auth/service.py -- Authentication orchestrator.

AuthService composes the stores, the token issuer, the account policy and the
notification port. Route handlers call one method per request and map the
result (or the AuthError it raises) onto HTTP.

Login state machine (one ordering, used everywhere):
  1. CredentialCheck  -- unknown email and wrong password fail identically;
                         bcrypt always runs [C1].
  2. SuspensionCheck  -- after reconcile_suspension(). Runs before the second
                         factor so a suspended account learns nothing about
                         its 2FA state.
  3. TwoFactorGate    -- only for users with an enabled enrollment.
  4. IssueToken       -- JWT + device record + last_login.

Notifications are fire-and-forget: a failing notifier is logged with
logger.exception and never changes the outcome of the operation.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from auth.devices import describe, fingerprint
from auth.errors import (
    AccountSuspended,
    Conflict,
    Forbidden,
    InvalidCredentials,
    InvalidSecondFactor,
    NotFound,
    SecondFactorRequired,
    ValidationError,
)
from auth.models import SUSPENSION_CATEGORIES, LoginDevice, User
from auth.notify import LoggingNotifier, Notifier
from auth.policy import (
    ensure_can_manage,
    ensure_not_owner,
    has_role,
    is_suspended,
    reconcile_suspension,
    suspension_details,
)
from auth.recovery import RecoveryLedger
from auth.store import UserStore, normalize_email, to_iso, utcnow
from auth.tokens import TokenIssuer, authenticate_user, hash_password
from auth.two_factor import TwoFactorStore, provisioning_uri, qr_data_url
from core.config import Settings

logger = logging.getLogger("accountgate.service")

ASSIGNABLE_ROLES = ("admin", "user")
MAX_SUSPENSION_DAYS = 3650


@dataclass(frozen=True)
class LoginResult:
    token: str
    user: User
    new_device: bool = False


@dataclass(frozen=True)
class TwoFactorSetup:
    """Returned once by setup. backup_codes are plaintext and never stored."""

    secret: str
    otpauth_url: str
    qr_code: str
    backup_codes: list[str]


class AuthService:
    def __init__(
        self,
        users: UserStore,
        two_factor: TwoFactorStore,
        recovery: RecoveryLedger,
        issuer: TokenIssuer,
        settings: Settings,
        notifier: Notifier | None = None,
    ) -> None:
        self.users = users
        self.two_factor = two_factor
        self.recovery = recovery
        self.issuer = issuer
        self.settings = settings
        self.notifier: Notifier = notifier or LoggingNotifier()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _hash(self, password: str) -> str:
        return hash_password(password, self.settings.bcrypt_rounds)

    def _notify(self, event: str, *args) -> None:
        try:
            getattr(self.notifier, event)(*args)
        except Exception:
            logger.exception("Notification %s failed", event)

    def _get_or_404(self, user_id: int) -> User:
        user = self.users.find_by_id(user_id)
        if user is None:
            raise NotFound("User not found.")
        return user

    def _create(self, email: str, password: str, name: str, role: str) -> User:
        user = User(email=normalize_email(email), name=name.strip(), role=role, hashed_password=self._hash(password))
        try:
            user_id = self.users.create_user(user)
        except IntegrityError as exc:
            raise Conflict("An account with this email already exists.") from exc
        logger.info("Created %s account %s", role, user_id)
        return self._get_or_404(user_id)

    def load_user(self, user_id: int) -> User | None:
        """Re-read a user and lift an elapsed timed suspension.

        Used by the login path and the authorization gate so both see the
        same account state.
        """
        user = self.users.find_by_id(user_id)
        if user is None:
            return None
        reconciled = reconcile_suspension(user)
        if reconciled is not user:
            self.users.expire_suspension(user.id)
        return reconciled

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, name: str) -> User:
        return self._create(email, password, name, "user")

    def register_admin(self, email: str, password: str, name: str, admin_secret: str) -> User:
        """Create an admin when the caller knows ADMIN_SECRET.

        An unset ADMIN_SECRET disables this path entirely.
        """
        expected = self.settings.admin_secret
        if not expected or not hmac.compare_digest(admin_secret.encode(), expected.encode()):
            logger.warning("Rejected admin registration with invalid secret")
            raise Forbidden("Invalid admin secret.")
        return self._create(email, password, name, "admin")

    def bootstrap_owner(self, email: str, password: str, name: str) -> User:
        """One-time owner creation. Atomic: a second call always gets Conflict."""
        candidate = User(email=normalize_email(email), name=name.strip(), hashed_password=self._hash(password))
        try:
            user_id = self.users.create_owner(candidate)
        except IntegrityError as exc:
            raise Conflict("An account with this email already exists.") from exc
        if user_id is None:
            raise Conflict("Owner account already exists.")
        logger.info("Owner account bootstrapped (id=%s)", user_id)
        return self._get_or_404(user_id)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def issue_token(self, user: User) -> str:
        return self.issuer.issue(user)

    def login(
        self,
        email: str,
        password: str,
        code: str | None = None,
        is_backup_code: bool = False,
        *,
        user_agent: str = "",
        ip: str = "",
    ) -> LoginResult:
        # 1. CredentialCheck
        user = authenticate_user(self.users, email, password, self.settings.bcrypt_rounds)
        if user is None:
            raise InvalidCredentials()

        # 2. SuspensionCheck
        reconciled = reconcile_suspension(user)
        if reconciled is not user:
            self.users.expire_suspension(user.id)
            user = reconciled
        if is_suspended(user):
            logger.info("Login refused for suspended user %s", user.id)
            raise AccountSuspended(suspension_details(user))

        # 3. TwoFactorGate
        passed_second_factor = False
        if self.two_factor.is_enabled(user.id):
            if not code:
                raise SecondFactorRequired(user.id)
            if not self.two_factor.verify_second_factor(user.id, code, is_backup_code):
                logger.info("Second factor rejected for user %s", user.id)
                raise InvalidSecondFactor()
            passed_second_factor = True

        # 4. IssueToken
        familiar = self.users.touch_device(
            user.id,
            fingerprint(user_agent, ip),
            user_agent=user_agent,
            ip=ip,
            verified=passed_second_factor,
        )
        self.users.update_last_login(user.id)
        if passed_second_factor or not familiar:
            self._notify("login_alert", user, describe(user_agent, ip, to_iso(utcnow())))
        logger.info("User %s logged in (2fa=%s, new_device=%s)", user.id, passed_second_factor, not familiar)
        return LoginResult(token=self.issue_token(user), user=user, new_device=not familiar)

    # ------------------------------------------------------------------
    # Second factor
    # ------------------------------------------------------------------

    def setup_two_factor(self, user: User) -> TwoFactorSetup:
        secret, codes = self.two_factor.begin_setup(user.id, self.settings.backup_code_count)
        uri = provisioning_uri(secret, user.email, self.settings.totp_issuer)
        self._notify("two_factor_backup_codes", user, codes)
        return TwoFactorSetup(secret=secret, otpauth_url=uri, qr_code=qr_data_url(uri), backup_codes=codes)

    def verify_two_factor(self, user: User, code: str) -> None:
        """Confirm a pending enrollment with a TOTP code, enabling 2FA."""
        enrollment = self.two_factor.get(user.id)
        if enrollment is None:
            raise NotFound("Two-factor setup has not been started.")
        if enrollment.enabled:
            raise Conflict("Two-factor authentication is already enabled.")
        if not self.two_factor.verify_second_factor(user.id, code, False, require_enabled=False):
            raise InvalidSecondFactor()
        if not self.two_factor.enable(user.id):
            raise Conflict("Two-factor authentication is already enabled.")
        logger.info("2FA enabled for user %s", user.id)
        self._notify("two_factor_enabled", user)

    def disable_two_factor(self, user: User, code: str) -> None:
        """Turn 2FA off. Requires a valid TOTP code, backup codes are not accepted."""
        enrollment = self.two_factor.get(user.id)
        if enrollment is None or not enrollment.enabled:
            raise ValidationError("Two-factor authentication is not enabled.", code="two_factor_not_enabled")
        if not self.two_factor.verify_second_factor(user.id, code, False):
            raise InvalidSecondFactor()
        self.two_factor.disable(user.id)
        logger.info("2FA disabled for user %s", user.id)
        self._notify("two_factor_disabled", user)

    def validate_two_factor(self, user_id: int, code: str, is_backup_code: bool = False) -> None:
        """Stand-alone code check used mid-login. Raises InvalidSecondFactor on any mismatch.

        Follows the login ordering: a suspended account is refused before any
        code is compared, so it can neither test nor burn its codes.
        """
        user = self.load_user(user_id)
        if user is None:
            raise InvalidSecondFactor()
        if is_suspended(user):
            raise AccountSuspended(suspension_details(user))
        if not self.two_factor.verify_second_factor(user_id, code, is_backup_code):
            raise InvalidSecondFactor()

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def forgot_password(self, email: str) -> None:
        """Issue a reset token. Silent for unknown emails (no enumeration)."""
        user = self.users.find_by_email(email)
        if user is None:
            logger.info("Password reset requested for unknown email")
            return
        token = self.recovery.issue_password_reset(user.id)
        self._notify("password_reset", user, f"{self.settings.client_url}/reset-password/{token}")

    def reset_password(self, token: str, new_password: str) -> None:
        self.recovery.redeem_password_reset(token, self._hash(new_password))

    def setup_recovery(self, user: User, questions: list[tuple[str, str]], recovery_email: str | None = None) -> None:
        self.recovery.issue_account_recovery(
            user.id,
            questions,
            normalize_email(recovery_email) if recovery_email else None,
        )

    def initiate_recovery(self, email: str) -> None:
        """Rotate the recovery token and send it. Silent for unknown emails.

        The link always goes to the account email, and also to the recovery
        email when one is on file.
        """
        user = self.users.find_by_email(email)
        if user is None:
            logger.info("Account recovery requested for unknown email")
            return
        record = self.recovery.get_account_recovery(user.id)
        token = self.recovery.rotate_account_recovery(user.id)
        if token is None or record is None:
            logger.info("Account recovery requested for user %s without setup", user.id)
            return
        url = f"{self.settings.client_url}/account-recovery/{token}"
        recipients = [user.email]
        if record.recovery_email and record.recovery_email != user.email:
            recipients.append(record.recovery_email)
        for recipient in recipients:
            self._notify("account_recovery", user, url, recipient)

    def recovery_questions(self, token: str) -> list[str]:
        return self.recovery.recovery_questions(token)

    def verify_recovery(self, token: str, answers: list[str]) -> str:
        """Check the answers; returns a password-reset token on success."""
        return self.recovery.redeem_account_recovery(token, answers)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def _require_actor(self, actor: User, *roles: str) -> None:
        if not has_role(actor, roles):
            raise Forbidden("Insufficient permissions.")

    def list_users(self, actor: User) -> list[User]:
        """Owner sees everyone, admins see only plain users."""
        self._require_actor(actor, "owner", "admin")
        return self.users.list_users() if actor.role == "owner" else self.users.list_users(role="user")

    def get_user(self, actor: User, user_id: int) -> User:
        self._require_actor(actor, "owner", "admin")
        target = self._get_or_404(user_id)
        if actor.role != "owner" and target.role != "user":
            raise Forbidden("Admins can only view user accounts.")
        return target

    def change_role(self, actor: User, user_id: int, role: str) -> User:
        self._require_actor(actor, "owner")
        if role not in ASSIGNABLE_ROLES:
            raise ValidationError(f"Role must be one of: {', '.join(ASSIGNABLE_ROLES)}.")
        target = self._get_or_404(user_id)
        ensure_not_owner(target, "change the role of")
        if not self.users.set_role(target.id, role):
            raise NotFound("User not found.")
        logger.info("User %s role changed %s -> %s by %s", target.id, target.role, role, actor.id)
        return self._get_or_404(target.id)

    def create_admin(self, actor: User, email: str, password: str, name: str) -> User:
        self._require_actor(actor, "owner")
        return self._create(email, password, name, "admin")

    def delete_user(self, actor: User, user_id: int) -> None:
        self._require_actor(actor, "owner")
        target = self._get_or_404(user_id)
        ensure_not_owner(target, "delete")
        if not self.users.delete_user(target.id):
            raise NotFound("User not found.")
        logger.info("User %s deleted by %s", target.id, actor.id)

    def admin_reset_password(self, actor: User, user_id: int, new_password: str | None = None) -> str:
        """Set a user's password. Generates one when none is given; returned once."""
        self._require_actor(actor, "owner", "admin")
        target = self._get_or_404(user_id)
        ensure_can_manage(actor, target, "reset the password of")
        password = new_password or secrets.token_urlsafe(12)
        self.users.set_password(target.id, self._hash(password))
        logger.info("Password of user %s reset by %s", target.id, actor.id)
        return password

    def suspend_user(
        self,
        actor: User,
        user_id: int,
        reason: str,
        category: str = "other",
        duration_days: int | None = None,
    ) -> User:
        self._require_actor(actor, "owner", "admin")
        if not (reason or "").strip():
            raise ValidationError("A suspension reason is required.")
        if category not in SUSPENSION_CATEGORIES:
            raise ValidationError(f"Category must be one of: {', '.join(SUSPENSION_CATEGORIES)}.")
        if duration_days is not None and not 1 <= duration_days <= MAX_SUSPENSION_DAYS:
            raise ValidationError(f"Duration must be between 1 and {MAX_SUSPENSION_DAYS} days.")
        target = self._get_or_404(user_id)
        if target.id == actor.id:
            raise Forbidden("You cannot suspend your own account.")
        ensure_can_manage(actor, target, "suspend")

        now = utcnow()
        until = now + timedelta(days=duration_days) if duration_days else None
        if not self.users.suspend(target.id, actor_id=actor.id, reason=reason, category=category, until=until, now=now):
            raise NotFound("User not found.")
        suspended = self._get_or_404(target.id)
        logger.info("User %s suspended by %s (category=%s, until=%s)", target.id, actor.id, category, to_iso(until))
        self._notify("suspension", suspended, suspension_details(suspended))
        return suspended

    def reactivate_user(self, actor: User, user_id: int) -> User:
        self._require_actor(actor, "owner", "admin")
        target = self._get_or_404(user_id)
        ensure_can_manage(actor, target, "reactivate")
        if target.is_active:
            raise ValidationError("Account is not suspended.", code="not_suspended")
        self.users.reactivate(target.id)
        logger.info("User %s reactivated by %s", target.id, actor.id)
        reactivated = self._get_or_404(target.id)
        self._notify("reactivation", reactivated)
        return reactivated

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    def update_profile(self, user: User, **fields) -> User:
        changes = {k: v for k, v in fields.items() if v is not None}
        if "name" in changes:
            changes["name"] = changes["name"].strip()
            if not changes["name"]:
                raise ValidationError("Name cannot be empty.")
        if changes:
            self.users.update_profile(user.id, **changes)
        return self._get_or_404(user.id)

    def list_devices(self, user: User) -> list[LoginDevice]:
        return self.users.list_devices(user.id)

    def close(self) -> None:
        self.users.close()


def build_auth_service(settings: Settings, db_url: str | None = None, notifier: Notifier | None = None) -> AuthService:
    """Wire the stores, the issuer and the notifier from settings."""
    users = UserStore(db_url or settings.database_url, settings.store_timeout_seconds)
    return AuthService(
        users=users,
        two_factor=TwoFactorStore(users.engine, settings.secret_key),
        recovery=RecoveryLedger(
            users.engine,
            settings.secret_key,
            reset_ttl_seconds=settings.password_reset_ttl_seconds,
            recovery_ttl_seconds=settings.account_recovery_ttl_seconds,
            bcrypt_rounds=settings.bcrypt_rounds,
        ),
        issuer=TokenIssuer(settings.secret_key, settings.token_expire_seconds),
        settings=settings,
        notifier=notifier,
    )
