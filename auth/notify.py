"""
auth/notify.py -- Outbound notification port.

Mail delivery is an external collaborator. AuthService talks to a Notifier
and never waits on, or fails because of, delivery: every call is wrapped by
the service and exceptions are logged, not propagated.

LoggingNotifier is the default wiring. It records which notice would have
been sent and to whom (redacted), and never logs links, tokens or codes.
Deployments plug a real mailer in by passing another Notifier to
build_auth_service().
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from auth.models import User

logger = logging.getLogger("accountgate.notify")


def redact_email(email: str) -> str:
    """Redact an email address for logging."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class Notifier(Protocol):
    def password_reset(self, user: User, reset_url: str) -> None: ...

    def account_recovery(self, user: User, recovery_url: str, recipient: str) -> None: ...

    def login_alert(self, user: User, device: dict[str, Any]) -> None: ...

    def suspension(self, user: User, suspension: dict[str, Any]) -> None: ...

    def reactivation(self, user: User) -> None: ...

    def two_factor_enabled(self, user: User) -> None: ...

    def two_factor_disabled(self, user: User) -> None: ...

    def two_factor_backup_codes(self, user: User, codes: list[str]) -> None: ...


class LoggingNotifier:
    """Notifier that only writes a log line per notice."""

    def _record(self, event: str, recipient: str) -> None:
        logger.info("Notification %s -> %s", event, redact_email(recipient))

    def password_reset(self, user: User, reset_url: str) -> None:
        self._record("password_reset", user.email)

    def account_recovery(self, user: User, recovery_url: str, recipient: str) -> None:
        self._record("account_recovery", recipient)

    def login_alert(self, user: User, device: dict[str, Any]) -> None:
        self._record("login_alert", user.email)

    def suspension(self, user: User, suspension: dict[str, Any]) -> None:
        self._record("suspension", user.email)

    def reactivation(self, user: User) -> None:
        self._record("reactivation", user.email)

    def two_factor_enabled(self, user: User) -> None:
        self._record("two_factor_enabled", user.email)

    def two_factor_disabled(self, user: User) -> None:
        self._record("two_factor_disabled", user.email)

    def two_factor_backup_codes(self, user: User, codes: list[str]) -> None:
        self._record("two_factor_backup_codes", user.email)
