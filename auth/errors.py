"""
auth/errors.py -- Error taxonomy for the authentication subsystem.

Every failure path in auth/ raises one of these. The API layer registers a
single exception handler that turns them into the JSON error envelope, so
route handlers never build error responses by hand.

  message -- stable, user-facing text. Never includes internals.
  detail  -- operator diagnostic. Logged by the handler, never returned.
  payload -- extra top-level response fields (e.g. user_id on
             SecondFactorRequired, suspension details on AccountSuspended).

Layer rule: stdlib only.
"""

from __future__ import annotations

from typing import Any


class AuthError(Exception):
    """Base class. Subclasses pin status_code, code and a default message."""

    status_code: int = 400
    code: str = "auth_error"
    default_message: str = "Request could not be completed."

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        detail: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.default_message
        if code is not None:
            self.code = code
        self.detail = detail
        self.payload = payload or {}
        super().__init__(self.message)


class InvalidCredentials(AuthError):
    status_code = 401
    code = "invalid_credentials"
    default_message = "Invalid email or password."


class SecondFactorRequired(AuthError):
    status_code = 401
    code = "second_factor_required"
    default_message = "Two-factor authentication code required."

    def __init__(self, user_id: int) -> None:
        super().__init__(payload={"requires_2fa": True, "user_id": user_id})


class InvalidSecondFactor(AuthError):
    status_code = 401
    code = "invalid_second_factor"
    default_message = "Invalid verification code."


class AccountSuspended(AuthError):
    status_code = 403
    code = "account_suspended"
    default_message = "Account suspended."

    def __init__(self, suspension: dict[str, Any]) -> None:
        super().__init__(payload={"suspension": suspension})


class Unauthenticated(AuthError):
    status_code = 401
    code = "unauthenticated"
    default_message = "Authentication required."


class Forbidden(AuthError):
    status_code = 403
    code = "forbidden"
    default_message = "Access denied."


class NotFound(AuthError):
    status_code = 404
    code = "not_found"
    default_message = "Not found."


class Conflict(AuthError):
    status_code = 409
    code = "conflict"
    default_message = "Resource already exists."


class Expired(AuthError):
    code = "token_expired"
    default_message = "Invalid or expired token."


class AlreadyUsed(AuthError):
    code = "token_used"
    default_message = "Invalid or expired token."


class ValidationError(AuthError):
    code = "validation_error"
    default_message = "Invalid input."


class StoreUnavailable(AuthError):
    """Infrastructure failure (store down, lock or pool timeout). Retryable."""

    status_code = 503
    code = "store_unavailable"
    default_message = "Service temporarily unavailable. Please retry."
