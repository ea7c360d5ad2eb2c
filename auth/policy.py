"""
auth/policy.py -- Pure account-state rules.

No I/O here. Stores and the authorization gate call these so the same rule is
applied whether a user is being saved, logged in, or authorized.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Iterable

from auth.errors import Forbidden, ValidationError
from auth.models import User


def reconcile_suspension(user: User, now: datetime | None = None) -> User:
    """Return the user with an elapsed timed suspension lifted.

    Returns the same object when nothing changes, so callers can use an
    identity check to decide whether to persist.
    """
    now = now or datetime.now(timezone.utc)
    if user.is_active or user.suspension_end is None or user.suspension_end > now:
        return user
    return clear_suspension(user)


def clear_suspension(user: User) -> User:
    return replace(
        user,
        is_active=True,
        suspended_at=None,
        suspended_by=None,
        suspension_reason=None,
        suspension_category=None,
        suspension_end=None,
    )


def validate_suspension_fields(user: User) -> None:
    """Suspension metadata must be all-or-nothing."""
    if user.is_active:
        leftovers = [
            user.suspended_at,
            user.suspended_by,
            user.suspension_reason,
            user.suspension_category,
            user.suspension_end,
        ]
        if any(v is not None for v in leftovers):
            raise ValidationError(
                "Active accounts cannot carry suspension details.",
                detail=f"user {user.id} is_active=True with suspension fields set",
            )
        return
    if not (user.suspension_reason or "").strip() or user.suspended_by is None:
        raise ValidationError(
            "Suspended accounts need a reason and an acting administrator.",
            detail=f"user {user.id} is_active=False without reason/actor",
        )


def is_suspended(user: User) -> bool:
    """Owners are never treated as suspended."""
    return not user.is_active and user.role != "owner"


def suspension_details(user: User) -> dict[str, Any]:
    return {
        "reason": user.suspension_reason,
        "category": user.suspension_category,
        "suspended_at": user.suspended_at.isoformat() if user.suspended_at else None,
        "suspended_by": user.suspended_by,
        "suspension_end": user.suspension_end.isoformat() if user.suspension_end else None,
    }


def has_role(user: User, allowed: Iterable[str]) -> bool:
    return user.role in set(allowed)


def ensure_not_owner(target: User, action: str) -> None:
    """Owner accounts cannot be the target of role change, suspend, delete or reset."""
    if target.role == "owner":
        raise Forbidden(f"Cannot {action} the owner account.")


def ensure_can_manage(actor: User, target: User, action: str) -> None:
    """Admins may act on user accounts only; the owner may act on admins too."""
    ensure_not_owner(target, action)
    if target.role == "admin" and actor.role != "owner":
        raise Forbidden(f"Only the owner can {action} admin accounts.")
