"""
auth/devices.py -- Login device fingerprinting.

A device is identified by SHA-256(user agent + client IP). It is a trust
signal for login alerts, never an access gate: changing networks simply
produces a new, unfamiliar device.
"""

from __future__ import annotations

import hashlib
from typing import Any


def fingerprint(user_agent: str, ip: str) -> str:
    return hashlib.sha256(f"{user_agent or ''}{ip or ''}".encode("utf-8")).hexdigest()


def describe(user_agent: str, ip: str, login_time: str | None = None) -> dict[str, Any]:
    """Device summary passed to login-alert notifications."""
    return {"user_agent": user_agent or "unknown", "ip": ip or "unknown", "time": login_time}

