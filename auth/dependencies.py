"""
auth/dependencies.py -- Authorization gate as FastAPI Depends() helpers.

Per request:
  1. Extract the bearer token: Authorization: Bearer <token> header first,
     then the httpOnly "access_token" cookie set at login.
  2. Verify it with the app's TokenIssuer.
  3. Re-load the live user. Claims are trusted for identity only; role and
     suspension come from the store.
  4. Lift an elapsed timed suspension (persisted) and refuse suspended
     non-owner accounts.

The result is an AuthContext handed to the route as a parameter. Nothing is
attached to the request object.

get_auth_context() raises Unauthenticated / AccountSuspended.
require_roles(*roles) builds a dependency that adds a pure set-membership
check and raises Forbidden.

Layer rule: may import fastapi (this module is part of the DI system), never api/.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, Request

from auth.errors import AccountSuspended, Forbidden, Unauthenticated
from auth.models import AuthContext
from auth.policy import has_role, is_suspended, suspension_details


def _extract_token(request: Request) -> str | None:
    scheme, _, value = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return request.cookies.get("access_token") or None


def get_auth_context(request: Request) -> AuthContext:
    """Require a valid bearer token for a live, non-suspended account.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(ctx: AuthContext = Depends(get_auth_context)): ...
    """
    service = request.app.state.auth
    token = _extract_token(request)
    if not token:
        raise Unauthenticated()
    claims = service.issuer.verify(token)
    if claims is None:
        raise Unauthenticated("Invalid or expired token.")
    user = service.load_user(claims.user_id)
    if user is None:
        raise Unauthenticated("Account no longer exists.", detail=f"token for deleted user {claims.user_id}")
    if is_suspended(user):
        raise AccountSuspended(suspension_details(user))
    return AuthContext(user=user, claims=claims)


def require_roles(*roles: str) -> Callable[..., AuthContext]:
    """Build a dependency that also requires the live role to be in `roles`.

        @router.patch("/admin/users/{id}/role")
        def route(ctx: AuthContext = Depends(require_roles("owner"))): ...
    """
    allowed = frozenset(roles)

    def dependency(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if not has_role(ctx.user, allowed):
            raise Forbidden("Insufficient permissions.", detail=f"role {ctx.user.role!r} not in {sorted(allowed)}")
        return ctx

    return dependency


require_admin = require_roles("owner", "admin")
require_owner = require_roles("owner")
