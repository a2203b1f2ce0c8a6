"""
auth/dependencies.py -- FastAPI Depends() helpers for authorization.

The session middleware (api/main.py) runs SessionResolver once per request and
leaves the outcome on request.state:
  request.state.user          -- Principal or None
  request.state.auth_failure  -- AuthErrorKind.STORE_UNAVAILABLE or None

These dependencies only read that outcome:

try_get_current_user() is the soft variant (returns None for anonymous callers).
get_current_user() raises UNAUTHENTICATED if no principal is attached, or
    STORE_UNAVAILABLE if resolution failed closed.
require_role(role) wraps get_current_user() and raises INSUFFICIENT_PERMISSION
    if the principal's role is below ``role`` on the ladder.

Errors are raised as AuthError; the status code is chosen by the exception
handler in api/main.py, not here.

Layer rule: auth/dependencies.py may import from fastapi (for Request)
because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Request

from auth.errors import AuthError, AuthErrorKind
from auth.models import Principal
from auth.roles import Role, has_permission


def try_get_current_user(request: Request) -> Principal | None:
    """Return the principal attached by the session middleware, or None."""
    return getattr(request.state, "user", None)


def get_current_user(request: Request) -> Principal:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: Principal = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        if getattr(request.state, "auth_failure", None) is AuthErrorKind.STORE_UNAVAILABLE:
            raise AuthError(AuthErrorKind.STORE_UNAVAILABLE)
        raise AuthError(AuthErrorKind.UNAUTHENTICATED)
    return user


def require_role(role: Role) -> Callable[[Request], Principal]:
    """Build a dependency that requires ``role`` or anything above it.

    Use as a FastAPI dependency:
        @router.post("/admin-only")
        async def route(user: Principal = Depends(require_role(Role.admin))): ...
    """

    def dependency(request: Request) -> Principal:
        user = get_current_user(request)
        if not has_permission(user.role, role):
            raise AuthError(AuthErrorKind.INSUFFICIENT_PERMISSION, f"{role.value.capitalize()} access required.")
        return user

    dependency.__name__ = f"require_{role.value}"
    return dependency


require_admin = require_role(Role.admin)
require_collaborator = require_role(Role.collaborator)
