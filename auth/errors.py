"""
auth/errors.py -- Error kinds for every auth rejection.

Every failure in auth/ is an AuthError tagged with an AuthErrorKind. The kind
says what went wrong; it does not say which HTTP status to send. The mapping
to transport status codes lives only at the outermost handler boundary
(api/main.py), so the same error can be rendered as 401 on one endpoint and
treated as "anonymous" on another.
"""

from __future__ import annotations

from enum import Enum


class AuthErrorKind(str, Enum):
    INVALID_FORMAT = "invalid_format"
    INVALID_SIGNATURE = "invalid_signature"
    EXPIRED = "expired"
    WRONG_TOKEN_TYPE = "wrong_token_type"
    INVALID_TOKEN = "invalid_token"
    NOT_FOUND = "not_found"
    UNAUTHENTICATED = "unauthenticated"
    INSUFFICIENT_PERMISSION = "insufficient_permission"
    STORE_UNAVAILABLE = "store_unavailable"


_DEFAULT_MESSAGES = {
    AuthErrorKind.INVALID_FORMAT: "Malformed token.",
    AuthErrorKind.INVALID_SIGNATURE: "Invalid token signature.",
    AuthErrorKind.EXPIRED: "Token has expired.",
    AuthErrorKind.WRONG_TOKEN_TYPE: "Wrong token type.",
    AuthErrorKind.INVALID_TOKEN: "Invalid refresh token.",
    AuthErrorKind.NOT_FOUND: "Refresh token not found or revoked.",
    AuthErrorKind.UNAUTHENTICATED: "Authentication required.",
    AuthErrorKind.INSUFFICIENT_PERMISSION: "Insufficient permissions.",
    AuthErrorKind.STORE_UNAVAILABLE: "Authentication backend unavailable.",
}


class AuthError(Exception):
    """A rejected auth operation. ``kind`` is the machine-readable tag."""

    def __init__(self, kind: AuthErrorKind, message: str | None = None) -> None:
        self.kind = kind
        self.message = message or _DEFAULT_MESSAGES[kind]
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"AuthError({self.kind.value!r}, {self.message!r})"
