"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; the codec, lifecycle manager and stores do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from auth.errors import AuthError, AuthErrorKind


class TokenType(str, Enum):
    access = "access"
    refresh = "refresh"


@dataclass
class User:
    """A user directory record.

    The directory owns and mutates this record. The auth core only reads it,
    and only ever exposes the Principal projection to request handlers.

    hashed_password is never serialized outside the store.
    """

    username: str
    email: str
    role: str  # "user", "collaborator", "admin"
    id: int | None = None
    hashed_password: str | None = None
    created_at: str | None = None
    last_login: str | None = None
    is_active: bool = True


@dataclass(frozen=True)
class Principal:
    """The authenticated identity attached to a request context."""

    id: int
    username: str
    email: str
    role: str
    is_active: bool = True

    @classmethod
    def from_user(cls, user: User) -> Principal:
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            role=user.role,
            is_active=user.is_active,
        )


@dataclass(frozen=True)
class TokenPayload:
    """Decoded claims of a signed token.

    Wire claim names (userId, username, iat, exp, type) are kept compatible
    with tokens issued by the previous worker so existing sessions still
    verify. ``subject`` is the username: it is what the session resolver
    looks up in the user directory.
    """

    subject: str
    user_id: int | str
    email: str
    role: str
    issued_at: int
    expires_at: int
    token_type: TokenType | None
    jti: str | None = None

    @classmethod
    def from_claims(cls, claims: Any) -> TokenPayload:
        """Build a payload from a decoded JSON object.

        Raises AuthError(INVALID_FORMAT) when the identity or time claims are
        missing or of the wrong type. An unknown ``type`` claim is kept as
        None so that the type check rejects it explicitly.
        """
        if not isinstance(claims, dict):
            raise AuthError(AuthErrorKind.INVALID_FORMAT, "Token payload is not a JSON object.")
        try:
            subject = claims["username"]
            role = claims["role"]
            iat = claims["iat"]
            exp = claims["exp"]
        except KeyError as exc:
            raise AuthError(AuthErrorKind.INVALID_FORMAT, f"Token payload is missing {exc.args[0]!r}.") from exc
        if not isinstance(subject, str) or not isinstance(role, str):
            raise AuthError(AuthErrorKind.INVALID_FORMAT, "Token identity claims must be strings.")
        if isinstance(iat, bool) or isinstance(exp, bool) or not isinstance(iat, int) or not isinstance(exp, int):
            raise AuthError(AuthErrorKind.INVALID_FORMAT, "Token time claims must be integers.")

        raw_type = claims.get("type")
        token_type = TokenType(raw_type) if raw_type in (TokenType.access.value, TokenType.refresh.value) else None
        return cls(
            subject=subject,
            user_id=claims.get("userId", ""),
            email=claims.get("email", ""),
            role=role,
            issued_at=iat,
            expires_at=exp,
            token_type=token_type,
            jti=claims.get("jti"),
        )

    def identity_claims(self) -> dict[str, Any]:
        """Claims describing the principal, without time/type/jti stamps."""
        return {
            "userId": self.user_id,
            "username": self.subject,
            "email": self.email,
            "role": self.role,
        }


@dataclass(frozen=True)
class RefreshTokenRecord:
    """A live refresh token. Its presence in the store is what makes the token redeemable."""

    token_key: str
    user_id: str
    expires_at: int


@dataclass(frozen=True)
class IssuedTokens:
    """Token pair handed to the login / registration / refresh flows."""

    access_token: str
    refresh_token: str
    expires_in: int
