"""
auth/session.py -- Per-request principal resolution.

Two transports are tried in priority order:
  1. Authorization: Bearer <token> header -- API clients.
  2. Session cookie -- set by the login flow for browser clients.

Both converge on the same TokenCodec.verify_type(token, access) call; they
differ only in where the raw token string comes from. The first transport
that yields a principal wins.

After the token verifies, the account is re-fetched from the user directory
by its subject (username). A missing or deactivated account resolves to no
principal even though the token itself is still validly signed and
unexpired: the live directory is authoritative over token claims, and the
Principal is built from the directory record, not from the claims.

An unresolved request is not rejected here. Anonymous access to public
endpoints is legitimate; the AuthorizationGate (auth/dependencies.py)
decides whether a principal is required.

Failure policy: if the directory lookup fails (AuthError STORE_UNAVAILABLE),
resolution stops and reports the failure. It never falls through to a
weaker transport and never grants access.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from auth.errors import AuthError, AuthErrorKind
from auth.models import Principal, TokenType
from auth.store import UserDirectory
from auth.tokens import TokenCodec

logger = logging.getLogger("inkwell.auth")

_BEARER_PREFIX = "Bearer "


@dataclass(frozen=True)
class Resolution:
    """Outcome of resolving one request.

    user is None for anonymous callers. failure is set only when resolution
    was cut short by an infrastructure error and must be treated as
    unauthenticated (fail closed).
    """

    user: Principal | None = None
    failure: AuthErrorKind | None = None


ANONYMOUS = Resolution()


def extract_bearer(header: str | None) -> str | None:
    """Return the token from an ``Authorization: Bearer <token>`` header value."""
    if not header or not header.startswith(_BEARER_PREFIX):
        return None
    token = header[len(_BEARER_PREFIX) :].strip()
    return token or None


class SessionResolver:
    def __init__(self, codec: TokenCodec, directory: UserDirectory) -> None:
        self.codec = codec
        self.directory = directory

    def resolve(self, authorization: str | None, cookie_token: str | None) -> Resolution:
        """Resolve a principal from the Authorization header value and session cookie value."""
        for transport, token in (("bearer", extract_bearer(authorization)), ("cookie", cookie_token)):
            if not token:
                continue
            try:
                principal = self._resolve_token(token)
            except AuthError as exc:
                if exc.kind is AuthErrorKind.STORE_UNAVAILABLE:
                    logger.error("User directory unavailable while resolving %s token", transport)
                    return Resolution(failure=AuthErrorKind.STORE_UNAVAILABLE)
                logger.debug("Rejected %s token: %s", transport, exc.kind.value)
                continue
            if principal is not None:
                return Resolution(user=principal)
        return ANONYMOUS

    def _resolve_token(self, token: str) -> Principal | None:
        payload = self.codec.verify_type(token, TokenType.access)
        user = self.directory.get_by_username(payload.subject)
        if user is None or not user.is_active:
            logger.info("Discarding token for missing or inactive account %r", payload.subject)
            return None
        return Principal.from_user(user)
