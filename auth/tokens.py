"""
auth/tokens.py -- Compact signed tokens (HS256) and the session cookie helper.

Security design decisions:
  Wire format: three dot-separated, url-safe, padding-free base64 segments.
       header  = {"alg":"HS256","typ":"JWT"}
       payload = {"userId","username","email","role","type","jti","iat","exp"}
       signature = base64url(HMAC-SHA256("header.payload", SECRET_KEY))
       Tokens issued by the previous worker use the same layout, so they keep
       verifying after the migration.

  Signing primitives come from python-jose (jose.jwk HMAC key, jose.utils
       base64url helpers). We do not call jwt.decode() because verification
       must report *why* a token was rejected (format, signature, expiry) in
       that order, and must compare the encoded signature segment exactly.

  Signature check: the transmitted signature segment is compared against the
       recomputed one with hmac.compare_digest. Comparing the encoded text
       (not the decoded bytes) means a token whose signature segment differs
       in any character is rejected, including the unused low bits of the
       last base64 character.

  The payload is never parsed before the signature check passes.

  Expiry: ``exp`` must be strictly greater than the current time.

  Clock: injected as a zero-argument callable returning epoch seconds so that
       tests can advance time without sleeping.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hmac
import json
import logging
import time
import uuid
from collections.abc import Callable
from typing import Any

from jose import jwk
from jose.constants import ALGORITHMS
from jose.utils import base64url_decode, base64url_encode

from auth.errors import AuthError, AuthErrorKind
from auth.models import TokenPayload, TokenType

logger = logging.getLogger("inkwell.auth")

Clock = Callable[[], int]

_ALGORITHM = ALGORITHMS.HS256
_HEADER = {"alg": _ALGORITHM, "typ": "JWT"}


def epoch_seconds() -> int:
    return int(time.time())


def _json_segment(obj: dict[str, Any]) -> str:
    raw = json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return base64url_encode(raw).decode("ascii")


def _decode_segment(segment: str) -> Any:
    return json.loads(base64url_decode(segment.encode("ascii")))


class TokenCodec:
    """Stateless sign/verify of compact HS256 tokens.

    Usage:
        codec = TokenCodec(settings.secret_key)
        token = codec.sign_access({"userId": 1, "username": "alice", ...}, ttl_seconds=900)
        payload = codec.verify_type(token, TokenType.access)
    """

    def __init__(self, secret_key: str, clock: Clock = epoch_seconds) -> None:
        self._key = jwk.construct(secret_key, _ALGORITHM)
        self._clock = clock

    def now(self) -> int:
        return self._clock()

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    def sign(self, claims: dict[str, Any], ttl_seconds: int) -> str:
        """Stamp iat/exp onto ``claims`` and return the signed compact token."""
        now = self._clock()
        payload = {**claims, "iat": now, "exp": now + ttl_seconds}
        signing_input = f"{_json_segment(_HEADER)}.{_json_segment(payload)}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def sign_access(self, identity: dict[str, Any], ttl_seconds: int) -> str:
        # jti makes every access token distinct, even two minted in the same second.
        return self.sign({**identity, "type": TokenType.access.value, "jti": uuid.uuid4().hex}, ttl_seconds)

    def sign_refresh(self, identity: dict[str, Any], ttl_seconds: int) -> str:
        return self.sign({**identity, "type": TokenType.refresh.value, "jti": str(uuid.uuid4())}, ttl_seconds)

    def fingerprint(self, token: str) -> str:
        """Return HMAC-SHA256(SECRET_KEY, token) as hex.

        Used as the revocation-store key so raw refresh tokens are never
        persisted. An attacker with read access to the store cannot replay
        the keys as tokens.
        """
        return self._key.sign(token.encode("utf-8")).hex()

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(self, token: str) -> TokenPayload:
        """Verify structure, signature and expiry, in that order.

        Raises AuthError with kind INVALID_FORMAT, INVALID_SIGNATURE or EXPIRED.
        """
        if not isinstance(token, str):
            raise AuthError(AuthErrorKind.INVALID_FORMAT, "Token must be a string.")
        segments = token.split(".")
        if len(segments) != 3:
            raise AuthError(AuthErrorKind.INVALID_FORMAT, "Token must have exactly three segments.")
        header_segment, payload_segment, signature = segments

        expected = self._signature(f"{header_segment}.{payload_segment}")
        try:
            transmitted = signature.encode("ascii")
        except UnicodeEncodeError:
            transmitted = b""
        if not hmac.compare_digest(expected.encode("ascii"), transmitted):
            logger.warning("Security: rejected token with invalid signature")
            raise AuthError(AuthErrorKind.INVALID_SIGNATURE)

        try:
            header = _decode_segment(header_segment)
            claims = _decode_segment(payload_segment)
        except ValueError as exc:
            # UnicodeError, binascii.Error and JSONDecodeError are all ValueErrors.
            raise AuthError(AuthErrorKind.INVALID_FORMAT, "Token segments are not base64url JSON.") from exc
        if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
            raise AuthError(AuthErrorKind.INVALID_FORMAT, "Unsupported token header.")

        payload = TokenPayload.from_claims(claims)
        if payload.expires_at <= self._clock():
            raise AuthError(AuthErrorKind.EXPIRED)
        return payload

    def verify_type(self, token: str, expected: TokenType) -> TokenPayload:
        """verify() plus an explicit check of the ``type`` claim."""
        payload = self.verify(token)
        if payload.token_type is not expected:
            raise AuthError(AuthErrorKind.WRONG_TOKEN_TYPE, f"Expected a {expected.value} token.")
        return payload

    def _signature(self, signing_input: str) -> str:
        digest = self._key.sign(signing_input.encode("utf-8"))
        return base64url_encode(digest).decode("ascii")


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, *, name: str, max_age: int, secure: bool) -> None:
    """Write the access token as an httpOnly session cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST (CSRF mitigation).
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    max_age: matches the access token expiry so both expire together.
    """
    response.set_cookie(
        name,
        value=token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=max_age,
    )


def clear_auth_cookie(response, *, name: str) -> None:
    response.delete_cookie(name)
