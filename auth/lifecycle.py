"""
auth/lifecycle.py -- Issue, refresh and revoke access/refresh token pairs.

Refresh-token state machine:

    ISSUED --(redeemed, any number of times)--> ISSUED
    ISSUED --revoke() / revoke_all()----------> REVOKED   (record deleted)
    ISSUED --TTL elapsed----------------------> EXPIRED   (record evicted lazily
                                                           or by cleanup_expired)

A refresh token is redeemable only while its record exists in the revocation
store. The record is keyed by an HMAC fingerprint of the token, under the
"refresh:" prefix.

Rotation: with rotate=False (the default) redemption leaves the refresh token
untouched, so two concurrent redemptions of the same token both succeed. With
rotate=True each redemption deletes the old record and issues a new refresh
token; a leaked token then stops working as soon as the legitimate client
refreshes. The store delete is the claim: when two redemptions of one token
race, only the one whose delete removed the row gets a successor and the
other sees NOT_FOUND.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from auth.errors import AuthError, AuthErrorKind
from auth.models import IssuedTokens, Principal, RefreshTokenRecord, TokenPayload, TokenType
from auth.store import RevocationStore
from auth.tokens import TokenCodec

logger = logging.getLogger("inkwell.auth")

REFRESH_PREFIX = "refresh:"

DEFAULT_ACCESS_TTL = 15 * 60
DEFAULT_REFRESH_TTL = 7 * 24 * 60 * 60


def _identity(principal: Principal) -> dict:
    return {
        "userId": principal.id,
        "username": principal.username,
        "email": principal.email,
        "role": principal.role,
    }


class TokenLifecycleManager:
    """Service object owning the refresh-token lifecycle.

    Constructed once at startup and injected into handlers via app.state.
    It holds no mutable state of its own; all revocation state lives in the
    injected store.
    """

    def __init__(
        self,
        codec: TokenCodec,
        store: RevocationStore,
        access_ttl: int = DEFAULT_ACCESS_TTL,
        refresh_ttl: int = DEFAULT_REFRESH_TTL,
        rotate: bool = False,
    ) -> None:
        self.codec = codec
        self.store = store
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.rotate = rotate

    def _key(self, refresh_token: str) -> str:
        return REFRESH_PREFIX + self.codec.fingerprint(refresh_token)

    def _issue_refresh(self, identity: dict) -> str:
        refresh_token = self.codec.sign_refresh(identity, self.refresh_ttl)
        key = self._key(refresh_token)
        self.store.put(
            key,
            RefreshTokenRecord(
                token_key=key,
                user_id=str(identity["userId"]),
                expires_at=self.codec.now() + self.refresh_ttl,
            ),
        )
        return refresh_token

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def generate_token_pair(self, principal: Principal) -> IssuedTokens:
        """Issue an access token and a refresh token; record the refresh token."""
        identity = _identity(principal)
        access_token = self.codec.sign_access(identity, self.access_ttl)
        refresh_token = self._issue_refresh(identity)
        logger.info("Issued token pair for user_id=%s", principal.id)
        return IssuedTokens(access_token=access_token, refresh_token=refresh_token, expires_in=self.access_ttl)

    def refresh_access_token(self, refresh_token: str) -> IssuedTokens:
        """Mint a new access token from a live refresh token.

        Raises AuthError:
          NOT_FOUND         -- no record (never issued, revoked, swept, or already
                               claimed by a concurrent rotation)
          EXPIRED           -- record past its TTL (the record is evicted)
          INVALID_TOKEN     -- bad signature, malformed, or not a refresh token
          STORE_UNAVAILABLE -- revocation store failed; nothing is issued
        """
        key = self._key(refresh_token)
        record = self.store.get(key)
        if record is None:
            raise AuthError(AuthErrorKind.NOT_FOUND)
        if record.expires_at <= self.codec.now():
            self.store.delete(key)
            raise AuthError(AuthErrorKind.EXPIRED, "Refresh token has expired.")

        try:
            payload: TokenPayload = self.codec.verify_type(refresh_token, TokenType.refresh)
        except AuthError as exc:
            raise AuthError(AuthErrorKind.INVALID_TOKEN) from exc

        identity = payload.identity_claims()
        access_token = self.codec.sign_access(identity, self.access_ttl)
        if self.rotate:
            # Only the caller whose delete removed the row may mint a successor.
            if not self.store.delete(key):
                raise AuthError(AuthErrorKind.NOT_FOUND)
            refresh_token = self._issue_refresh(identity)
        return IssuedTokens(access_token=access_token, refresh_token=refresh_token, expires_in=self.access_ttl)

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke(self, refresh_token: str) -> None:
        """Delete the token's record. Revoking an unknown token is a no-op."""
        self.store.delete(self._key(refresh_token))

    def revoke_all(self, user_id: int | str) -> int:
        """Delete every refresh record belonging to ``user_id``. Returns the count."""
        owner = str(user_id)
        revoked = 0
        for record in self.store.list(REFRESH_PREFIX):
            if record.user_id == owner:
                if self.store.delete(record.token_key):
                    revoked += 1
        logger.info("Revoked %d refresh token(s) for user_id=%s", revoked, owner)
        return revoked

    def cleanup_expired(self) -> int:
        """Best-effort sweep of records past their TTL.

        Never raises on store failure -- expiry is also enforced lazily on
        redemption, so a missed sweep only costs disk space.
        """
        now = self.codec.now()
        removed = 0
        try:
            for record in self.store.list(REFRESH_PREFIX):
                if record.expires_at <= now:
                    self.store.delete(record.token_key)
                    removed += 1
        except AuthError as exc:
            logger.error("Refresh token cleanup failed after %d removal(s): %s", removed, exc.message)
            return removed
        if removed:
            logger.info("Cleaned up %d expired refresh token(s)", removed)
        return removed
