"""
tests/test_lifecycle.py -- Unit tests for auth/lifecycle.py (TokenLifecycleManager).

Covers:
  - generate_token_pair() + refresh_access_token() happy path
  - revoke() / revoke_all() semantics and idempotency
  - Access expiry vs refresh redemption under simulated time
  - Lazy eviction of expired records
  - Refresh-token rotation (opt-in) vs the default non-rotating policy
  - cleanup_expired() sweep and its non-fatal failure mode
  - Store outages surface as STORE_UNAVAILABLE, never as a grant
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest

from auth.errors import AuthError, AuthErrorKind
from auth.lifecycle import REFRESH_PREFIX, TokenLifecycleManager
from auth.models import Principal, RefreshTokenRecord, TokenType
from auth.store import RefreshTokenStore
from auth.tokens import TokenCodec
from tests.conftest import SECRET, FakeClock

ALICE = Principal(id=1, username="alice", email="alice@example.com", role="collaborator")
BOB = Principal(id=2, username="bob", email="bob@example.com", role="user")


def _kind(excinfo: pytest.ExceptionInfo) -> AuthErrorKind:
    return excinfo.value.kind


class TestIssueAndRefresh:
    def test_pair_then_immediate_refresh(self, tokens: TokenLifecycleManager, codec: TokenCodec) -> None:
        issued = tokens.generate_token_pair(ALICE)
        refreshed = tokens.refresh_access_token(issued.refresh_token)

        assert refreshed.access_token != issued.access_token
        claims = codec.verify_type(refreshed.access_token, TokenType.access)
        assert claims.subject == "alice"
        assert claims.role == "collaborator"
        assert claims.email == "alice@example.com"
        assert claims.user_id == 1

    def test_pair_expires_in_is_access_ttl(self, tokens: TokenLifecycleManager) -> None:
        assert tokens.generate_token_pair(ALICE).expires_in == 900

    def test_refresh_record_written(
        self, tokens: TokenLifecycleManager, codec: TokenCodec, refresh_store: RefreshTokenStore, clock: FakeClock
    ) -> None:
        issued = tokens.generate_token_pair(ALICE)
        record = refresh_store.get(REFRESH_PREFIX + codec.fingerprint(issued.refresh_token))
        assert record is not None
        assert record.user_id == "1"
        assert record.expires_at == clock.now + 604800

    def test_raw_refresh_token_is_not_stored(
        self, tokens: TokenLifecycleManager, refresh_store: RefreshTokenStore
    ) -> None:
        issued = tokens.generate_token_pair(ALICE)
        assert all(issued.refresh_token not in r.token_key for r in refresh_store.list(REFRESH_PREFIX))

    def test_refresh_does_not_rotate_by_default(self, tokens: TokenLifecycleManager) -> None:
        issued = tokens.generate_token_pair(ALICE)
        first = tokens.refresh_access_token(issued.refresh_token)
        second = tokens.refresh_access_token(issued.refresh_token)
        assert first.refresh_token == second.refresh_token == issued.refresh_token
        assert first.access_token != second.access_token

    def test_unknown_refresh_token(self, tokens: TokenLifecycleManager, codec: TokenCodec) -> None:
        never_recorded = codec.sign_refresh({"userId": 1, "username": "alice", "email": "", "role": "user"}, 600)
        with pytest.raises(AuthError) as excinfo:
            tokens.refresh_access_token(never_recorded)
        assert _kind(excinfo) is AuthErrorKind.NOT_FOUND

    def test_access_token_cannot_be_redeemed(self, tokens: TokenLifecycleManager) -> None:
        issued = tokens.generate_token_pair(ALICE)
        with pytest.raises(AuthError) as excinfo:
            tokens.refresh_access_token(issued.access_token)
        assert _kind(excinfo) is AuthErrorKind.NOT_FOUND

    def test_recorded_token_of_wrong_type_is_invalid(
        self, tokens: TokenLifecycleManager, codec: TokenCodec, refresh_store: RefreshTokenStore, clock: FakeClock
    ) -> None:
        """Even with a record present, the token must verify as a refresh token."""
        access = tokens.generate_token_pair(ALICE).access_token
        key = REFRESH_PREFIX + codec.fingerprint(access)
        refresh_store.put(key, RefreshTokenRecord(token_key=key, user_id="1", expires_at=clock.now + 600))
        with pytest.raises(AuthError) as excinfo:
            tokens.refresh_access_token(access)
        assert _kind(excinfo) is AuthErrorKind.INVALID_TOKEN


class TestRevocation:
    def test_revoke_then_refresh_fails(self, tokens: TokenLifecycleManager) -> None:
        issued = tokens.generate_token_pair(ALICE)
        tokens.revoke(issued.refresh_token)
        with pytest.raises(AuthError) as excinfo:
            tokens.refresh_access_token(issued.refresh_token)
        assert _kind(excinfo) is AuthErrorKind.NOT_FOUND

    def test_revoke_is_idempotent(self, tokens: TokenLifecycleManager) -> None:
        issued = tokens.generate_token_pair(ALICE)
        tokens.revoke(issued.refresh_token)
        tokens.revoke(issued.refresh_token)
        tokens.revoke("not.a.token")

    def test_revoke_all_is_scoped_to_one_user(self, tokens: TokenLifecycleManager) -> None:
        alice_tokens = [tokens.generate_token_pair(ALICE).refresh_token for _ in range(3)]
        bob_token = tokens.generate_token_pair(BOB).refresh_token

        assert tokens.revoke_all(ALICE.id) == 3

        for refresh in alice_tokens:
            with pytest.raises(AuthError) as excinfo:
                tokens.refresh_access_token(refresh)
            assert _kind(excinfo) is AuthErrorKind.NOT_FOUND
        assert tokens.refresh_access_token(bob_token).access_token

    def test_revoke_all_accepts_string_ids(self, tokens: TokenLifecycleManager) -> None:
        tokens.generate_token_pair(ALICE)
        assert tokens.revoke_all("1") == 1
        assert tokens.revoke_all(1) == 0


class TestExpiry:
    def test_access_expires_but_refresh_still_mints(
        self, tokens: TokenLifecycleManager, codec: TokenCodec, clock: FakeClock
    ) -> None:
        issued = tokens.generate_token_pair(ALICE)
        clock.advance(901)

        with pytest.raises(AuthError) as excinfo:
            codec.verify(issued.access_token)
        assert _kind(excinfo) is AuthErrorKind.EXPIRED

        fresh = tokens.refresh_access_token(issued.refresh_token)
        payload = codec.verify_type(fresh.access_token, TokenType.access)
        assert payload.expires_at == clock.now + 900

        clock.advance(899)
        assert codec.verify(fresh.access_token).subject == "alice"
        clock.advance(1)
        with pytest.raises(AuthError):
            codec.verify(fresh.access_token)

    def test_expired_refresh_record_is_evicted(
        self, tokens: TokenLifecycleManager, refresh_store: RefreshTokenStore, clock: FakeClock
    ) -> None:
        issued = tokens.generate_token_pair(ALICE)
        clock.advance(604800)

        with pytest.raises(AuthError) as excinfo:
            tokens.refresh_access_token(issued.refresh_token)
        assert _kind(excinfo) is AuthErrorKind.EXPIRED
        assert refresh_store.list(REFRESH_PREFIX) == []

        with pytest.raises(AuthError) as excinfo:
            tokens.refresh_access_token(issued.refresh_token)
        assert _kind(excinfo) is AuthErrorKind.NOT_FOUND


class TestRotation:
    def test_rotation_replaces_refresh_token(
        self, codec: TokenCodec, refresh_store: RefreshTokenStore
    ) -> None:
        rotating = TokenLifecycleManager(codec, refresh_store, access_ttl=900, refresh_ttl=604800, rotate=True)
        issued = rotating.generate_token_pair(ALICE)

        rotated = rotating.refresh_access_token(issued.refresh_token)
        assert rotated.refresh_token != issued.refresh_token

        with pytest.raises(AuthError) as excinfo:
            rotating.refresh_access_token(issued.refresh_token)
        assert _kind(excinfo) is AuthErrorKind.NOT_FOUND

        assert rotating.refresh_access_token(rotated.refresh_token).access_token
        assert len(refresh_store.list(REFRESH_PREFIX)) == 1


class TestCleanup:
    def test_sweeps_only_expired_records(
        self, tokens: TokenLifecycleManager, refresh_store: RefreshTokenStore, clock: FakeClock
    ) -> None:
        tokens.generate_token_pair(ALICE)
        tokens.generate_token_pair(BOB)
        clock.advance(604800)
        survivor = tokens.generate_token_pair(BOB)

        assert tokens.cleanup_expired() == 2
        assert len(refresh_store.list(REFRESH_PREFIX)) == 1
        assert tokens.refresh_access_token(survivor.refresh_token).access_token

    def test_store_failure_is_not_fatal(self, codec: TokenCodec) -> None:
        store = MagicMock()
        store.list.side_effect = AuthError(AuthErrorKind.STORE_UNAVAILABLE)
        assert TokenLifecycleManager(codec, store).cleanup_expired() == 0


class TestStoreOutage:
    def test_refresh_fails_closed(self, codec: TokenCodec) -> None:
        store = MagicMock()
        store.get.side_effect = AuthError(AuthErrorKind.STORE_UNAVAILABLE)
        manager = TokenLifecycleManager(codec, store)
        refresh = codec.sign_refresh({"userId": 1, "username": "alice", "email": "", "role": "user"}, 600)

        with pytest.raises(AuthError) as excinfo:
            manager.refresh_access_token(refresh)
        assert _kind(excinfo) is AuthErrorKind.STORE_UNAVAILABLE

    def test_issuance_fails_when_record_cannot_be_written(self, codec: TokenCodec) -> None:
        store = MagicMock()
        store.put.side_effect = AuthError(AuthErrorKind.STORE_UNAVAILABLE)
        with pytest.raises(AuthError) as excinfo:
            TokenLifecycleManager(codec, store).generate_token_pair(ALICE)
        assert _kind(excinfo) is AuthErrorKind.STORE_UNAVAILABLE


class _GatedStore(RefreshTokenStore):
    """RefreshTokenStore whose get() holds every caller until all have read."""

    def __init__(self, db_url: str, parties: int) -> None:
        super().__init__(db_url)
        self.barrier = threading.Barrier(parties, timeout=5)

    def get(self, key: str):
        record = super().get(key)
        self.barrier.wait()
        return record


class TestConcurrentRotation:
    def test_racing_redemptions_yield_one_successor(self, tmp_path) -> None:
        store = _GatedStore(f"sqlite:///{tmp_path / 'race.db'}", parties=2)
        clock = FakeClock()
        manager = TokenLifecycleManager(
            TokenCodec(SECRET, clock=clock), store, access_ttl=900, refresh_ttl=604800, rotate=True
        )
        leaked = manager.generate_token_pair(ALICE).refresh_token

        def redeem():
            try:
                return manager.refresh_access_token(leaked)
            except AuthError as exc:
                return exc.kind

        try:
            with ThreadPoolExecutor(max_workers=2) as pool:
                outcomes = list(pool.map(lambda _: redeem(), range(2)))

            winners = [o for o in outcomes if not isinstance(o, AuthErrorKind)]
            assert len(winners) == 1
            assert AuthErrorKind.NOT_FOUND in outcomes
            live = store.list(REFRESH_PREFIX)
            assert [r.token_key for r in live] == [REFRESH_PREFIX + manager.codec.fingerprint(winners[0].refresh_token)]
        finally:
            store.close()

    def test_lost_claim_mints_nothing(self, codec: TokenCodec, clock: FakeClock) -> None:
        refresh = codec.sign_refresh({"userId": 1, "username": "alice", "email": "", "role": "user"}, 600)
        store = MagicMock()
        store.get.return_value = RefreshTokenRecord(token_key="k", user_id="1", expires_at=clock.now + 600)
        store.delete.return_value = False

        with pytest.raises(AuthError) as excinfo:
            TokenLifecycleManager(codec, store, rotate=True).refresh_access_token(refresh)
        assert _kind(excinfo) is AuthErrorKind.NOT_FOUND
        store.put.assert_not_called()
