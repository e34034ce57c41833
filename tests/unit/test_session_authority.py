"""Unit tests for SessionAuthority.

Covers access token issue/verify, refresh rotation (including concurrent
replay), revocation and the request authorization gate, against the
in-memory identity store from conftest.
"""

import asyncio
import base64
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock
from uuid import uuid4

import jwt
import pytest

from evofit_auth.config import get_settings
from evofit_auth.models.session import AuthErrorKind
from evofit_auth.models.user import Role
from evofit_auth.services.identity_store import hash_refresh_token
from evofit_auth.services.session_authority import (
    JWT_ALGORITHM,
    SessionAuthority,
    hash_password,
    verify_password,
)

TEST_SECRET = get_settings().jwt_secret


def _clock_at(moment: datetime):
    return lambda: moment


def _hours_ago(hours: int) -> datetime:
    return datetime.now(timezone.utc) - timedelta(hours=hours)


# ---------------------------------------------------------------------------
# Construction and passwords
# ---------------------------------------------------------------------------

class TestConstruction:
    """Tests for SessionAuthority setup."""

    def test_rejects_empty_signing_secret(self, store):
        with pytest.raises(ValueError):
            SessionAuthority(store, "")

    def test_from_settings_uses_configured_lifetimes(self, store):
        from evofit_auth.config import Settings

        settings = Settings(
            jwt_secret=TEST_SECRET,
            access_token_expire_minutes=5,
            refresh_token_expire_days=7,
        )
        authority = SessionAuthority.from_settings(store, settings)

        assert authority.access_token_ttl == timedelta(minutes=5)
        assert authority.refresh_token_ttl == timedelta(days=7)


class TestPasswordHashing:
    """Tests for bcrypt helpers."""

    def test_hash_is_not_plaintext_and_verifies(self):
        hashed = hash_password("Secret!123")

        assert hashed != "Secret!123"
        assert hashed.startswith("$2")
        assert verify_password("Secret!123", hashed) is True

    def test_wrong_password_fails(self):
        hashed = hash_password("Secret!123")
        assert verify_password("Secret!124", hashed) is False


# ---------------------------------------------------------------------------
# Access credentials
# ---------------------------------------------------------------------------

class TestAccessTokens:
    """Tests for create_access_token / verify_access_token."""

    def test_round_trip_returns_claims(self, authority):
        user_id = uuid4()
        token, expires_at = authority.create_access_token(user_id, Role.TRAINER)

        result = authority.verify_access_token(token)

        assert result.ok
        assert result.claims.user_id == user_id
        assert result.claims.role == Role.TRAINER
        assert result.claims.expires_at == expires_at
        assert result.claims.expires_at - result.claims.issued_at == timedelta(minutes=15)

    def test_payload_carries_subject_role_and_type(self, authority):
        user_id = uuid4()
        token, _ = authority.create_access_token(user_id, Role.CUSTOMER)

        payload = jwt.decode(token, TEST_SECRET, algorithms=[JWT_ALGORITHM])

        assert payload["sub"] == str(user_id)
        assert payload["role"] == "customer"
        assert payload["type"] == "access"

    def test_expired_token_reports_expired(self, store):
        past = SessionAuthority(store, TEST_SECRET, clock=_clock_at(_hours_ago(1)))
        token, _ = past.create_access_token(uuid4(), Role.CUSTOMER)

        result = SessionAuthority(store, TEST_SECRET).verify_access_token(token)

        assert result.error == AuthErrorKind.EXPIRED_TOKEN
        assert result.claims is None

    def test_wrong_secret_reports_invalid(self, authority, store):
        other = SessionAuthority(store, "a-completely-different-secret-value-xyz")
        token, _ = other.create_access_token(uuid4(), Role.ADMIN)

        assert authority.verify_access_token(token).error == AuthErrorKind.INVALID_TOKEN

    def test_tampered_token_reports_invalid(self, authority):
        user_id = uuid4()
        token, _ = authority.create_access_token(user_id, Role.CUSTOMER)
        header, _, signature = token.split(".")
        now = int(datetime.now(timezone.utc).timestamp())
        forged_claims = json.dumps(
            {"sub": str(user_id), "role": "admin", "type": "access",
             "iat": now, "exp": now + 900}
        ).encode()
        forged = base64.urlsafe_b64encode(forged_claims).rstrip(b"=").decode()

        result = authority.verify_access_token(f"{header}.{forged}.{signature}")

        assert result.error == AuthErrorKind.INVALID_TOKEN

    def test_garbage_reports_invalid(self, authority):
        assert authority.verify_access_token("not-a-jwt").error == AuthErrorKind.INVALID_TOKEN

    def test_token_of_other_type_is_invalid(self, authority):
        now = datetime.now(timezone.utc)
        token = jwt.encode(
            {"sub": str(uuid4()), "role": "admin", "type": "oauth_state",
             "iat": now, "exp": now + timedelta(minutes=5)},
            TEST_SECRET,
            algorithm=JWT_ALGORITHM,
        )

        assert authority.verify_access_token(token).error == AuthErrorKind.INVALID_TOKEN

    def test_unknown_role_is_invalid(self, authority):
        now = datetime.now(timezone.utc)
        token = jwt.encode(
            {"sub": str(uuid4()), "role": "superuser", "type": "access",
             "iat": now, "exp": now + timedelta(minutes=5)},
            TEST_SECRET,
            algorithm=JWT_ALGORITHM,
        )

        assert authority.verify_access_token(token).error == AuthErrorKind.INVALID_TOKEN


# ---------------------------------------------------------------------------
# Issuance
# ---------------------------------------------------------------------------

class TestIssue:
    """Tests for SessionAuthority.issue."""

    async def test_writes_exactly_one_refresh_credential(self, authority, store):
        user = store.add_user("alice@example.com")

        tokens = await authority.issue(user)

        assert len(store.tokens_for(user.id)) == 1
        assert tokens.access_token != tokens.refresh_token
        assert authority.verify_access_token(tokens.access_token).claims.user_id == user.id

    async def test_stores_digest_not_raw_token(self, authority, store):
        user = store.add_user("alice@example.com")

        tokens = await authority.issue(user)

        assert tokens.refresh_token not in store.refresh
        assert hash_refresh_token(tokens.refresh_token) in store.refresh

    async def test_default_lifetimes(self, store):
        now = datetime.now(timezone.utc).replace(microsecond=0)
        authority = SessionAuthority(store, TEST_SECRET, clock=_clock_at(now))
        user = store.add_user("alice@example.com")

        tokens = await authority.issue(user)

        assert tokens.access_expires_at == now + timedelta(minutes=15)
        assert tokens.refresh_expires_at == now + timedelta(days=30)

    async def test_each_issue_is_a_separate_session(self, authority, store):
        user = store.add_user("alice@example.com")

        first = await authority.issue(user)
        second = await authority.issue(user)

        assert first.refresh_token != second.refresh_token
        assert len(store.tokens_for(user.id)) == 2

    async def test_store_failure_propagates(self, authority, store):
        user = store.add_user("alice@example.com")
        store.insert_refresh_credential = AsyncMock(side_effect=RuntimeError("db down"))

        with pytest.raises(RuntimeError):
            await authority.issue(user)


# ---------------------------------------------------------------------------
# Rotation
# ---------------------------------------------------------------------------

class TestRotate:
    """Tests for SessionAuthority.rotate."""

    async def test_rotation_replaces_the_credential(self, authority, store):
        user = store.add_user("alice@example.com", role=Role.TRAINER)
        original = await authority.issue(user)

        result = await authority.rotate(original.refresh_token)

        assert result.ok
        assert result.user.id == user.id
        assert result.tokens.refresh_token != original.refresh_token
        assert await store.find_refresh_credential(original.refresh_token) is None
        assert await store.find_refresh_credential(result.tokens.refresh_token) is not None
        assert len(store.tokens_for(user.id)) == 1

    async def test_second_rotation_of_same_token_is_invalid(self, authority, store):
        user = store.add_user("alice@example.com")
        original = await authority.issue(user)

        first = await authority.rotate(original.refresh_token)
        second = await authority.rotate(original.refresh_token)

        assert first.ok
        assert second.error == AuthErrorKind.INVALID_TOKEN

    async def test_concurrent_rotation_has_exactly_one_winner(self, authority, store):
        user = store.add_user("alice@example.com")
        original = await authority.issue(user)

        results = await asyncio.gather(
            authority.rotate(original.refresh_token),
            authority.rotate(original.refresh_token),
        )

        winners = [r for r in results if r.ok]
        losers = [r for r in results if not r.ok]
        assert len(winners) == 1
        assert len(losers) == 1
        assert losers[0].error == AuthErrorKind.INVALID_TOKEN
        assert len(store.tokens_for(user.id)) == 1

    async def test_unknown_token_is_invalid(self, authority):
        result = await authority.rotate("never-issued")

        assert result.error == AuthErrorKind.INVALID_TOKEN
        assert result.tokens is None

    async def test_expired_credential_is_deleted(self, store):
        user = store.add_user("alice@example.com")
        past = SessionAuthority(
            store, TEST_SECRET,
            refresh_token_ttl=timedelta(hours=1),
            clock=_clock_at(_hours_ago(2)),
        )
        stale = await past.issue(user)

        result = await SessionAuthority(store, TEST_SECRET).rotate(stale.refresh_token)

        assert result.error == AuthErrorKind.EXPIRED_TOKEN
        assert store.tokens_for(user.id) == []

    async def test_deleted_user_is_reported(self, authority, store):
        user = store.add_user("alice@example.com")
        tokens = await authority.issue(user)
        del store.users[user.id]

        result = await authority.rotate(tokens.refresh_token)

        assert result.error == AuthErrorKind.USER_NOT_FOUND

    async def test_rotation_picks_up_current_role(self, authority, store):
        user = store.add_user("alice@example.com", role=Role.CUSTOMER)
        tokens = await authority.issue(user)
        store.users[user.id] = user.model_copy(update={"role": Role.TRAINER})

        result = await authority.rotate(tokens.refresh_token)

        claims = authority.verify_access_token(result.tokens.access_token).claims
        assert claims.role == Role.TRAINER


# ---------------------------------------------------------------------------
# Revocation
# ---------------------------------------------------------------------------

class TestRevoke:
    """Tests for revoke / revoke_all."""

    async def test_revoked_token_cannot_rotate(self, authority, store):
        user = store.add_user("alice@example.com")
        tokens = await authority.issue(user)

        assert await authority.revoke(tokens.refresh_token) is True
        result = await authority.rotate(tokens.refresh_token)

        assert result.error == AuthErrorKind.INVALID_TOKEN

    async def test_revoke_unknown_token_is_false(self, authority):
        assert await authority.revoke("never-issued") is False

    async def test_revoke_all_ends_every_session(self, authority, store):
        user = store.add_user("alice@example.com")
        other = store.add_user("bob@example.com")
        await authority.issue(user)
        await authority.issue(user)
        kept = await authority.issue(other)

        assert await authority.revoke_all(user.id) == 2
        assert store.tokens_for(user.id) == []
        assert (await authority.rotate(kept.refresh_token)).ok


# ---------------------------------------------------------------------------
# Authorization gate
# ---------------------------------------------------------------------------

class TestAuthenticate:
    """Tests for SessionAuthority.authenticate."""

    async def test_valid_access_token_does_not_rotate(self, authority, store):
        user = store.add_user("alice@example.com")
        tokens = await authority.issue(user)

        outcome = await authority.authenticate(tokens.access_token, tokens.refresh_token)

        assert outcome.ok
        assert outcome.user.id == user.id
        assert outcome.rotated is None
        assert await store.find_refresh_credential(tokens.refresh_token) is not None

    async def test_missing_access_token_rotates_silently(self, authority, store):
        user = store.add_user("alice@example.com")
        tokens = await authority.issue(user)

        outcome = await authority.authenticate(None, tokens.refresh_token)

        assert outcome.ok
        assert outcome.user.id == user.id
        assert outcome.rotated is not None
        assert await store.find_refresh_credential(tokens.refresh_token) is None

    async def test_expired_access_token_rotates_silently(self, store):
        user = store.add_user("alice@example.com")
        past = SessionAuthority(store, TEST_SECRET, clock=_clock_at(_hours_ago(1)))
        stale_access, _ = past.create_access_token(user.id, user.role)
        current = SessionAuthority(store, TEST_SECRET)
        tokens = await current.issue(user)

        outcome = await current.authenticate(stale_access, tokens.refresh_token)

        assert outcome.ok
        assert outcome.rotated is not None

    async def test_invalid_access_token_is_not_rescued_by_refresh(self, authority, store):
        user = store.add_user("alice@example.com")
        tokens = await authority.issue(user)

        outcome = await authority.authenticate("forged.token.value", tokens.refresh_token)

        assert outcome.error == AuthErrorKind.UNAUTHORIZED
        assert await store.find_refresh_credential(tokens.refresh_token) is not None

    async def test_no_credentials_is_unauthorized(self, authority):
        outcome = await authority.authenticate(None, None)

        assert outcome.error == AuthErrorKind.UNAUTHORIZED
        assert outcome.user is None

    async def test_failed_rotation_is_unauthorized(self, authority):
        outcome = await authority.authenticate(None, "never-issued")

        assert outcome.error == AuthErrorKind.UNAUTHORIZED

    async def test_deleted_user_with_valid_token_is_unauthorized(self, authority, store):
        user = store.add_user("alice@example.com")
        token, _ = authority.create_access_token(user.id, user.role)
        del store.users[user.id]

        outcome = await authority.authenticate(token, None)

        assert outcome.error == AuthErrorKind.UNAUTHORIZED

    async def test_permitted_role_passes(self, authority, store):
        admin = store.add_user("root@example.com", role=Role.ADMIN)
        token, _ = authority.create_access_token(admin.id, admin.role)

        outcome = await authority.authenticate(token, None, permitted_roles=[Role.ADMIN])

        assert outcome.ok

    async def test_wrong_role_is_forbidden_not_unauthorized(self, authority, store):
        user = store.add_user("alice@example.com", role=Role.CUSTOMER)
        token, _ = authority.create_access_token(user.id, user.role)

        outcome = await authority.authenticate(token, None, permitted_roles=[Role.ADMIN])

        assert outcome.error == AuthErrorKind.FORBIDDEN
        assert outcome.user.id == user.id

    async def test_forbidden_after_rotation_keeps_new_pair(self, authority, store):
        user = store.add_user("alice@example.com", role=Role.TRAINER)
        tokens = await authority.issue(user)

        outcome = await authority.authenticate(
            None, tokens.refresh_token, permitted_roles=[Role.ADMIN]
        )

        assert outcome.error == AuthErrorKind.FORBIDDEN
        assert outcome.rotated is not None
        assert await store.find_refresh_credential(outcome.rotated.refresh_token) is not None

    async def test_role_gate_uses_token_claims(self, authority, store):
        user = store.add_user("alice@example.com", role=Role.ADMIN)
        token, _ = authority.create_access_token(user.id, Role.ADMIN)
        store.users[user.id] = user.model_copy(update={"role": Role.CUSTOMER})

        outcome = await authority.authenticate(token, None, permitted_roles=[Role.ADMIN])

        assert outcome.ok

    async def test_empty_roles_means_any_role(self, authority, store):
        user = store.add_user("alice@example.com", role=Role.CUSTOMER)
        token, _ = authority.create_access_token(user.id, user.role)

        outcome = await authority.authenticate(token, None, permitted_roles=[])

        assert outcome.ok
