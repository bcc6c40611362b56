"""
Tests for credential verification.

Covers:
- Credential extraction precedence (X-API-Key, Bearer sk_, JWT)
- JWT validation outcomes
- API key lookup outcomes and last-used tracking
- The create -> use -> revoke lifecycle over HTTP
"""
import json
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from schooladmin.core.database import utcnow
from schooladmin.core.errors import AuthorizationFailure, NotFoundFailure
from schooladmin.core.security import create_access_token
from schooladmin.models import APIKey, Soldier
from schooladmin.security.credentials import CredentialVerifier, extract_credential
from schooladmin.security.principals import APIKeyIdentity, AuthFailure, AuthFailureReason, AuthMethod, UserIdentity
from schooladmin.services.api_keys import (
    create_api_key,
    generate_api_key,
    hash_api_key,
    list_api_keys,
    looks_like_api_key,
    revoke_api_key,
)


class TestExtractCredential:
    def test_no_credential(self):
        assert extract_credential({}) is None
        assert extract_credential({"authorization": "Basic abc"}) is None
        assert extract_credential({"authorization": "Bearer "}) is None

    def test_x_api_key_wins_over_bearer(self):
        method, value = extract_credential({"x-api-key": "sk_abc", "authorization": "Bearer jwt.token.here"})
        assert method == AuthMethod.API_KEY
        assert value == "sk_abc"

    def test_bearer_with_api_key_prefix(self):
        assert extract_credential({"authorization": "Bearer sk_123"}) == (AuthMethod.API_KEY, "sk_123")

    def test_bearer_jwt(self):
        assert extract_credential({"authorization": "bearer a.b.c"}) == (AuthMethod.JWT, "a.b.c")


class TestApiKeyFormat:
    def test_generated_key_shape(self):
        key = generate_api_key()
        assert key.startswith("sk_")
        assert len(key) == 67
        assert looks_like_api_key(key)

    def test_hash_is_sha256_hex(self):
        digest = hash_api_key("sk_" + "0" * 64)
        assert len(digest) == 64
        assert digest == hash_api_key("sk_" + "0" * 64)

    def test_rejects_malformed(self):
        assert not looks_like_api_key(None)
        assert not looks_like_api_key("sk_short")
        assert not looks_like_api_key("pk_" + "a" * 64)
        assert not looks_like_api_key("sk_" + "Z" * 64)


@pytest.mark.asyncio
class TestCredentialVerifier:
    async def test_valid_jwt(self, storage, settings, test_user: Soldier):
        verifier = CredentialVerifier(storage, settings)
        token = create_access_token(test_user.id, email=test_user.email, settings=settings)

        result = verifier.authenticate_jwt(token)

        assert isinstance(result, UserIdentity)
        assert result.user_id == test_user.id
        assert result.email == test_user.email

    async def test_expired_jwt(self, storage, settings, test_user: Soldier):
        verifier = CredentialVerifier(storage, settings)
        token = create_access_token(test_user.id, expires_delta=timedelta(seconds=-30), settings=settings)

        result = verifier.authenticate_jwt(token)

        assert isinstance(result, AuthFailure)
        assert result.reason == AuthFailureReason.EXPIRED_TOKEN

    async def test_tampered_jwt(self, storage, settings, test_user: Soldier):
        verifier = CredentialVerifier(storage, settings)
        token = create_access_token(test_user.id, settings=settings)

        result = verifier.authenticate_jwt(token[:-4] + "abcd")

        assert isinstance(result, AuthFailure)
        assert result.reason == AuthFailureReason.INVALID_TOKEN

    async def test_malformed_api_key_skips_lookup(self, storage, settings):
        verifier = CredentialVerifier(storage, settings)
        result = await verifier.authenticate_api_key("sk_not-hex")
        assert result.reason == AuthFailureReason.MALFORMED

    async def test_unknown_api_key(self, storage, settings):
        verifier = CredentialVerifier(storage, settings)
        result = await verifier.authenticate_api_key(generate_api_key())
        assert result.reason == AuthFailureReason.NOT_FOUND

    async def test_valid_api_key_updates_last_used(
        self, storage, settings, db_session: AsyncSession, test_user: Soldier
    ):
        api_key, plaintext = await create_api_key(
            db_session, name="sync", user_id=test_user.id, permissions=["students:read"]
        )
        verifier = CredentialVerifier(storage, settings)

        result = await verifier.authenticate_api_key(plaintext)
        await verifier.drain()

        assert isinstance(result, APIKeyIdentity)
        assert result.api_key_id == api_key.id
        assert result.effective_user_id == test_user.id
        assert result.permissions == ["students:read"]
        await db_session.refresh(api_key)
        assert api_key.last_used_at is not None

    async def test_inactive_api_key(self, storage, settings, db_session: AsyncSession):
        api_key, plaintext = await create_api_key(db_session, name="old")
        api_key.is_active = False
        await db_session.commit()

        result = await CredentialVerifier(storage, settings).authenticate_api_key(plaintext)

        assert result.reason == AuthFailureReason.INACTIVE

    async def test_expired_api_key(self, storage, settings, db_session: AsyncSession):
        _, plaintext = await create_api_key(db_session, name="temp", expires_at=utcnow() - timedelta(days=1))

        verifier = CredentialVerifier(storage, settings)
        result = await verifier.authenticate_api_key(plaintext)

        assert result.reason == AuthFailureReason.EXPIRED
        assert await verifier.verify_api_key(plaintext) is False

    async def test_authenticate_routes_by_header(self, storage, settings, db_session: AsyncSession):
        _, plaintext = await create_api_key(db_session, name="ci")
        verifier = CredentialVerifier(storage, settings)

        assert await verifier.authenticate({}) is None
        result = await verifier.authenticate({"authorization": f"Bearer {plaintext}"})
        assert isinstance(result, APIKeyIdentity)
        assert result.user_id is None
        await verifier.drain()


@pytest.mark.asyncio
class TestApiKeyService:
    async def test_only_hash_is_stored(self, db_session: AsyncSession):
        api_key, plaintext = await create_api_key(db_session, name="hash-only")
        assert api_key.key_hash == hash_api_key(plaintext)
        assert plaintext not in (api_key.key_hash, api_key.name)

    async def test_revoke_deletes_row(self, db_session: AsyncSession, test_user: Soldier):
        api_key, _ = await create_api_key(db_session, name="gone", user_id=test_user.id)

        await revoke_api_key(db_session, api_key.id, user_id=test_user.id)

        assert await db_session.get(APIKey, api_key.id) is None

    async def test_revoke_other_users_key_is_forbidden(
        self, db_session: AsyncSession, test_user: Soldier, admin_user: Soldier
    ):
        api_key, _ = await create_api_key(db_session, name="admins", user_id=admin_user.id)
        with pytest.raises(AuthorizationFailure):
            await revoke_api_key(db_session, api_key.id, user_id=test_user.id)

    async def test_revoke_unknown_key(self, db_session: AsyncSession):
        with pytest.raises(NotFoundFailure):
            await revoke_api_key(db_session, 9999)


@pytest.mark.asyncio
class TestApiKeyLifecycle:
    async def test_create_use_revoke(self, async_client, admin_headers, admin_user, audit_logs):
        response = await async_client.post("/api/api-keys", json={"name": "integration"}, headers=admin_headers)
        assert response.status_code == 201
        body = response.json()
        plaintext = body["key"]
        assert plaintext.startswith("sk_")
        assert body["userId"] == admin_user.id
        assert "keyHash" not in body

        me = await async_client.get("/api/auth/me", headers={"X-API-Key": plaintext})
        assert me.status_code == 200
        assert me.json()["id"] == admin_user.id

        listed = await async_client.get("/api/api-keys", headers=admin_headers)
        assert [item["name"] for item in listed.json()] == ["integration"]
        assert all("key" not in item for item in listed.json())

        revoked = await async_client.delete(f"/api/api-keys/{body['id']}", headers=admin_headers)
        assert revoked.status_code == 200

        rejected = await async_client.get("/api/auth/me", headers={"X-API-Key": plaintext})
        assert rejected.status_code == 403
        assert rejected.json()["error"] == "Invalid API key"

        logs = await audit_logs()
        created = [log for log in logs if log.resource == "API_KEY" and log.action == "CREATE"]
        assert len(created) == 1
        assert created[0].status == "SUCCESS"
        assert created[0].is_pinned is True
        assert created[0].pinned_by is None

        failures = [log for log in logs if log.action == "AUTH_FAILED"]
        assert failures and failures[-1].details["reason"] == "NOT_FOUND"

        for log in logs:
            assert plaintext not in json.dumps(log.details or {})
            assert plaintext not in (log.error_message or "")

    async def test_regular_user_cannot_issue_keys_for_others(
        self, async_client, auth_headers, admin_user, test_user, db_session
    ):
        from schooladmin.permissions.service import grant_page_permission

        await grant_page_permission(db_session, page="api-keys", action="edit", user_id=test_user.id)

        response = await async_client.post(
            "/api/api-keys",
            json={"name": "sneaky", "userId": admin_user.id},
            headers=auth_headers,
        )
        assert response.status_code == 403

        own = await async_client.post("/api/api-keys", json={"name": "mine"}, headers=auth_headers)
        assert own.status_code == 201
        assert own.json()["userId"] == test_user.id

    async def test_list_all_requires_admin(self, async_client, auth_headers, admin_headers):
        assert (await async_client.get("/api/api-keys/all", headers=auth_headers)).status_code == 403
        assert (await async_client.get("/api/api-keys/all", headers=admin_headers)).status_code == 200

    async def test_api_key_cannot_mint_keys(self, async_client, db_session, admin_user, test_user, audit_logs):
        _, scoped = await create_api_key(
            db_session, name="minter", user_id=test_user.id, permissions=["api-keys:create"]
        )
        _, full = await create_api_key(db_session, name="admin-ops", user_id=admin_user.id)

        for plaintext in (scoped, full):
            response = await async_client.post(
                "/api/api-keys", json={"name": "escalated"}, headers={"X-API-Key": plaintext}
            )
            assert response.status_code == 403
            assert response.json()["error"] == "API keys cannot be used to create API keys"

        names = [key.name for key in await list_api_keys(db_session)]
        assert sorted(names) == ["admin-ops", "minter"]
