"""
Credential verification for JWT bearer tokens and API keys.

The plaintext of a presented credential never leaves this module: log lines
and failures carry only the failure reason and, at most, the key id.
"""
import asyncio
import logging
from typing import Mapping, Optional, Union

from jose import ExpiredSignatureError, JWTError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from schooladmin.core.config import Settings
from schooladmin.core.database import StorageHandleProvider, utcnow
from schooladmin.core.retry import retry_storage_operation
from schooladmin.core.security import decode_token
from schooladmin.models.api_key import APIKey
from schooladmin.security.principals import (
    APIKeyIdentity,
    AuthFailure,
    AuthFailureReason,
    AuthMethod,
    Principal,
    UserIdentity,
)
from schooladmin.services.api_keys import API_KEY_PREFIX, hash_api_key, looks_like_api_key

logger = logging.getLogger(__name__)

AuthResult = Union[Principal, AuthFailure]


def extract_credential(headers: Mapping[str, str]) -> Optional[tuple[AuthMethod, str]]:
    """
    Pick the credential presented by a request.

    ``X-API-Key`` wins, then ``Authorization: Bearer sk_...`` as an API key,
    then any other bearer token as a JWT.
    """
    api_key = headers.get("x-api-key")
    if api_key:
        return AuthMethod.API_KEY, api_key.strip()

    auth_header = headers.get("authorization", "")
    if auth_header[:7].lower() == "bearer ":
        token = auth_header[7:].strip()
        if not token:
            return None
        if token.startswith(API_KEY_PREFIX):
            return AuthMethod.API_KEY, token
        return AuthMethod.JWT, token
    return None


class CredentialVerifier:
    def __init__(self, storage: StorageHandleProvider, settings: Settings):
        self.storage = storage
        self.settings = settings
        self._background: set[asyncio.Task] = set()

    def authenticate_jwt(self, token: str) -> AuthResult:
        try:
            payload = decode_token(token, self.settings)
        except ExpiredSignatureError:
            return AuthFailure(AuthFailureReason.EXPIRED_TOKEN, AuthMethod.JWT, "Token expired")
        except JWTError:
            return AuthFailure(AuthFailureReason.INVALID_TOKEN, AuthMethod.JWT, "Invalid token")

        raw_user_id = payload.get("userId", payload.get("sub"))
        try:
            user_id = int(raw_user_id)
        except (TypeError, ValueError):
            return AuthFailure(AuthFailureReason.INVALID_TOKEN, AuthMethod.JWT, "Invalid token")
        return UserIdentity(
            user_id=user_id,
            email=payload.get("email"),
            personal_number=payload.get("personalNumber"),
        )

    async def authenticate_api_key(self, api_key: str) -> AuthResult:
        if not looks_like_api_key(api_key):
            return AuthFailure(AuthFailureReason.MALFORMED, AuthMethod.API_KEY, "Invalid API key")

        key_hash = hash_api_key(api_key)

        async def lookup(db: AsyncSession) -> Optional[APIKey]:
            result = await db.execute(select(APIKey).where(APIKey.key_hash == key_hash))
            return result.scalar_one_or_none()

        record = await retry_storage_operation(self.storage, lookup)
        if record is None:
            return AuthFailure(AuthFailureReason.NOT_FOUND, AuthMethod.API_KEY, "Invalid API key")
        if not record.is_active:
            return AuthFailure(AuthFailureReason.INACTIVE, AuthMethod.API_KEY, "API key is inactive")
        if record.is_expired():
            return AuthFailure(AuthFailureReason.EXPIRED, AuthMethod.API_KEY, "API key has expired")

        self._schedule_last_used_update(record.id)
        return APIKeyIdentity(
            api_key_id=record.id,
            name=record.name,
            user_id=record.user_id,
            permissions=record.permissions,
            expires_at=record.expires_at,
            is_active=record.is_active,
        )

    async def authenticate(self, headers: Mapping[str, str]) -> Optional[AuthResult]:
        """Authenticate whatever credential the headers carry; None if there is none."""
        credential = extract_credential(headers)
        if credential is None:
            return None
        method, value = credential
        if method == AuthMethod.API_KEY:
            return await self.authenticate_api_key(value)
        return self.authenticate_jwt(value)

    async def verify_api_key(self, api_key: str) -> bool:
        return isinstance(await self.authenticate_api_key(api_key), APIKeyIdentity)

    def _schedule_last_used_update(self, api_key_id: int) -> None:
        task = asyncio.create_task(self._update_last_used(api_key_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _update_last_used(self, api_key_id: int) -> None:
        try:
            async with self.storage.session() as db:
                await db.execute(
                    update(APIKey).where(APIKey.id == api_key_id).values(last_used_at=utcnow())
                )
                await db.commit()
        except Exception as e:
            # Never fails the request that used the key
            logger.warning(f"Failed to update last_used_at for API key {api_key_id}: {e.__class__.__name__}")

    async def drain(self) -> None:
        """Wait for pending last-used updates."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
