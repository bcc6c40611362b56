"""
API key service.

Security features:
- Keys are ``sk_`` followed by 32 random bytes as hex (256 bits)
- Only the SHA-256 hex digest is stored; the plaintext is returned once
- Revocation hard-deletes the row
"""
import hashlib
import logging
import secrets
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from schooladmin.core.errors import AuthorizationFailure, NotFoundFailure
from schooladmin.models.api_key import APIKey

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "sk_"
API_KEY_HEX_LENGTH = 64


def generate_api_key() -> str:
    return f"{API_KEY_PREFIX}{secrets.token_hex(32)}"


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def looks_like_api_key(value: Optional[str]) -> bool:
    """Cheap shape check, run before any storage lookup."""
    if not value or not value.startswith(API_KEY_PREFIX):
        return False
    body = value[len(API_KEY_PREFIX):]
    return len(body) == API_KEY_HEX_LENGTH and all(c in "0123456789abcdef" for c in body)


async def create_api_key(
    db: AsyncSession,
    *,
    name: str,
    user_id: Optional[int] = None,
    expires_at: Optional[datetime] = None,
    permissions: Optional[list[str]] = None,
) -> Tuple[APIKey, str]:
    """
    Create an API key.

    Returns:
        The persisted row and the plaintext key. The plaintext is not stored
        anywhere and cannot be recovered later.
    """
    plaintext = generate_api_key()
    api_key = APIKey(
        name=name,
        key_hash=hash_api_key(plaintext),
        user_id=user_id,
        expires_at=expires_at,
        permissions=permissions,
        is_active=True,
    )
    db.add(api_key)
    await db.commit()
    await db.refresh(api_key)
    logger.info(f"API key created: id={api_key.id} name={name} user_id={user_id}")
    return api_key, plaintext


async def get_api_key(db: AsyncSession, api_key_id: int) -> APIKey:
    api_key = await db.get(APIKey, api_key_id)
    if api_key is None:
        raise NotFoundFailure("API key")
    return api_key


async def list_api_keys(db: AsyncSession, user_id: Optional[int] = None) -> list[APIKey]:
    query = select(APIKey).order_by(APIKey.created_at.desc(), APIKey.id.desc())
    if user_id is not None:
        query = query.where(APIKey.user_id == user_id)
    result = await db.execute(query)
    return list(result.scalars().all())


async def revoke_api_key(db: AsyncSession, api_key_id: int, user_id: Optional[int] = None) -> None:
    """
    Delete an API key.

    Raises:
        NotFoundFailure: no key with this id
        AuthorizationFailure: ``user_id`` given and the key belongs to someone else
    """
    api_key = await db.get(APIKey, api_key_id)
    if api_key is None:
        raise NotFoundFailure("API key")
    if user_id is not None and api_key.user_id != user_id:
        raise AuthorizationFailure("You can only revoke your own API keys")
    await db.delete(api_key)
    await db.commit()
    logger.info(f"API key revoked: id={api_key_id}")
