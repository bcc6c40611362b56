"""
Trust registry.

Allow-list of users, IP addresses and emails that are exempt from IP blocks
and get elevated rate limits. Lookups are cached for five minutes to absorb
bulk operations, and fail open: a lookup that cannot reach storage answers
"not trusted", which only withholds the elevated-trust bonus.
"""
import asyncio
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import or_, select, update

from schooladmin.core.cache import TTLCache
from schooladmin.core.database import StorageHandleProvider, is_transient_storage_fault, utcnow
from schooladmin.core.errors import NotFoundFailure, ValidationFailure
from schooladmin.models.security import TrustedUser
from schooladmin.services.logging import security_logger

logger = logging.getLogger(__name__)

TRUST_CACHE_TTL_SECONDS = 5 * 60


def _cache_key(user_id: Optional[int], ip_address: Optional[str], email: Optional[str]) -> str:
    return f"trusted:{user_id or ''}:{ip_address or ''}:{email or ''}"


class TrustRegistry:
    def __init__(
        self,
        storage: StorageHandleProvider,
        *,
        cache: Optional[TTLCache[bool]] = None,
        max_retries: int = 3,
        retry_delay: float = 0.1,
    ):
        self.storage = storage
        self.cache = cache or TTLCache(TRUST_CACHE_TTL_SECONDS)
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    async def is_trusted_user(
        self,
        user_id: Optional[int] = None,
        ip_address: Optional[str] = None,
        email: Optional[str] = None,
    ) -> bool:
        conditions = []
        if user_id is not None:
            conditions.append(TrustedUser.user_id == user_id)
        if ip_address:
            conditions.append(TrustedUser.ip_address == ip_address)
        if email:
            conditions.append(TrustedUser.email == email)
        if not conditions:
            return False

        key = _cache_key(user_id, ip_address, email)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        now = utcnow()
        query = (
            select(TrustedUser.id)
            .where(TrustedUser.is_active.is_(True))
            .where(or_(*conditions))
            .where(or_(TrustedUser.expires_at.is_(None), TrustedUser.expires_at > now))
            .limit(1)
        )

        for attempt in range(1, self.max_retries + 1):
            generation = self.storage.generation
            try:
                async with self.storage.session() as db:
                    result = await db.execute(query)
                    trusted = result.first() is not None
                self.cache.set(key, trusted)
                return trusted
            except Exception as e:
                if is_transient_storage_fault(e) and attempt < self.max_retries:
                    await self.storage.recreate(generation)
                    await asyncio.sleep(self.retry_delay * attempt)
                    continue
                security_logger.storage_fault(
                    "trust_registry",
                    "is_trusted_user",
                    e,
                    user_id=user_id,
                    ip_address=ip_address,
                )
                return False
        return False

    async def add_trusted_user(
        self,
        *,
        user_id: Optional[int] = None,
        ip_address: Optional[str] = None,
        email: Optional[str] = None,
        reason: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        created_by: Optional[int] = None,
    ) -> TrustedUser:
        if user_id is None and not ip_address and not email:
            raise ValidationFailure("At least one of userId, ipAddress or email is required")

        entry = TrustedUser(
            user_id=user_id,
            ip_address=ip_address,
            email=email,
            reason=reason,
            expires_at=expires_at,
            created_by=created_by,
            is_active=True,
        )
        async with self.storage.session() as db:
            db.add(entry)
            await db.commit()
            await db.refresh(entry)
        self.cache.clear()
        logger.info(f"Trusted entry added: id={entry.id} user_id={user_id} ip={ip_address}")
        return entry

    async def remove_trusted_user(self, trusted_id: int) -> None:
        async with self.storage.session() as db:
            result = await db.execute(
                update(TrustedUser).where(TrustedUser.id == trusted_id).values(is_active=False)
            )
            if result.rowcount == 0:
                raise NotFoundFailure("Trusted user")
            await db.commit()
        self.cache.clear()
        logger.info(f"Trusted entry deactivated: id={trusted_id}")

    async def list_trusted_users(self, active_only: bool = True) -> list[TrustedUser]:
        query = select(TrustedUser).order_by(TrustedUser.created_at.desc(), TrustedUser.id.desc())
        if active_only:
            query = query.where(TrustedUser.is_active.is_(True))
        async with self.storage.session() as db:
            result = await db.execute(query)
            return list(result.scalars().all())
