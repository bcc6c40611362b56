"""
IP block registry.

Check order, each short-circuiting to "not blocked":
1. the user is an admin
2. the user or the IP is on the trust registry
3. no active, unexpired block row exists for the IP

Storage faults fail open and are reported to the security log; engine
crashes also trigger a storage handle rebuild.
"""
import logging
from datetime import datetime
from typing import Optional, Protocol

from sqlalchemy import or_, select

from schooladmin.core.database import StorageHandleProvider, is_transient_storage_fault, utcnow
from schooladmin.core.errors import NotFoundFailure
from schooladmin.models.security import BlockedIP
from schooladmin.security.trust import TrustRegistry
from schooladmin.services.logging import security_logger

logger = logging.getLogger(__name__)


class AdminLookup(Protocol):
    async def is_admin(self, user_id: int) -> bool: ...


class IPBlockRegistry:
    def __init__(self, storage: StorageHandleProvider, trust: TrustRegistry, admins: AdminLookup):
        self.storage = storage
        self.trust = trust
        self.admins = admins

    async def _recover(self, error: BaseException) -> None:
        if is_transient_storage_fault(error):
            await self.storage.recreate()

    async def is_ip_blocked(self, ip_address: Optional[str], user_id: Optional[int] = None) -> bool:
        if not ip_address:
            return False

        if user_id is not None:
            try:
                if await self.admins.is_admin(user_id):
                    return False
            except Exception as e:
                await self._recover(e)
                security_logger.storage_fault("ip_block_registry", "admin_check", e, user_id=user_id)

        if await self.trust.is_trusted_user(user_id=user_id, ip_address=ip_address):
            return False

        now = utcnow()
        try:
            async with self.storage.session() as db:
                result = await db.execute(
                    select(BlockedIP.id)
                    .where(BlockedIP.ip_address == ip_address)
                    .where(BlockedIP.is_active.is_(True))
                    .where(or_(BlockedIP.expires_at.is_(None), BlockedIP.expires_at > now))
                    .limit(1)
                )
                return result.first() is not None
        except Exception as e:
            await self._recover(e)
            security_logger.storage_fault("ip_block_registry", "is_ip_blocked", e, ip_address=ip_address)
            return False

    async def block_ip(
        self,
        ip_address: str,
        *,
        reason: Optional[str] = None,
        blocked_by: Optional[int] = None,
        expires_at: Optional[datetime] = None,
    ) -> BlockedIP:
        """Block an IP, reactivating and updating an existing row if there is one."""
        async with self.storage.session() as db:
            result = await db.execute(select(BlockedIP).where(BlockedIP.ip_address == ip_address))
            blocked = result.scalar_one_or_none()
            if blocked is None:
                blocked = BlockedIP(ip_address=ip_address)
                db.add(blocked)
            blocked.reason = reason
            blocked.blocked_by = blocked_by
            blocked.expires_at = expires_at
            blocked.is_active = True
            await db.commit()
            await db.refresh(blocked)
        logger.warning(f"IP blocked: {ip_address} by user {blocked_by}")
        return blocked

    async def unblock_ip(self, ip_address: str) -> BlockedIP:
        async with self.storage.session() as db:
            result = await db.execute(select(BlockedIP).where(BlockedIP.ip_address == ip_address))
            blocked = result.scalar_one_or_none()
            if blocked is None:
                raise NotFoundFailure("Blocked IP")
            blocked.is_active = False
            await db.commit()
            await db.refresh(blocked)
        logger.info(f"IP unblocked: {ip_address}")
        return blocked

    async def list_blocked_ips(self, active_only: bool = True) -> list[BlockedIP]:
        query = select(BlockedIP).order_by(BlockedIP.created_at.desc(), BlockedIP.id.desc())
        if active_only:
            query = query.where(BlockedIP.is_active.is_(True))
        async with self.storage.session() as db:
            result = await db.execute(query)
            return list(result.scalars().all())
