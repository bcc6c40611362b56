"""
Tests for the trust registry and the IP block registry.

Covers:
- Trust matching by user, IP and email, expiry and caching
- Block, unblock and expiry of IP blocks
- Admin and trust exemptions
- Fail-open behavior when storage is unavailable
"""
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from schooladmin.core.database import utcnow
from schooladmin.core.errors import NotFoundFailure, ValidationFailure
from schooladmin.security.ip_blocking import IPBlockRegistry
from schooladmin.security.trust import TrustRegistry


class BrokenStorage:
    """Storage provider whose sessions always fail with ``error``."""

    def __init__(self, error: Exception):
        self.error = error
        self.generation = 0
        self.recreate = AsyncMock()

    def session(self):
        raise self.error


def admin_lookup(is_admin: bool = False, error: Exception = None) -> MagicMock:
    lookup = MagicMock()
    lookup.is_admin = AsyncMock(return_value=is_admin, side_effect=error)
    return lookup


@pytest.mark.asyncio
class TestTrustRegistry:
    async def test_no_identifiers_is_not_trusted(self, storage):
        trust = TrustRegistry(storage)
        assert await trust.is_trusted_user() is False

    async def test_match_by_ip_user_or_email(self, storage):
        trust = TrustRegistry(storage)
        await trust.add_trusted_user(ip_address="10.0.0.5", reason="office")
        await trust.add_trusted_user(user_id=42)
        await trust.add_trusted_user(email="ops@school.example")

        assert await trust.is_trusted_user(ip_address="10.0.0.5")
        assert await trust.is_trusted_user(user_id=42, ip_address="192.0.2.1")
        assert await trust.is_trusted_user(email="ops@school.example")
        assert not await trust.is_trusted_user(user_id=7, ip_address="192.0.2.1")

    async def test_expired_entry_is_ignored(self, storage):
        trust = TrustRegistry(storage)
        await trust.add_trusted_user(ip_address="10.0.0.6", expires_at=utcnow() - timedelta(minutes=1))

        assert not await trust.is_trusted_user(ip_address="10.0.0.6")

    async def test_add_requires_an_identifier(self, storage):
        with pytest.raises(ValidationFailure):
            await TrustRegistry(storage).add_trusted_user(reason="nothing to match")

    async def test_changes_clear_the_cache(self, storage):
        trust = TrustRegistry(storage)
        assert not await trust.is_trusted_user(ip_address="10.0.0.7")

        entry = await trust.add_trusted_user(ip_address="10.0.0.7")
        assert await trust.is_trusted_user(ip_address="10.0.0.7")

        await trust.remove_trusted_user(entry.id)
        assert not await trust.is_trusted_user(ip_address="10.0.0.7")
        assert await trust.list_trusted_users() == []
        assert len(await trust.list_trusted_users(active_only=False)) == 1

    async def test_cached_answer_is_reused(self, storage):
        trust = TrustRegistry(storage)
        await trust.add_trusted_user(ip_address="10.0.0.8")
        assert await trust.is_trusted_user(ip_address="10.0.0.8")

        trust.storage = BrokenStorage(RuntimeError("storage should not be touched"))
        assert await trust.is_trusted_user(ip_address="10.0.0.8")

    async def test_remove_unknown_entry(self, storage):
        with pytest.raises(NotFoundFailure):
            await TrustRegistry(storage).remove_trusted_user(424242)

    async def test_storage_fault_fails_open(self):
        broken = BrokenStorage(RuntimeError("connection refused"))
        trust = TrustRegistry(broken, retry_delay=0)

        with patch("schooladmin.security.trust.security_logger") as mock_logger:
            assert await trust.is_trusted_user(user_id=1) is False

        mock_logger.storage_fault.assert_called_once()
        broken.recreate.assert_not_awaited()

    async def test_transient_fault_rebuilds_storage(self):
        fault = OperationalError("SELECT 1", {}, Exception("server closed the connection"))
        broken = BrokenStorage(fault)
        trust = TrustRegistry(broken, max_retries=3, retry_delay=0)

        with patch("schooladmin.security.trust.security_logger") as mock_logger:
            assert await trust.is_trusted_user(ip_address="10.0.0.9") is False

        assert broken.recreate.await_count == 2
        mock_logger.storage_fault.assert_called_once()


@pytest.mark.asyncio
class TestIPBlockRegistry:
    async def test_block_and_unblock(self, storage):
        registry = IPBlockRegistry(storage, TrustRegistry(storage), admin_lookup())

        first = await registry.block_ip("203.0.113.5", reason="scanner", blocked_by=1)
        assert await registry.is_ip_blocked("203.0.113.5")
        assert not await registry.is_ip_blocked("203.0.113.6")

        unblocked = await registry.unblock_ip("203.0.113.5")
        assert unblocked.is_active is False
        assert not await registry.is_ip_blocked("203.0.113.5")

        again = await registry.block_ip("203.0.113.5", reason="again")
        assert again.id == first.id
        assert again.reason == "again"
        assert await registry.is_ip_blocked("203.0.113.5")

    async def test_missing_ip_is_never_blocked(self, storage):
        registry = IPBlockRegistry(storage, TrustRegistry(storage), admin_lookup())
        assert not await registry.is_ip_blocked(None)
        assert not await registry.is_ip_blocked("")

    async def test_expired_block(self, storage):
        registry = IPBlockRegistry(storage, TrustRegistry(storage), admin_lookup())
        await registry.block_ip("203.0.113.7", expires_at=utcnow() - timedelta(seconds=1))

        assert not await registry.is_ip_blocked("203.0.113.7")

    async def test_admin_is_exempt(self, storage):
        lookup = admin_lookup(is_admin=True)
        registry = IPBlockRegistry(storage, TrustRegistry(storage), lookup)
        await registry.block_ip("203.0.113.8")

        assert not await registry.is_ip_blocked("203.0.113.8", user_id=1)
        assert await registry.is_ip_blocked("203.0.113.8")
        lookup.is_admin.assert_awaited_once_with(1)

    async def test_trusted_ip_is_exempt(self, storage):
        trust = TrustRegistry(storage)
        registry = IPBlockRegistry(storage, trust, admin_lookup())
        await registry.block_ip("203.0.113.9")
        await trust.add_trusted_user(ip_address="203.0.113.9")

        assert not await registry.is_ip_blocked("203.0.113.9", user_id=5)

    async def test_failed_admin_lookup_still_checks_block(self, storage):
        registry = IPBlockRegistry(storage, TrustRegistry(storage), admin_lookup(error=RuntimeError("boom")))
        await registry.block_ip("203.0.113.10")

        with patch("schooladmin.security.ip_blocking.security_logger") as mock_logger:
            assert await registry.is_ip_blocked("203.0.113.10", user_id=3)

        mock_logger.storage_fault.assert_called_once()

    async def test_storage_fault_fails_open(self):
        broken = BrokenStorage(RuntimeError("connection refused"))
        registry = IPBlockRegistry(broken, TrustRegistry(broken, retry_delay=0), admin_lookup())

        with patch("schooladmin.security.ip_blocking.security_logger") as mock_logger, patch(
            "schooladmin.security.trust.security_logger"
        ):
            assert await registry.is_ip_blocked("203.0.113.11") is False

        mock_logger.storage_fault.assert_called_once()

    async def test_unblock_unknown_ip(self, storage):
        registry = IPBlockRegistry(storage, TrustRegistry(storage), admin_lookup())
        with pytest.raises(NotFoundFailure):
            await registry.unblock_ip("198.51.100.1")

    async def test_list_blocked_ips(self, storage):
        registry = IPBlockRegistry(storage, TrustRegistry(storage), admin_lookup())
        await registry.block_ip("198.51.100.2")
        await registry.block_ip("198.51.100.3")
        await registry.unblock_ip("198.51.100.2")

        active = await registry.list_blocked_ips()
        assert [b.ip_address for b in active] == ["198.51.100.3"]
        assert len(await registry.list_blocked_ips(active_only=False)) == 2
