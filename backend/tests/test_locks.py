"""Tests for fenced Redis locks and the wallet pool built on them."""

import pytest
import pytest_asyncio

from conftest import TEST_PRIVATE_KEY
from qrclaim.services.exceptions import WalletPoolExhaustedError
from qrclaim.services.locks import LockManager, address_lock_key, username_lock_key
from qrclaim.services.wallet_pool import WalletPool, wallet_lock_key


@pytest_asyncio.fixture
async def locks(redis_client):
    return LockManager(redis_client)


@pytest.mark.asyncio
class TestLockManager:
    async def test_second_acquire_fails_while_held(self, locks):
        key = address_lock_key("0xABC", 7)

        first = await locks.acquire(key, ttl=30)
        second = await locks.acquire(key, ttl=30)

        assert first is not None
        assert second is None

    async def test_release_frees_the_key(self, locks):
        key = address_lock_key("0xabc", 7)
        handle = await locks.acquire(key, ttl=30)

        assert await locks.release(handle) is True
        assert await locks.acquire(key, ttl=30) is not None

    async def test_release_never_deletes_another_owners_lock(self, locks, redis_client):
        """A holder whose lock expired must not delete the next holder's lock."""
        key = address_lock_key("0xabc", 7)
        stale = await locks.acquire(key, ttl=30)

        # Simulate expiry followed by a new acquisition
        await redis_client.delete(key)
        fresh = await locks.acquire(key, ttl=30)

        assert await locks.release(stale) is False
        assert await locks.is_held(fresh) is True

    async def test_lock_expires_after_ttl(self, locks, redis_client):
        key = address_lock_key("0xabc", 8)
        await locks.acquire(key, ttl=30)

        ttl = await redis_client.ttl(key)

        assert 0 < ttl <= 30

    async def test_extend_renews_owned_lock(self, locks, redis_client):
        key = address_lock_key("0xabc", 9)
        handle = await locks.acquire(key, ttl=5)

        assert await locks.extend(handle, ttl=300) is True
        assert 5 < await redis_client.ttl(key) <= 300

    async def test_extend_refuses_another_owners_lock(self, locks, redis_client):
        key = address_lock_key("0xabc", 9)
        stale = await locks.acquire(key, ttl=30)
        await redis_client.delete(key)
        fresh = await locks.acquire(key, ttl=30)

        assert await locks.extend(stale, ttl=300) is False
        assert await redis_client.ttl(key) <= 30
        assert await locks.is_held(fresh) is True

    async def test_extend_after_expiry_does_not_recreate(self, locks, redis_client):
        key = address_lock_key("0xabc", 10)
        handle = await locks.acquire(key, ttl=30)
        await redis_client.delete(key)

        assert await locks.extend(handle) is False
        assert not await redis_client.exists(key)

    async def test_release_all_skips_missing_handles(self, locks):
        a = await locks.acquire("claim-lock:a:1", ttl=30)
        b = await locks.acquire("claim-lock:b:1", ttl=30)

        await locks.release_all([a, None, b])

        assert await locks.acquire("claim-lock:a:1", ttl=30) is not None
        assert await locks.acquire("claim-lock:b:1", ttl=30) is not None

    async def test_username_keys_ignore_case_and_at_sign(self):
        assert username_lock_key("@Alice", 3) == username_lock_key("alice", 3)


@pytest.mark.asyncio
class TestWalletPool:
    async def test_checks_out_distinct_wallets(self, settings, locks):
        pool = WalletPool(settings, locks)

        first = await pool.acquire("link-web")
        second = await pool.acquire("link-web")

        assert first.wallet.address != second.wallet.address
        assert first.wallet.airdrop_contract == settings.airdrop_contract_web

    async def test_exhausted_pool_raises(self, settings, locks):
        pool = WalletPool(settings, locks)
        await pool.acquire("link-web")
        await pool.acquire("link-web")

        with pytest.raises(WalletPoolExhaustedError):
            await pool.acquire("link-mobile")

    async def test_released_wallet_is_reused(self, settings, locks, redis_client):
        pool = WalletPool(settings, locks)
        lease = await pool.acquire("link-miniapp")

        await pool.release_wallet(lease)

        assert await redis_client.get(wallet_lock_key(lease.wallet.address)) is None
        again = await pool.acquire("link-miniapp")
        assert again.wallet.address == lease.wallet.address

    async def test_direct_mode_skips_checkout(self, settings, locks, redis_client):
        direct = settings.model_copy(
            update={"use_direct_wallet": True, "direct_wallet_private_key": TEST_PRIVATE_KEY}
        )
        pool = WalletPool(direct, locks)

        lease = await pool.acquire("link-web")

        assert lease.lock is None
        assert lease.wallet.address == "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
        assert await redis_client.keys("wallet-pool-lock:*") == []
