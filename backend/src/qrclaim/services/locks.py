"""Distributed lock manager backed by Redis.

Locks are ``SET key token NX EX ttl`` entries. The token is unique per
acquisition, and release is a compare-and-delete script so a holder whose lock
expired can never delete a lock that someone else has since acquired.
"""

import time
import uuid
from dataclasses import dataclass

import redis.asyncio as redis
import structlog

logger = structlog.get_logger()

DEFAULT_LOCK_TTL_SECONDS = 300

BATCH_PROCESSOR_LOCK_KEY = "claim-batch-processor:running"

# KEYS[1] = lock key, ARGV[1] = ownership token
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

# KEYS[1] = lock key, ARGV[1] = ownership token, ARGV[2] = new ttl in seconds
_EXTEND_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("expire", KEYS[1], ARGV[2])
else
    return 0
end
"""


def address_lock_key(address: str, auction_id: int) -> str:
    return f"claim-lock:{address.lower()}:{auction_id}"


def fid_lock_key(fid: int, auction_id: int) -> str:
    return f"claim-fid-lock:{fid}:{auction_id}"


def username_lock_key(username: str, auction_id: int) -> str:
    return f"claim-username-lock:{username.lower().lstrip('@')}:{auction_id}"


@dataclass(frozen=True)
class LockHandle:
    """Proof of ownership for one acquired lock."""

    key: str
    token: str
    acquired_at: float


class LockManager:
    """Acquire and release fenced locks.

    Example:
        handle = await locks.acquire(address_lock_key(address, auction_id))
        if handle is None:
            ...  # someone else is claiming
        try:
            ...
        finally:
            await locks.release(handle)
    """

    def __init__(self, redis_client: redis.Redis, default_ttl: int = DEFAULT_LOCK_TTL_SECONDS):
        self.redis = redis_client
        self.default_ttl = default_ttl

    async def acquire(self, key: str, ttl: int | None = None) -> LockHandle | None:
        """Atomically take the lock if nobody holds it.

        Args:
            key: Lock key
            ttl: Expiry in seconds; the lock is reclaimed automatically afterwards

        Returns:
            LockHandle on success, None if another holder owns the key
        """
        ttl = ttl or self.default_ttl
        acquired_at = time.time()
        token = f"{int(acquired_at * 1000)}:{uuid.uuid4().hex}"

        acquired = await self.redis.set(key, token, nx=True, ex=ttl)
        if not acquired:
            logger.info("lock.busy", key=key)
            return None

        logger.debug("lock.acquired", key=key, ttl=ttl)
        return LockHandle(key=key, token=token, acquired_at=acquired_at)

    async def release(self, handle: LockHandle | None) -> bool:
        """Delete the lock only if it still carries this handle's token.

        Returns:
            True if the lock was deleted, False if it expired or changed owner
        """
        if handle is None:
            return False

        deleted = await self.redis.eval(_RELEASE_SCRIPT, 1, handle.key, handle.token)  # type: ignore[misc]
        if not deleted:
            logger.warning("lock.release_skipped", key=handle.key, reason="not_owner_or_expired")
            return False

        logger.debug(
            "lock.released",
            key=handle.key,
            held_ms=int((time.time() - handle.acquired_at) * 1000),
        )
        return True

    async def extend(self, handle: LockHandle, ttl: int | None = None) -> bool:
        """Reset the expiry of a lock this handle still owns.

        Returns:
            True if the lease was renewed, False if the lock expired or changed owner
        """
        ttl = ttl or self.default_ttl
        renewed = await self.redis.eval(_EXTEND_SCRIPT, 1, handle.key, handle.token, ttl)  # type: ignore[misc]
        if not renewed:
            logger.warning("lock.extend_failed", key=handle.key, reason="not_owner_or_expired")
            return False

        logger.debug("lock.extended", key=handle.key, ttl=ttl)
        return True

    async def is_held(self, handle: LockHandle) -> bool:
        """Check whether the lock still belongs to this handle."""
        return await self.redis.get(handle.key) == handle.token

    async def release_all(self, handles: list[LockHandle | None]) -> None:
        """Release handles in reverse acquisition order, skipping ones no longer held."""
        for handle in reversed(handles):
            if handle is not None and await self.is_held(handle):
                await self.release(handle)
