"""Fixed-window IP rate limiter backed by Redis."""

import redis.asyncio as redis
import structlog

logger = structlog.get_logger()


class IPRateLimiter:
    """Count requests per IP in fixed windows.

    The first hit in a window creates the counter and sets its expiry; the
    window ends when the key expires.
    """

    def __init__(self, redis_client: redis.Redis, prefix: str, window_seconds: int = 60):
        self.redis = redis_client
        self.prefix = prefix
        self.window_seconds = window_seconds

    def _key(self, client_ip: str) -> str:
        return f"{self.prefix}:{client_ip}"

    async def hit(self, client_ip: str, limit: int) -> bool:
        """Record one request and report whether it is within the limit.

        Args:
            client_ip: Caller IP address
            limit: Maximum requests per window

        Returns:
            True if the request is allowed, False if the window is exhausted
        """
        key = self._key(client_ip)
        count = await self.redis.incr(key)
        if count == 1:
            await self.redis.expire(key, self.window_seconds)

        if count > limit:
            logger.warning(
                "rate_limit.exceeded",
                prefix=self.prefix,
                client_ip=client_ip,
                count=count,
                limit=limit,
            )
            return False
        return True

    async def reset(self, client_ip: str) -> None:
        await self.redis.delete(self._key(client_ip))
