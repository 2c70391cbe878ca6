"""Redis client factory.

Redis holds everything ephemeral: claim locks, IP rate-limit windows, the retry
queue and wallet-pool checkouts. Nothing here is the source of truth for claims.
"""

import redis.asyncio as redis


def create_redis_client(redis_url: str) -> redis.Redis:
    """Create an asyncio Redis client with string responses.

    Args:
        redis_url: Connection URL (redis://host:port/db)

    Returns:
        Redis client backed by a connection pool
    """
    return redis.from_url(
        redis_url,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_keepalive=True,
        retry_on_timeout=True,
    )
