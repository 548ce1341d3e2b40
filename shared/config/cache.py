from redis.asyncio import Redis


def create_redis_client(url: str) -> Redis:
    """Build the redis client used for idempotency records.

    Connections are opened lazily; the owner must ``await client.aclose()``.
    """
    return Redis.from_url(url, decode_responses=True, socket_timeout=2.0, socket_connect_timeout=2.0)
