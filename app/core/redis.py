"""
Optional async Redis behind the response cache. An empty REDIS_URL or a failed
connect leaves the app on the database alone; nothing is loaded at startup.
"""
import logging
from typing import Any

from app.config import get_settings
from app.services.redis_response_cache import RedisResponseCache

logger = logging.getLogger(__name__)

_redis_client: Any = None


def _display_url(url: str) -> str:
    # never log credentials
    return url.rsplit("@", 1)[-1]


async def get_redis_client() -> Any:
    """Connected client (created on first use) or None when Redis is off or unreachable."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client
    url = (get_settings().redis_url or "").strip()
    if not url:
        return None
    from redis.asyncio import Redis
    from redis.exceptions import RedisError

    client = Redis.from_url(url, decode_responses=True)
    try:
        await client.ping()
    except (RedisError, OSError) as e:
        logger.warning("Redis at %s unavailable, serving responses from the database only: %s", _display_url(url), e)
        await client.aclose()
        return None
    _redis_client = client
    logger.info("Response cache connected to Redis at %s", _display_url(url))
    return _redis_client


async def get_response_cache() -> RedisResponseCache | None:
    """FastAPI dependency: the response cache, or None to skip caching for this request."""
    client = await get_redis_client()
    return RedisResponseCache(client) if client is not None else None


async def redis_status() -> str:
    """"ok", "unavailable" (disabled or never connected) or "error" (connected but not answering)."""
    client = await get_redis_client()
    if client is None:
        return "unavailable"
    try:
        await client.ping()
    except Exception as e:
        logger.warning("Redis health ping failed: %s", e)
        return "error"
    return "ok"


async def close_redis() -> None:
    global _redis_client
    if _redis_client is None:
        return
    try:
        await _redis_client.aclose()
    except Exception as e:
        logger.warning("Redis close error: %s", e)
    finally:
        _redis_client = None
