"""
Redis cache for finished responses. Cache-Aside: Redis is a read-through copy only.
Only success records are cached; they never change, so entries expire by TTL and are
evicted only when their chat is deleted (prompt ids are client-chosen and may come back).
All Redis errors are handled internally; never raise to caller.
Key: response:{prompt_id}:{provider} -> JSON {content, promptTokens, completionTokens, totalTokens, cost}.
"""
import json
import logging
from dataclasses import dataclass
from typing import Any

from app.config import get_settings

logger = logging.getLogger(__name__)

RESPONSE_KEY_PREFIX = "response:"


@dataclass(frozen=True)
class CachedResponse:
    content: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0


def _key(prompt_id: str, provider: str) -> str:
    return f"{RESPONSE_KEY_PREFIX}{prompt_id}:{provider}"


def _serialize(cached: CachedResponse) -> str:
    return json.dumps(
        {
            "content": cached.content,
            "promptTokens": cached.prompt_tokens,
            "completionTokens": cached.completion_tokens,
            "totalTokens": cached.total_tokens,
            "cost": cached.cost,
        }
    )


def _deserialize(s: str) -> CachedResponse | None:
    try:
        data = json.loads(s)
        if isinstance(data, dict) and "content" in data:
            return CachedResponse(
                content=data["content"] or "",
                prompt_tokens=int(data.get("promptTokens") or 0),
                completion_tokens=int(data.get("completionTokens") or 0),
                total_tokens=int(data.get("totalTokens") or 0),
                cost=float(data.get("cost") or 0.0),
            )
    except (json.JSONDecodeError, TypeError, ValueError):
        pass
    return None


class RedisResponseCache:
    """Async Redis cache for success responses. Methods log and degrade to a miss/no-op on failure."""

    def __init__(self, redis_client: Any, ttl_seconds: int | None = None):
        self._redis = redis_client
        self._ttl = ttl_seconds or get_settings().response_cache_ttl_seconds

    async def get(self, prompt_id: str, provider: str) -> CachedResponse | None:
        if not self._redis:
            return None
        try:
            raw = await self._redis.get(_key(prompt_id, provider))
            if not raw:
                return None
            s = raw.decode() if isinstance(raw, bytes) else raw
            return _deserialize(s)
        except Exception as e:
            logger.warning("Redis response cache get failed for %s/%s: %s", prompt_id, provider, e, exc_info=False)
            return None

    async def put(self, prompt_id: str, provider: str, cached: CachedResponse) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(_key(prompt_id, provider), _serialize(cached), ex=self._ttl)
        except Exception as e:
            logger.warning("Redis response cache put failed for %s/%s: %s", prompt_id, provider, e, exc_info=False)

    async def forget(self, prompt_ids: list[str], providers: list[str]) -> None:
        if not self._redis or not prompt_ids:
            return
        keys = [_key(prompt_id, provider) for prompt_id in prompt_ids for provider in providers]
        try:
            await self._redis.delete(*keys)
        except Exception as e:
            logger.warning("Redis response cache evict failed for %d prompts: %s", len(prompt_ids), e, exc_info=False)
