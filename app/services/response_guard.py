"""
Idempotency gate for one (prompt, provider) pair.

A success row is served as-is, an error row is cleared so the pair can be retried,
and otherwise the caller must win a reservation (INSERT of a pending row under the
unique constraint) before contacting the provider. Losing the insert means another
request is generating; the row is re-read instead of trusting the earlier lookup.
"""
import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from app.config import get_settings
from app.models.response import Response, ResponseStatus
from app.repositories.chat_repository import ChatRepository
from app.services.errors import GenerationInProgress
from app.services.providers import ProviderSpec
from app.services.redis_response_cache import CachedResponse, RedisResponseCache

logger = logging.getLogger(__name__)

# Lookup/insert rounds before giving up on a pair whose row keeps changing underneath us
MAX_RESERVE_ROUNDS = 4


@dataclass(frozen=True)
class Cached:
    response: CachedResponse


@dataclass(frozen=True)
class Proceed:
    reservation_id: str


@dataclass(frozen=True)
class InFlight:
    reservation_id: str


GuardDecision = Cached | Proceed | InFlight


def _cached_from_row(row: Response) -> CachedResponse:
    prompt_tokens = row.prompt_tokens or 0
    completion_tokens = row.completion_tokens or 0
    return CachedResponse(
        content=row.content or "",
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=row.total_tokens or prompt_tokens + completion_tokens,
        cost=row.cost or 0.0,
    )


class ResponseGuard:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        repository: ChatRepository | None = None,
        cache: RedisResponseCache | None = None,
        reservation_ttl_seconds: int | None = None,
    ):
        self._session_factory = session_factory
        self._repo = repository or ChatRepository()
        self._cache = cache
        ttl = reservation_ttl_seconds or get_settings().reservation_ttl_seconds
        self._reservation_ttl = timedelta(seconds=ttl)

    async def check_or_reserve(self, prompt_id: str, spec: ProviderSpec) -> GuardDecision:
        if self._cache:
            hit = await self._cache.get(prompt_id, spec.id)
            if hit is not None:
                return Cached(hit)
        loop = asyncio.get_event_loop()
        decision = await loop.run_in_executor(None, self._check_or_reserve_sync, prompt_id, spec)
        if isinstance(decision, Cached) and self._cache:
            await self._cache.put(prompt_id, spec.id, decision.response)
        return decision

    def _check_or_reserve_sync(self, prompt_id: str, spec: ProviderSpec) -> GuardDecision:
        db = self._session_factory()
        try:
            for _ in range(MAX_RESERVE_ROUNDS):
                existing = self._repo.get_response(db, prompt_id, spec.id)
                if existing is None:
                    reserved = self._repo.insert_reservation(db, prompt_id, spec.id, spec.display_name)
                    if reserved is not None:
                        return Proceed(reserved.id)
                    continue
                if existing.status == ResponseStatus.SUCCESS.value:
                    return Cached(_cached_from_row(existing))
                if existing.status == ResponseStatus.ERROR.value:
                    logger.info("Clearing error response %s (prompt=%s provider=%s) for retry", existing.id, prompt_id, spec.id)
                    self._repo.delete_response(db, existing.id, status=ResponseStatus.ERROR.value)
                    continue
                if self._is_abandoned(existing):
                    logger.warning(
                        "Reclaiming abandoned reservation %s (prompt=%s provider=%s, since %s)",
                        existing.id, prompt_id, spec.id, existing.updated_at,
                    )
                    self._repo.delete_response(db, existing.id, status=ResponseStatus.PENDING.value)
                    continue
                return InFlight(existing.id)
            raise GenerationInProgress(prompt_id, spec.id)
        finally:
            db.close()

    def _is_abandoned(self, row: Response) -> bool:
        started = row.updated_at or row.created_at
        return started is not None and started < datetime.utcnow() - self._reservation_ttl

    async def release(self, reservation_id: str) -> None:
        """Drop a pending reservation (generation abandoned). Terminal rows are left alone."""
        loop = asyncio.get_event_loop()

        def _do():
            db = self._session_factory()
            try:
                return self._repo.delete_response(db, reservation_id, status=ResponseStatus.PENDING.value)
            finally:
                db.close()

        await loop.run_in_executor(None, _do)

    async def remember(self, prompt_id: str, provider: str, cached: CachedResponse) -> None:
        """Warm the cache after a success record was written."""
        if self._cache:
            await self._cache.put(prompt_id, provider, cached)
