"""
Streams one provider's answer to one prompt and persists it exactly once.

The upstream call runs in a producer task that feeds a queue; the response body
drains that queue. Text goes out as soon as it arrives; the metadata trailer
(tokens, cost) is always the last thing written. If the client goes away before
the provider finished, the producer is cancelled (closing the upstream stream)
and the reservation is dropped. If the provider had already finished, the
producer keeps going so the finished answer is still saved.
"""
import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import Settings, get_settings
from app.repositories.chat_repository import ChatRepository
from app.schemas.chat import UsageMetadata
from app.services.ai_service import TextDelta, UpstreamClient, Usage, classify_error
from app.services.errors import GenerationInProgress, PersistenceError, UpstreamError
from app.services.pricing import calculate_cost, format_cost, format_latency
from app.services.providers import ProviderSpec
from app.services.redis_response_cache import CachedResponse
from app.services.response_guard import Cached, InFlight, ResponseGuard
from app.utils.trailer import format_trailer

logger = logging.getLogger(__name__)

# nginx's "client closed request"; used when nothing was sent before the client left
CLIENT_CLOSED_REQUEST = 499

# Producers outliving their request (still saving a finished answer) are kept here
_background_tasks: set[asyncio.Task] = set()


# ---------- Wire framing ----------


class TextFraming:
    """Raw text chunks, then `\\n\\n__METADATA__{json}__METADATA__`. Errors end the stream silently."""

    media_type = "text/plain; charset=utf-8"

    def chunk(self, text: str) -> str:
        return text

    def metadata(self, usage: UsageMetadata) -> str:
        payload = usage.model_dump_json(by_alias=True, exclude_none=True)
        return format_trailer(payload)

    def error(self, code: str, message: str, status: int | None = None) -> str:
        return ""


class NdjsonFraming:
    """One JSON object per line: {"type": "chunk" | "metadata" | "error", ...}."""

    media_type = "application/x-ndjson"

    def chunk(self, text: str) -> str:
        return json.dumps({"type": "chunk", "text": text}) + "\n"

    def metadata(self, usage: UsageMetadata) -> str:
        payload = usage.model_dump(by_alias=True, exclude_none=True)
        return json.dumps({"type": "metadata", **payload}) + "\n"

    def error(self, code: str, message: str, status: int | None = None) -> str:
        frame = {"type": "error", "code": code, "message": message}
        if status is not None:
            frame["status"] = status
        return json.dumps(frame) + "\n"


FRAMINGS = {"text": TextFraming(), "ndjson": NdjsonFraming()}


def _usage_from_cached(cached: CachedResponse) -> UsageMetadata:
    return UsageMetadata(
        prompt_tokens=cached.prompt_tokens,
        completion_tokens=cached.completion_tokens,
        total_tokens=cached.total_tokens,
        cost=cached.cost,
    )


async def _replay(cached: CachedResponse, framing) -> AsyncIterator[str]:
    if cached.content:
        yield framing.chunk(cached.content)
    yield framing.metadata(_usage_from_cached(cached))


# ---------- Orchestrator ----------


class StreamOrchestrator:
    def __init__(
        self,
        upstream: UpstreamClient,
        guard: ResponseGuard,
        session_factory: Callable[[], Session],
        repository: ChatRepository | None = None,
        settings: Settings | None = None,
    ):
        self._upstream = upstream
        self._guard = guard
        self._session_factory = session_factory
        self._repo = repository or ChatRepository()
        self._settings = settings or get_settings()

    async def open(
        self,
        *,
        prompt_id: str,
        prompt: str,
        spec: ProviderSpec,
        framing=None,
    ) -> AsyncIterator[str]:
        """
        Resolve the guard and, if generation is needed, wait for the provider's first
        event. Failures before any text was produced raise here (UpstreamError,
        GenerationInProgress) so the caller can still answer with an error status.
        Returns the framed body iterator.
        """
        framing = framing or FRAMINGS["text"]
        decision = await self._guard.check_or_reserve(prompt_id, spec)
        if isinstance(decision, InFlight):
            decision = await self._wait_for_inflight(prompt_id, spec)
        if isinstance(decision, Cached):
            logger.info("Serving stored response (prompt=%s provider=%s)", prompt_id, spec.id)
            return _replay(decision.response, framing)

        run = _GenerationRun(self, decision.reservation_id, prompt_id, prompt, spec, framing)
        await run.start()
        return run.relay()

    async def _wait_for_inflight(self, prompt_id: str, spec: ProviderSpec):
        """Poll a pair another request is generating until it settles or the wait runs out."""
        loop = asyncio.get_event_loop()
        deadline = loop.time() + self._settings.inflight_wait_seconds
        logger.info("Response in flight elsewhere, waiting (prompt=%s provider=%s)", prompt_id, spec.id)
        while loop.time() < deadline:
            await asyncio.sleep(self._settings.inflight_poll_seconds)
            decision = await self._guard.check_or_reserve(prompt_id, spec)
            if not isinstance(decision, InFlight):
                return decision
        raise GenerationInProgress(prompt_id, spec.id)

    # ---- persistence (sync, run in executor with a fresh session) ----

    def _complete_sync(self, reservation_id: str, **fields) -> bool:
        db = self._session_factory()
        try:
            return self._repo.complete_response(db, reservation_id, **fields)
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(str(e)) from e
        finally:
            db.close()

    def _fail_sync(self, reservation_id: str, error: str, latency: int) -> bool:
        db = self._session_factory()
        try:
            return self._repo.fail_response(db, reservation_id, error=error, latency=latency)
        finally:
            db.close()


class _GenerationRun:
    """State for one live generation: producer task, relay queue, connection flags."""

    def __init__(
        self,
        orchestrator: StreamOrchestrator,
        reservation_id: str,
        prompt_id: str,
        prompt: str,
        spec: ProviderSpec,
        framing,
    ):
        self._o = orchestrator
        self._reservation_id = reservation_id
        self._prompt_id = prompt_id
        self._prompt = prompt
        self._spec = spec
        self._framing = framing
        self._queue: asyncio.Queue = asyncio.Queue()
        self._producer: asyncio.Task | None = None
        self._first = None
        self.upstream_finished = False
        self.client_gone = False

    async def start(self) -> None:
        self._producer = asyncio.create_task(self._produce())
        _background_tasks.add(self._producer)
        self._producer.add_done_callback(_background_tasks.discard)
        try:
            first = await self._queue.get()
        except asyncio.CancelledError:
            self.client_gone = True
            self._producer.cancel()
            raise
        if first is not None and first[0] == "error":
            raise first[1]
        self._first = first

    async def _produce(self) -> None:
        started = time.perf_counter()
        parts: list[str] = []
        usage: Usage | None = None
        try:
            async for event in self._o._upstream.stream_text(self._spec, self._prompt):
                if isinstance(event, TextDelta):
                    parts.append(event.text)
                    self._queue.put_nowait(("chunk", event.text))
                elif isinstance(event, Usage):
                    usage = event
        except asyncio.CancelledError:
            logger.debug(
                "Generation cancelled, client disconnected (prompt=%s provider=%s)",
                self._prompt_id, self._spec.id,
            )
            try:
                await self._o._guard.release(self._reservation_id)
            except Exception as e:
                logger.warning("Could not release reservation %s: %s", self._reservation_id, e)
            raise
        except Exception as e:
            exc = classify_error(e, self._spec.id)
            latency = int((time.perf_counter() - started) * 1000)
            logger.warning(
                "Upstream failure (prompt=%s provider=%s status=%s): %s",
                self._prompt_id, self._spec.id, exc.status_code, exc.message,
            )
            # A disconnect must not leave the reservation pending: the write outlives this task
            record = asyncio.ensure_future(self._record_error(exc, latency))
            _background_tasks.add(record)
            record.add_done_callback(_background_tasks.discard)
            await asyncio.shield(record)
            self._queue.put_nowait(("error", exc))
            self._queue.put_nowait(None)
            return

        self.upstream_finished = True
        self._queue.put_nowait(("finished", None))
        latency = int((time.perf_counter() - started) * 1000)
        metadata = await self._persist_success("".join(parts), usage, latency)
        self._queue.put_nowait(("metadata", metadata))
        self._queue.put_nowait(None)

    async def _record_error(self, exc: UpstreamError, latency: int) -> None:
        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(None, self._o._fail_sync, self._reservation_id, exc.message, latency)
        except Exception as e:
            # The reservation stays pending and is reclaimed once it goes stale
            logger.warning("Could not record error response %s: %s", self._reservation_id, e)

    async def _persist_success(self, text: str, usage: Usage | None, latency: int) -> UsageMetadata:
        prompt_tokens = usage.input_tokens if usage else 0
        completion_tokens = usage.output_tokens if usage else 0
        cost = calculate_cost(self._spec.pricing_key, prompt_tokens, completion_tokens)
        metadata = UsageMetadata(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            cost=cost,
        )

        loop = asyncio.get_event_loop()
        attempts = max(1, self._o._settings.persist_attempts)
        for attempt in range(1, attempts + 1):
            try:
                saved = await loop.run_in_executor(
                    None,
                    lambda: self._o._complete_sync(
                        self._reservation_id,
                        content=text,
                        latency=latency,
                        prompt_tokens=prompt_tokens,
                        completion_tokens=completion_tokens,
                        cost=cost,
                    ),
                )
            except PersistenceError as e:
                if self.client_gone:
                    logger.warning(
                        "Response not saved after client disconnected (prompt=%s provider=%s): %s",
                        self._prompt_id, self._spec.id, e,
                    )
                    metadata.saved = False
                    return metadata
                logger.warning("Saving response failed (attempt %d/%d): %s", attempt, attempts, e)
                continue
            if not saved:
                logger.warning(
                    "Reservation %s vanished before the response was saved (prompt=%s provider=%s)",
                    self._reservation_id, self._prompt_id, self._spec.id,
                )
                metadata.saved = False
                return metadata
            logger.info(
                "Response saved (prompt=%s provider=%s latency=%s tokens=%d cost=%s)",
                self._prompt_id, self._spec.id, format_latency(latency), metadata.total_tokens, format_cost(cost),
            )
            await self._o._guard.remember(
                self._prompt_id,
                self._spec.id,
                CachedResponse(
                    content=text,
                    prompt_tokens=prompt_tokens,
                    completion_tokens=completion_tokens,
                    total_tokens=metadata.total_tokens,
                    cost=cost,
                ),
            )
            return metadata

        logger.error(
            "Response streamed but not saved (prompt=%s provider=%s)", self._prompt_id, self._spec.id
        )
        metadata.saved = False
        return metadata

    async def relay(self) -> AsyncIterator[str]:
        framing = self._framing
        wait_s = self._o._settings.metadata_wait_seconds
        completed = False
        item = self._first
        try:
            while item is not None:
                kind, payload = item
                if kind == "chunk":
                    yield framing.chunk(payload)
                elif kind == "error":
                    framed = framing.error("upstream_failure", payload.message, payload.status_code)
                    if framed:
                        yield framed
                elif kind == "metadata":
                    if payload.saved is False:
                        framed = framing.error("persistence_failure", "Response could not be saved.")
                        if framed:
                            yield framed
                    yield framing.metadata(payload)
                elif kind == "finished":
                    # Trailer is best-effort: do not hold the connection open for a slow write
                    try:
                        item = await asyncio.wait_for(self._queue.get(), timeout=wait_s)
                    except asyncio.TimeoutError:
                        logger.info(
                            "Metadata not ready after %.1fs; closing without trailer (prompt=%s provider=%s)",
                            wait_s, self._prompt_id, self._spec.id,
                        )
                        break
                    continue
                item = await self._queue.get()
            completed = True
        finally:
            if not completed:
                self.client_gone = True
                if not self.upstream_finished and self._producer and not self._producer.done():
                    self._producer.cancel()
