"""Streaming one provider's answer: ordering, trailer, persistence, cancellation."""
import asyncio
import json
import time

import pytest
from sqlalchemy.exc import OperationalError

from conftest import HANG, FakeUpstream
from app.config import Settings
from app.database import SessionLocal
from app.models.response import ResponseStatus
from app.repositories.chat_repository import ChatRepository
from app.services.ai_service import Usage
from app.services.ai_stream_service import FRAMINGS, StreamOrchestrator, _background_tasks
from app.services.errors import GenerationInProgress, UpstreamError
from app.services.providers import CATALOG
from app.services.response_guard import ResponseGuard
from app.utils.trailer import split_metadata

OPENAI = CATALOG["openai"]


class FailingRepository(ChatRepository):
    def __init__(self):
        self.complete_calls = 0

    def complete_response(self, db, response_id, **fields):
        self.complete_calls += 1
        raise OperationalError("UPDATE responses", {}, Exception("disk I/O error"))


class SlowRepository(ChatRepository):
    def __init__(self, delay: float):
        self.delay = delay

    def complete_response(self, db, response_id, **fields):
        time.sleep(self.delay)
        return super().complete_response(db, response_id, **fields)


class SlowFailRepository(ChatRepository):
    def __init__(self, delay: float):
        self.delay = delay

    def fail_response(self, db, response_id, **fields):
        time.sleep(self.delay)
        return super().fail_response(db, response_id, **fields)


def _orchestrator(upstream, repository=None, **overrides):
    settings = Settings(**{"metadata_wait_seconds": 2.0, "persist_attempts": 2, **overrides})
    repository = repository or ChatRepository()
    guard = ResponseGuard(SessionLocal, repository, reservation_ttl_seconds=300)
    return StreamOrchestrator(upstream, guard, SessionLocal, repository, settings)


async def _collect(stream) -> list[str]:
    return [frame async for frame in stream]


async def _drain_background():
    if _background_tasks:
        await asyncio.gather(*list(_background_tasks), return_exceptions=True)


def _row(prompt_id, provider="openai"):
    db = SessionLocal()
    try:
        return ChatRepository.get_response(db, prompt_id, provider)
    finally:
        db.close()


@pytest.mark.asyncio
async def test_chunks_in_order_then_trailer(chat_with_prompt):
    _, prompt_id = chat_with_prompt
    upstream = FakeUpstream(default=["2", " + 2", " = 4", Usage(10, 20)])
    stream = await _orchestrator(upstream).open(prompt_id=prompt_id, prompt="What is 2+2?", spec=OPENAI)
    frames = await _collect(stream)

    assert frames[:3] == ["2", " + 2", " = 4"]
    text, meta = split_metadata("".join(frames))
    assert text == "2 + 2 = 4"
    assert meta == {"promptTokens": 10, "completionTokens": 20, "totalTokens": 30, "cost": 0.000225}

    row = _row(prompt_id)
    assert row.status == ResponseStatus.SUCCESS.value
    assert row.content == "2 + 2 = 4"
    assert row.total_tokens == 30
    assert row.cost == pytest.approx(0.000225)
    assert row.latency >= 0


@pytest.mark.asyncio
async def test_missing_usage_counts_zero(chat_with_prompt):
    _, prompt_id = chat_with_prompt
    upstream = FakeUpstream(default=["ok"])
    stream = await _orchestrator(upstream).open(prompt_id=prompt_id, prompt="hi", spec=OPENAI)
    _, meta = split_metadata("".join(await _collect(stream)))
    assert meta["totalTokens"] == 0
    assert meta["cost"] == 0.0


@pytest.mark.asyncio
async def test_stored_answer_replayed_without_upstream(chat_with_prompt):
    _, prompt_id = chat_with_prompt
    upstream = FakeUpstream()
    orchestrator = _orchestrator(upstream)
    first = "".join(await _collect(await orchestrator.open(prompt_id=prompt_id, prompt="p", spec=OPENAI)))
    second = "".join(await _collect(await orchestrator.open(prompt_id=prompt_id, prompt="p", spec=OPENAI)))
    assert upstream.calls_for("openai") == 1
    assert split_metadata(first) == split_metadata(second)


@pytest.mark.asyncio
async def test_failure_before_first_chunk_raises_and_records_error(chat_with_prompt):
    _, prompt_id = chat_with_prompt
    upstream = FakeUpstream(default=[UpstreamError("Too Many Requests", 429, "openai")])
    orchestrator = _orchestrator(upstream)
    with pytest.raises(UpstreamError) as exc_info:
        await orchestrator.open(prompt_id=prompt_id, prompt="p", spec=OPENAI)
    assert exc_info.value.status_code == 429
    assert exc_info.value.message == "Rate limited. Please wait and try again."
    await _drain_background()
    assert _row(prompt_id).status == ResponseStatus.ERROR.value

    # a retry clears the error record and generates again
    upstream.default = ["fine", Usage(1, 1)]
    frames = await _collect(await orchestrator.open(prompt_id=prompt_id, prompt="p", spec=OPENAI))
    assert frames[0] == "fine"
    assert _row(prompt_id).status == ResponseStatus.SUCCESS.value
    assert upstream.calls_for("openai") == 2


@pytest.mark.asyncio
async def test_unexpected_exception_is_a_500(chat_with_prompt):
    _, prompt_id = chat_with_prompt
    upstream = FakeUpstream(default=[RuntimeError("socket closed")])
    with pytest.raises(UpstreamError) as exc_info:
        await _orchestrator(upstream).open(prompt_id=prompt_id, prompt="p", spec=OPENAI)
    assert exc_info.value.status_code == 500


@pytest.mark.asyncio
async def test_failure_mid_stream_ends_without_trailer(chat_with_prompt):
    _, prompt_id = chat_with_prompt
    upstream = FakeUpstream(default=["partial", UpstreamError("overloaded", 503)])
    stream = await _orchestrator(upstream).open(prompt_id=prompt_id, prompt="p", spec=OPENAI)
    body = "".join(await _collect(stream))
    assert body == "partial"
    row = _row(prompt_id)
    assert row.status == ResponseStatus.ERROR.value
    assert row.error == "overloaded"


@pytest.mark.asyncio
async def test_ndjson_framing(chat_with_prompt):
    _, prompt_id = chat_with_prompt
    upstream = FakeUpstream(default=["a", "b", UpstreamError("overloaded", 503)])
    stream = await _orchestrator(upstream).open(
        prompt_id=prompt_id, prompt="p", spec=OPENAI, framing=FRAMINGS["ndjson"]
    )
    events = [json.loads(line) for line in "".join(await _collect(stream)).splitlines()]
    assert events == [
        {"type": "chunk", "text": "a"},
        {"type": "chunk", "text": "b"},
        {"type": "error", "code": "upstream_failure", "message": "overloaded", "status": 503},
    ]


@pytest.mark.asyncio
async def test_disconnect_cancels_upstream_and_releases_reservation(chat_with_prompt):
    _, prompt_id = chat_with_prompt
    upstream = FakeUpstream(default=["first", HANG])
    stream = await _orchestrator(upstream).open(prompt_id=prompt_id, prompt="p", spec=OPENAI)
    assert await stream.__anext__() == "first"
    await stream.aclose()
    await _drain_background()

    assert upstream.closed == ["openai"]
    assert _row(prompt_id) is None


@pytest.mark.asyncio
async def test_disconnect_after_upstream_finished_still_saves(chat_with_prompt):
    _, prompt_id = chat_with_prompt
    upstream = FakeUpstream(default=["done", Usage(5, 5)])
    stream = await _orchestrator(upstream, SlowRepository(0.3)).open(
        prompt_id=prompt_id, prompt="p", spec=OPENAI
    )
    assert await stream.__anext__() == "done"
    # let the provider finish; the save is still running
    await asyncio.sleep(0.1)
    await stream.aclose()
    await _drain_background()

    row = _row(prompt_id)
    assert row.status == ResponseStatus.SUCCESS.value
    assert row.content == "done"


@pytest.mark.asyncio
async def test_disconnect_while_recording_error_still_records_it(chat_with_prompt):
    _, prompt_id = chat_with_prompt
    upstream = FakeUpstream(default=["partial", UpstreamError("overloaded", 503)])
    stream = await _orchestrator(upstream, SlowFailRepository(0.3)).open(
        prompt_id=prompt_id, prompt="p", spec=OPENAI
    )
    assert await stream.__anext__() == "partial"
    # the provider failed; the error write is still running when the client leaves
    await asyncio.sleep(0.1)
    await stream.aclose()
    await _drain_background()

    row = _row(prompt_id)
    assert row.status == ResponseStatus.ERROR.value
    assert row.error == "overloaded"


@pytest.mark.asyncio
async def test_slow_save_closes_stream_without_trailer(chat_with_prompt):
    _, prompt_id = chat_with_prompt
    upstream = FakeUpstream(default=["quick", Usage(1, 1)])
    stream = await _orchestrator(upstream, SlowRepository(0.5), metadata_wait_seconds=0.05).open(
        prompt_id=prompt_id, prompt="p", spec=OPENAI
    )
    assert "".join(await _collect(stream)) == "quick"
    await _drain_background()
    assert _row(prompt_id).status == ResponseStatus.SUCCESS.value


@pytest.mark.asyncio
async def test_persistence_failure_marks_trailer_unsaved(chat_with_prompt):
    _, prompt_id = chat_with_prompt
    repository = FailingRepository()
    upstream = FakeUpstream(default=["answer", Usage(3, 4)])
    stream = await _orchestrator(upstream, repository).open(prompt_id=prompt_id, prompt="p", spec=OPENAI)
    text, meta = split_metadata("".join(await _collect(stream)))
    assert text == "answer"
    assert meta["saved"] is False
    assert meta["totalTokens"] == 7
    assert repository.complete_calls == 2


@pytest.mark.asyncio
async def test_persistence_failure_ndjson_error_frame(chat_with_prompt):
    _, prompt_id = chat_with_prompt
    upstream = FakeUpstream(default=["answer"])
    stream = await _orchestrator(upstream, FailingRepository(), persist_attempts=1).open(
        prompt_id=prompt_id, prompt="p", spec=OPENAI, framing=FRAMINGS["ndjson"]
    )
    events = [json.loads(line) for line in "".join(await _collect(stream)).splitlines()]
    assert [e["type"] for e in events] == ["chunk", "error", "metadata"]
    assert events[1]["code"] == "persistence_failure"
    assert events[2]["saved"] is False


@pytest.mark.asyncio
async def test_in_flight_pair_waits_then_gives_up(db, repo, chat_with_prompt):
    _, prompt_id = chat_with_prompt
    repo.insert_reservation(db, prompt_id, "openai", "GPT-4o")
    upstream = FakeUpstream()
    orchestrator = _orchestrator(upstream, inflight_wait_seconds=0.2, inflight_poll_seconds=0.05)
    with pytest.raises(GenerationInProgress):
        await orchestrator.open(prompt_id=prompt_id, prompt="p", spec=OPENAI)
    assert upstream.calls == []


@pytest.mark.asyncio
async def test_in_flight_pair_served_once_finished(db, repo, chat_with_prompt):
    _, prompt_id = chat_with_prompt
    row = repo.insert_reservation(db, prompt_id, "openai", "GPT-4o")
    upstream = FakeUpstream()
    orchestrator = _orchestrator(upstream, inflight_wait_seconds=2.0, inflight_poll_seconds=0.05)

    async def finish_elsewhere():
        await asyncio.sleep(0.1)
        repo.complete_response(
            db, row.id, content="from the other request", latency=10,
            prompt_tokens=1, completion_tokens=1, cost=0.0,
        )

    finisher = asyncio.create_task(finish_elsewhere())
    stream = await orchestrator.open(prompt_id=prompt_id, prompt="p", spec=OPENAI)
    await finisher
    text, meta = split_metadata("".join(await _collect(stream)))
    assert text == "from the other request"
    assert meta["totalTokens"] == 2
    assert upstream.calls == []
