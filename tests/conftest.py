"""
Shared fixtures. Environment is set before any app import: settings are cached
and the engine is built from DATABASE_URL at import time.
"""
import asyncio
import os
import tempfile

_TMP_DIR = tempfile.mkdtemp(prefix="prompt-arena-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP_DIR, 'test.db')}"
os.environ["SECRET_KEY"] = "test-secret"
os.environ["ENABLED_PROVIDERS"] = "openai,anthropic,xai"
os.environ["REDIS_URL"] = ""
os.environ["AI_GATEWAY_API_KEY"] = ""

import pytest
from fastapi.testclient import TestClient

from app.auth import create_access_token
from app.database import Base, SessionLocal, engine
from app.main import app
from app.repositories.chat_repository import ChatRepository
from app.services.ai_service import TextDelta, Usage, get_upstream_client

HANG = object()


class FakeUpstream:
    """
    Scripted stand-in for UpstreamClient. script[provider_id] is a list of steps:
    str -> TextDelta, Usage -> usage report, Exception -> raised, HANG -> block until cancelled.
    """

    def __init__(self, script: dict | None = None, default: list | None = None):
        self.script = script or {}
        self.default = default if default is not None else ["Hello", " world", Usage(10, 20)]
        self.calls: list[tuple[str, str]] = []
        self.closed: list[str] = []

    async def stream_text(self, spec, prompt):
        self.calls.append((spec.id, prompt))
        try:
            for step in self.script.get(spec.id, self.default):
                if step is HANG:
                    await asyncio.Event().wait()
                elif isinstance(step, Usage):
                    yield step
                elif isinstance(step, BaseException):
                    raise step
                else:
                    await asyncio.sleep(0)
                    yield TextDelta(step)
        finally:
            self.closed.append(spec.id)

    def calls_for(self, provider: str) -> int:
        return sum(1 for p, _ in self.calls if p == provider)


class FakeRedis:
    """Enough of redis.asyncio.Redis for the response cache."""

    def __init__(self, fail: bool = False):
        self.data: dict[str, str] = {}
        self.fail = fail

    async def get(self, key):
        if self.fail:
            raise ConnectionError("redis down")
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        if self.fail:
            raise ConnectionError("redis down")
        self.data[key] = value

    async def delete(self, *keys):
        if self.fail:
            raise ConnectionError("redis down")
        return sum(1 for key in keys if self.data.pop(key, None) is not None)


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def repo():
    return ChatRepository()


@pytest.fixture
def chat_with_prompt(db, repo):
    """(chat_id, prompt_id) owned by user-1."""
    chat = repo.create_chat(db, "user-1")
    prompt = repo.create_prompt(db, chat.id, "user-1", "What is 2+2?")
    return chat.id, prompt.id


@pytest.fixture
def fake_upstream():
    fake = FakeUpstream()
    app.dependency_overrides[get_upstream_client] = lambda: fake
    return fake


@pytest.fixture
def client(fake_upstream):
    with TestClient(app) as c:
        yield c


def auth_headers(user_id: str = "user-1") -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}
