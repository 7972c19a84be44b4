from __future__ import annotations

import json
import os
import uuid

# Settings are read at import time; keep tests off any real database/backend.
os.environ.setdefault("DB_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("OPENAI_API_KEY", "test-key")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from ai.extraction import ExtractionClient
from intake import models
from intake.cache import MemoryCache
from intake.config import ExtractionSettings, PipelineSettings
from intake.events import EventBus
from intake.pipelines.submission import SubmissionPipeline

JANE_DESCRIPTION = "My name is Jane Doe, 29 years old, living at 5 Elm St."
JANE_FIELDS = {
    "first_name": "Jane",
    "last_name": "Doe",
    "address": "5 Elm St",
    "height": None,
    "weight": None,
    "gender": "female",
    "age": 29,
}


def completion(fields: dict | None = None, *, content: str | None = None) -> dict:
    """Chat-completion response dict as the OpenAI SDK dumps it."""
    return {
        "id": f"chatcmpl-{uuid.uuid4().hex[:8]}",
        "object": "chat.completion",
        "model": "fake-model",
        "choices": [
            {
                "index": 0,
                "finish_reason": "stop",
                "message": {
                    "role": "assistant",
                    "content": content if content is not None else json.dumps(fields or {}),
                },
            }
        ],
        "usage": {"prompt_tokens": 90, "completion_tokens": 30, "total_tokens": 120},
    }


class FakeTransport:
    """Scripted completion transport; the last scripted item repeats."""

    model = "fake-model"

    def __init__(self, *items) -> None:
        self.items = list(items) or [completion(JANE_FIELDS)]
        self.calls: list[str] = []

    def script(self, *items) -> None:
        self.items = list(items)

    async def complete(self, description: str, *, system_prompt: str) -> dict:
        self.calls.append(description)
        item = self.items.pop(0) if len(self.items) > 1 else self.items[0]
        if isinstance(item, BaseException):
            raise item
        return item


class FakeClock:
    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'intake.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(models.Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def extraction_client(cache, transport, sleeps, clock):
    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return ExtractionClient(
        cache,
        transport,
        ExtractionSettings(),
        sleep=fake_sleep,
        clock=clock,
    )


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def pipeline_settings():
    return PipelineSettings()


@pytest.fixture
async def make_pipeline(session_factory, extraction_client, cache, event_bus, pipeline_settings):
    """Pipelines on their own sessions, for tests that need more than one."""
    sessions = []

    def factory(session=None) -> SubmissionPipeline:
        if session is None:
            session = session_factory()
            sessions.append(session)
        return SubmissionPipeline(session, extraction_client, cache, event_bus, config=pipeline_settings)

    yield factory

    for session in sessions:
        await session.close()


@pytest.fixture
def pipeline(session, make_pipeline):
    return make_pipeline(session)


@pytest.fixture
async def api_client(session_factory, cache, extraction_client, event_bus):
    from intake.api import app, get_extraction_client
    from intake.cache import get_cache
    from intake.db import get_session
    from intake.events import get_event_bus

    async def override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_cache] = lambda: cache
    app.dependency_overrides[get_extraction_client] = lambda: extraction_client
    app.dependency_overrides[get_event_bus] = lambda: event_bus

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        yield client

    app.dependency_overrides.clear()
