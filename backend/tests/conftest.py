"""
Shared fixtures: in-memory SQLite session, blob store / model / process fakes,
and a recording stand-in for the queue dispatcher.
"""
from __future__ import annotations

import os
import time

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("WATCHDOG_ENABLED", "false")

from pathlib import Path
from typing import Any, Callable

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from reelforge import models  # noqa: F401
from reelforge.db import Base
from reelforge.integrations.llm_provider import LLMProvider
from reelforge.services import dispatcher


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def session(engine):
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session


@pytest.fixture
def add(session):
    """Persist rows and return the first one (or all of them)."""

    async def _add(*rows):
        session.add_all(rows)
        await session.commit()
        return rows[0] if len(rows) == 1 else rows

    return _add


@pytest.fixture
def reload(session):
    """Fresh read that bypasses the identity map (transitions skip session sync)."""

    async def _reload(model, entity_id):
        return await session.get(model, entity_id, populate_existing=True)

    return _reload


class FakeStorage:
    def __init__(self):
        self.objects: dict[str, bytes] = {}

    async def upload_bytes(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        self.objects[key] = data
        return key

    async def upload_file(self, key: str, path: Path, content_type: str = "video/mp4") -> str:
        self.objects[key] = Path(path).read_bytes()
        return key

    async def download_bytes(self, key: str) -> bytes:
        return self.objects[key]

    async def download_file(self, key: str, dest: Path) -> Path:
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(self.objects[key])
        return dest

    async def presigned_get(self, key: str, expires: int | None = None) -> str:
        return f"https://blob.test/{key}?X-Amz-Expires={expires or 3600}"

    async def delete(self, key: str) -> None:
        self.objects.pop(key, None)


@pytest.fixture
def storage():
    return FakeStorage()


class ScriptedLLM(LLMProvider):
    """Replays a script of responses; an Exception entry is raised instead."""

    model = "fake-vision"

    def __init__(self, *responses: Any):
        self.responses = list(responses)
        self.prompts: list[str] = []

    async def complete(self, prompt, *, image_jpeg=None, temperature=0.3, max_tokens=1000):
        self.prompts.append(prompt)
        if not self.responses:
            raise AssertionError("LLM called more often than scripted")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def dispatched(monkeypatch):
    """Replace the Celery send with a recorder; returns the list of sent jobs."""
    sent: list[dict[str, Any]] = []

    def _dispatch(lane, payload, options=None):
        sent.append({"lane": lane, "payload": payload, "options": options})
        return f"job-{len(sent)}"

    monkeypatch.setattr(dispatcher, "dispatch", _dispatch)
    return sent


async def no_sleep(seconds: float) -> None:
    return None


class FakeRedis:
    """In-memory subset of redis.asyncio used by the semaphore and rate limiter.

    String keys expire against `clock`; ZSET scores are stored as given.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self.strings: dict[str, tuple[str, float | None]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.closed = False

    def _expire(self, key: str) -> None:
        entry = self.strings.get(key)
        if entry is not None and entry[1] is not None and entry[1] <= self.clock():
            del self.strings[key]

    async def set(self, key, value, nx=False, px=None):
        self._expire(key)
        if nx and key in self.strings:
            return None
        self.strings[key] = (value, self.clock() + px / 1000 if px else None)
        return True

    async def pttl(self, key):
        self._expire(key)
        if key not in self.strings:
            return -2
        expires_at = self.strings[key][1]
        return -1 if expires_at is None else round((expires_at - self.clock()) * 1000)

    async def zremrangebyscore(self, key, low, high):
        members = self.zsets.get(key, {})
        expired = [m for m, score in members.items() if score <= float(high)]
        for member in expired:
            del members[member]
        return len(expired)

    async def zcard(self, key):
        return len(self.zsets.get(key, {}))

    async def zadd(self, key, mapping, nx=False):
        members = self.zsets.setdefault(key, {})
        added = 0
        for member, score in mapping.items():
            if nx and member in members:
                continue
            added += member not in members
            members[member] = score
        return added

    async def zrem(self, key, member):
        return 1 if self.zsets.get(key, {}).pop(member, None) is not None else 0

    async def aclose(self):
        self.closed = True


@pytest.fixture
def fake_redis(monkeypatch):
    """Shared client of redis_semaphore swapped for a FakeRedis."""
    from reelforge.services import redis_semaphore

    client = FakeRedis()
    monkeypatch.setattr(redis_semaphore, "_redis_client", client)
    return client
