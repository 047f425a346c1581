"""
Shared fixtures: an on-disk SQLite queue per test, a controllable clock and
scriptable transports.
"""

from __future__ import annotations

import asyncio
import os
from collections import deque
from datetime import datetime, timedelta, timezone

# settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./.courier-test.db")
os.environ.setdefault("EVENT_BUS_PROVIDER", "noop")
os.environ.setdefault("ENV", "dev")

import pytest
import pytest_asyncio

from courier.core.base import Base
from courier.core.config import Settings, ChannelConfig
from courier.core.db import build_engine, build_sessionmaker
from courier.platform.ports.transport import ConnectivityState, SendResult
from courier.modules.queue import models  # noqa: F401  register tables
from courier.modules.queue.service import QueueStore

# noon tomorrow: anything enqueued "now" in real time is already due on the fake clock
T0 = (datetime.now(timezone.utc) + timedelta(days=1)).replace(hour=12, minute=0, second=0, microsecond=0)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.current = start
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current = self.current + timedelta(seconds=seconds)
        return self.current

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)
        # yield for real so other channel tasks get a turn
        await asyncio.sleep(0.001)


class FakeTransport:
    """Scriptable transport: fixed health, optional connect failures, queued send results."""

    def __init__(self, health: ConnectivityState = ConnectivityState.CONNECTED, *,
                 connect_errors: list[Exception] | None = None, default: SendResult | None = None):
        self.health = health
        self.connect_errors = deque(connect_errors or [])
        self.results: deque[SendResult | Exception] = deque()
        self.default = default or SendResult(ok=True, response={"id": "ok"})
        self.sent: list[tuple[str, str]] = []
        self.connect_calls: list[str] = []
        self.health_calls = 0

    async def send(self, channel_id: str, message) -> SendResult:
        self.sent.append((channel_id, message.recipient))
        outcome = self.results.popleft() if self.results else self.default
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def check_health(self, channel_id: str) -> ConnectivityState:
        self.health_calls += 1
        return self.health

    async def connect(self, channel_id: str) -> None:
        self.connect_calls.append(channel_id)
        if self.connect_errors:
            raise self.connect_errors.popleft()


class RecordingBus:
    def __init__(self):
        self.events: list[dict] = []

    async def publish(self, topic: str, key: str, value: dict, headers: dict | None = None) -> None:
        self.events.append({"topic": topic, "key": key, **value})


def make_settings(**overrides) -> Settings:
    base = dict(
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        JITTER_MIN=25.0,
        JITTER_MAX=40.0,
        HEALTH_CHECK_INTERVAL=300.0,
        BOOTSTRAP_RETRY_STEP=20.0,
        BOOTSTRAP_RETRY_CAP=60.0,
        SHUTDOWN_TIMEOUT=5.0,
        CHANNELS=[ChannelConfig(id="a", kind="chat"), ChannelConfig(id="b", kind="chat")],
    )
    base.update(overrides)
    return Settings(_env_file=None, **base)


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def store(engine) -> QueueStore:
    return QueueStore(build_sessionmaker(engine))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
