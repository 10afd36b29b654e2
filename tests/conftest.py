"""
Shared fixtures: a temporary store, a fake messenger and a fake clock.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from wafflecord.errors import DeliveryError
from wafflecord.metrics import MetricsCollector
from wafflecord.subscriptions import SubscriptionStore


class FakeMessenger:
    """Records calls; channels listed in fail_send / fail_thread raise DeliveryError."""

    def __init__(self, fail_send=(), fail_thread=(), hang_send=()):
        self.fail_send = set(fail_send)
        self.fail_thread = set(fail_thread)
        self.hang_send = set(hang_send)
        self.sent: list[tuple[int, str]] = []
        self.threads: list[tuple[int, int, str]] = []
        self._next_id = 1000

    async def send_message(self, channel_id: int, content: str) -> int:
        if channel_id in self.hang_send:
            await asyncio.Event().wait()
        if channel_id in self.fail_send:
            raise DeliveryError(f"cannot send to {channel_id}", status=403)
        self.sent.append((channel_id, content))
        self._next_id += 1
        return self._next_id

    async def create_thread(self, channel_id: int, message_id: int, title: str) -> None:
        if channel_id in self.fail_thread:
            raise DeliveryError(f"cannot open thread in {channel_id}", status=403)
        self.threads.append((channel_id, message_id, title))


class FakeClock:
    """A wall clock that only moves when sleep() is awaited."""

    def __init__(self, start: datetime):
        self.current = start
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current = self.current + timedelta(seconds=seconds)


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
async def store(tmp_path, metrics):
    s = await SubscriptionStore.open_at(str(tmp_path / "subscribers"), metrics=metrics)
    yield s
    await s.close()


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def fake_clock():
    # Monday 2024-01-01 09:00 UTC
    return FakeClock(datetime(2024, 1, 1, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def messenger_factory():
    return FakeMessenger
