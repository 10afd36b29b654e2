"""Tests for the service lifecycle, wired to a mocked Discord API."""

import json

import httpx
import pytest

from wafflecord.config import NotifierConfig
from wafflecord.errors import OpenFailedError
from wafflecord.messenger import DiscordMessenger
from wafflecord.service import NotifierService
from wafflecord.subscriptions import Subscriber


def make_config(subscribers_dir: str) -> NotifierConfig:
    return NotifierConfig.model_validate({
        "store": {"subscribers_dir": subscribers_dir},
        "schedule": {"weekday": "wednesday", "timezone": "UTC"},
        "metrics": {"enabled": False},
    })


class DiscordStub:
    def __init__(self):
        self.posted: list[tuple[str, dict]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        self.posted.append((request.url.path, body))
        if request.url.path.endswith("/threads"):
            return httpx.Response(201, json={"id": "77"})
        return httpx.Response(200, json={"id": str(1000 + len(self.posted))})


async def test_service_dispatches_to_stored_subscribers(tmp_path):
    stub = DiscordStub()
    messenger = DiscordMessenger(
        token="t", api_url="https://discord.test/api/v10", transport=httpx.MockTransport(stub)
    )
    service = NotifierService(make_config(str(tmp_path / "subs")), messenger=messenger)

    await service.start()
    try:
        await service.store.upsert(Subscriber(42, 7))

        report = await service.dispatcher.dispatch()
    finally:
        await service.stop()

    assert report.sent == 1
    assert report.threads_created == 1
    paths = [p for p, _ in stub.posted]
    assert paths == [
        "/api/v10/channels/42/messages",
        "/api/v10/channels/42/messages/1001/threads",
    ]
    assert "<@&7>" in stub.posted[0][1]["content"]
    assert service.metrics.get("notifications_sent_total") == 1


async def test_service_start_fails_when_store_cannot_open(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    service = NotifierService(make_config(str(blocker / "subs")))

    with pytest.raises(OpenFailedError):
        await service.start()
    await service.stop()
