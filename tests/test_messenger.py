"""Tests for the Discord REST messenger."""

import json

import httpx
import pytest

from wafflecord import messenger as messenger_module
from wafflecord.errors import DeliveryError
from wafflecord.messenger import DiscordMessenger


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr(messenger_module, "RETRY_BASE_SECONDS", 0.0)


def make_messenger(handler, max_retries=2):
    return DiscordMessenger(
        token="test-token",
        api_url="https://discord.test/api/v10",
        max_retries=max_retries,
        transport=httpx.MockTransport(handler),
    )


async def test_send_message_returns_id():
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"id": "1187000000000000001", "channel_id": "42"})

    async with make_messenger(handler) as m:
        message_id = await m.send_message(42, "hello")

    assert message_id == 1187000000000000001
    req = requests[0]
    assert req.method == "POST"
    assert req.url.path == "/api/v10/channels/42/messages"
    assert req.headers["Authorization"] == "Bot test-token"
    assert json.loads(req.content)["content"] == "hello"


async def test_create_thread_posts_name():
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(201, json={"id": "9"})

    async with make_messenger(handler) as m:
        await m.create_thread(42, 7, "week of 01/03/24 waffling")

    assert requests[0].url.path == "/api/v10/channels/42/messages/7/threads"
    assert json.loads(requests[0].content) == {"name": "week of 01/03/24 waffling"}


async def test_client_error_is_not_retried():
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(403, json={"message": "Missing Access"})

    async with make_messenger(handler) as m:
        with pytest.raises(DeliveryError) as excinfo:
            await m.send_message(42, "hello")

    assert calls == 1
    assert excinfo.value.status == 403


async def test_thread_server_error_is_retried_then_succeeds():
    responses = [httpx.Response(502), httpx.Response(201, json={"id": "9"})]

    def handler(request: httpx.Request) -> httpx.Response:
        return responses.pop(0)

    async with make_messenger(handler) as m:
        await m.create_thread(42, 7, "week of 01/03/24 waffling")
    assert responses == []


async def test_message_not_resent_after_read_timeout():
    posted: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        posted.append(request.url.path)
        if len(posted) == 1:
            raise httpx.ReadTimeout("no response", request=request)
        return httpx.Response(200, json={"id": "5"})

    async with make_messenger(handler) as m:
        with pytest.raises(DeliveryError):
            await m.send_message(42, "hello")

    assert posted == ["/api/v10/channels/42/messages"]


async def test_message_not_resent_after_server_error():
    posted: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        posted.append(request.url.path)
        if len(posted) == 1:
            return httpx.Response(502)
        return httpx.Response(200, json={"id": "5"})

    async with make_messenger(handler) as m:
        with pytest.raises(DeliveryError) as excinfo:
            await m.send_message(42, "hello")

    assert len(posted) == 1
    assert excinfo.value.status == 502


async def test_message_resent_after_connect_error():
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json={"id": "8"})

    async with make_messenger(handler) as m:
        assert await m.send_message(42, "hello") == 8
    assert calls == 2


async def test_rate_limit_honors_retry_after():
    responses = [
        httpx.Response(429, json={"retry_after": 0.0, "global": False}),
        httpx.Response(200, json={"id": "6"}),
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        return responses.pop(0)

    async with make_messenger(handler) as m:
        assert await m.send_message(42, "hello") == 6


async def test_gives_up_after_max_retries():
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(503)

    async with make_messenger(handler, max_retries=2) as m:
        with pytest.raises(DeliveryError) as excinfo:
            await m.create_thread(42, 7, "week of 01/03/24 waffling")

    assert calls == 3
    assert excinfo.value.status == 503


async def test_connection_error_becomes_delivery_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async with make_messenger(handler, max_retries=1) as m:
        with pytest.raises(DeliveryError):
            await m.send_message(42, "hello")


async def test_health_check():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"url": "wss://gateway.discord.gg"})

    m = make_messenger(handler)
    assert await m.check_health() is False
    await m.open()
    try:
        assert await m.check_health() is True
    finally:
        await m.close()
