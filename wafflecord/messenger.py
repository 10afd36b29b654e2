"""
Discord REST messenger.

Implements the messaging capability used by the dispatcher:
- send_message: post a message to a channel, returning its id
- create_thread: start a public thread from a posted message

Rate limits (429) honor Retry-After and connect failures retry with
exponential backoff. Read timeouts and 5xx responses retry only for calls
that are safe to repeat: a message post may already have been delivered,
so it is never resent after one. Other 4xx responses fail immediately.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

import httpx
import structlog

from .errors import DeliveryError
from .metrics import MetricsCollector

log = structlog.get_logger()

RETRY_BASE_SECONDS = 1.0
USER_AGENT = "DiscordBot (https://github.com/wafflecord/wafflecord, 0.1.0)"

# The request never reached Discord, so it is always safe to resend
_UNSENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


class Messenger(Protocol):
    async def send_message(self, channel_id: int, content: str) -> int: ...

    async def create_thread(self, channel_id: int, message_id: int, title: str) -> None: ...


class DiscordMessenger:
    """Messenger backed by the Discord HTTP API."""

    def __init__(
        self,
        token: str,
        api_url: str = "https://discord.com/api/v10",
        request_timeout: float = 30.0,
        max_retries: int = 3,
        metrics: MetricsCollector | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._token = token
        self._api_url = api_url.rstrip("/")
        self._request_timeout = request_timeout
        self._max_retries = max_retries
        self._metrics = metrics
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def open(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self._api_url,
            timeout=httpx.Timeout(self._request_timeout),
            headers={
                "Authorization": f"Bot {self._token}",
                "User-Agent": USER_AGENT,
            },
            transport=self._transport,
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> DiscordMessenger:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def send_message(self, channel_id: int, content: str) -> int:
        """Post `content` to a channel and return the new message id."""
        body = await self._request(
            "POST",
            f"/channels/{channel_id}/messages",
            {"content": content, "allowed_mentions": {"parse": ["roles", "everyone"]}},
            idempotent=False,
        )
        try:
            return int(body["id"])
        except (KeyError, TypeError, ValueError) as exc:
            raise DeliveryError(f"message response without id for channel {channel_id}") from exc

    async def create_thread(self, channel_id: int, message_id: int, title: str) -> None:
        """Start a public thread named `title` from an existing message."""
        await self._request(
            "POST",
            f"/channels/{channel_id}/messages/{message_id}/threads",
            {"name": title[:100]},
        )

    async def check_health(self) -> bool:
        if not self._client:
            return False
        try:
            resp = await self._client.get("/gateway")
            return resp.status_code == 200
        except httpx.HTTPError:
            return False

    async def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any],
        idempotent: bool = True,
    ) -> dict[str, Any]:
        """
        Send one API call, retrying transient failures.

        When `idempotent` is false, only failures where Discord provably never
        handled the request (connect errors, 429) are retried; anything that
        may already have taken effect fails immediately.
        """
        assert self._client

        last_exc: Exception | None = None
        for attempt in range(self._max_retries + 1):
            try:
                resp = await self._client.request(method, path, json=payload)
            except _UNSENT_ERRORS as exc:
                last_exc = exc
            except (httpx.ReadError, httpx.TimeoutException) as exc:
                last_exc = exc
                if not idempotent:
                    break
            else:
                if resp.status_code == 429:
                    retry_after = _retry_after(resp, RETRY_BASE_SECONDS * (attempt + 1))
                    log.warning("messenger.rate_limited", path=path, retry_after=retry_after)
                    last_exc = DeliveryError(f"rate limited on {path}", status=429)
                    if attempt < self._max_retries:
                        await asyncio.sleep(retry_after)
                    continue

                if 400 <= resp.status_code < 500:
                    log.error("messenger.client_error", path=path, status=resp.status_code)
                    if self._metrics:
                        self._metrics.inc("discord_errors_total")
                    raise DeliveryError(
                        f"{method} {path} rejected with {resp.status_code}: {resp.text[:200]}",
                        status=resp.status_code,
                    )

                if resp.status_code < 400:
                    if self._metrics:
                        self._metrics.inc("discord_requests_total")
                    return resp.json() if resp.content else {}

                last_exc = DeliveryError(
                    f"{method} {path} failed with {resp.status_code}", status=resp.status_code
                )
                if not idempotent:
                    break

            if attempt < self._max_retries:
                backoff = RETRY_BASE_SECONDS * (2 ** attempt)
                log.warning(
                    "messenger.retry",
                    path=path,
                    attempt=attempt + 1,
                    backoff=backoff,
                    error=str(last_exc),
                )
                await asyncio.sleep(backoff)

        if self._metrics:
            self._metrics.inc("discord_errors_total")
        if isinstance(last_exc, DeliveryError):
            raise last_exc
        raise DeliveryError(f"{method} {path} failed: {last_exc}") from last_exc


def _retry_after(resp: httpx.Response, default: float) -> float:
    try:
        return float(resp.json()["retry_after"])
    except (ValueError, KeyError, TypeError):
        pass
    try:
        return float(resp.headers.get("Retry-After", default))
    except ValueError:
        return default
