"""
Subscription commands.

Turns subscribe / unsubscribe requests for a channel into store calls and
user-facing replies. Store failures are logged and reported as a failed
result; they never propagate to the front end.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from .errors import MalformedRecordError, StoreError
from .subscriptions import Subscriber, SubscriptionStore

log = structlog.get_logger()

FAILURE_REPLY = "Could not update subscription, please try again later."


@dataclass(frozen=True)
class CommandResult:
    ok: bool
    message: str
    subscriber: Subscriber | None = None


class CommandHandler:
    """Handles subscription commands against a shared store."""

    def __init__(self, store: SubscriptionStore):
        self._store = store

    async def subscribe(self, channel_id: int, role_id: int | None = None) -> CommandResult:
        subscriber = Subscriber(channel_id=channel_id, role_id=role_id)
        try:
            await self._store.upsert(subscriber)
        except StoreError as exc:
            log.error("commands.subscribe_failed", channel_id=channel_id, error=str(exc))
            return CommandResult(ok=False, message=FAILURE_REPLY)
        log.info("commands.subscribed", channel_id=channel_id, role_id=role_id)
        return CommandResult(ok=True, message="Subscribed", subscriber=subscriber)

    async def unsubscribe(self, channel_id: int) -> CommandResult:
        try:
            removed = await self._store.remove(channel_id)
        except MalformedRecordError as exc:
            log.warning("commands.unsubscribed_malformed", channel_id=channel_id, error=str(exc))
            return CommandResult(ok=True, message=f"Removed {channel_id}'s subscription")
        except StoreError as exc:
            log.error("commands.unsubscribe_failed", channel_id=channel_id, error=str(exc))
            return CommandResult(ok=False, message=FAILURE_REPLY)

        if removed is None:
            return CommandResult(ok=True, message="Channel is not subscribed")
        log.info("commands.unsubscribed", channel_id=channel_id)
        return CommandResult(
            ok=True,
            message=f"Removed {removed.channel_id}'s subscription",
            subscriber=removed,
        )

    async def list_subscriptions(self) -> list[Subscriber]:
        return [s async for s in self._store.scan()]
