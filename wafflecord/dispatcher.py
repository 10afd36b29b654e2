"""
Weekly notification fan-out.

One dispatch snapshots the subscription store, builds the notification for
each subscriber and hands it to the messenger. A failure for one subscriber
is logged and counted, then the batch moves on.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Callable

import structlog

from .config import NotificationConfig
from .messenger import Messenger
from .metrics import MetricsCollector
from .subscriptions import Subscriber, SubscriptionStore

log = structlog.get_logger()

WEEK_LABEL_FORMAT = "%m/%d/%y"


@dataclass(frozen=True)
class Notification:
    content: str
    thread_title: str


@dataclass
class DispatchReport:
    total: int = 0
    sent: int = 0
    failed: int = 0
    threads_created: int = 0
    threads_failed: int = 0


def mention_for(subscriber: Subscriber, default_label: str) -> str:
    if subscriber.role_id is None:
        return default_label
    return f"<@&{subscriber.role_id}>"


def build_notification(
    subscriber: Subscriber, when: datetime, default_label: str = "Waflers"
) -> Notification:
    week_label = f"week of {when.strftime(WEEK_LABEL_FORMAT)}"
    content = (
        f"# Waffle Time! ({week_label})\n"
        f"Hey {mention_for(subscriber, default_label)}, It's time for the weekly waffle!\n"
    )
    return Notification(content=content, thread_title=f"{week_label} waffling")


class Dispatcher:
    """Sends one firing's notification to every current subscriber."""

    def __init__(
        self,
        store: SubscriptionStore,
        messenger: Messenger,
        config: NotificationConfig | None = None,
        tz: tzinfo = timezone.utc,
        metrics: MetricsCollector | None = None,
        now: Callable[[], datetime] | None = None,
    ):
        self._store = store
        self._messenger = messenger
        self._config = config or NotificationConfig()
        self._tz = tz
        self._metrics = metrics
        self._now = now or (lambda: datetime.now(timezone.utc))

    async def dispatch(self) -> DispatchReport:
        started = time.monotonic()
        when = self._now().astimezone(self._tz)

        snapshot: list[Subscriber] = []
        seen: set[int] = set()
        async for subscriber in self._store.scan():
            if subscriber.channel_id in seen:
                continue
            seen.add(subscriber.channel_id)
            snapshot.append(subscriber)

        report = DispatchReport(total=len(snapshot))
        log.info("dispatch.started", subscribers=report.total, week_of=when.date().isoformat())
        if self._metrics:
            self._metrics.set_gauge("subscribers", report.total)

        semaphore = asyncio.Semaphore(self._config.max_concurrency)

        async def notify(subscriber: Subscriber) -> None:
            async with semaphore:
                await self._notify(subscriber, when, report)

        await asyncio.gather(*(notify(s) for s in snapshot))

        elapsed = time.monotonic() - started
        if self._metrics:
            self._metrics.observe("dispatch_duration_seconds", elapsed)
        log.info(
            "dispatch.finished",
            total=report.total,
            sent=report.sent,
            failed=report.failed,
            threads_failed=report.threads_failed,
            duration=round(elapsed, 3),
        )
        return report

    async def _notify(self, subscriber: Subscriber, when: datetime, report: DispatchReport) -> None:
        notification = build_notification(subscriber, when, self._config.default_group_label)
        timeout = self._config.send_timeout_seconds
        channel_id = subscriber.channel_id

        try:
            message_id = await asyncio.wait_for(
                self._messenger.send_message(channel_id, notification.content), timeout
            )
        except asyncio.TimeoutError:
            report.failed += 1
            self._inc("notifications_failed_total")
            log.error("dispatch.send_timeout", channel_id=channel_id, timeout=timeout)
            return
        except Exception as exc:
            report.failed += 1
            self._inc("notifications_failed_total")
            log.error("dispatch.send_failed", channel_id=channel_id, error=str(exc))
            return

        report.sent += 1
        self._inc("notifications_sent_total")

        if not self._config.create_threads:
            return
        try:
            await asyncio.wait_for(
                self._messenger.create_thread(channel_id, message_id, notification.thread_title),
                timeout,
            )
        except asyncio.TimeoutError:
            report.threads_failed += 1
            self._inc("threads_failed_total")
            log.error("dispatch.thread_timeout", channel_id=channel_id, message_id=message_id)
            return
        except Exception as exc:
            report.threads_failed += 1
            self._inc("threads_failed_total")
            log.error(
                "dispatch.thread_failed",
                channel_id=channel_id,
                message_id=message_id,
                error=str(exc),
            )
            return

        report.threads_created += 1
        self._inc("threads_created_total")

    def _inc(self, name: str) -> None:
        if self._metrics:
            self._metrics.inc(name)
