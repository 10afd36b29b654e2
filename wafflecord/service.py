"""
Notifier service orchestrator.

Owns the long-lived components (store, messenger, trigger clock, health
server) and their lifecycle: startup, periodic health refresh, and graceful
shutdown on SIGTERM/SIGINT.
"""

from __future__ import annotations

import asyncio
import signal

import structlog

from .config import NotifierConfig
from .dispatcher import Dispatcher
from .errors import StoreError
from .health import HealthServer
from .messenger import DiscordMessenger
from .metrics import MetricsCollector
from .schedule import TriggerClock
from .subscriptions import SubscriptionStore

log = structlog.get_logger()

SHUTDOWN_TIMEOUT = 15.0
HEALTH_REFRESH_SECONDS = 30.0


class NotifierService:
    """
    The running notifier: one background clock task plus the shared store.
    """

    def __init__(self, config: NotifierConfig, messenger: DiscordMessenger | None = None):
        self._config = config
        self._metrics = MetricsCollector()
        self._store = SubscriptionStore(config.store.subscribers_dir, metrics=self._metrics)
        self._messenger = messenger or DiscordMessenger(
            token=config.discord.token or "",
            api_url=config.discord.api_url,
            request_timeout=config.discord.request_timeout_seconds,
            max_retries=config.discord.max_retries,
            metrics=self._metrics,
        )
        trigger = config.schedule.to_trigger()
        self._clock = TriggerClock(trigger, metrics=self._metrics)
        self._dispatcher = Dispatcher(
            self._store,
            self._messenger,
            config.notifications,
            tz=trigger.tz,
            metrics=self._metrics,
        )
        self._health = HealthServer(
            host=config.metrics.host,
            port=config.metrics.port,
            metrics=self._metrics,
        )
        self._clock_task: asyncio.Task | None = None
        self._running = False
        self._shutdown_event = asyncio.Event()

    @property
    def store(self) -> SubscriptionStore:
        return self._store

    @property
    def clock(self) -> TriggerClock:
        return self._clock

    @property
    def dispatcher(self) -> Dispatcher:
        return self._dispatcher

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    async def start(self) -> None:
        """Open the store and messenger, start the health server and the clock."""
        log.info("service.starting", schedule=self._clock.trigger.describe())

        # OpenFailedError propagates: the service cannot run without its store
        await self._store.open()
        await self._messenger.open()

        if self._config.metrics.enabled:
            try:
                await self._health.start()
                log.info(
                    "service.health_started",
                    host=self._config.metrics.host,
                    port=self._config.metrics.port,
                )
            except OSError as exc:
                log.warning("service.health_start_failed", error=str(exc))

        self._clock_task = asyncio.create_task(self._clock.run(self._dispatcher.dispatch))
        self._running = True
        log.info("service.started")

    async def stop(self) -> None:
        """Cancel the clock, then close the health server, messenger and store."""
        if not self._running:
            return
        self._running = False
        log.info("service.stopping")

        if self._clock_task:
            self._clock_task.cancel()
            try:
                await self._clock_task
            except asyncio.CancelledError:
                pass
            self._clock_task = None

        await self._health.stop()
        await self._messenger.close()
        await self._store.close()
        log.info("service.stopped")

    async def run_forever(self) -> None:
        """Run until a shutdown signal arrives."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._shutdown_event.set)

        await self.start()
        try:
            while not self._shutdown_event.is_set():
                await self._update_health()
                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(), timeout=HEALTH_REFRESH_SECONDS
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            await asyncio.wait_for(self.stop(), timeout=SHUTDOWN_TIMEOUT)

    async def _update_health(self) -> None:
        try:
            subscribers = await self._store.count()
        except StoreError as exc:
            log.warning("service.health_count_failed", error=str(exc))
            subscribers = 0
        self._metrics.set_gauge("subscribers", subscribers)
        discord_ok = await self._messenger.check_health()
        self._health.update_status(
            subscribers,
            self._clock.next_fire_at,
            self._clock.last_fired_at,
            discord_ok,
        )
