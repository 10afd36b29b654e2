"""
Notifier entry point.

Loads configuration, configures logging, and either runs the service or
performs a one-shot subscription command against the store.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

import structlog

from .commands import CommandHandler
from .config import NotifierConfig, apply_env_overrides, load_config
from .errors import OpenFailedError
from .schedule import next_occurrence
from .service import NotifierService
from .subscriptions import SubscriptionStore

DEFAULT_CONFIG = "wafflecord.yaml"


def configure_logging(level: str = "info", fmt: str = "json") -> None:
    """Configure structlog with the specified level and format."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if fmt == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelNamesMapping()[level.upper()]
        ),
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Weekly waffle notifier")
    parser.add_argument(
        "-c", "--config",
        default=None,
        help=f"Path to configuration file (default: {DEFAULT_CONFIG} if present)",
    )
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("run", help="Run the notifier until interrupted")

    p = sub.add_parser("subscribe", help="Subscribe a channel")
    p.add_argument("channel_id", type=int)
    p.add_argument("--role", type=int, default=None, dest="role_id", help="Role to mention")

    p = sub.add_parser("unsubscribe", help="Unsubscribe a channel")
    p.add_argument("channel_id", type=int)

    sub.add_parser("list", help="List subscribed channels")
    sub.add_parser("next", help="Show the next scheduled firing")
    return parser


def _load(path: str | None) -> NotifierConfig:
    if path is None:
        if not Path(DEFAULT_CONFIG).exists():
            return apply_env_overrides(NotifierConfig())
        path = DEFAULT_CONFIG
    return load_config(path)


async def _with_store(config: NotifierConfig, args: argparse.Namespace) -> int:
    store = await SubscriptionStore.open_at(config.store.subscribers_dir)
    try:
        handler = CommandHandler(store)
        if args.command == "subscribe":
            result = await handler.subscribe(args.channel_id, args.role_id)
        elif args.command == "unsubscribe":
            result = await handler.unsubscribe(args.channel_id)
        else:
            for s in await handler.list_subscriptions():
                role = s.role_id if s.role_id is not None else "-"
                print(f"{s.channel_id}\t{role}")
            return 0
    finally:
        await store.close()

    print(result.message)
    return 0 if result.ok else 1


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    command = args.command or "run"

    try:
        config = _load(args.config)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except Exception as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1

    configure_logging(config.logging.level, config.logging.format)
    log = structlog.get_logger()

    if command == "next":
        trigger = config.schedule.to_trigger()
        print(next_occurrence(datetime.now(timezone.utc), trigger).isoformat())
        return 0

    if command == "run":
        if not config.discord.token:
            log.error("service.missing_token", env=config.discord.token_env)
            return 1
        log.info(
            "service.config_loaded",
            config_path=args.config,
            subscribers_dir=config.store.subscribers_dir,
        )
        service = NotifierService(config)
        try:
            asyncio.run(service.run_forever())
        except OpenFailedError as exc:
            log.error("service.store_open_failed", error=str(exc))
            return 1
        except KeyboardInterrupt:
            pass
        return 0

    try:
        return asyncio.run(_with_store(config, args))
    except OpenFailedError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


def run() -> None:
    """CLI entry point."""
    sys.exit(main())


if __name__ == "__main__":
    run()
