"""
Durable subscription store.

Maps channel_id → Subscriber in an SQLite key/value table kept inside the
configured subscribers directory. Records use a fixed binary encoding:

- key: channel_id as 8 bytes big-endian
- value: channel_id (u64 LE), presence tag (0x00 / 0x01), role_id (u64 LE, only when tagged)
"""

from __future__ import annotations

import os
import struct
from dataclasses import dataclass
from typing import AsyncIterator

import aiosqlite
import structlog

from .errors import EncodeError, MalformedRecordError, OpenFailedError, StoreIOError
from .metrics import MetricsCollector

log = structlog.get_logger()

DB_FILENAME = "subscribers.db"

U64_MAX = 2**64 - 1

_KEY = struct.Struct(">Q")
_ID = struct.Struct("<Q")
_NONE_TAG = b"\x00"
_SOME_TAG = b"\x01"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS subscribers (
    key   BLOB PRIMARY KEY,
    value BLOB NOT NULL
);
"""


@dataclass(frozen=True)
class Subscriber:
    """A channel subscribed to the weekly notification."""
    channel_id: int
    role_id: int | None = None


def _check_id(name: str, value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise EncodeError(f"{name} must be an integer, got {type(value).__name__}")
    if not 0 <= value <= U64_MAX:
        raise EncodeError(f"{name} out of range for u64: {value}")
    return value


def encode_key(channel_id: int) -> bytes:
    return _KEY.pack(_check_id("channel_id", channel_id))


def encode_subscriber(subscriber: Subscriber) -> bytes:
    channel_id = _check_id("channel_id", subscriber.channel_id)
    if subscriber.role_id is None:
        return _ID.pack(channel_id) + _NONE_TAG
    role_id = _check_id("role_id", subscriber.role_id)
    return _ID.pack(channel_id) + _SOME_TAG + _ID.pack(role_id)


def decode_subscriber(data: bytes) -> Subscriber:
    data = bytes(data)
    if len(data) < _ID.size + 1:
        raise MalformedRecordError(f"record too short: {len(data)} bytes")

    (channel_id,) = _ID.unpack_from(data, 0)
    tag = data[_ID.size:_ID.size + 1]
    body = data[_ID.size + 1:]

    if tag == _NONE_TAG:
        if body:
            raise MalformedRecordError(f"{len(body)} trailing bytes after record")
        return Subscriber(channel_id=channel_id, role_id=None)
    if tag == _SOME_TAG:
        if len(body) != _ID.size:
            raise MalformedRecordError(f"role_id must be {_ID.size} bytes, got {len(body)}")
        (role_id,) = _ID.unpack(body)
        return Subscriber(channel_id=channel_id, role_id=role_id)
    raise MalformedRecordError(f"unknown option tag {tag.hex()}")


class SubscriptionStore:
    """Async SQLite-backed registry of subscribers keyed by channel."""

    def __init__(self, path: str, metrics: MetricsCollector | None = None):
        self._dir = path
        self._db_path = os.path.join(path, DB_FILENAME)
        self._metrics = metrics
        self._db: aiosqlite.Connection | None = None

    @classmethod
    async def open_at(
        cls, path: str, metrics: MetricsCollector | None = None
    ) -> SubscriptionStore:
        store = cls(path, metrics=metrics)
        await store.open()
        return store

    @property
    def path(self) -> str:
        return self._dir

    async def open(self) -> None:
        try:
            os.makedirs(self._dir, exist_ok=True)
            self._db = await aiosqlite.connect(self._db_path)
            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._db.executescript(_SCHEMA)
            await self._db.commit()
            recovered = await self.count()
        except (OSError, aiosqlite.Error, StoreIOError) as exc:
            await self.close()
            raise OpenFailedError(f"cannot open subscription store at {self._dir}: {exc}") from exc

        log.info("store.opened", path=self._dir, subscribers=recovered)
        if self._metrics:
            self._metrics.set_gauge("subscribers", recovered)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def upsert(self, subscriber: Subscriber) -> None:
        """Insert or overwrite the record for subscriber.channel_id."""
        assert self._db
        key = encode_key(subscriber.channel_id)
        value = encode_subscriber(subscriber)
        try:
            await self._db.execute(
                "INSERT OR REPLACE INTO subscribers (key, value) VALUES (?, ?)",
                (key, value),
            )
            await self._db.commit()
        except aiosqlite.Error as exc:
            await self._rollback()
            raise StoreIOError(f"upsert failed for channel {subscriber.channel_id}: {exc}") from exc
        log.info(
            "store.upserted",
            channel_id=subscriber.channel_id,
            role_id=subscriber.role_id,
        )

    async def remove(self, channel_id: int) -> Subscriber | None:
        """Delete the record for channel_id, returning what was stored (or None)."""
        assert self._db
        key = encode_key(channel_id)
        try:
            cursor = await self._db.execute(
                "DELETE FROM subscribers WHERE key = ? RETURNING value", (key,)
            )
            rows = await cursor.fetchall()
            await cursor.close()
            await self._db.commit()
        except aiosqlite.Error as exc:
            await self._rollback()
            raise StoreIOError(f"remove failed for channel {channel_id}: {exc}") from exc

        if not rows:
            return None
        log.info("store.removed", channel_id=channel_id)
        return decode_subscriber(rows[0][0])

    async def _rollback(self) -> None:
        """Discard the statement left pending by a failed write."""
        try:
            await self._db.rollback()
        except aiosqlite.Error as exc:
            log.error("store.rollback_failed", error=str(exc))

    async def get(self, channel_id: int) -> Subscriber | None:
        assert self._db
        key = encode_key(channel_id)
        try:
            cursor = await self._db.execute(
                "SELECT value FROM subscribers WHERE key = ?", (key,)
            )
            row = await cursor.fetchone()
            await cursor.close()
        except aiosqlite.Error as exc:
            raise StoreIOError(f"lookup failed for channel {channel_id}: {exc}") from exc
        return decode_subscriber(row[0]) if row else None

    async def count(self) -> int:
        assert self._db
        try:
            cursor = await self._db.execute("SELECT COUNT(*) FROM subscribers")
            row = await cursor.fetchone()
            await cursor.close()
        except aiosqlite.Error as exc:
            raise StoreIOError(f"count failed: {exc}") from exc
        return row[0]

    async def scan(self) -> AsyncIterator[Subscriber]:
        """
        Yield every decodable subscriber from a snapshot taken on first iteration.

        Undecodable records are logged and skipped; a failed read ends the
        sequence early. Neither raises to the caller.
        """
        assert self._db
        try:
            cursor = await self._db.execute(
                "SELECT key, value FROM subscribers ORDER BY key"
            )
            rows = await cursor.fetchall()
            await cursor.close()
        except aiosqlite.Error as exc:
            log.error("store.scan_failed", error=str(exc))
            return

        for key, value in rows:
            try:
                subscriber = decode_subscriber(value)
            except MalformedRecordError as exc:
                log.warning("store.malformed_record", key=bytes(key).hex(), error=str(exc))
                if self._metrics:
                    self._metrics.inc("records_malformed_total")
                continue
            yield subscriber
