"""Storage backed by an SQLite database."""

from __future__ import annotations

import os
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager

import aiosqlite

from llmgate.storage import Storage, StorageError

_CREATE_KV = "CREATE TABLE IF NOT EXISTS kv (key BLOB PRIMARY KEY, value BLOB NOT NULL)"
_CREATE_COUNTERS = (
    "CREATE TABLE IF NOT EXISTS counters "
    "(key BLOB PRIMARY KEY, value INTEGER NOT NULL DEFAULT 0)"
)


@contextmanager
def _errors(context: str = "") -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as exc:
        message = f"{context}: {exc}" if context else str(exc)
        raise StorageError(message) from exc


def _upper_bound(prefix: bytes) -> bytes:
    if not prefix:
        return prefix
    return prefix[:-1] + bytes([(prefix[-1] + 1) % 256])


class SqliteStorage(Storage):
    """Values in a ``kv`` table and counters in a ``counters`` table."""

    def __init__(self, connection: aiosqlite.Connection) -> None:
        self._conn = connection

    @classmethod
    async def open(cls, path: str | os.PathLike[str]) -> SqliteStorage:
        """Open (creating if needed) the database at path."""
        try:
            conn = await aiosqlite.connect(path)
        except (sqlite3.Error, OSError) as exc:
            raise StorageError(f"sqlite open: {exc}") from exc
        try:
            with _errors("sqlite init"):
                await conn.execute(_CREATE_KV)
                await conn.execute(_CREATE_COUNTERS)
                await conn.commit()
        except StorageError:
            await conn.close()
            raise
        return cls(conn)

    async def close(self) -> None:
        """Close the database connection."""
        await self._conn.close()

    async def __aenter__(self) -> SqliteStorage:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def get(self, key: bytes) -> bytes | None:
        with _errors():
            async with self._conn.execute(
                "SELECT value FROM kv WHERE key = ?", (bytes(key),)
            ) as cursor:
                row = await cursor.fetchone()
        return bytes(row[0]) if row is not None else None

    async def set(self, key: bytes, value: bytes) -> None:
        with _errors():
            await self._conn.execute(
                "INSERT INTO kv (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (bytes(key), bytes(value)),
            )
            await self._conn.commit()

    async def increment(self, key: bytes, delta: int) -> int:
        key = bytes(key)
        with _errors():
            await self._conn.execute(
                "INSERT INTO counters (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = value + excluded.value",
                (key, delta),
            )
            async with self._conn.execute(
                "SELECT value FROM counters WHERE key = ?", (key,)
            ) as cursor:
                row = await cursor.fetchone()
            await self._conn.commit()
        return int(row[0])

    async def list(self, prefix: bytes) -> list[tuple[bytes, bytes]]:
        lower = bytes(prefix)
        upper = _upper_bound(lower)
        with _errors():
            async with self._conn.execute(
                "SELECT key, value FROM kv WHERE key >= ? AND key < ?", (lower, upper)
            ) as cursor:
                pairs = [(bytes(k), bytes(v)) for k, v in await cursor.fetchall()]
            async with self._conn.execute(
                "SELECT key, value FROM counters WHERE key >= ? AND key < ?", (lower, upper)
            ) as cursor:
                counter_rows = await cursor.fetchall()
        seen = {k for k, _ in pairs}
        pairs.extend(
            (bytes(k), int(v).to_bytes(8, "little", signed=True))
            for k, v in counter_rows
            if bytes(k) not in seen
        )
        return pairs

    async def delete(self, key: bytes) -> None:
        key = bytes(key)
        with _errors():
            await self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            await self._conn.execute("DELETE FROM counters WHERE key = ?", (key,))
            await self._conn.commit()