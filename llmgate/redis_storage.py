"""Storage backed by a Redis server."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import redis.asyncio
from redis.exceptions import RedisError

from llmgate.storage import Storage, StorageError


@contextmanager
def _errors(context: str = "") -> Iterator[None]:
    try:
        yield
    except RedisError as exc:
        message = f"{context}: {exc}" if context else str(exc)
        raise StorageError(message) from exc


class RedisStorage(Storage):
    """Values and counters share the Redis keyspace."""

    def __init__(self, client: Any) -> None:
        self._client = client

    @classmethod
    async def open(cls, url: str) -> RedisStorage:
        """Connect to the server at url and check that it answers."""
        try:
            client = redis.asyncio.Redis.from_url(url)
        except (ValueError, RedisError) as exc:
            raise StorageError(f"redis open: {exc}") from exc
        try:
            with _errors("redis connect"):
                await client.ping()
        except StorageError:
            await client.aclose()
            raise
        return cls(client)

    async def close(self) -> None:
        """Close the connection pool."""
        await self._client.aclose()

    async def __aenter__(self) -> RedisStorage:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def get(self, key: bytes) -> bytes | None:
        with _errors():
            value = await self._client.get(bytes(key))
        return bytes(value) if value is not None else None

    async def set(self, key: bytes, value: bytes) -> None:
        with _errors():
            await self._client.set(bytes(key), bytes(value))

    async def increment(self, key: bytes, delta: int) -> int:
        with _errors():
            return int(await self._client.incrby(bytes(key), delta))

    async def list(self, prefix: bytes) -> list[tuple[bytes, bytes]]:
        pattern = bytes(prefix) + b"*"
        with _errors():
            keys = [bytes(k) async for k in self._client.scan_iter(match=pattern)]
            if not keys:
                return []
            values = await self._client.mget(keys)
        return [(k, bytes(v)) for k, v in zip(keys, values) if v is not None]

    async def delete(self, key: bytes) -> None:
        with _errors():
            await self._client.delete(bytes(key))