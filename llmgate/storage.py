"""Key-value storage interface and the in-memory backend."""

from __future__ import annotations

from abc import ABC, abstractmethod

from llmgate.extension import GatewayError

PREFIX_LEN = 4

_I64_SPAN = 1 << 64
_I64_HALF = 1 << 63


class StorageError(GatewayError):
    """A storage backend failed."""


def storage_key(prefix: bytes, suffix: bytes) -> bytes:
    """Join a four-byte namespace prefix and a suffix into a storage key."""
    if len(prefix) != PREFIX_LEN:
        raise ValueError(f"storage prefix must be {PREFIX_LEN} bytes, got {len(prefix)}")
    return bytes(prefix) + bytes(suffix)


def _wrap_i64(value: int) -> int:
    return (value + _I64_HALF) % _I64_SPAN - _I64_HALF


def _encode_counter(value: int) -> bytes:
    return value.to_bytes(8, "little", signed=True)


class Storage(ABC):
    """Async byte-keyed storage with plain values and integer counters."""

    @abstractmethod
    async def get(self, key: bytes) -> bytes | None:
        """Return the value stored under key, or None."""

    @abstractmethod
    async def set(self, key: bytes, value: bytes) -> None:
        """Store value under key, replacing any previous value."""

    @abstractmethod
    async def increment(self, key: bytes, delta: int) -> int:
        """Add delta to the counter under key and return the new total."""

    @abstractmethod
    async def list(self, prefix: bytes) -> list[tuple[bytes, bytes]]:
        """Return all (key, value) pairs whose key starts with prefix.

        Counters are included with their value as 8 little-endian bytes.
        """

    @abstractmethod
    async def delete(self, key: bytes) -> None:
        """Remove both the value and the counter stored under key."""


class MemoryStorage(Storage):
    """Storage kept in process memory."""

    def __init__(self) -> None:
        self._data: dict[bytes, bytes] = {}
        self._counters: dict[bytes, int] = {}

    async def get(self, key: bytes) -> bytes | None:
        return self._data.get(bytes(key))

    async def set(self, key: bytes, value: bytes) -> None:
        self._data[bytes(key)] = bytes(value)

    async def increment(self, key: bytes, delta: int) -> int:
        key = bytes(key)
        total = _wrap_i64(self._counters.get(key, 0) + delta)
        self._counters[key] = total
        return total

    async def list(self, prefix: bytes) -> list[tuple[bytes, bytes]]:
        prefix = bytes(prefix)
        pairs = [(k, v) for k, v in self._data.items() if k.startswith(prefix)]
        pairs.extend(
            (k, _encode_counter(v)) for k, v in self._counters.items() if k.startswith(prefix)
        )
        return pairs

    async def delete(self, key: bytes) -> None:
        key = bytes(key)
        self._data.pop(key, None)
        self._counters.pop(key, None)