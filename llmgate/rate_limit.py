"""Rate limit extension: per-key requests and tokens per minute."""

from __future__ import annotations

import time
from collections.abc import Mapping
from typing import Any

from llmgate.extension import (
    Extension,
    ExtensionError,
    GatewayError,
    RequestContext,
    Usage,
)
from llmgate.storage import Storage, storage_key

PREFIX = b"rlim"
GLOBAL_KEY = "__global"

_I64_MIN = -(1 << 63)
_I64_MAX = (1 << 63) - 1
_U64_SPAN = 1 << 64


def _as_i64(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    if not _I64_MIN <= value <= _I64_MAX:
        return None
    return value


def _as_u64(value: int) -> int:
    return value % _U64_SPAN


def current_minute() -> int:
    """Whole minutes since the Unix epoch."""
    return max(int(time.time()), 0) // 60


def _key_name(ctx: RequestContext) -> str:
    return ctx.key_name if ctx.key_name is not None else GLOBAL_KEY


class RateLimit(Extension):
    """Rejects requests once a key exceeds its per-minute request or token quota."""

    name = "rate_limit"
    prefix = PREFIX

    def __init__(self, config: Mapping[str, Any], storage: Storage) -> None:
        rpm = _as_i64(config.get("requests_per_minute"))
        if rpm is None:
            raise ValueError("rate_limit: missing or invalid 'requests_per_minute'")
        if rpm <= 0:
            raise ValueError("rate_limit: 'requests_per_minute' must be positive")

        tpm = _as_i64(config.get("tokens_per_minute"))
        if tpm is not None and tpm <= 0:
            raise ValueError("rate_limit: 'tokens_per_minute' must be positive")

        self._storage = storage
        self.requests_per_minute = rpm
        self.tokens_per_minute = tpm

    @staticmethod
    def _rpm_key(key_name: str, minute: int) -> bytes:
        return storage_key(PREFIX, f"{key_name}:{minute}".encode())

    @staticmethod
    def _tpm_key(key_name: str, minute: int) -> bytes:
        return storage_key(PREFIX, f"{key_name}:tpm:{minute}".encode())

    async def _counter(self, key: bytes, delta: int) -> int:
        try:
            return await self._storage.increment(key, delta)
        except GatewayError as exc:
            raise ExtensionError(500, str(exc), "server_error") from exc

    async def on_request(self, ctx: RequestContext) -> None:
        key_name = _key_name(ctx)
        minute = current_minute()

        count = await self._counter(self._rpm_key(key_name, minute), 1)
        if _as_u64(count) > self.requests_per_minute:
            raise ExtensionError(429, "rate limit exceeded (RPM)", "rate_limit_error")

        if self.tokens_per_minute is not None:
            tokens = await self._counter(self._tpm_key(key_name, minute), 0)
            if _as_u64(tokens) > self.tokens_per_minute:
                raise ExtensionError(429, "rate limit exceeded (TPM)", "rate_limit_error")

    async def _add_tokens(self, ctx: RequestContext, payload: Mapping[str, Any]) -> None:
        if self.tokens_per_minute is None:
            return
        usage = Usage.from_payload(payload)
        total = usage.total_tokens if usage is not None else 0
        if total == 0:
            return
        key = self._tpm_key(_key_name(ctx), current_minute())
        try:
            await self._storage.increment(key, total)
        except GatewayError:
            pass

    async def on_response(
        self,
        ctx: RequestContext,
        request: Mapping[str, Any],
        response: Mapping[str, Any],
    ) -> None:
        await self._add_tokens(ctx, response)

    async def on_chunk(self, ctx: RequestContext, chunk: Mapping[str, Any]) -> None:
        await self._add_tokens(ctx, chunk)