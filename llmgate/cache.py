"""Response cache extension for non-streaming chat completions."""

from __future__ import annotations

import hashlib
import json
import time
from collections.abc import Mapping
from typing import Any

from aiohttp import web

from llmgate.extension import Extension, GatewayError, RequestContext
from llmgate.storage import Storage, storage_key

PREFIX = b"cach"
DEFAULT_TTL_SECONDS = 300


def _now_secs() -> int:
    return int(time.time())


class Cache(Extension):
    """Stores responses keyed by a hash of the request, expiring after a TTL."""

    name = "cache"
    prefix = PREFIX

    def __init__(self, config: Mapping[str, Any], storage: Storage) -> None:
        ttl = config.get("ttl_seconds")
        if isinstance(ttl, int) and not isinstance(ttl, bool):
            self.ttl_seconds = ttl % (1 << 64)
        else:
            self.ttl_seconds = DEFAULT_TTL_SECONDS
        self._storage = storage

    @staticmethod
    def cache_key(request: Mapping[str, Any]) -> bytes:
        """Storage key of a request: the prefix and the SHA-256 of its JSON."""
        encoded = json.dumps(
            request, separators=(",", ":"), ensure_ascii=False, sort_keys=True, default=str
        ).encode()
        return storage_key(PREFIX, hashlib.sha256(encoded).digest())

    async def clear(self) -> None:
        """Remove every cached response."""
        try:
            pairs = await self._storage.list(PREFIX)
        except GatewayError:
            return
        for key, _ in pairs:
            try:
                await self._storage.delete(key)
            except GatewayError:
                pass

    def admin_routes(self) -> list[web.RouteDef]:
        async def clear(request: web.Request) -> web.Response:
            await self.clear()
            return web.Response(status=204)

        return [web.delete("/v1/cache", clear)]

    async def on_cache_lookup(self, request: Mapping[str, Any]) -> dict[str, Any] | None:
        key = self.cache_key(request)
        try:
            data = await self._storage.get(key)
        except GatewayError:
            return None
        if data is None or len(data) < 8:
            return None

        stored_at = int.from_bytes(data[:8], "big")
        if max(_now_secs() - stored_at, 0) > self.ttl_seconds:
            try:
                await self._storage.delete(key)
            except GatewayError:
                pass
            return None

        try:
            response = json.loads(data[8:])
        except ValueError:
            return None
        return response if isinstance(response, dict) else None

    async def on_response(
        self,
        ctx: RequestContext,
        request: Mapping[str, Any],
        response: Mapping[str, Any],
    ) -> None:
        if ctx.is_stream:
            return
        try:
            encoded = json.dumps(response).encode()
        except (TypeError, ValueError):
            return
        value = _now_secs().to_bytes(8, "big") + encoded
        try:
            await self._storage.set(self.cache_key(request), value)
        except GatewayError:
            pass