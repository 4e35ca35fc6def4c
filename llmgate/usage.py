"""Usage extension: per-key, per-model token counters."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass
from typing import Any

from aiohttp import web

from llmgate.extension import Extension, GatewayError, RequestContext, Usage
from llmgate.storage import PREFIX_LEN, Storage, storage_key

PREFIX = b"usge"
GLOBAL_KEY = "__global"


@dataclass
class UsageEntry:
    """Token totals of one key and model."""

    key: str
    model: str
    prompt_tokens: int
    completion_tokens: int


async def usage_report(storage: Storage) -> list[UsageEntry]:
    """Token totals of every key and model that has stored counters."""
    try:
        pairs = await storage.list(PREFIX)
    except GatewayError:
        pairs = []

    totals: dict[tuple[str, str], list[int]] = {}
    for raw_key, raw_value in pairs:
        try:
            suffix = raw_key[PREFIX_LEN:].decode("utf-8")
        except UnicodeDecodeError:
            continue
        # The kind is split off the right so that models may contain ':'.
        rest, sep, kind = suffix.rpartition(":")
        if not sep:
            continue
        key_name, sep, model = rest.partition(":")
        if not sep:
            continue

        value = (
            int.from_bytes(raw_value[:8], "little", signed=True) if len(raw_value) >= 8 else 0
        )
        entry = totals.setdefault((key_name, model), [0, 0])
        if kind == "p":
            entry[0] = value
        elif kind == "c":
            entry[1] = value

    return [
        UsageEntry(key=key, model=model, prompt_tokens=prompt, completion_tokens=completion)
        for (key, model), (prompt, completion) in totals.items()
    ]


class UsageTracker(Extension):
    """Adds the token counts of every response to per-key, per-model counters."""

    name = "usage"
    prefix = PREFIX

    def __init__(self, config: Mapping[str, Any] | None, storage: Storage) -> None:
        self._storage = storage

    async def record(
        self, key_name: str, model: str, prompt_tokens: int, completion_tokens: int
    ) -> None:
        """Add token counts for a key and model; storage failures are ignored."""
        for kind, count in (("p", prompt_tokens), ("c", completion_tokens)):
            key = storage_key(PREFIX, f"{key_name}:{model}:{kind}".encode())
            try:
                await self._storage.increment(key, count)
            except GatewayError:
                pass

    def admin_routes(self) -> list[web.RouteDef]:
        storage = self._storage

        async def report(request: web.Request) -> web.Response:
            entries = await usage_report(storage)
            return web.json_response([asdict(e) for e in entries])

        return [web.get("/v1/usage", report)]

    async def _record_payload(self, ctx: RequestContext, payload: Mapping[str, Any]) -> None:
        usage = Usage.from_payload(payload)
        if usage is None:
            return
        key_name = ctx.key_name if ctx.key_name is not None else GLOBAL_KEY
        await self.record(key_name, ctx.model, usage.prompt_tokens, usage.completion_tokens)

    async def on_response(
        self,
        ctx: RequestContext,
        request: Mapping[str, Any],
        response: Mapping[str, Any],
    ) -> None:
        await self._record_payload(ctx, response)

    async def on_chunk(self, ctx: RequestContext, chunk: Mapping[str, Any]) -> None:
        await self._record_payload(ctx, chunk)