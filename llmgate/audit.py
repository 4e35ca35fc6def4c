"""Audit log extension: one stored record per completed or failed request."""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from typing import Any

from aiohttp import web

from llmgate.extension import (
    Extension,
    GatewayError,
    PricingConfig,
    ProviderError,
    RequestContext,
    UpstreamTimeout,
    Usage,
    api_error,
    cost,
)
from llmgate.storage import Storage, storage_key

PREFIX = b"alog"
DEFAULT_LIMIT = 100

_log = logging.getLogger(__name__)


def _round_half_away(value: float) -> int:
    magnitude = math.floor(abs(value) + 0.5)
    return int(magnitude if value >= 0 else -magnitude)


def _now_millis() -> int:
    return int(time.time() * 1000)


def _error_status(error: GatewayError) -> int:
    if isinstance(error, ProviderError):
        return error.status
    if isinstance(error, UpstreamTimeout):
        return 504
    return 500


def _require(data: Mapping[str, Any], name: str, kind: type) -> Any:
    value = data[name]
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise TypeError(f"field '{name}' has the wrong type")
    return value


@dataclass
class AuditRecord:
    """One audited request."""

    request_id: str
    timestamp: int
    key_name: str
    model: str
    provider: str
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    cost_micros: int = 0
    latency_ms: int = 0
    status: int = 200

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready form; absent token counts are left out."""
        data = asdict(self)
        for name in ("prompt_tokens", "completion_tokens"):
            if data[name] is None:
                del data[name]
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AuditRecord:
        """Build a record from its JSON form, raising on missing or mistyped fields."""
        if not isinstance(data, Mapping):
            raise TypeError("audit record must be an object")
        tokens = {}
        for name in ("prompt_tokens", "completion_tokens"):
            value = data.get(name)
            if value is not None and (not isinstance(value, int) or isinstance(value, bool)):
                raise TypeError(f"field '{name}' has the wrong type")
            tokens[name] = value
        return cls(
            request_id=_require(data, "request_id", str),
            timestamp=_require(data, "timestamp", int),
            key_name=_require(data, "key_name", str),
            model=_require(data, "model", str),
            provider=_require(data, "provider", str),
            cost_micros=_require(data, "cost_micros", int),
            latency_ms=_require(data, "latency_ms", int),
            status=_require(data, "status", int),
            **tokens,
        )


def _parse_record(raw: bytes) -> AuditRecord | None:
    try:
        return AuditRecord.from_dict(json.loads(raw))
    except (ValueError, KeyError, TypeError):
        return None


async def query_logs(
    storage: Storage,
    key: str | None = None,
    model: str | None = None,
    since: int | None = None,
    until: int | None = None,
    limit: int = DEFAULT_LIMIT,
) -> list[AuditRecord]:
    """Load audit records, filter them, and return the newest first."""
    pairs = await storage.list(PREFIX)
    records = []
    for _, raw in pairs:
        record = _parse_record(raw)
        if record is None:
            continue
        if key is not None and record.key_name != key:
            continue
        if model is not None and record.model != model:
            continue
        if since is not None and record.timestamp < since:
            continue
        if until is not None and record.timestamp > until:
            continue
        records.append(record)
    records.sort(key=lambda r: r.timestamp, reverse=True)
    return records[:limit]


def _optional_int(query: Mapping[str, str], name: str) -> int | None:
    value = query.get(name)
    return int(value) if value is not None else None


class AuditLogger(Extension):
    """Writes an audit record for every response, usage chunk and error."""

    name = "audit"
    prefix = PREFIX

    def __init__(
        self,
        config: Mapping[str, Any] | None,
        storage: Storage,
        pricing: Mapping[str, PricingConfig] | None = None,
    ) -> None:
        self._storage = storage
        self._pricing = dict(pricing or {})
        self._pending: set[asyncio.Task[None]] = set()

    def cost_micros(self, model: str, prompt: int, completion: int) -> int:
        """Cost of a call in millionths of a USD, or 0 for unpriced models."""
        pricing = self._pricing.get(model)
        if pricing is None:
            return 0
        return _round_half_away(cost(pricing, prompt, completion) * 1_000_000.0)

    def admin_routes(self) -> list[web.RouteDef]:
        storage = self._storage

        async def logs(request: web.Request) -> web.Response:
            query = request.query
            try:
                since = _optional_int(query, "since")
                until = _optional_int(query, "until")
                limit = int(query.get("limit", DEFAULT_LIMIT))
                if limit < 0:
                    raise ValueError("limit must not be negative")
            except ValueError as exc:
                return web.json_response(
                    api_error(f"invalid query: {exc}", "invalid_request_error"), status=400
                )
            try:
                records = await query_logs(
                    storage, query.get("key"), query.get("model"), since, until, limit
                )
            except GatewayError as exc:
                return web.json_response(api_error(exc, "server_error"), status=500)
            return web.json_response([r.to_dict() for r in records])

        return [web.get("/v1/admin/logs", logs)]

    async def drain(self) -> None:
        """Wait until every pending record has been written."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _write_record(self, record: AuditRecord) -> None:
        suffix = record.timestamp.to_bytes(8, "big", signed=True) + record.request_id.encode()
        key = storage_key(PREFIX, suffix)
        task = asyncio.get_running_loop().create_task(self._persist(key, record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _persist(self, key: bytes, record: AuditRecord) -> None:
        try:
            value = json.dumps(record.to_dict()).encode()
        except (TypeError, ValueError) as exc:
            _log.warning("audit: failed to serialize record: %s", exc)
            return
        try:
            await self._storage.set(key, value)
        except GatewayError as exc:
            _log.warning("audit: failed to write record: %s", exc)

    def _record(
        self, ctx: RequestContext, usage: Usage | None, cost_micros: int, status: int
    ) -> AuditRecord:
        return AuditRecord(
            request_id=ctx.request_id,
            timestamp=_now_millis(),
            key_name=ctx.key_name or "",
            model=ctx.model,
            provider=ctx.provider,
            prompt_tokens=usage.prompt_tokens if usage else None,
            completion_tokens=usage.completion_tokens if usage else None,
            cost_micros=cost_micros,
            latency_ms=int(ctx.elapsed() * 1000),
            status=status,
        )

    async def on_response(
        self,
        ctx: RequestContext,
        request: Mapping[str, Any],
        response: Mapping[str, Any],
    ) -> None:
        usage = Usage.from_payload(response)
        micros = (
            self.cost_micros(ctx.model, usage.prompt_tokens, usage.completion_tokens)
            if usage
            else 0
        )
        self._write_record(self._record(ctx, usage, micros, 200))

    async def on_chunk(self, ctx: RequestContext, chunk: Mapping[str, Any]) -> None:
        usage = Usage.from_payload(chunk)
        if usage is None:
            return
        micros = self.cost_micros(ctx.model, usage.prompt_tokens, usage.completion_tokens)
        self._write_record(self._record(ctx, usage, micros, 200))

    async def on_error(self, ctx: RequestContext, error: GatewayError) -> None:
        self._write_record(self._record(ctx, None, 0, _error_status(error)))