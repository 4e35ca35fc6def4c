"""Request handlers for the OpenAI-compatible API endpoints."""

from __future__ import annotations

import asyncio
import functools
import json
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import aiohttp
from aiohttp import web

from llmgate.auth import KEY_NAME
from llmgate.extension import (
    Extension,
    ExtensionError,
    GatewayError,
    RequestContext,
    Usage,
    api_error,
)
from llmgate.retry import (
    Deployment,
    call_with_fallback,
    call_with_retries,
    error_response,
    error_status,
    with_timeout,
)
from llmgate.storage import MemoryStorage, Storage

REQUEST_DURATION = "llmgate_request_duration_seconds"
TOKENS_TOTAL = "llmgate_tokens_total"
KEEP_ALIVE_INTERVAL = 15.0
OWNER = "llmgate"

_Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def _label_key(labels: Mapping[str, str]) -> tuple[tuple[str, str], ...]:
    return tuple(sorted(labels.items()))


@dataclass
class _Metrics:
    """In-process counters, histograms and gauges, keyed by name and labels."""

    counters: dict[tuple[str, tuple], int] = field(default_factory=dict)
    histograms: dict[tuple[str, tuple], list[float]] = field(default_factory=dict)
    gauges: dict[tuple[str, tuple], float] = field(default_factory=dict)

    def increment(self, name: str, value: int, **labels: str) -> None:
        key = (name, _label_key(labels))
        self.counters[key] = self.counters.get(key, 0) + value

    def observe(self, name: str, value: float, **labels: str) -> None:
        self.histograms.setdefault((name, _label_key(labels)), []).append(value)

    def adjust_gauge(self, name: str, delta: float, **labels: str) -> None:
        key = (name, _label_key(labels))
        self.gauges[key] = self.gauges.get(key, 0.0) + delta

    def counter_value(self, name: str, **labels: str) -> int:
        return self.counters.get((name, _label_key(labels)), 0)

    def observations(self, name: str, **labels: str) -> list[float]:
        return list(self.histograms.get((name, _label_key(labels)), []))

    def gauge_value(self, name: str, **labels: str) -> float:
        return self.gauges.get((name, _label_key(labels)), 0.0)


class Registry:
    """Models, their aliases, and the deployments that serve each model."""

    def __init__(
        self,
        models: Mapping[str, Sequence[Deployment]],
        aliases: Mapping[str, str] | None = None,
        providers: Mapping[str, str] | None = None,
    ) -> None:
        self._models = {name: list(deps) for name, deps in models.items()}
        self._aliases = dict(aliases or {})
        self._providers = dict(providers or {})

    def resolve(self, model: str) -> str:
        """The model an alias stands for, or the name itself."""
        return self._aliases.get(model, model)

    def dispatch_list(self, model: str) -> list[Deployment] | None:
        """Deployments to try for a model, in order, or None if it is unknown."""
        deployments = self._models.get(model)
        return list(deployments) if deployments is not None else None

    def provider_name(self, model: str) -> str | None:
        """Name of the provider serving a model, or None if it is unknown."""
        if model in self._providers:
            return self._providers[model]
        deployments = self._models.get(model)
        if not deployments:
            return None
        return deployments[0].provider.name

    def model_names(self) -> list[str]:
        """Every registered model name."""
        return list(self._models)


@dataclass
class AppState:
    """Shared state of the gateway, handed to every handler."""

    registry: Registry
    extensions: list[Extension] = field(default_factory=list)
    storage: Storage = field(default_factory=MemoryStorage)
    key_map: dict[str, str] = field(default_factory=dict)
    admin_token: str | None = None
    metrics: _Metrics = field(default_factory=_Metrics)


STATE_KEY = web.AppKey("llmgate_state", AppState)


@dataclass(frozen=True)
class BufferedField:
    """A multipart field held in memory so it can be sent to several providers."""

    name: str
    filename: str | None
    content_type: str | None
    data: bytes


class _Rejected(Exception):
    def __init__(self, response: web.StreamResponse) -> None:
        super().__init__()
        self.response = response


def _rejecting(handler: _Handler) -> _Handler:
    @functools.wraps(handler)
    async def wrapper(request: web.Request) -> web.StreamResponse:
        try:
            return await handler(request)
        except _Rejected as rejected:
            return rejected.response

    return wrapper


def _error(status: int, message: str, error_type: str) -> web.Response:
    return web.json_response(api_error(message, error_type), status=status)


def _record_duration(state: AppState, ctx: RequestContext, status: str) -> None:
    state.metrics.observe(
        REQUEST_DURATION,
        ctx.elapsed(),
        provider=ctx.provider,
        model=ctx.model,
        status=status,
        stream="true" if ctx.is_stream else "false",
    )


def _record_tokens(state: AppState, ctx: RequestContext, usage: Usage) -> None:
    for direction, count in (("prompt", usage.prompt_tokens), ("completion", usage.completion_tokens)):
        if count > 0:
            state.metrics.increment(
                TOKENS_TOTAL, count, provider=ctx.provider, model=ctx.model, direction=direction
            )


async def _read_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as exc:
        raise _Rejected(
            _error(400, f"failed to parse the request body as JSON: {exc}", "invalid_request_error")
        ) from exc
    if not isinstance(body, dict) or not isinstance(body.get("model"), str):
        raise _Rejected(
            _error(
                422,
                "request body must be an object with a string 'model'",
                "invalid_request_error",
            )
        )
    return body


async def _start(
    state: AppState, request: web.Request, model: str, is_stream: bool
) -> tuple[list[Deployment], RequestContext]:
    resolved = state.registry.resolve(model)
    deployments = state.registry.dispatch_list(resolved)
    if deployments is None:
        raise _Rejected(_error(404, f"model '{resolved}' not found", "invalid_request_error"))

    ctx = RequestContext(
        model=resolved,
        provider=state.registry.provider_name(resolved) or "",
        key_name=request.get(KEY_NAME),
        is_stream=is_stream,
    )
    for ext in state.extensions:
        try:
            await ext.on_request(ctx)
        except ExtensionError as err:
            status = err.status if 100 <= err.status <= 999 else 500
            raise _Rejected(web.json_response(err.body, status=status)) from err
    return deployments, ctx


async def _fail(
    state: AppState, ctx: RequestContext, error: GatewayError, status: str
) -> web.Response:
    for ext in state.extensions:
        await ext.on_error(ctx, error)
    _record_duration(state, ctx, status)
    return error_response(error)


def _sse(data: str) -> bytes:
    return f"data: {data}\n\n".encode()


async def _with_keep_alive(
    stream: AsyncIterator[Any], interval: float
) -> AsyncIterator[Any]:
    """Yield the items of stream, and None whenever interval passes without one."""
    iterator = stream.__aiter__()
    pending: asyncio.Future[Any] | None = None
    try:
        while True:
            if pending is None:
                pending = asyncio.ensure_future(iterator.__anext__())
            done, _ = await asyncio.wait({pending}, timeout=interval)
            if not done:
                yield None
                continue
            task, pending = pending, None
            try:
                item = task.result()
            except StopAsyncIteration:
                return
            yield item
    finally:
        if pending is not None:
            pending.cancel()


async def _stream_chat(
    request: web.Request,
    state: AppState,
    ctx: RequestContext,
    stream: AsyncIterator[dict[str, Any]],
) -> web.StreamResponse:
    response = web.StreamResponse(
        headers={"Content-Type": "text/event-stream", "Cache-Control": "no-cache"}
    )
    await response.prepare(request)

    errored = False
    try:
        async for chunk in _with_keep_alive(stream, KEEP_ALIVE_INTERVAL):
            if chunk is None:
                await response.write(b":\n\n")
                continue
            usage = Usage.from_payload(chunk)
            if usage is not None:
                _record_tokens(state, ctx, usage)
            for ext in state.extensions:
                await ext.on_chunk(ctx, chunk)
            await response.write(_sse(json.dumps(chunk, separators=(",", ":"))))
    except GatewayError as exc:
        errored = True
        for ext in state.extensions:
            await ext.on_error(ctx, exc)
        body = api_error(exc, "server_error")
        await response.write(_sse(json.dumps(body, separators=(",", ":"))))

    _record_duration(state, ctx, "5xx" if errored else "2xx")
    await response.write(_sse("[DONE]"))
    await response.write_eof()
    return response


def _binary(data: bytes, content_type: str) -> web.Response:
    return web.Response(body=data, headers={"Content-Type": content_type})


@_rejecting
async def chat_completions(request: web.Request) -> web.StreamResponse:
    """POST /v1/chat/completions"""
    state = request.app[STATE_KEY]
    body = await _read_body(request)
    is_stream = body.get("stream") is True
    deployments, ctx = await _start(state, request, body["model"], is_stream)

    if is_stream:
        # Ask OpenAI-compatible providers to report usage in the final chunk.
        body.setdefault("stream_options", {"include_usage": True})
        try:
            stream = await call_with_fallback(
                deployments,
                lambda d: call_with_retries(d, lambda p: p.chat_completion_stream(body)),
            )
        except GatewayError as exc:
            return await _fail(state, ctx, exc, "5xx")
        return await _stream_chat(request, state, ctx, stream)

    # Cache hits skip duration recording so the histogram reflects provider latency.
    for ext in state.extensions:
        cached = await ext.on_cache_lookup(body)
        if cached is not None:
            return web.json_response(cached)

    try:
        result = await call_with_fallback(
            deployments, lambda d: call_with_retries(d, lambda p: p.chat_completion(body))
        )
    except GatewayError as exc:
        return await _fail(state, ctx, exc, error_status(exc))

    usage = Usage.from_payload(result)
    if usage is not None:
        _record_tokens(state, ctx, usage)
    _record_duration(state, ctx, "2xx")
    for ext in state.extensions:
        await ext.on_response(ctx, body, result)
    return web.json_response(result)


@_rejecting
async def embeddings(request: web.Request) -> web.StreamResponse:
    """POST /v1/embeddings"""
    state = request.app[STATE_KEY]
    body = await _read_body(request)
    deployments, ctx = await _start(state, request, body["model"], False)
    try:
        result = await call_with_fallback(
            deployments, lambda d: call_with_retries(d, lambda p: p.embedding(body))
        )
    except GatewayError as exc:
        return await _fail(state, ctx, exc, error_status(exc))
    _record_duration(state, ctx, "2xx")
    return web.json_response(result)


async def models(request: web.Request) -> web.Response:
    """GET /v1/models"""
    state = request.app[STATE_KEY]
    data = [
        {"id": name, "object": "model", "created": 0, "owned_by": OWNER}
        for name in state.registry.model_names()
    ]
    return web.json_response({"object": "list", "data": data})


async def _binary_call(
    request: web.Request,
    state: AppState,
    model: str,
    call: Callable[[Deployment], Awaitable[tuple[bytes, str]]],
) -> web.Response:
    # Fallback only, no retries: these calls are billed and not idempotent.
    deployments, ctx = await _start(state, request, model, False)
    try:
        data, content_type = await call_with_fallback(deployments, call)
    except GatewayError as exc:
        return await _fail(state, ctx, exc, error_status(exc))
    _record_duration(state, ctx, "2xx")
    return _binary(data, content_type)


@_rejecting
async def image_generations(request: web.Request) -> web.StreamResponse:
    """POST /v1/images/generations"""
    state = request.app[STATE_KEY]
    body = await _read_body(request)
    return await _binary_call(
        request,
        state,
        body["model"],
        lambda d: with_timeout(d.timeout, d.provider.image_generation(body)),
    )


@_rejecting
async def audio_speech(request: web.Request) -> web.StreamResponse:
    """POST /v1/audio/speech"""
    state = request.app[STATE_KEY]
    body = await _read_body(request)
    return await _binary_call(
        request,
        state,
        body["model"],
        lambda d: with_timeout(d.timeout, d.provider.audio_speech(body)),
    )


async def _read_fields(request: web.Request) -> list[BufferedField]:
    try:
        reader = await request.multipart()
    except (KeyError, ValueError, AssertionError) as exc:
        raise _Rejected(
            _error(400, f"invalid multipart request: {exc}", "invalid_request_error")
        ) from exc

    fields: list[BufferedField] = []
    while True:
        try:
            part = await reader.next()
        except (ValueError, OSError, aiohttp.ClientError):
            break
        if part is None:
            break
        if not isinstance(part, aiohttp.BodyPartReader) or part.name is None:
            continue
        try:
            data = await part.read()
        except (ValueError, OSError, aiohttp.ClientError) as exc:
            raise _Rejected(
                _error(
                    400, f"failed to read multipart field: {exc}", "invalid_request_error"
                )
            ) from exc
        fields.append(
            BufferedField(
                name=part.name,
                filename=part.filename,
                content_type=part.headers.get("Content-Type"),
                data=bytes(data),
            )
        )
    return fields


@_rejecting
async def audio_transcriptions(request: web.Request) -> web.StreamResponse:
    """POST /v1/audio/transcriptions"""
    state = request.app[STATE_KEY]
    fields = await _read_fields(request)

    model_value = None
    for buffered in fields:
        if buffered.name == "model":
            model_value = buffered.data.decode("utf-8", errors="replace")
    if model_value is None:
        return _error(400, "missing 'model' field in multipart form", "invalid_request_error")

    model = state.registry.resolve(model_value)
    frozen: Iterable[BufferedField] = tuple(fields)
    return await _binary_call(
        request,
        state,
        model,
        lambda d: with_timeout(d.timeout, d.provider.audio_transcription(model, frozen)),
    )