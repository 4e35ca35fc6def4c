"""Provider interface, deployments, timeouts, retries and fallback."""

from __future__ import annotations

import asyncio
import random
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, TypeVar

from aiohttp import web

from llmgate.extension import GatewayError, ProviderError, UpstreamTimeout, api_error

T = TypeVar("T")

INITIAL_BACKOFF = 0.1

_OPERATION_LABELS = {
    "chat_completion": "chat completion",
    "chat_completion_stream": "streaming chat completion",
    "embedding": "embedding",
    "image_generation": "image generation",
    "audio_speech": "audio speech",
    "audio_transcription": "audio transcription",
}


class Provider:
    """An upstream LLM provider.

    Operations are supplied as async callables by keyword, or by overriding the
    methods in a subclass. An operation that is not supplied raises GatewayError.
    """

    name: str = ""
    _operations: Mapping[str, Callable[..., Awaitable[Any]]] = MappingProxyType({})

    def __init__(self, name: str = "", **operations: Callable[..., Awaitable[Any]]) -> None:
        unknown = sorted(set(operations) - set(_OPERATION_LABELS))
        if unknown:
            raise TypeError(f"unknown provider operations: {', '.join(unknown)}")
        if name:
            self.name = name
        self._operations = dict(operations)

    async def _invoke(self, operation: str, *args: Any) -> Any:
        handler = self._operations.get(operation)
        if handler is None:
            raise GatewayError(
                f"{_OPERATION_LABELS[operation]} is not supported by this provider"
            )
        return await handler(*args)

    async def chat_completion(self, request: Mapping[str, Any]) -> dict[str, Any]:
        """Run a non-streaming chat completion."""
        return await self._invoke("chat_completion", request)

    async def chat_completion_stream(
        self, request: Mapping[str, Any]
    ) -> AsyncIterator[dict[str, Any]]:
        """Start a streaming chat completion and return its chunk stream."""
        return await self._invoke("chat_completion_stream", request)

    async def embedding(self, request: Mapping[str, Any]) -> dict[str, Any]:
        """Compute embeddings."""
        return await self._invoke("embedding", request)

    async def image_generation(self, request: Mapping[str, Any]) -> tuple[bytes, str]:
        """Generate images; returns the body and its content type."""
        return await self._invoke("image_generation", request)

    async def audio_speech(self, request: Mapping[str, Any]) -> tuple[bytes, str]:
        """Synthesise speech; returns the body and its content type."""
        return await self._invoke("audio_speech", request)

    async def audio_transcription(self, model: str, fields: Sequence[Any]) -> tuple[bytes, str]:
        """Transcribe audio from multipart fields; returns the body and its content type."""
        return await self._invoke("audio_transcription", model, fields)


@dataclass
class Deployment:
    """A provider serving a model, with its timeout (seconds, 0 disables) and retries."""

    provider: Provider
    timeout: float = 0.0
    max_retries: int = 0


async def with_timeout(timeout: float, awaitable: Awaitable[T]) -> T:
    """Await with a deadline, raising UpstreamTimeout when it passes; 0 disables it."""
    if timeout <= 0:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as exc:
        raise UpstreamTimeout() from exc


def jittered(backoff: float) -> float:
    """A random delay between half of backoff and backoff."""
    return random.uniform(backoff / 2, backoff)


async def call_with_retries(
    deployment: Deployment, call: Callable[[Provider], Awaitable[T]]
) -> T:
    """Call a deployment's provider, retrying transient errors with backoff."""
    try:
        return await with_timeout(deployment.timeout, call(deployment.provider))
    except GatewayError as exc:
        if not exc.is_transient() or deployment.max_retries == 0:
            raise
        last_err = exc

    backoff = INITIAL_BACKOFF
    for _ in range(deployment.max_retries):
        await asyncio.sleep(jittered(backoff))
        backoff *= 2
        try:
            return await with_timeout(deployment.timeout, call(deployment.provider))
        except GatewayError as exc:
            if not exc.is_transient():
                raise
            last_err = exc
    raise last_err


async def call_with_fallback(
    deployments: Iterable[Deployment], call: Callable[[Deployment], Awaitable[T]]
) -> T:
    """Try each deployment in turn and return the first success; raise the last error."""
    last_err: GatewayError | None = None
    for deployment in deployments:
        try:
            return await call(deployment)
        except GatewayError as exc:
            last_err = exc
    if last_err is None:
        raise GatewayError("no providers available")
    raise last_err


def error_response(error: GatewayError) -> web.Response:
    """HTTP error response for a failed upstream call."""
    if isinstance(error, ProviderError):
        status = error.status if 100 <= error.status <= 999 else 502
        body = api_error(error.body, "upstream_error")
    elif isinstance(error, UpstreamTimeout):
        status = 504
        body = api_error(error, "timeout_error")
    else:
        status = 500
        body = api_error(error, "server_error")
    return web.json_response(body, status=status)


def error_status(error: GatewayError) -> str:
    """Status class of a failure for metrics: ``429``, ``4xx`` or ``5xx``."""
    if isinstance(error, ProviderError):
        if error.status == 429:
            return "429"
        if 400 <= error.status <= 499:
            return "4xx"
    return "5xx"