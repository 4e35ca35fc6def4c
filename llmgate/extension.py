"""Shared gateway types: errors, pricing, request context and extension hooks."""

from __future__ import annotations

import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any


def api_error(message: object, error_type: str) -> dict[str, Any]:
    """Build an OpenAI-style error body."""
    return {"error": {"message": str(message), "type": error_type}}


class GatewayError(Exception):
    """An internal gateway failure."""

    def is_transient(self) -> bool:
        """Whether retrying the same call may succeed."""
        return False


class ProviderError(GatewayError):
    """An upstream provider answered with an error status."""

    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"provider error ({status}): {body}")
        self.status = status
        self.body = body

    def is_transient(self) -> bool:
        return self.status == 429 or self.status >= 500


class UpstreamTimeout(GatewayError):
    """An upstream call did not finish within its deadline."""

    def __init__(self, message: str = "request timed out") -> None:
        super().__init__(message)

    def is_transient(self) -> bool:
        return True


class ExtensionError(Exception):
    """Raised by an extension's request hook to reject a request."""

    def __init__(self, status: int, message: str, error_type: str) -> None:
        super().__init__(message)
        self.status = status
        self.message = message
        self.error_type = error_type
        self.body = api_error(message, error_type)


@dataclass(frozen=True)
class Usage:
    """Token counts reported by a provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | None) -> Usage | None:
        """Read the ``usage`` object of a response or chunk, if it has one."""
        if not isinstance(payload, Mapping):
            return None
        usage = payload.get("usage")
        if not isinstance(usage, Mapping):
            return None
        prompt = int(usage.get("prompt_tokens") or 0)
        completion = int(usage.get("completion_tokens") or 0)
        total = usage.get("total_tokens")
        return cls(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=int(total) if total is not None else prompt + completion,
        )


@dataclass(frozen=True)
class PricingConfig:
    """Per-model prices in USD per million tokens."""

    prompt_cost_per_million: float = 0.0
    completion_cost_per_million: float = 0.0


def cost(pricing: PricingConfig, prompt_tokens: int, completion_tokens: int) -> float:
    """Cost in USD of a call with the given token counts."""
    return (
        prompt_tokens * pricing.prompt_cost_per_million
        + completion_tokens * pricing.completion_cost_per_million
    ) / 1_000_000.0


@dataclass
class KeyConfig:
    """A virtual API key and the models it may use."""

    name: str
    key: str
    models: list[str] = field(default_factory=list)


@dataclass
class RequestContext:
    """Per-request information handed to extension hooks."""

    model: str
    provider: str = ""
    key_name: str | None = None
    is_stream: bool = False
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: float = field(default_factory=time.monotonic)

    def elapsed(self) -> float:
        """Seconds since the request started."""
        return time.monotonic() - self.started_at


class Extension:
    """Base class for gateway extensions; every hook does nothing by default."""

    name: str = ""
    prefix: bytes = b""

    async def on_request(self, ctx: RequestContext) -> None:
        """Called before dispatch; raise ExtensionError to reject the request."""
        return None

    async def on_cache_lookup(self, request: Mapping[str, Any]) -> dict[str, Any] | None:
        """Return a cached response for a non-streaming request, or None."""
        return None

    async def on_response(
        self,
        ctx: RequestContext,
        request: Mapping[str, Any],
        response: Mapping[str, Any],
    ) -> None:
        """Called after a successful non-streaming response."""
        return None

    async def on_chunk(self, ctx: RequestContext, chunk: Mapping[str, Any]) -> None:
        """Called for every streamed chunk."""
        return None

    async def on_error(self, ctx: RequestContext, error: GatewayError) -> None:
        """Called when a request fails."""
        return None

    def admin_routes(self) -> list:
        """Route definitions this extension serves; none by default."""
        return []