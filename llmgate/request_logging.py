"""Extension that logs one line per completed or failed request."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from llmgate.extension import Extension, GatewayError, RequestContext, Usage

_log = logging.getLogger("llmgate.request")


class RequestLogger(Extension):
    """Logs model, provider, key, latency and token counts of each request."""

    name = "logging"
    prefix = b"logg"

    def __init__(self, config: Mapping[str, Any] | None = None) -> None:
        pass

    @staticmethod
    def _fields(ctx: RequestContext) -> dict[str, Any]:
        return {
            "model": ctx.model,
            "provider": ctx.provider,
            "key": ctx.key_name or "-",
            "stream": ctx.is_stream,
            "latency_ms": int(ctx.elapsed() * 1000),
        }

    async def on_response(
        self,
        ctx: RequestContext,
        request: Mapping[str, Any],
        response: Mapping[str, Any],
    ) -> None:
        usage = Usage.from_payload(response) or Usage()
        fields = self._fields(ctx)
        fields["prompt_tokens"] = usage.prompt_tokens
        fields["completion_tokens"] = usage.completion_tokens
        _log.info(
            "request completed model=%s provider=%s key=%s stream=%s latency_ms=%d "
            "prompt_tokens=%d completion_tokens=%d",
            fields["model"],
            fields["provider"],
            fields["key"],
            fields["stream"],
            fields["latency_ms"],
            fields["prompt_tokens"],
            fields["completion_tokens"],
            extra=fields,
        )

    async def on_error(self, ctx: RequestContext, error: GatewayError) -> None:
        fields = self._fields(ctx)
        fields["error"] = str(error)
        _log.warning(
            "request failed model=%s provider=%s key=%s stream=%s latency_ms=%d error=%s",
            fields["model"],
            fields["provider"],
            fields["key"],
            fields["stream"],
            fields["latency_ms"],
            fields["error"],
            extra=fields,
        )