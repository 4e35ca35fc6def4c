"""Assembly of the gateway's web application."""

from __future__ import annotations

import functools
from collections.abc import Awaitable, Callable, Iterable

from aiohttp import web

from llmgate.auth import auth_middleware
from llmgate.handlers import (
    STATE_KEY,
    AppState,
    audio_speech,
    audio_transcriptions,
    chat_completions,
    embeddings,
    image_generations,
    models,
)

ACTIVE_CONNECTIONS = "llmgate_active_connections"

_Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


@web.middleware
async def track_active_connections(
    request: web.Request, handler: _Handler
) -> web.StreamResponse:
    """Count in-flight API requests in the active connections gauge."""
    metrics = request.app[STATE_KEY].metrics
    metrics.adjust_gauge(ACTIVE_CONNECTIONS, 1.0)
    try:
        return await handler(request)
    finally:
        metrics.adjust_gauge(ACTIVE_CONNECTIONS, -1.0)


async def health(request: web.Request) -> web.Response:
    """GET /health: reachable without credentials so load balancers can probe it."""
    return web.json_response({"status": "ok"})


def build_app(
    state: AppState, admin_routes: Iterable[Iterable[web.RouteDef]] = ()
) -> web.Application:
    """The application with API routes, health check and extra admin routes.

    API routes are authenticated and counted; health and admin routes are not
    touched by API-key auth (admin routes carry their own guards).
    """
    authenticate = auth_middleware(state.admin_token, state.key_map)

    def guard(handler: _Handler) -> _Handler:
        inner = functools.partial(authenticate, handler=handler)

        async def guarded(request: web.Request) -> web.StreamResponse:
            return await track_active_connections(request, inner)

        return guarded

    app = web.Application()
    app[STATE_KEY] = state
    app.router.add_routes(
        [
            web.post("/v1/chat/completions", guard(chat_completions)),
            web.post("/v1/embeddings", guard(embeddings)),
            web.post("/v1/images/generations", guard(image_generations)),
            web.post("/v1/audio/speech", guard(audio_speech)),
            web.post("/v1/audio/transcriptions", guard(audio_transcriptions)),
            web.get("/v1/models", guard(models)),
            web.get("/health", health),
        ]
    )
    for routes in admin_routes:
        app.router.add_routes(list(routes))
    return app