"""Bearer-token authentication of API requests against virtual keys."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping

from aiohttp import web

from llmgate.extension import api_error

KEY_NAME = "key_name"
"""Request item holding the authenticated key name, or None when auth is off."""

_Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def bearer_token(request: web.Request) -> str | None:
    """The token of a ``Bearer`` Authorization header, or None."""
    header = request.headers.get("Authorization")
    if header is None or not header.startswith("Bearer "):
        return None
    return header[len("Bearer ") :]


def _unauthorized(message: str) -> web.Response:
    return web.json_response(api_error(message, "authentication_error"), status=401)


def auth_middleware(admin_token: str | None, key_map: Mapping[str, str]):
    """Middleware that checks the bearer token against key_map.

    Auth is skipped only when no admin token is configured and key_map is
    empty. The key name is stored in the request under ``KEY_NAME``.
    key_map is read on every request, so later changes take effect at once.
    """

    @web.middleware
    async def authenticate(request: web.Request, handler: _Handler) -> web.StreamResponse:
        if admin_token is None and not key_map:
            request[KEY_NAME] = None
            return await handler(request)

        token = bearer_token(request)
        if token is None:
            return _unauthorized("missing or invalid Authorization header")

        key_name = key_map.get(token)
        if key_name is None:
            return _unauthorized("invalid API key")

        request[KEY_NAME] = key_name
        return await handler(request)

    return authenticate