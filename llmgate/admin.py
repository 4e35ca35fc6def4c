"""Admin API for managing virtual keys at runtime."""

from __future__ import annotations

import hmac
import json
import secrets
import sys
from collections.abc import Awaitable, Callable, Iterable, MutableMapping
from typing import Any

from aiohttp import web

from llmgate.extension import GatewayError, KeyConfig, api_error
from llmgate.storage import Storage, storage_key

KEY_PREFIX = b"keys"

_Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def constant_time_eq(a: str, b: str) -> bool:
    """Compare two strings in time that does not depend on where they differ."""
    return hmac.compare_digest(a.encode(), b.encode())


def mask_key(key: str) -> str:
    """Show only the first eight characters of a key."""
    prefix = key[:8]
    return f"{prefix}..." if len(prefix) < len(key) else "***"


def generate_key() -> str:
    """A new random virtual key: ``sk-`` and 64 hex digits."""
    return "sk-" + secrets.token_hex(32)


def _error(status: int, message: str, error_type: str) -> web.Response:
    return web.json_response(api_error(message, error_type), status=status)


def _bearer_token(request: web.Request) -> str | None:
    header = request.headers.get("Authorization")
    if header is None or not header.startswith("Bearer "):
        return None
    return header[len("Bearer ") :]


def _encode_key(config: KeyConfig) -> bytes:
    return json.dumps(
        {"name": config.name, "key": config.key, "models": list(config.models)}
    ).encode()


def _string_list(value: Any, field: str) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise TypeError(f"'{field}' must be a list of strings")
    return list(value)


def _decode_key(raw: bytes) -> KeyConfig | None:
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    name, key = data.get("name"), data.get("key")
    if not isinstance(name, str) or not isinstance(key, str):
        return None
    try:
        models = _string_list(data.get("models", []), "models")
    except TypeError:
        return None
    return KeyConfig(name=name, key=key, models=models)


def _parse_create(body: Any) -> tuple[str, list[str]]:
    if not isinstance(body, dict):
        raise TypeError("request body must be an object")
    name = body.get("name")
    if not isinstance(name, str):
        raise TypeError("missing or invalid 'name'")
    models = _string_list(body["models"], "models") if "models" in body else ["*"]
    return name, models


def _summary(config: KeyConfig, source: str) -> dict[str, Any]:
    return {
        "name": config.name,
        "key_prefix": mask_key(config.key),
        "models": list(config.models),
        "source": source,
    }


class KeyAdmin:
    """Create, list, inspect and revoke virtual keys behind an admin token."""

    def __init__(
        self,
        storage: Storage,
        key_map: MutableMapping[str, str],
        admin_token: str,
        toml_keys: Iterable[KeyConfig],
    ) -> None:
        self._storage = storage
        self.key_map = key_map
        self._admin_token = admin_token
        self._toml_keys = list(toml_keys)
        self._toml_names = {k.name for k in self._toml_keys}

    def routes(self) -> list[web.RouteDef]:
        """Route definitions, each guarded by the admin token."""
        return [
            web.post("/v1/admin/keys", self._guarded(self.create_key)),
            web.get("/v1/admin/keys", self._guarded(self.list_keys)),
            web.get("/v1/admin/keys/{name}", self._guarded(self.get_key)),
            web.delete("/v1/admin/keys/{name}", self._guarded(self.delete_key)),
        ]

    def _guarded(self, handler: _Handler) -> _Handler:
        async def guarded(request: web.Request) -> web.StreamResponse:
            token = _bearer_token(request)
            if token is None:
                return _error(
                    401, "missing or invalid Authorization header", "authentication_error"
                )
            if not constant_time_eq(token, self._admin_token):
                return _error(401, "invalid admin token", "authentication_error")
            return await handler(request)

        return guarded

    async def create_key(self, request: web.Request) -> web.Response:
        """POST /v1/admin/keys: create a new virtual key."""
        try:
            body = await request.json()
        except ValueError as exc:
            return _error(400, f"invalid JSON body: {exc}", "invalid_request_error")
        try:
            name, models = _parse_create(body)
        except TypeError as exc:
            return _error(422, str(exc), "invalid_request_error")

        if not name:
            return _error(400, "name is required", "invalid_request_error")
        if name in self._toml_names:
            return _error(
                409, f"key '{name}' is managed by config file", "invalid_request_error"
            )

        skey = storage_key(KEY_PREFIX, name.encode())
        try:
            existing = await self._storage.get(skey)
        except GatewayError as exc:
            return _error(500, str(exc), "server_error")
        if existing is not None:
            return _error(409, f"key '{name}' already exists", "invalid_request_error")

        key = generate_key()
        config = KeyConfig(name=name, key=key, models=models)
        # Persist before the key becomes usable.
        try:
            await self._storage.set(skey, _encode_key(config))
        except GatewayError as exc:
            return _error(500, str(exc), "server_error")
        self.key_map[key] = name

        return web.json_response({"name": name, "key": key, "models": models}, status=201)

    async def list_keys(self, request: web.Request) -> web.Response:
        """GET /v1/admin/keys: config keys first, then dynamic ones."""
        keys = [_summary(kc, "config") for kc in self._toml_keys]
        try:
            pairs = await self._storage.list(KEY_PREFIX)
        except GatewayError as exc:
            return _error(500, str(exc), "server_error")
        for _, raw in pairs:
            config = _decode_key(raw)
            if config is None or config.name in self._toml_names:
                continue
            keys.append(_summary(config, "dynamic"))
        return web.json_response(keys)

    async def get_key(self, request: web.Request) -> web.Response:
        """GET /v1/admin/keys/{name}: details of one key."""
        name = request.match_info["name"]
        for config in self._toml_keys:
            if config.name == name:
                return web.json_response(_summary(config, "config"))

        try:
            raw = await self._storage.get(storage_key(KEY_PREFIX, name.encode()))
        except GatewayError as exc:
            return _error(500, str(exc), "server_error")
        if raw is None:
            return _error(404, f"key '{name}' not found", "invalid_request_error")
        config = _decode_key(raw)
        if config is None:
            return _error(500, "corrupt key data", "server_error")
        return web.json_response(_summary(config, "dynamic"))

    async def delete_key(self, request: web.Request) -> web.Response:
        """DELETE /v1/admin/keys/{name}: revoke a dynamic key."""
        name = request.match_info["name"]
        if name in self._toml_names:
            return _error(
                403,
                f"key '{name}' is managed by config file and cannot be deleted via API",
                "invalid_request_error",
            )

        skey = storage_key(KEY_PREFIX, name.encode())
        try:
            raw = await self._storage.get(skey)
        except GatewayError as exc:
            return _error(500, str(exc), "server_error")
        if raw is None:
            return _error(404, f"key '{name}' not found", "invalid_request_error")
        config = _decode_key(raw)
        if config is None:
            return _error(500, "corrupt key data", "server_error")

        try:
            await self._storage.delete(skey)
        except GatewayError as exc:
            return _error(500, str(exc), "server_error")
        self.key_map.pop(config.key, None)
        return web.Response(status=204)


def key_admin_routes(
    storage: Storage,
    key_map: MutableMapping[str, str],
    admin_token: str,
    toml_keys: Iterable[KeyConfig],
) -> list[web.RouteDef]:
    """Admin key management routes, protected by the admin token."""
    return KeyAdmin(storage, key_map, admin_token, toml_keys).routes()


async def load_stored_keys(
    storage: Storage,
    toml_keys: Iterable[KeyConfig],
    key_map: MutableMapping[str, str],
) -> None:
    """Add stored keys to key_map; config keys win on name conflicts."""
    try:
        pairs = await storage.list(KEY_PREFIX)
    except GatewayError as exc:
        print(f"warning: failed to load stored keys: {exc}", file=sys.stderr)
        return

    toml_names = {k.name for k in toml_keys}
    for _, raw in pairs:
        config = _decode_key(raw)
        if config is None or config.name in toml_names:
            continue
        key_map[config.key] = config.name