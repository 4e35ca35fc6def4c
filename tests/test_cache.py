import json

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from llmgate.cache import PREFIX, Cache
from llmgate.extension import RequestContext
from llmgate.storage import MemoryStorage

REQUEST = {"model": "m", "messages": [{"role": "user", "content": "hi"}]}
OTHER_REQUEST = {**REQUEST, "model": "other"}
RESPONSE = {"id": "resp-1", "object": "chat.completion", "choices": []}
CTX = RequestContext(model="m")


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def cache(storage):
    return Cache({}, storage)


@pytest.mark.parametrize("config, expected", [({}, 300), ({"ttl_seconds": 60}, 60)])
def test_ttl(config, expected):
    assert Cache(config, MemoryStorage()).ttl_seconds == expected


def test_cache_key_shape_and_determinism():
    key = Cache.cache_key(REQUEST)
    assert key.startswith(PREFIX)
    assert len(key) == 36
    assert Cache.cache_key(dict(REQUEST)) == key
    assert Cache.cache_key(OTHER_REQUEST) != key


@pytest.mark.asyncio
async def test_miss_then_hit(cache):
    assert await cache.on_cache_lookup(REQUEST) is None
    await cache.on_response(CTX, REQUEST, RESPONSE)
    assert await cache.on_cache_lookup(REQUEST) == RESPONSE


@pytest.mark.asyncio
async def test_streaming_responses_not_stored(storage, cache):
    await cache.on_response(RequestContext(model="m", is_stream=True), REQUEST, RESPONSE)
    assert await storage.list(PREFIX) == []
    assert await cache.on_cache_lookup(REQUEST) is None


@pytest.mark.asyncio
async def test_expired_entry_is_removed(storage):
    short_lived = Cache({"ttl_seconds": 10}, storage)
    key = Cache.cache_key(REQUEST)
    await storage.set(key, (0).to_bytes(8, "big") + json.dumps(RESPONSE).encode())
    assert await short_lived.on_cache_lookup(REQUEST) is None
    assert await storage.get(key) is None


@pytest.mark.asyncio
@pytest.mark.parametrize("value", [b"short", b"\x00" * 8 + b"not json"])
async def test_unusable_entries_miss(storage, cache, value):
    await storage.set(Cache.cache_key(REQUEST), value)
    assert await cache.on_cache_lookup(REQUEST) is None


@pytest.mark.asyncio
async def test_clear_removes_only_cache_entries(storage, cache):
    for request in (REQUEST, OTHER_REQUEST):
        await cache.on_response(CTX, request, RESPONSE)
    await storage.set(b"othr-key", b"kept")
    await cache.clear()
    assert await storage.list(PREFIX) == []
    assert await storage.get(b"othr-key") == b"kept"


@pytest.mark.asyncio
async def test_admin_route_clears_cache(cache):
    await cache.on_response(CTX, REQUEST, RESPONSE)
    app = web.Application()
    app.add_routes(cache.admin_routes())
    async with TestClient(TestServer(app)) as client:
        resp = await client.delete("/v1/cache")
        assert resp.status == 204
    assert await cache.on_cache_lookup(REQUEST) is None