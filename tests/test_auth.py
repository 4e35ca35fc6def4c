import json

import pytest
from aiohttp import web
from aiohttp.test_utils import make_mocked_request

from llmgate.auth import KEY_NAME, auth_middleware, bearer_token


async def _echo(request):
    return web.json_response({"key": request[KEY_NAME]})


def _request(header=None):
    headers = {"Authorization": header} if header is not None else {}
    return make_mocked_request("POST", "/v1/chat/completions", headers=headers)


def _body(response):
    return json.loads(response.body)


def test_bearer_token_extracted():
    assert bearer_token(_request("Bearer token")) == "token"


def test_bearer_token_missing_header():
    assert bearer_token(_request()) is None


def test_bearer_token_other_scheme():
    assert bearer_token(_request("Basic token")) is None


@pytest.mark.asyncio
async def test_auth_skipped_without_admin_token_and_keys():
    middleware = auth_middleware(None, {})
    response = await middleware(_request(), _echo)
    assert response.status == 200
    assert _body(response) == {"key": None}


@pytest.mark.asyncio
async def test_valid_key_sets_key_name():
    middleware = auth_middleware(None, {"token": "alice"})
    response = await middleware(_request("Bearer token"), _echo)
    assert response.status == 200
    assert _body(response) == {"key": "alice"}


@pytest.mark.asyncio
async def test_missing_header_rejected():
    middleware = auth_middleware(None, {"token": "alice"})
    response = await middleware(_request(), _echo)
    assert response.status == 401
    body = _body(response)
    assert body["error"]["message"] == "missing or invalid Authorization header"
    assert body["error"]["type"] == "authentication_error"


@pytest.mark.asyncio
async def test_unknown_key_rejected():
    middleware = auth_middleware(None, {"token": "alice"})
    response = await middleware(_request("Bearer secret"), _echo)
    assert response.status == 401
    assert _body(response)["error"]["message"] == "invalid API key"


@pytest.mark.asyncio
async def test_admin_token_requires_auth_even_with_no_keys():
    middleware = auth_middleware("secret", {})
    response = await middleware(_request(), _echo)
    assert response.status == 401
    response = await middleware(_request("Bearer secret"), _echo)
    assert response.status == 401
    assert _body(response)["error"]["message"] == "invalid API key"


@pytest.mark.asyncio
async def test_key_map_changes_are_seen():
    key_map = {}
    middleware = auth_middleware("secret", key_map)
    rejected = await middleware(_request("Bearer token"), _echo)
    assert rejected.status == 401
    key_map["token"] = "bob"
    accepted = await middleware(_request("Bearer token"), _echo)
    assert accepted.status == 200
    assert _body(accepted) == {"key": "bob"}
    del key_map["token"]
    revoked = await middleware(_request("Bearer token"), _echo)
    assert revoked.status == 401