from unittest import mock

import pytest

from llmgate.extension import ExtensionError, RequestContext
from llmgate.rate_limit import RateLimit, current_minute
from llmgate.storage import MemoryStorage, StorageError

FIXED_TIME = 1_700_000_000.0
ALICE = RequestContext(model="m", key_name="alice")


class FailingStorage(MemoryStorage):
    async def increment(self, key, delta):
        raise StorageError("backend down")


def _at(seconds=FIXED_TIME):
    return mock.patch("time.time", return_value=seconds)


def _limiter(rpm, tpm=None, storage=None):
    config = {"requests_per_minute": rpm}
    if tpm is not None:
        config["tokens_per_minute"] = tpm
    return RateLimit(config, storage if storage is not None else MemoryStorage())


async def _rejected(limiter, ctx=ALICE):
    with pytest.raises(ExtensionError) as info:
        await limiter.on_request(ctx)
    return info.value


def test_current_minute_is_time_divided_by_sixty():
    with _at():
        assert current_minute() == int(FIXED_TIME) // 60


@pytest.mark.parametrize(
    "config",
    [
        {},
        {"requests_per_minute": "10"},
        {"requests_per_minute": 1.5},
        {"requests_per_minute": True},
        {"requests_per_minute": 0},
        {"requests_per_minute": -3},
        {"requests_per_minute": 10, "tokens_per_minute": 0},
        {"requests_per_minute": 10, "tokens_per_minute": -1},
    ],
)
def test_invalid_config_is_rejected(config):
    with pytest.raises(ValueError):
        RateLimit(config, MemoryStorage())


def test_non_integer_tokens_limit_is_ignored():
    limiter = _limiter(5, "x")
    assert limiter.tokens_per_minute is None
    assert limiter.requests_per_minute == 5


@pytest.mark.asyncio
async def test_requests_over_limit_are_rejected():
    limiter = _limiter(2)
    with _at():
        for _ in range(2):
            await limiter.on_request(ALICE)
        error = await _rejected(limiter)
    assert (error.status, error.error_type) == (429, "rate_limit_error")
    assert error.message == "rate limit exceeded (RPM)"


@pytest.mark.asyncio
async def test_keys_are_counted_separately():
    limiter = _limiter(1)
    with _at():
        for key_name in ("alice", "bob", None):
            await limiter.on_request(RequestContext(model="m", key_name=key_name))
        await _rejected(limiter)


@pytest.mark.asyncio
async def test_counter_key_holds_key_name_and_minute():
    storage = MemoryStorage()
    limiter = _limiter(10, storage=storage)
    with _at():
        minute = current_minute()
        await limiter.on_request(RequestContext(model="m"))
    pairs = dict(await storage.list(b"rlim"))
    expected = b"rlim" + f"__global:{minute}".encode()
    assert int.from_bytes(pairs[expected], "little", signed=True) == 1


@pytest.mark.asyncio
async def test_new_minute_resets_request_count():
    limiter = _limiter(1)
    with _at():
        await limiter.on_request(ALICE)
    with _at(FIXED_TIME + 60):
        await limiter.on_request(ALICE)
        await _rejected(limiter)


@pytest.mark.asyncio
async def test_tokens_over_limit_are_rejected():
    limiter = _limiter(100, 10)
    response = {"usage": {"prompt_tokens": 6, "completion_tokens": 5, "total_tokens": 11}}
    with _at():
        await limiter.on_request(ALICE)
        await limiter.on_response(ALICE, {}, response)
        error = await _rejected(limiter)
    assert error.message == "rate limit exceeded (TPM)"
    assert error.status == 429


@pytest.mark.asyncio
async def test_streamed_usage_counts_towards_tokens():
    limiter = _limiter(100, 5)
    ctx = RequestContext(model="m", key_name="alice", is_stream=True)
    with _at():
        await limiter.on_chunk(ctx, {"choices": []})
        await limiter.on_request(ctx)
        await limiter.on_chunk(ctx, {"usage": {"total_tokens": 6}})
        await _rejected(limiter, ctx)


@pytest.mark.asyncio
async def test_tokens_not_recorded_without_token_limit():
    storage = MemoryStorage()
    limiter = _limiter(100, storage=storage)
    await limiter.on_response(ALICE, {}, {"usage": {"total_tokens": 50}})
    assert await storage.list(b"rlim") == []


@pytest.mark.asyncio
async def test_storage_failure_becomes_server_error():
    limiter = _limiter(1, storage=FailingStorage())
    error = await _rejected(limiter, RequestContext(model="m"))
    assert (error.status, error.error_type) == (500, "server_error")
    assert error.message == "backend down"