import struct

import pytest
import pytest_asyncio

from llmgate.sqlite_storage import SqliteStorage
from llmgate.storage import StorageError


@pytest_asyncio.fixture
async def storage():
    async with await SqliteStorage.open(":memory:") as opened:
        yield opened


@pytest.mark.asyncio
async def test_get_missing_returns_none(storage):
    assert await storage.get(b"keysnone") is None


@pytest.mark.asyncio
async def test_set_get_and_overwrite(storage):
    for value in (b"first", b"second"):
        await storage.set(b"keysa", value)
        assert await storage.get(b"keysa") == value


@pytest.mark.asyncio
async def test_increment_accumulates_and_allows_negative(storage):
    first = await storage.increment(b"rlimk", 10)
    assert first == 10
    after = await storage.increment(b"rlimk", -4)
    assert after == first - 4
    assert await storage.increment(b"rlimk", 0) == after


@pytest.mark.asyncio
async def test_list_by_prefix_includes_counters(storage):
    await storage.set(b"keysa", b"va")
    await storage.set(b"alogb", b"vb")
    await storage.increment(b"keysc", 5)
    await storage.increment(b"keyt", 1)
    pairs = await storage.list(b"keys")
    assert dict(pairs) == {b"keysa": b"va", b"keysc": struct.pack("<q", 5)}


@pytest.mark.asyncio
async def test_list_prefers_value_over_counter_with_same_key(storage):
    await storage.set(b"usgek", b"plain")
    await storage.increment(b"usgek", 3)
    assert await storage.list(b"usge") == [(b"usgek", b"plain")]


@pytest.mark.asyncio
async def test_prefix_ending_in_ff_has_empty_range(storage):
    await storage.set(b"abc\xffx", b"v")
    assert await storage.list(b"abc\xff") == []


@pytest.mark.asyncio
async def test_delete_removes_value_and_counter(storage):
    await storage.set(b"cachk", b"v")
    await storage.increment(b"cachk", 2)
    await storage.delete(b"cachk")
    assert await storage.get(b"cachk") is None
    assert await storage.list(b"cach") == []


@pytest.mark.asyncio
async def test_data_persists_across_reopen(tmp_path):
    path = tmp_path / "gateway.db"
    async with await SqliteStorage.open(path) as first:
        await first.set(b"keysa", b"kept")
        await first.increment(b"bdgtk", 42)
    async with await SqliteStorage.open(path) as second:
        assert await second.get(b"keysa") == b"kept"
        assert await second.increment(b"bdgtk", 0) == 42


@pytest.mark.asyncio
async def test_open_unreachable_path_raises_storage_error(tmp_path):
    with pytest.raises(StorageError, match="sqlite"):
        await SqliteStorage.open(tmp_path / "missing" / "db.sqlite")


@pytest.mark.asyncio
async def test_operation_after_close_raises():
    closed = await SqliteStorage.open(":memory:")
    await closed.close()
    with pytest.raises((StorageError, ValueError)):
        await closed.get(b"keysa")