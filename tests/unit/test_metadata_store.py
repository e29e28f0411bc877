"""Metadata store tests."""

import pytest

from poflow.metadata import stage_key
from poflow.metadata.inmemory import InMemoryMetadataStore
from poflow.metadata.redis import RedisMetadataStore


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_stage_key():
    assert stage_key("wf_1", "extraction") == "wf_1:extraction"
    assert stage_key("wf_1", "upload") == "wf_1:upload"


@pytest.mark.asyncio
async def test_inmemory_store_expires_entries():
    clock = _Clock()
    store = InMemoryMetadataStore(default_ttl=7200, clock=clock)

    await store.set("wf_1:extraction", {"fields": {"po_number": "PO-1"}})
    await store.set("wf_1:sync", {"ok": True}, ttl_seconds=10)

    clock.now += 11
    assert await store.get("wf_1:sync") is None
    assert await store.get("wf_1:extraction") == {"fields": {"po_number": "PO-1"}}

    clock.now += 7200
    assert await store.get("wf_1:extraction") is None
    assert len(store) == 0


@pytest.mark.asyncio
async def test_inmemory_store_purges_unread_expired_entries_on_write():
    clock = _Clock()
    store = InMemoryMetadataStore(clock=clock)

    for i in range(1000):
        await store.set(f"wf_{i}:status_update", {"outcome": "completed"}, ttl_seconds=10)
    await store.set("wf_keep:upload", {"content": ""}, ttl_seconds=100000)
    assert len(store) == 1001

    clock.now += 10000
    await store.set("wf_new:upload", {"content": ""}, ttl_seconds=10)
    assert len(store) == 2
    assert await store.get("wf_keep:upload") == {"content": ""}


@pytest.mark.asyncio
async def test_inmemory_store_returns_copies_and_deletes():
    store = InMemoryMetadataStore()
    value = {"line_items": [1, 2]}
    await store.set("k", value)
    value["line_items"].append(3)

    loaded = await store.get("k")
    assert loaded == {"line_items": [1, 2]}
    loaded["line_items"].clear()
    assert await store.get("k") == {"line_items": [1, 2]}

    await store.delete("k")
    await store.delete("k")
    assert await store.get("k") is None


@pytest.mark.asyncio
async def test_redis_store_roundtrip():
    store = RedisMetadataStore(key_prefix="poflow-test:meta", default_ttl=30)
    assert store.host == "localhost"
    try:
        await store.connect()
    except Exception:
        pytest.skip("Redis server not available")

    try:
        await store.set("wf_x:extraction", {"confidence_score": 0.9})
        assert await store.get("wf_x:extraction") == {"confidence_score": 0.9}
        await store.delete("wf_x:extraction")
        assert await store.get("wf_x:extraction") is None
    finally:
        await store.disconnect()
