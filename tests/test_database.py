"""
Tests for the local store and timestamp helpers.
"""
import asyncio
from datetime import datetime, timezone

import pytest

from pixelsync.database import (
    METADATA_STORE,
    DuplicateRecordError,
    LocalStore,
    RecordNotFoundError,
    StoreOpenError,
    UnknownEntityError,
    is_newer,
    later_timestamp,
    parse_timestamp,
)


# ========== Timestamp Helpers ==========

def test_parse_timestamp_formats():
    """ISO strings with or without Z, epoch millis and junk."""
    expected = datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert parse_timestamp("2024-01-01T00:00:00Z") == expected
    assert parse_timestamp("2024-01-01T00:00:00+00:00") == expected
    assert parse_timestamp("2024-01-01T00:00:00") == expected
    assert parse_timestamp(1704067200000) == expected
    assert parse_timestamp(None) is None
    assert parse_timestamp("") is None
    assert parse_timestamp("not a date") is None


def test_is_newer_is_strict():
    older = {"id": "a", "updated_at": "2024-01-01T00:00:00Z"}
    newer = {"id": "a", "updated_at": "2024-01-02T00:00:00Z"}
    assert is_newer(newer, older)
    assert not is_newer(older, newer)
    assert not is_newer(older, dict(older))


def test_is_newer_falls_back_to_created_at():
    created_only = {"id": "a", "created_at": "2024-01-03T00:00:00Z"}
    updated = {"id": "a", "updated_at": "2024-01-02T00:00:00Z"}
    assert is_newer(created_only, updated)


def test_is_newer_missing_timestamp():
    assert not is_newer({"id": "a"}, {"id": "a", "updated_at": "2024-01-01T00:00:00Z"})
    assert not is_newer({"id": "a", "updated_at": "2024-01-01T00:00:00Z"}, {"id": "a"})


def test_later_timestamp_never_goes_backwards():
    assert later_timestamp("2024-01-02T00:00:00Z", "2024-01-01T00:00:00Z") == "2024-01-02T00:00:00Z"
    assert later_timestamp("2024-01-01T00:00:00Z", "2024-01-02T00:00:00Z") == "2024-01-02T00:00:00Z"
    assert later_timestamp(None, "2024-01-01T00:00:00Z") == "2024-01-01T00:00:00Z"


# ========== Lifecycle ==========

@pytest.mark.asyncio
async def test_concurrent_init_shares_one_client(tmp_path):
    opened = []

    from libsql_client import create_client

    def factory(url):
        opened.append(url)
        return create_client(url)

    store = LocalStore(f"file:{tmp_path / 'shared.db'}", client_factory=factory)
    clients = await asyncio.gather(*(store.init() for _ in range(5)))
    try:
        assert len(opened) == 1
        assert all(client is clients[0] for client in clients)
        assert store.is_initialized
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_reopen_keeps_records(tmp_path):
    url = f"file:{tmp_path / 'reopen.db'}"
    first = LocalStore(url)
    await first.create("events", {"id": "evt-1", "title": "Gig"})
    await first.close()

    second = LocalStore(url)
    try:
        record = await second.get("events", "evt-1")
        assert record["title"] == "Gig"
        assert await second.find("events", "title", "Gig")
    finally:
        await second.close()


@pytest.mark.asyncio
async def test_open_failure_raises_store_open_error():
    def broken(url):
        raise OSError("disk unavailable")

    store = LocalStore("file:/nonexistent/x.db", client_factory=broken)
    with pytest.raises(StoreOpenError):
        await store.init()
    assert not store.is_initialized


# ========== CRUD ==========

@pytest.mark.asyncio
async def test_create_stamps_metadata(store):
    record = await store.create("events", {"title": "Gig"})

    assert record["id"]
    assert record["created_at"] == record["updated_at"]
    assert record["_version"] == 1
    assert record["_synced"] is False
    assert await store.get("events", record["id"]) == record


@pytest.mark.asyncio
async def test_create_duplicate_id(store):
    await store.create("events", {"id": "evt-1"})
    with pytest.raises(DuplicateRecordError):
        await store.create("events", {"id": "evt-1"})


@pytest.mark.asyncio
async def test_update_bumps_version_and_resets_synced(store):
    created = await store.create("tasks", {"id": "t1", "title": "Draft"}, synced=True)
    assert created["_synced"] is True

    first = await store.update("tasks", "t1", {"title": "Final"})
    second = await store.update("tasks", "t1", {"status": "done"})

    assert first["_version"] == 2
    assert second["_version"] == 3
    assert second["title"] == "Final"
    assert second["_synced"] is False
    assert parse_timestamp(second["updated_at"]) >= parse_timestamp(created["updated_at"])


@pytest.mark.asyncio
async def test_update_ignores_caller_sync_flags(store):
    await store.create("tasks", {"id": "t1"})
    updated = await store.update("tasks", "t1", {"_version": 99, "_synced": True})
    assert updated["_version"] == 2
    assert updated["_synced"] is False


@pytest.mark.asyncio
async def test_update_preserved_timestamp_never_goes_backwards(store):
    await store.create(
        "events", {"id": "e1", "updated_at": "2024-01-05T00:00:00Z"}, preserve_timestamps=True
    )
    updated = await store.update(
        "events", "e1", {"updated_at": "2024-01-01T00:00:00Z"}, preserve_timestamps=True
    )
    assert updated["updated_at"] == "2024-01-05T00:00:00Z"


@pytest.mark.asyncio
async def test_update_missing_record(store):
    with pytest.raises(RecordNotFoundError):
        await store.update("events", "missing", {"title": "x"})


@pytest.mark.asyncio
async def test_unknown_entity(store):
    with pytest.raises(UnknownEntityError):
        await store.get_all("notAnEntity")


@pytest.mark.asyncio
async def test_find_by_field(store):
    await store.create("tasks", {"id": "t1", "status": "open"})
    await store.create("tasks", {"id": "t2", "status": "done"})

    assert [task["id"] for task in await store.find("tasks", "status", "open")] == ["t1"]
    assert await store.find("tasks", "status", "archived") == []


@pytest.mark.asyncio
async def test_find_rejects_unsafe_field_names(store):
    await store.create("tasks", {"id": "t1", "status": "open"})

    for field in ["status') = 1 OR ('", "a.b", "", "status\n"]:
        with pytest.raises(ValueError):
            await store.find("tasks", field, "open")


@pytest.mark.asyncio
async def test_delete_and_count(store):
    await store.create("tags", {"id": "tag-1", "name": "house"})
    await store.create("tags", {"id": "tag-2", "name": "techno"})

    assert await store.count("tags") == 2
    assert await store.delete("tags", "tag-1") is True
    assert await store.delete("tags", "tag-1") is False
    assert await store.count("tags") == 1


@pytest.mark.asyncio
async def test_backfill_is_not_a_mutation(store):
    created = await store.create("clients", {"id": "c1", "name": "Club"})
    changed = await store.backfill("clients", "c1", {"_encrypted": False, "name": "Other"})

    record = await store.get("clients", "c1")
    assert changed is True
    assert record["_encrypted"] is False
    assert record["name"] == "Club"
    assert record["_version"] == created["_version"]
    assert record["updated_at"] == created["updated_at"]
    assert await store.backfill("clients", "c1", {"_encrypted": False}) is False


@pytest.mark.asyncio
async def test_mark_synced_keeps_version(store):
    created = await store.create("events", {"id": "e1"})
    await store.create("events", {"id": "e2"})

    assert await store.mark_synced("events", ["e1"]) == 1
    assert await store.mark_synced("events", []) == 0

    e1 = await store.get("events", "e1")
    e2 = await store.get("events", "e2")
    assert e1["_synced"] is True
    assert e1["_version"] == created["_version"]
    assert e1["updated_at"] == created["updated_at"]
    assert e2["_synced"] is False


@pytest.mark.asyncio
async def test_put_many_writes_verbatim(store):
    records = [
        {"id": "e1", "updated_at": "2020-01-01T00:00:00Z", "_version": 7, "_synced": True},
        {"id": "e2", "updated_at": "2020-01-02T00:00:00Z", "_version": 1, "_synced": False},
    ]
    await store.put_many("events", records)
    assert sorted(await store.get_all("events"), key=lambda r: r["id"]) == records


@pytest.mark.asyncio
async def test_metadata_store_keyed_by_key(store):
    await store.create(METADATA_STORE, {"key": "lastSync", "value": "2024-01-01T00:00:00Z"})
    record = await store.get(METADATA_STORE, "lastSync")
    assert record["value"] == "2024-01-01T00:00:00Z"


@pytest.mark.asyncio
async def test_clear_all_and_stats(store):
    await store.create("events", {"id": "e1"})
    await store.create("tasks", {"id": "t1"})
    await store.create(METADATA_STORE, {"key": "lastSync", "value": "x"})

    stats = await store.get_stats()
    assert stats["events"] == 1
    assert METADATA_STORE not in stats

    await store.clear_all()
    assert await store.count("events") == 0
    assert await store.count("tasks") == 0
    # internal stores are not public entity collections
    assert await store.count(METADATA_STORE) == 1
