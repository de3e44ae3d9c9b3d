"""
Tests for the startup migration engine.
"""
import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from pixelsync.auth.crypto import hash_password
from pixelsync.kvstore import KeyValueStore
from pixelsync.migrations import (
    MIGRATION_STATUS_KEY,
    SNAPSHOT_KEY,
    CriticalMigrationError,
    MigrationEngine,
    MigrationState,
    compare_versions,
)


def legacy_kv(**entities):
    return KeyValueStore({name: json.dumps(items) for name, items in entities.items()})


def test_compare_versions():
    assert compare_versions("1.0", "2.0") == -1
    assert compare_versions("2.0", "2.0") == 0
    assert compare_versions("2.0", "2") == 0
    assert compare_versions("1.10", "1.9") == 1


@pytest.mark.asyncio
async def test_full_migration_imports_legacy_data(store, settings):
    kv = legacy_kv(
        events=[{"id": "e1", "title": "Gig", "created_at": "2024-01-01T00:00:00Z"}, {"title": "No id"}],
        systemUsers=[{"id": "u1", "email": "vj@example.com", "password": "pw"}],
        clients=[{"id": "c1", "name": "Club"}],
    )
    engine = MigrationEngine(store, kv, settings)
    assert engine.is_migration_needed()

    status = await engine.run_auto_migration()

    assert status.status == MigrationState.COMPLETED
    assert status.version == "2.0"
    assert not engine.is_migration_needed()
    assert engine.get_migration_progress().progress == 100

    events = await store.get_all("events")
    assert len(events) == 2
    e1 = await store.get("events", "e1")
    assert e1["updated_at"] == "2024-01-01T00:00:00Z"
    assert e1["_version"] == 1
    assert e1["_synced"] is False

    user = await store.get("systemUsers", "u1")
    assert user["password"] == hash_password("pw")
    assert user["_encrypted"] is False
    assert (await store.get("clients", "c1"))["_encrypted"] is False
    assert "_encrypted" not in e1

    assert kv.get_item("events_backup") is not None
    assert kv.get_json("migration_log_1.0")["totalMigrated"] == 4
    assert kv.get_item(SNAPSHOT_KEY) is None


@pytest.mark.asyncio
async def test_resumes_from_recorded_version(store, settings):
    """Starting at 1.0 runs exactly the 1.1 and 2.0 steps."""
    kv = legacy_kv(events=[{"id": "legacy", "created_at": "2024-01-01T00:00:00Z"}])
    kv.set_json(MIGRATION_STATUS_KEY, {"version": "1.0", "status": "completed"})
    engine = MigrationEngine(store, kv, settings)

    ran = []
    engine.migrations = [
        (version, description, _recording(ran, version, handler))
        for version, description, handler in engine.migrations
    ]

    status = await engine.run_auto_migration()

    assert ran == ["1.1", "2.0"]
    assert status.status == MigrationState.COMPLETED
    assert status.version == "2.0"
    assert await store.get("events", "legacy") is None


def _recording(ran, version, handler):
    async def wrapped():
        ran.append(version)
        await handler()
    return wrapped


@pytest.mark.asyncio
async def test_call_during_a_run_returns_none(store, settings):
    kv = legacy_kv(events=[{"id": "e1", "created_at": "2024-01-01T00:00:00Z"}])
    engine = MigrationEngine(store, kv, settings)
    started = asyncio.Event()
    release = asyncio.Event()
    ran = []
    version, description, handler = engine.migrations[0]

    async def held_import():
        started.set()
        await release.wait()
        await handler()

    engine.migrations[0] = (version, description, _recording(ran, version, held_import))

    first = asyncio.create_task(engine.run_auto_migration())
    await started.wait()
    assert engine.get_migration_progress().is_running

    assert await engine.run_auto_migration() is None

    release.set()
    status = await first
    assert status.status == MigrationState.COMPLETED
    assert ran == ["1.0"]
    assert not engine.is_running
    assert [record["id"] for record in await store.get_all("events")] == ["e1"]

@pytest.mark.asyncio
async def test_second_run_is_a_no_op(store, settings):
    kv = legacy_kv(tasks=[{"id": "t1", "created_at": "2024-01-01T00:00:00Z"}])
    engine = MigrationEngine(store, kv, settings)
    await engine.run_auto_migration()
    before = await store.get("tasks", "t1")

    status = await engine.run_auto_migration()

    assert status.status == MigrationState.COMPLETED
    assert await store.get("tasks", "t1") == before


@pytest.mark.asyncio
async def test_legacy_import_keeps_newer_store_copy(store, settings):
    await store.create(
        "events", {"id": "e1", "title": "Store", "updated_at": "2024-02-01T00:00:00Z"},
        preserve_timestamps=True,
    )
    kv = legacy_kv(events=[
        {"id": "e1", "title": "Legacy", "updated_at": "2024-01-01T00:00:00Z"},
    ])
    await MigrationEngine(store, kv, settings).run_auto_migration()
    assert (await store.get("events", "e1"))["title"] == "Store"


@pytest.mark.asyncio
async def test_legacy_import_failure_restores_snapshot(store, settings):
    await store.create("tags", {"id": "keep", "name": "existing"})
    kv = legacy_kv(events=[{"id": "e1"}])
    engine = MigrationEngine(store, kv, settings)

    async def broken():
        await store.create("tags", {"id": "partial"})
        raise RuntimeError("disk full")

    engine.migrations[0] = ("1.0", "Import legacy key-value data", broken)

    with pytest.raises(CriticalMigrationError):
        await engine.run_auto_migration()

    status = engine.get_migration_status()
    assert status.status == MigrationState.FAILED
    assert "disk full" in status.error
    assert engine.is_running is False
    assert [tag["id"] for tag in await store.get_all("tags")] == ["keep"]
    assert json.loads(kv.get_item("events")) == [{"id": "e1"}]


@pytest.mark.asyncio
async def test_non_critical_step_failure_continues(store, settings):
    engine = MigrationEngine(store, KeyValueStore(), settings)
    ran = []

    async def failing():
        raise RuntimeError("bad metadata")

    async def last():
        ran.append("2.0")

    engine.migrations[1] = ("1.1", "Add encryption metadata", failing)
    engine.migrations[2] = ("2.0", "Add sync metadata", last)

    status = await engine.run_auto_migration()

    assert ran == ["2.0"]
    assert status.status == MigrationState.COMPLETED


def test_legacy_backups_removed_after_retention(settings):
    kv = KeyValueStore({"events_backup": "[]", "tasks_backup": "[]"})
    engine = MigrationEngine(None, kv, settings)
    migrated_at = datetime(2024, 1, 1, tzinfo=timezone.utc)
    kv.set_json(
        MIGRATION_STATUS_KEY,
        {"version": "2.0", "status": "completed", "timestamp": migrated_at.isoformat()},
    )

    assert engine.cleanup_legacy_backups(now=migrated_at + timedelta(days=3)) == 0
    assert kv.get_item("events_backup") == "[]"

    assert engine.cleanup_legacy_backups(now=migrated_at + timedelta(days=8)) == 2
    assert kv.get_item("events_backup") is None
    assert kv.get_item("tasks_backup") is None
