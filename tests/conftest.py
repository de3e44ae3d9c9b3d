"""
Shared fixtures: a throwaway local store, key-value store and event bus,
plus an in-memory remote provider.
"""
import asyncio
import os
from typing import Dict, List

import httpx
import pytest

os.environ.setdefault("JWT_SECRET", "test_jwt_secret_for_testing_only")

from pixelsync.config import Settings
from pixelsync.database import LocalStore
from pixelsync.events import EventBus
from pixelsync.kvstore import KeyValueStore
from pixelsync.sync.connectivity import ConnectivityMonitor
from pixelsync.sync.providers import SyncProvider
from pixelsync.sync.service import CloudSyncEngine


async def never(_interval: float) -> None:
    """Sleep that never returns, so periodic tasks only run when driven by hand."""
    await asyncio.Event().wait()


class MemoryProvider(SyncProvider):
    """Remote store kept in a dict of {(user_id, entity): {record_id: record}}."""

    name = "memory"

    def __init__(self):
        super().__init__(None)
        self.data: Dict[tuple, Dict[str, dict]] = {}
        self.pushes: List[tuple] = []
        self.deletes: List[tuple] = []
        self.fail = False

    def seed(self, user_id: str, entity: str, records: List[dict]) -> None:
        bucket = self.data.setdefault((user_id, entity), {})
        for record in records:
            bucket[record["id"]] = dict(record)

    def records(self, user_id: str, entity: str) -> List[dict]:
        return list(self.data.get((user_id, entity), {}).values())

    async def health_check(self) -> bool:
        return True

    async def fetch_entity(self, user_id, entity):
        if self.fail:
            raise RuntimeError("remote unavailable")
        return [dict(record) for record in self.records(user_id, entity)]

    async def push_entity(self, user_id, entity, records):
        self.pushes.append((entity, [record["id"] for record in records]))
        self.seed(user_id, entity, records)

    async def delete_item(self, user_id, entity, item_id):
        if self.fail:
            raise RuntimeError("remote unavailable")
        self.deletes.append((entity, item_id))
        self.data.get((user_id, entity), {}).pop(item_id, None)


# ========== Fixtures ==========

@pytest.fixture
def settings(tmp_path):
    """Settings pointing at a temporary data directory, with cheap key derivation."""
    return Settings(
        data_dir=str(tmp_path),
        encryption_iterations=1000,
        sync_interval_seconds=3600,
        connectivity_interval_seconds=3600,
        session_check_interval_seconds=3600,
        jwt_secret="test_jwt_secret_for_testing_only",
    )


@pytest.fixture
async def store(tmp_path):
    local_store = LocalStore(f"file:{tmp_path / 'local.db'}")
    await local_store.init()
    yield local_store
    await local_store.close()


@pytest.fixture
def kv():
    return KeyValueStore()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def provider():
    return MemoryProvider()


@pytest.fixture
async def http():
    """HTTP client whose every request succeeds with an empty 200."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    yield client
    await client.aclose()


@pytest.fixture
def connectivity(http, bus):
    return ConnectivityMonitor(http, bus, "http://probe.test/favicon.ico", origin="test", sleep=never)


@pytest.fixture
async def engine(store, kv, bus, settings, http, provider, connectivity):
    """Started sync engine over the memory provider, syncing events and tasks only."""
    sync_engine = CloudSyncEngine(
        store,
        kv,
        bus,
        "device_test",
        settings=settings,
        http=http,
        provider=provider,
        connectivity=connectivity,
        entities=["events", "tasks"],
        sleep=never,
    )
    await sync_engine.start()
    yield sync_engine
    await sync_engine.dispose()
