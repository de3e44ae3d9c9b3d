"""
Cloud sync engine.

Reconciles local store contents against the configured remote store with
last-write-wins per record, queues work while offline, and keeps converging
on a fixed schedule.
"""
import asyncio
import structlog
from typing import Callable, List, Optional, Set

import httpx

from pixelsync.config import Settings, get_settings
from pixelsync.database import METADATA_STORE, Record, utc_now
from pixelsync.events import CloudSyncComplete, CloudSyncUpdate, ConnectivityChanged, EventBus
from pixelsync.kvstore import KeyValueStore
from pixelsync.scheduling import PeriodicTask, Sleep
from pixelsync.sync.connectivity import ConnectivityMonitor
from pixelsync.sync.merge import merge_records
from pixelsync.sync.models import (
    MergeResult,
    SyncOperation,
    SyncQueueEntry,
    SyncStatistics,
    SyncStatus,
)
from pixelsync.sync.providers import DisabledProvider, SyncProvider, create_provider
from pixelsync.sync.queue import SyncQueue


logger = structlog.get_logger()


SYNC_ENTITIES = [
    "events",
    "tasks",
    "clients",
    "workHours",
    "systemUsers",
    "seasonalClients",
    "tags",
    "comments",
    "personalMessages",
    "chats",
    "canvas",
]

LAST_SYNC_KEY = "lastSync"


class OfflineError(RuntimeError):
    """A sync was explicitly requested while offline."""


class CloudSyncEngine:
    """
    Bidirectional sync between the local store and one remote provider.

    Lifecycle:
    - construct with the store, key-value store and event bus
    - start(): initialize the provider (falls back to disabled on failure),
      restore the last sync time, start the periodic sync and the
      connectivity probe
    - dispose(): stop background work and release the HTTP client

    Guards instead of locks: a second sync_all while one is running is a
    no-op. Entities are synced strictly one after the other.
    """

    def __init__(
        self,
        store,
        kv: KeyValueStore,
        bus: EventBus,
        device_id: str,
        settings: Optional[Settings] = None,
        http: Optional[httpx.AsyncClient] = None,
        provider: Optional[SyncProvider] = None,
        connectivity: Optional[ConnectivityMonitor] = None,
        entities: Optional[List[str]] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.kv = kv
        self.bus = bus
        self.device_id = device_id
        self.entities = list(entities or SYNC_ENTITIES)

        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=self.settings.http_timeout_seconds)
        self.provider = provider or create_provider(self.settings, self.http, kv, device_id)
        self.connectivity = connectivity or ConnectivityMonitor(
            self.http,
            bus,
            self.settings.connectivity_probe_url,
            interval=self.settings.connectivity_interval_seconds,
            origin=device_id,
            sleep=sleep,
        )
        self.queue = SyncQueue(store)

        self.user_id: Optional[str] = None
        self.is_initializing = True
        self.sync_in_progress = False
        self.last_sync_time: Optional[str] = None

        self._processing_queue = False
        self._background: Set[asyncio.Task] = set()
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._sync_task = PeriodicTask(
            "periodic_sync", self.settings.sync_interval_seconds, self.sync_all, sleep=sleep
        )

    # ========== Lifecycle ==========

    async def start(self) -> None:
        await self._initialize_provider()

        try:
            await self.queue.load()
            metadata = await self.store.get(METADATA_STORE, LAST_SYNC_KEY)
            if metadata:
                self.last_sync_time = metadata.get("value")
        except Exception as e:
            logger.warning("sync_state_restore_failed", error=str(e))

        self._unsubscribe = self.bus.subscribe(ConnectivityChanged, self._on_connectivity_changed)
        self._sync_task.start()
        self.connectivity.start()
        self.is_initializing = False

        logger.info(
            "cloud_sync_started",
            provider=self.provider.name,
            device_id=self.device_id,
            queued=self.queue.length,
        )

    async def _initialize_provider(self) -> None:
        if not self.provider.enabled:
            logger.info("cloud_sync_disabled", reason="no provider configured")
            return
        try:
            await self.provider.initialize()
            logger.info("cloud_provider_initialized", provider=self.provider.name)
        except Exception as e:
            logger.error(
                "cloud_provider_initialization_failed",
                provider=self.provider.name,
                error=str(e),
            )
            self.provider = DisabledProvider(self.http)

    async def dispose(self) -> None:
        await self._sync_task.stop()
        await self.connectivity.stop()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()

        if self._owns_http:
            await self.http.aclose()
        logger.info("cloud_sync_disposed")

    # ========== State ==========

    @property
    def is_online(self) -> bool:
        return self.connectivity.is_online

    @property
    def is_enabled(self) -> bool:
        return self.provider.enabled

    def set_user_id(self, user_id: Optional[str]) -> None:
        """Set the active user; syncing is locked until one is set."""
        self.user_id = user_id
        logger.info("sync_user_set", user_id=user_id)

    def get_sync_status(self) -> SyncStatus:
        return SyncStatus(
            is_online=self.is_online,
            sync_in_progress=self.sync_in_progress,
            last_sync_time=self.last_sync_time,
            queue_length=self.queue.length,
            user_id=self.user_id,
            device_id=self.device_id,
            provider=self.provider.name,
        )

    async def get_sync_statistics(self) -> SyncStatistics:
        queue = await self.queue.pending()
        metadata = await self.store.get_all(METADATA_STORE)
        return SyncStatistics(
            queue=queue,
            queue_length=len(queue),
            metadata_count=len(metadata),
            last_sync_time=self.last_sync_time,
            status=self.get_sync_status(),
        )

    # ========== Full Sync ==========

    async def sync_all(self) -> bool:
        """
        Sync every entity sequentially.

        Returns:
            False if a guard skipped the run (disabled, no user, offline,
            already syncing), True otherwise
        """
        if not self.provider.enabled or not self.user_id:
            return False
        if not self.is_online or self.sync_in_progress:
            logger.debug(
                "sync_all_skipped", is_online=self.is_online, in_progress=self.sync_in_progress
            )
            return False

        self.sync_in_progress = True
        logger.info("sync_all_started", user_id=self.user_id, provider=self.provider.name)
        try:
            for entity in self.entities:
                await self.sync_entity(entity)
            self.last_sync_time = utc_now()
            await self._update_sync_metadata()
        finally:
            self.sync_in_progress = False

        logger.info("sync_all_completed", last_sync_time=self.last_sync_time)
        await self.bus.publish(CloudSyncComplete(origin=self.device_id))
        return True

    async def force_sync(self) -> bool:
        """
        Sync now at the user's request.

        Raises:
            OfflineError: If the device is offline
        """
        if not self.is_online:
            raise OfflineError("Cannot sync while offline")
        return await self.sync_all()

    async def _update_sync_metadata(self) -> None:
        metadata = {
            "key": LAST_SYNC_KEY,
            "value": self.last_sync_time,
            "deviceId": self.device_id,
            "userId": self.user_id,
        }
        try:
            if await self.store.get(METADATA_STORE, LAST_SYNC_KEY):
                await self.store.update(METADATA_STORE, LAST_SYNC_KEY, metadata)
            else:
                await self.store.create(METADATA_STORE, metadata)
        except Exception as e:
            logger.error("sync_metadata_update_failed", error=str(e))

    # ========== Per-Entity Sync ==========

    async def sync_entity(self, entity: str) -> Optional[MergeResult]:
        """
        Reconcile one entity: read local, read remote, merge, write local,
        write remote.

        Never raises. Offline, user-less and failed runs are queued for replay.

        Returns:
            The merge result, or None if nothing ran
        """
        if self.is_initializing or not self.provider.enabled:
            return None

        if not self.is_online or not self.user_id:
            await self._queue(entity, SyncOperation.SYNC)
            return None

        try:
            local = await self.store.get_all(entity)
            remote = await self.provider.fetch_entity(self.user_id, entity)
            result = merge_records(local, remote)

            pulled = await self._apply_pulled(entity, result.to_pull)

            if result.to_push:
                await self.provider.push_entity(
                    self.user_id, entity, [self._outgoing(record) for record in result.to_push]
                )
                await self.store.mark_synced(entity, [record["id"] for record in result.to_push])

            logger.info(
                "sync_entity_completed",
                entity=entity,
                local=len(local),
                remote=len(remote),
                pulled=pulled,
                pushed=len(result.to_push),
            )

            if pulled:
                await self.bus.publish(CloudSyncUpdate(entity_name=entity, origin=self.device_id))
            return result

        except Exception as e:
            logger.warning("sync_entity_failed", entity=entity, error=str(e))
            await self._queue(entity, SyncOperation.SYNC)
            return None

    async def _apply_pulled(self, entity: str, records: List[Record]) -> int:
        """Write remote winners through the store's regular CRUD surface."""
        applied = 0
        for record in records:
            try:
                if await self.store.get(entity, record["id"]) is None:
                    await self.store.create(entity, record, preserve_timestamps=True, synced=True)
                else:
                    await self.store.update(
                        entity, record["id"], record, preserve_timestamps=True, synced=True
                    )
                applied += 1
            except Exception as e:
                logger.error(
                    "sync_pull_apply_failed", entity=entity, record_id=record.get("id"), error=str(e)
                )
        return applied

    @staticmethod
    def _outgoing(record: Record) -> Record:
        return {**record, "_synced": True}

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def request_sync(self, entity: str) -> Optional[asyncio.Task]:
        """Schedule a background sync of one entity after a local mutation."""
        if not self.provider.enabled or self.is_initializing:
            return None
        return self._spawn(self.sync_entity(entity))

    def request_delete(self, entity: str, item_id: str) -> Optional[asyncio.Task]:
        """Schedule remote propagation of a local delete."""
        if not self.provider.enabled:
            return None
        return self._spawn(self.delete_remote(entity, item_id))

    async def delete_remote(self, entity: str, item_id: str) -> bool:
        """
        Propagate a local delete.

        Returns:
            True if the remote store confirmed it, False if it was queued
        """
        if not self.provider.enabled:
            return False
        if self.is_online and self.user_id:
            try:
                await self.provider.delete_item(self.user_id, entity, item_id)
                return True
            except Exception as e:
                logger.warning("remote_delete_failed", entity=entity, item_id=item_id, error=str(e))
        await self._queue(entity, SyncOperation.DELETE, {"id": item_id})
        return False

    # ========== Offline Queue ==========

    async def _queue(self, entity: str, operation: SyncOperation, data: Optional[Record] = None) -> None:
        try:
            await self.queue.enqueue(entity, operation, data)
        except Exception as e:
            logger.error("sync_queue_write_failed", entity=entity, error=str(e))

    async def process_sync_queue(self) -> int:
        """
        Replay queued operations in priority-then-FIFO order.

        Each entry is removed right after it is applied; a failing entry stays
        queued for the next replay.

        Returns:
            Number of entries applied
        """
        if not self.provider.enabled or not self.is_online or not self.user_id:
            return 0
        if self.sync_in_progress or self._processing_queue:
            return 0

        self._processing_queue = True
        processed = 0
        try:
            entries = await self.queue.pending()
            if entries:
                logger.info("sync_queue_processing", count=len(entries))

            for entry in entries:
                try:
                    await self._replay(entry)
                    await self.queue.remove(entry.id)
                    processed += 1
                except Exception as e:
                    logger.warning(
                        "sync_queue_entry_failed",
                        entry_id=entry.id,
                        entity=entry.entity,
                        operation=entry.operation.value,
                        error=str(e),
                    )
        finally:
            self._processing_queue = False

        return processed

    async def _replay(self, entry: SyncQueueEntry) -> None:
        if entry.operation == SyncOperation.DELETE:
            item_id = (entry.data or {}).get("id")
            if item_id:
                await self.provider.delete_item(self.user_id, entry.entity, item_id)
        else:
            # create/update replays converge through a full entity sync
            await self.sync_entity(entry.entity)

    async def clear_sync_data(self) -> None:
        await self.queue.clear()
        self.last_sync_time = None
        await self.store.delete(METADATA_STORE, LAST_SYNC_KEY)
        logger.info("sync_data_cleared")

    # ========== Events ==========

    async def _on_connectivity_changed(self, event: ConnectivityChanged) -> None:
        if not event.is_online:
            logger.info("sync_paused_offline")
            return
        await self.process_sync_queue()
        if self.user_id:
            await self.sync_all()
