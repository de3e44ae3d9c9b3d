"""
Device-side application container.

Builds the services in dependency order and owns their lifecycle:
local store -> migrations -> cloud sync -> auth/session, plus backup and
the entity CRUD surface.
"""
import structlog
from pathlib import Path
from typing import Optional

import httpx

from pixelsync.auth.crypto import get_or_create_device_id
from pixelsync.auth.service import CrossDeviceAuthService
from pixelsync.backup.service import BackupService
from pixelsync.config import Settings, get_settings
from pixelsync.crypto import EncryptionGate
from pixelsync.database import LocalStore, StoreOpenError
from pixelsync.entities import Entities
from pixelsync.events import EventBus
from pixelsync.kvstore import FileKeyValueStore, FlatEntityStore, KeyValueStore
from pixelsync.migrations import CriticalMigrationError, MigrationEngine
from pixelsync.sync.service import CloudSyncEngine


logger = structlog.get_logger()


class PixelSyncApp:
    """
    Wires and runs every device-side service.

    If the local database cannot be opened, or the legacy import fails,
    the application keeps running on the flat key-value entity store.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        kv: Optional[KeyValueStore] = None,
        store=None,
        bus: Optional[EventBus] = None,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self.kv = kv
        self.store = store
        self.bus = bus or EventBus()
        self.http = http
        self.degraded = False

        self.device_id: Optional[str] = None
        self.gate: Optional[EncryptionGate] = None
        self.migrations: Optional[MigrationEngine] = None
        self.sync: Optional[CloudSyncEngine] = None
        self.auth: Optional[CrossDeviceAuthService] = None
        self.backup: Optional[BackupService] = None
        self.entities: Optional[Entities] = None

    async def start(self) -> "PixelSyncApp":
        if self.kv is None:
            self.kv = FileKeyValueStore(self.settings.kv_store_path)
        self.device_id = get_or_create_device_id(self.kv)

        await self._open_store()

        self.migrations = MigrationEngine(self.store, self.kv, self.settings)
        try:
            await self.migrations.run_auto_migration()
        except CriticalMigrationError as e:
            logger.error("startup_migration_failed", error=str(e))
            await self._fall_back_to_flat_store()

        self.gate = EncryptionGate(self.settings.encryption_iterations)
        self.sync = CloudSyncEngine(
            self.store, self.kv, self.bus, self.device_id, settings=self.settings, http=self.http
        )
        await self.sync.start()

        self.auth = CrossDeviceAuthService(
            self.store,
            self.kv,
            self.bus,
            self.sync,
            self.gate,
            self.device_id,
            settings=self.settings,
            http=self.http,
        )
        await self.auth.start()

        self.backup = BackupService(self.store, self.kv, self.sync, settings=self.settings)
        self.entities = Entities(
            self.store, self.gate, self.sync, lambda: self.auth.encryption_password
        )

        logger.info(
            "application_started",
            device_id=self.device_id,
            degraded=self.degraded,
            provider=self.sync.provider.name,
        )
        return self

    async def _open_store(self) -> None:
        if self.store is None:
            Path(self.settings.data_dir).mkdir(parents=True, exist_ok=True)
            self.store = LocalStore(self.settings.local_db_url)
        try:
            await self.store.init()
        except StoreOpenError as e:
            logger.error("local_store_unavailable", error=str(e))
            await self._fall_back_to_flat_store()

    async def _fall_back_to_flat_store(self) -> None:
        if isinstance(self.store, FlatEntityStore):
            return
        try:
            await self.store.close()
        except Exception as e:
            logger.warning("local_store_close_failed", error=str(e))
        self.store = FlatEntityStore(self.kv)
        self.degraded = True
        logger.warning("degraded_mode_enabled", store="flat_key_value")

    async def dispose(self) -> None:
        if self.auth is not None:
            await self.auth.dispose()
        if self.backup is not None:
            await self.backup.dispose()
        if self.sync is not None:
            await self.sync.dispose()
        if self.store is not None:
            await self.store.close()
        logger.info("application_disposed")

    async def __aenter__(self) -> "PixelSyncApp":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.dispose()
