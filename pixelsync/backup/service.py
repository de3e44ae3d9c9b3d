"""
Full-database backup and restore.

Backup file format (UTF-8 JSON):
    {version, timestamp, deviceId, userId, options,
     data: {entity: [records]} | "<json string>" when compressed,
     metadata?, syncQueue?, stats: {totalEntities, totalItems, backupSize},
     compressed?}
"""
import asyncio
import json
import secrets
import structlog
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union

from pixelsync.auth.crypto import DEVICE_ID_KEY
from pixelsync.backup.models import (
    AutoBackupInfo,
    BackupInfo,
    BackupOptions,
    ExportResult,
    MergeStrategy,
    RenamedItem,
    RestoreError,
    RestoreOptions,
    RestoreResult,
)
from pixelsync.config import Settings, get_settings
from pixelsync.database import (
    METADATA_STORE,
    SYNC_QUEUE_STORE,
    Record,
    is_newer,
    record_timestamp,
    utc_now,
)
from pixelsync.kvstore import KeyValueStore
from pixelsync.sync.service import CloudSyncEngine


logger = structlog.get_logger()

BACKUP_VERSION = "2.0"
AUTO_BACKUPS_KEY = "autoBackups"
CURRENT_USER_KEY = "currentUser"

USER_ENTITIES = ["events", "tasks", "workHours", "comments", "personalMessages", "chats", "canvas"]
SYSTEM_ENTITIES = ["systemUsers", "clients", "seasonalClients", "tags"]


class InvalidBackupError(ValueError):
    """The payload is not a backup this service can restore."""


class BackupNotFoundError(LookupError):
    """No auto-backup exists for the requested timestamp."""


class BackupService:
    """
    Snapshots and restores every entity collection of the local store.

    After a restore the sync engine is pointed at the current user and a
    full sync runs in the background so restored data reaches the remote
    store.
    """

    def __init__(
        self,
        store,
        kv: KeyValueStore,
        sync_engine: CloudSyncEngine,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.kv = kv
        self.sync_engine = sync_engine
        self._background: Set[asyncio.Task] = set()

    async def dispose(self) -> None:
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()

    def _current_user_id(self) -> Optional[str]:
        user = self.kv.get_json(CURRENT_USER_KEY)
        return user.get("id") if isinstance(user, dict) else None

    @staticmethod
    def entities_to_backup(include_user_data: bool, include_system_data: bool) -> List[str]:
        entities = []
        if include_user_data:
            entities.extend(USER_ENTITIES)
        if include_system_data:
            entities.extend(SYSTEM_ENTITIES)
        return entities

    # ========== Create ==========

    async def create_backup(self, options: Optional[BackupOptions] = None) -> Dict[str, Any]:
        """
        Snapshot the configured entities.

        A collection that cannot be read is backed up as an empty list.
        Compression re-serializes the data map as a JSON string.
        """
        options = options or BackupOptions()
        backup: Dict[str, Any] = {
            "version": BACKUP_VERSION,
            "timestamp": utc_now(),
            "deviceId": self.kv.get_item(DEVICE_ID_KEY),
            "userId": self._current_user_id(),
            "options": {
                "includeMetadata": options.include_metadata,
                "includeUserData": options.include_user_data,
                "includeSystemData": options.include_system_data,
            },
            "data": {},
        }

        for entity in self.entities_to_backup(options.include_user_data, options.include_system_data):
            try:
                backup["data"][entity] = await self.store.get_all(entity)
            except Exception as e:
                logger.warning("backup_entity_failed", entity=entity, error=str(e))
                backup["data"][entity] = []

        if options.include_metadata:
            try:
                backup["metadata"] = await self.store.get_all(METADATA_STORE)
                backup["syncQueue"] = await self.store.get_all(SYNC_QUEUE_STORE)
            except Exception as e:
                logger.warning("backup_metadata_failed", error=str(e))

        backup["stats"] = {
            "totalEntities": len(backup["data"]),
            "totalItems": sum(len(items) for items in backup["data"].values()),
            "backupSize": len(json.dumps(backup)),
        }

        if options.compress:
            backup["compressed"] = True
            backup["data"] = json.dumps(backup["data"])

        logger.info(
            "backup_created",
            entities=backup["stats"]["totalEntities"],
            items=backup["stats"]["totalItems"],
            compressed=options.compress,
        )
        return backup

    # ========== Restore ==========

    @staticmethod
    def validate_backup(backup: Any) -> None:
        """
        Raises:
            InvalidBackupError: If version, timestamp or data is missing
        """
        if not isinstance(backup, dict):
            raise InvalidBackupError("Invalid backup format")
        if not backup.get("version") or not backup.get("timestamp"):
            raise InvalidBackupError("Invalid backup format")
        if not isinstance(backup.get("data"), (dict, str)):
            raise InvalidBackupError("Invalid backup format")

    @staticmethod
    def _decompress(data: Union[str, Dict[str, Any]]) -> Dict[str, List[Record]]:
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except json.JSONDecodeError as e:
                raise InvalidBackupError("Backup data is not valid JSON") from e
        if not isinstance(data, dict):
            raise InvalidBackupError("Backup data must map entity names to records")
        return data

    @staticmethod
    def validate_item(item: Any) -> bool:
        return (
            isinstance(item, dict)
            and bool(item.get("id"))
            and bool(item.get("created_at") or item.get("updated_at"))
        )

    async def restore_backup(
        self, backup: Dict[str, Any], options: Optional[RestoreOptions] = None
    ) -> RestoreResult:
        """
        Apply a backup to the local store.

        Item failures are collected in the result, never raised.

        Raises:
            InvalidBackupError: If the payload shape is invalid
        """
        options = options or RestoreOptions()
        self.validate_backup(backup)
        data = self._decompress(backup["data"])

        if options.clear_existing:
            await self.store.clear_all()

        result = RestoreResult(
            total_items=sum(len(items) for items in data.values() if isinstance(items, list)),
            backup_info=BackupInfo(
                version=str(backup["version"]),
                timestamp=str(backup["timestamp"]),
                device_id=backup.get("deviceId"),
                user_id=backup.get("userId"),
            ),
        )

        for entity, items in data.items():
            if not isinstance(items, list):
                result.errors.append(RestoreError(entity_name=entity, error="items must be a list"))
                continue
            for item in items:
                if options.validate_data and not self.validate_item(item):
                    logger.warning("backup_item_invalid", entity=entity)
                    result.skipped_invalid += 1
                    continue
                try:
                    if await self._restore_item(entity, item, options, result):
                        result.restored_count += 1
                except Exception as e:
                    logger.warning(
                        "backup_item_restore_failed", entity=entity, item_id=item.get("id"), error=str(e)
                    )
                    result.errors.append(
                        RestoreError(entity_name=entity, item_id=item.get("id"), error=str(e))
                    )

        await self._restore_metadata(backup.get("metadata"))
        self._sync_after_restore()

        logger.info(
            "backup_restored",
            restored=result.restored_count,
            total=result.total_items,
            errors=len(result.errors),
            renamed=len(result.renamed),
        )
        return result

    async def _restore_item(
        self, entity: str, item: Record, options: RestoreOptions, result: RestoreResult
    ) -> bool:
        existing = None if options.clear_existing else await self.store.get(entity, item["id"])
        if existing is None:
            await self.store.create(entity, item, preserve_timestamps=True)
            return True

        strategy = options.merge_strategy
        if strategy == MergeStrategy.BACKUP_WINS:
            await self.store.update(entity, item["id"], item, preserve_timestamps=True)
            return True
        if strategy == MergeStrategy.KEEP_BOTH:
            if record_timestamp(item) == record_timestamp(existing):
                return False
            new_id = f"{item['id']}_restored_{secrets.token_hex(3)}"
            await self.store.create(entity, {**item, "id": new_id}, preserve_timestamps=True)
            result.renamed.append(
                RenamedItem(entity_name=entity, original_id=item["id"], new_id=new_id)
            )
            return True
        if is_newer(item, existing):
            await self.store.update(entity, item["id"], item, preserve_timestamps=True)
            return True
        return False

    async def _restore_metadata(self, metadata: Optional[List[Record]]) -> None:
        if not metadata:
            return
        try:
            for item in metadata:
                key = item.get("key")
                if key and await self.store.get(METADATA_STORE, key) is None:
                    await self.store.create(METADATA_STORE, item, preserve_timestamps=True)
        except Exception as e:
            logger.warning("backup_metadata_restore_failed", error=str(e))

    def _sync_after_restore(self) -> None:
        user_id = self._current_user_id()
        if not user_id:
            return
        self.sync_engine.set_user_id(user_id)
        task = asyncio.get_running_loop().create_task(self._background_sync())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _background_sync(self) -> None:
        try:
            await self.sync_engine.sync_all()
        except Exception as e:
            logger.warning("sync_after_restore_failed", error=str(e))

    # ========== Files ==========

    async def export_backup_to_file(
        self, backup: Dict[str, Any], path: Optional[Union[str, Path]] = None
    ) -> ExportResult:
        if path is None:
            filename = f"pixelart-backup-{datetime.now(timezone.utc).date().isoformat()}.json"
            path = Path(self.settings.data_dir) / filename
        path = Path(path)
        content = json.dumps(backup, indent=2, ensure_ascii=False)

        def write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")

        await asyncio.to_thread(write)
        size = len(content.encode("utf-8"))
        logger.info("backup_exported", path=str(path), size=size)
        return ExportResult(filename=path.name, size=size)

    async def import_backup_from_file(self, path: Union[str, Path]) -> Dict[str, Any]:
        """
        Read and validate a backup file.

        Raises:
            InvalidBackupError: If the file is unreadable, not JSON or not a backup
        """
        try:
            text = await asyncio.to_thread(Path(path).read_text, encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise InvalidBackupError(f"Cannot read backup file: {e}") from e
        try:
            backup = json.loads(text)
        except json.JSONDecodeError as e:
            raise InvalidBackupError("Backup file is not valid JSON") from e
        self.validate_backup(backup)
        return backup

    # ========== Auto Backups ==========

    def _load_auto_backups(self) -> List[Dict[str, Any]]:
        backups = self.kv.get_json(AUTO_BACKUPS_KEY, [])
        return backups if isinstance(backups, list) else []

    async def create_auto_backup(self) -> Optional[Dict[str, Any]]:
        """Rolling backup without metadata; keeps the newest N copies."""
        try:
            backup = await self.create_backup(BackupOptions(include_metadata=False, compress=True))
        except Exception as e:
            logger.error("auto_backup_failed", error=str(e))
            return None

        backups = self._load_auto_backups()
        backups.append({"timestamp": backup["timestamp"], "backup": backup})
        retention = self.settings.auto_backup_retention
        if len(backups) > retention:
            backups = backups[-retention:]
        self.kv.set_json(AUTO_BACKUPS_KEY, backups)
        logger.info("auto_backup_created", timestamp=backup["timestamp"], kept=len(backups))
        return backup

    def get_auto_backups(self) -> List[AutoBackupInfo]:
        return [
            AutoBackupInfo(timestamp=item["timestamp"], stats=item.get("backup", {}).get("stats", {}))
            for item in self._load_auto_backups()
        ]

    async def restore_auto_backup(
        self, timestamp: str, options: Optional[RestoreOptions] = None
    ) -> RestoreResult:
        """
        Raises:
            BackupNotFoundError: If no auto-backup has this timestamp
        """
        for item in self._load_auto_backups():
            if item.get("timestamp") == timestamp:
                return await self.restore_backup(item["backup"], options)
        raise BackupNotFoundError(f"Auto backup not found: {timestamp}")

    async def get_backup_stats(self) -> Dict[str, Any]:
        auto_backups = self.get_auto_backups()
        return {
            "database": await self.store.get_stats(),
            "autoBackups": {
                "count": len(auto_backups),
                "latest": auto_backups[-1].timestamp if auto_backups else None,
            },
            "syncStatus": self.sync_engine.get_sync_status().model_dump(),
        }
