"""
Versioned data migrations run once at startup.

Steps:
- 1.0 import the legacy flat key-value data into the local store
- 1.1 backfill encryption metadata on sensitive entities
- 2.0 backfill sync metadata on every entity

Each step is gated on the recorded version, so a second run is a no-op.
A pre-migration snapshot of both stores is taken first; if the legacy import
fails the snapshot is restored and the failure propagates.
"""
import json
import structlog
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from pixelsync.auth.crypto import hash_password, looks_hashed
from pixelsync.config import Settings, get_settings
from pixelsync.crypto import SENSITIVE_FIELDS
from pixelsync.database import (
    Record,
    generate_id,
    is_newer,
    parse_timestamp,
    utc_now,
)
from pixelsync.kvstore import KeyValueStore


logger = structlog.get_logger()

MIGRATION_STATUS_KEY = "migration_status"
SNAPSHOT_KEY = "pre_migration_backup"
LEGACY_BACKUP_RETENTION = timedelta(days=7)

LEGACY_ENTITIES = [
    "events",
    "tasks",
    "systemUsers",
    "clients",
    "tags",
    "workHours",
    "comments",
    "personalMessages",
    "chats",
    "canvas",
    "seasonalClients",
]

# Legacy keys captured in the snapshot besides the entity arrays
SNAPSHOT_EXTRA_KEYS = ["currentUser"]


class CriticalMigrationError(RuntimeError):
    """The legacy import failed; the pre-migration snapshot was restored."""


class MigrationState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class MigrationStatus(BaseModel):
    version: str = "0.0"
    status: MigrationState = MigrationState.PENDING
    timestamp: Optional[str] = None
    error: Optional[str] = None


class MigrationProgress(BaseModel):
    is_running: bool
    current_version: str
    target_version: str
    progress: float = Field(..., ge=0, le=100)
    status: MigrationState
    error: Optional[str] = None


def compare_versions(version1: str, version2: str) -> int:
    """
    Compare dotted version strings numerically.

    Returns:
        -1, 0 or 1
    """
    parts1 = [int(part) for part in version1.split(".")]
    parts2 = [int(part) for part in version2.split(".")]
    for i in range(max(len(parts1), len(parts2))):
        a = parts1[i] if i < len(parts1) else 0
        b = parts2[i] if i < len(parts2) else 0
        if a < b:
            return -1
        if a > b:
            return 1
    return 0


class MigrationEngine:
    """
    Runs the ordered migration steps against the local store and the
    legacy key-value store.
    """

    def __init__(self, store, kv: KeyValueStore, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.store = store
        self.kv = kv
        self.target_version = self.settings.migration_target_version
        self.is_running = False

        self.migrations: List[Tuple[str, str, Callable[[], Awaitable[None]]]] = [
            ("1.0", "Import legacy key-value data", self.migrate_legacy_store),
            ("1.1", "Add encryption metadata", self.add_encryption_metadata),
            ("2.0", "Add sync metadata", self.add_sync_metadata),
        ]

    # ========== Status ==========

    def get_migration_status(self) -> MigrationStatus:
        data = self.kv.get_json(MIGRATION_STATUS_KEY)
        if not isinstance(data, dict):
            return MigrationStatus()
        try:
            return MigrationStatus.model_validate(data)
        except ValueError:
            return MigrationStatus()

    def update_migration_status(
        self, version: Optional[str], status: MigrationState, error: Optional[str] = None
    ) -> MigrationStatus:
        current = self.get_migration_status()
        updated = MigrationStatus(
            version=version or current.version,
            status=status,
            timestamp=utc_now(),
            error=error,
        )
        self.kv.set_json(MIGRATION_STATUS_KEY, updated.model_dump(mode="json"))
        return updated

    def is_migration_needed(self) -> bool:
        return compare_versions(self.get_migration_status().version, self.target_version) < 0

    def get_migration_progress(self) -> MigrationProgress:
        status = self.get_migration_status()
        completed = sum(
            1 for version, _, _ in self.migrations if compare_versions(status.version, version) >= 0
        )
        return MigrationProgress(
            is_running=self.is_running,
            current_version=status.version,
            target_version=self.target_version,
            progress=completed / len(self.migrations) * 100,
            status=status.status,
            error=status.error,
        )

    # ========== Runner ==========

    async def run_auto_migration(self) -> Optional[MigrationStatus]:
        """
        Run every pending step in order.

        A call while a run is in flight returns None immediately.

        Raises:
            CriticalMigrationError: If the legacy import failed
        """
        if self.is_running:
            logger.info("migration_already_running")
            return None

        self.is_running = True
        try:
            self.cleanup_legacy_backups()

            start_version = self.get_migration_status().version
            if compare_versions(start_version, self.target_version) >= 0:
                logger.info("migration_not_needed", version=start_version)
                return self.get_migration_status()

            logger.info("migration_started", from_version=start_version, to_version=self.target_version)
            await self.create_pre_migration_snapshot()
            self.update_migration_status(None, MigrationState.RUNNING)

            for version, description, handler in self.migrations:
                if compare_versions(start_version, version) >= 0:
                    continue
                if compare_versions(version, self.target_version) > 0:
                    break

                logger.info("migration_step_started", version=version, description=description)
                try:
                    await handler()
                    self.update_migration_status(version, MigrationState.RUNNING)
                    logger.info("migration_step_completed", version=version)
                except Exception as e:
                    logger.error("migration_step_failed", version=version, error=str(e))
                    if version == self.migrations[0][0]:
                        await self._restore_after_failure()
                        self.update_migration_status(None, MigrationState.FAILED, str(e))
                        raise CriticalMigrationError(f"Critical migration failed: {e}") from e
                    self.update_migration_status(version, MigrationState.FAILED, str(e))

            status = self.update_migration_status(self.target_version, MigrationState.COMPLETED)
            self.kv.remove_item(SNAPSHOT_KEY)
            logger.info("migration_completed", version=status.version)
            return status
        finally:
            self.is_running = False

    async def _restore_after_failure(self) -> None:
        try:
            await self.restore_pre_migration_snapshot()
        except Exception as e:
            logger.error("migration_snapshot_restore_failed", error=str(e))

    # ========== Snapshot ==========

    async def create_pre_migration_snapshot(self) -> Dict[str, Any]:
        snapshot = {
            "timestamp": utc_now(),
            "version": self.get_migration_status().version,
            "legacy": {},
            "store": {},
        }
        for key in LEGACY_ENTITIES + SNAPSHOT_EXTRA_KEYS:
            raw = self.kv.get_item(key)
            if raw is not None:
                snapshot["legacy"][key] = raw

        try:
            for entity in self.store.entity_names:
                records = await self.store.get_all(entity)
                if records:
                    snapshot["store"][entity] = records
        except Exception as e:
            logger.warning("migration_snapshot_store_read_failed", error=str(e))

        self.kv.set_json(SNAPSHOT_KEY, snapshot)
        logger.info("migration_snapshot_created", entities=len(snapshot["store"]))
        return snapshot

    async def restore_pre_migration_snapshot(self) -> None:
        snapshot = self.kv.get_json(SNAPSHOT_KEY)
        if not snapshot:
            raise CriticalMigrationError("No pre-migration snapshot found")

        for key, raw in snapshot.get("legacy", {}).items():
            self.kv.set_item(key, raw)

        stored = snapshot.get("store") or {}
        await self.store.clear_all()
        for entity, records in stored.items():
            await self.store.put_many(entity, records)
        logger.info("migration_snapshot_restored", entities=len(stored))

    def cleanup_legacy_backups(self, now: Optional[datetime] = None) -> int:
        """Remove <entity>_backup keys once the last migration is a week old."""
        status = self.get_migration_status()
        migrated_at = parse_timestamp(status.timestamp)
        if status.status != MigrationState.COMPLETED or migrated_at is None:
            return 0
        now = now or datetime.now(timezone.utc)
        if now - migrated_at < LEGACY_BACKUP_RETENTION:
            return 0

        removed = 0
        for entity in LEGACY_ENTITIES:
            key = f"{entity}_backup"
            if self.kv.get_item(key) is not None:
                self.kv.remove_item(key)
                removed += 1
        if removed:
            logger.info("legacy_backups_cleaned", removed=removed)
        return removed

    # ========== Step 1.0 ==========

    @staticmethod
    def normalize_item(item: Record) -> Record:
        now = utc_now()
        created_at = item.get("created_at") or now
        return {
            **item,
            "id": item.get("id") or generate_id(),
            "created_at": created_at,
            "updated_at": item.get("updated_at") or created_at,
        }

    @staticmethod
    def _hash_legacy_password(entity: str, item: Record) -> Record:
        password = item.get("password")
        if entity != "systemUsers" or not isinstance(password, str) or not password:
            return item
        if looks_hashed(password):
            return item
        return {**item, "password": hash_password(password)}

    async def migrate_legacy_store(self) -> None:
        """
        Import each legacy entity array into the local store.

        Items already in the store are replaced only by a strictly newer
        legacy copy. The raw legacy value is kept under <entity>_backup.
        Plaintext legacy passwords are stored as digests.
        """
        total = 0
        log: List[str] = []

        for entity in LEGACY_ENTITIES:
            raw = self.kv.get_item(entity)
            if not raw:
                log.append(f"{entity}: no data to migrate")
                continue

            try:
                items = json.loads(raw)
            except json.JSONDecodeError:
                log.append(f"{entity}: legacy data is not JSON, skipped")
                logger.warning("legacy_data_invalid", entity=entity)
                continue
            if not isinstance(items, list) or not items:
                log.append(f"{entity}: no valid data to migrate")
                continue

            migrated = 0
            for item in items:
                if not isinstance(item, dict):
                    continue
                record = self._hash_legacy_password(entity, self.normalize_item(item))
                existing = await self.store.get(entity, record["id"])
                try:
                    if existing is None:
                        await self.store.create(entity, record, preserve_timestamps=True)
                        migrated += 1
                    elif is_newer(record, existing):
                        await self.store.update(
                            entity, record["id"], record, preserve_timestamps=True
                        )
                        migrated += 1
                except Exception as e:
                    logger.warning(
                        "legacy_item_migration_failed",
                        entity=entity,
                        record_id=record["id"],
                        error=str(e),
                    )

            self.kv.set_item(f"{entity}_backup", raw)
            total += migrated
            log.append(f"{entity}: migrated {migrated} of {len(items)} items")

        self.kv.set_json(
            "migration_log_1.0",
            {"timestamp": utc_now(), "totalMigrated": total, "log": log},
        )
        logger.info("legacy_import_completed", total=total)

    # ========== Steps 1.1 / 2.0 ==========

    async def add_encryption_metadata(self) -> None:
        for entity in SENSITIVE_FIELDS:
            try:
                updated = 0
                for record in await self.store.get_all(entity):
                    if await self.store.backfill(entity, record["id"], {"_encrypted": False}):
                        updated += 1
                logger.info("encryption_metadata_added", entity=entity, updated=updated)
            except Exception as e:
                logger.error("encryption_metadata_failed", entity=entity, error=str(e))

    async def add_sync_metadata(self) -> None:
        for entity in self.store.entity_names:
            try:
                updated = 0
                for record in await self.store.get_all(entity):
                    defaults = {"_synced": False, "_version": 1}
                    if record.get("created_at"):
                        defaults["updated_at"] = record["created_at"]
                    if await self.store.backfill(entity, record["id"], defaults):
                        updated += 1
                logger.info("sync_metadata_added", entity=entity, updated=updated)
            except Exception as e:
                logger.error("sync_metadata_failed", entity=entity, error=str(e))
