"""
Flat key-value storage.

Holds string values under string keys, the same shape as browser local
storage. Used for legacy entity data, migration bookkeeping, the current
session, device identity and auto-backups, and as the degraded entity store
when the local database cannot be opened.
"""
import json
import structlog
from pathlib import Path
from typing import Any, Dict, List, Optional

from pixelsync.database import (
    ENTITY_SCHEMAS,
    DuplicateRecordError,
    Record,
    RecordNotFoundError,
    UnknownEntityError,
    generate_id,
    later_timestamp,
    utc_now,
)


logger = structlog.get_logger()


class KeyValueStore:
    """In-memory key-value store."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._data[key] = value
        self._persist()

    def remove_item(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._persist()

    def keys(self) -> List[str]:
        return list(self._data)

    def get_json(self, key: str, default: Any = None) -> Any:
        """Read and decode a JSON value; undecodable values yield the default."""
        raw = self.get_item(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("kv_value_not_json", key=key)
            return default

    def set_json(self, key: str, value: Any) -> None:
        self.set_item(key, json.dumps(value))

    def _persist(self) -> None:
        pass


class FileKeyValueStore(KeyValueStore):
    """Key-value store persisted as one JSON object on disk."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        super().__init__(self._load())

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.error("kv_store_load_failed", path=str(self.path), error=str(e))
            return {}
        return {str(k): v for k, v in data.items() if isinstance(v, str)}

    def _persist(self) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(self._data, ensure_ascii=False), encoding="utf-8")
        tmp_path.replace(self.path)


class FlatEntityStore:
    """
    Degraded entity store over a key-value store.

    Each entity is one JSON array under the entity's name. Exposes the same
    CRUD surface as LocalStore so the rest of the application can keep
    running when the local database is unavailable.
    """

    def __init__(self, kv: KeyValueStore, schemas: Optional[Dict[str, Dict[str, Any]]] = None):
        self.kv = kv
        self.schemas = schemas or ENTITY_SCHEMAS

    @property
    def is_initialized(self) -> bool:
        return True

    @property
    def entity_names(self) -> List[str]:
        return [name for name in self.schemas if not name.startswith("_")]

    async def init(self) -> "FlatEntityStore":
        return self

    async def close(self) -> None:
        pass

    def key_path(self, entity: str) -> str:
        if entity not in self.schemas:
            raise UnknownEntityError(entity)
        return self.schemas[entity]["key_path"]

    def _load(self, entity: str) -> List[Record]:
        self.key_path(entity)
        items = self.kv.get_json(entity, [])
        return items if isinstance(items, list) else []

    def _save(self, entity: str, items: List[Record]) -> None:
        self.kv.set_json(entity, items)

    async def get_all(self, entity: str) -> List[Record]:
        return self._load(entity)

    async def get(self, entity: str, record_id: str) -> Optional[Record]:
        key = self.key_path(entity)
        return next((item for item in self._load(entity) if item.get(key) == record_id), None)

    async def find(self, entity: str, field: str, value: Any) -> List[Record]:
        return [item for item in self._load(entity) if item.get(field) == value]

    async def create(
        self,
        entity: str,
        data: Record,
        *,
        preserve_timestamps: bool = False,
        synced: bool = False,
    ) -> Record:
        key = self.key_path(entity)
        items = self._load(entity)
        now = utc_now()
        record_id = data.get(key) or generate_id()
        if any(item.get(key) == record_id for item in items):
            raise DuplicateRecordError(f"Record with id {record_id} already exists in {entity}")

        if preserve_timestamps:
            updated_at = data.get("updated_at") or data.get("created_at") or now
        else:
            updated_at = now

        record = {
            **{k: v for k, v in data.items() if k not in ("_synced", "_version")},
            key: record_id,
            "created_at": data.get("created_at") or now,
            "updated_at": updated_at,
            "_synced": synced,
            "_version": 1,
        }
        items.append(record)
        self._save(entity, items)
        return record

    async def update(
        self,
        entity: str,
        record_id: str,
        updates: Record,
        *,
        preserve_timestamps: bool = False,
        synced: bool = False,
    ) -> Record:
        key = self.key_path(entity)
        items = self._load(entity)
        for index, existing in enumerate(items):
            if existing.get(key) != record_id:
                continue
            proposed = updates.get("updated_at") if preserve_timestamps else None
            record = {
                **existing,
                **{k: v for k, v in updates.items() if k not in ("_synced", "_version")},
                key: record_id,
                "updated_at": later_timestamp(existing.get("updated_at"), proposed or utc_now()),
                "_synced": synced,
                "_version": (existing.get("_version") or 1) + 1,
            }
            items[index] = record
            self._save(entity, items)
            return record
        raise RecordNotFoundError(f"Record with id {record_id} not found in {entity}")

    async def backfill(self, entity: str, record_id: str, defaults: Record) -> bool:
        key = self.key_path(entity)
        items = self._load(entity)
        for existing in items:
            if existing.get(key) != record_id:
                continue
            missing = {k: v for k, v in defaults.items() if k not in existing}
            if not missing:
                return False
            existing.update(missing)
            self._save(entity, items)
            return True
        raise RecordNotFoundError(f"Record with id {record_id} not found in {entity}")

    async def put_many(self, entity: str, records: List[Record]) -> None:
        key = self.key_path(entity)
        by_id = {item.get(key): item for item in self._load(entity)}
        for record in records:
            if record.get(key) is not None:
                by_id[record[key]] = record
        self._save(entity, list(by_id.values()))

    async def mark_synced(self, entity: str, record_ids: List[str]) -> int:
        key = self.key_path(entity)
        wanted = set(record_ids)
        items = self._load(entity)
        marked = 0
        for item in items:
            if item.get(key) in wanted:
                item["_synced"] = True
                marked += 1
        if marked:
            self._save(entity, items)
        return marked

    async def delete(self, entity: str, record_id: str) -> bool:
        key = self.key_path(entity)
        items = self._load(entity)
        remaining = [item for item in items if item.get(key) != record_id]
        self._save(entity, remaining)
        return len(remaining) != len(items)

    async def count(self, entity: str) -> int:
        return len(self._load(entity))

    async def clear(self, entity: str) -> None:
        self._save(entity, [])

    async def clear_all(self) -> None:
        for name in self.entity_names:
            self._save(name, [])

    async def get_stats(self) -> Dict[str, int]:
        return {name: len(self._load(name)) for name in self.entity_names}
