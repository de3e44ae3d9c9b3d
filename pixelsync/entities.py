"""
Uniform CRUD surface per entity collection.

Reads decrypt and writes encrypt sensitive fields with the logged-in user's
password; every mutation is followed by a background sync of the entity.
"""
from typing import Any, Callable, Dict, Iterator, List, Optional

from pixelsync.crypto import EncryptionGate
from pixelsync.database import Record, RecordNotFoundError
from pixelsync.sync.service import SYNC_ENTITIES, CloudSyncEngine


PasswordProvider = Callable[[], Optional[str]]

_ENCRYPTION_META = ("_encrypted", "_encryptedFields")


class EntityRepository:
    """CRUD for one entity collection."""

    def __init__(
        self,
        name: str,
        store,
        gate: EncryptionGate,
        sync_engine: CloudSyncEngine,
        password_provider: PasswordProvider,
    ):
        self.name = name
        self.store = store
        self.gate = gate
        self.sync_engine = sync_engine
        self._password = password_provider

    async def get_all(self) -> List[Record]:
        records = await self.store.get_all(self.name)
        return await self.gate.decrypt_array(records, self.name, self._password())

    async def get(self, record_id: str) -> Optional[Record]:
        record = await self.store.get(self.name, record_id)
        return await self.gate.decrypt_object(record, self.name, self._password())

    async def find(self, field: str, value: Any) -> List[Record]:
        """Index lookup; only meaningful on fields that are never encrypted."""
        records = await self.store.find(self.name, field, value)
        return await self.gate.decrypt_array(records, self.name, self._password())

    async def create(self, item: Record) -> Record:
        password = self._password()
        record = await self.gate.encrypt_object(item, self.name, password)
        created = await self.store.create(self.name, record)
        self.sync_engine.request_sync(self.name)
        return await self.gate.decrypt_object(created, self.name, password)

    async def update(self, record_id: str, changes: Record) -> Record:
        """
        Merge changes over the stored record.

        Raises:
            RecordNotFoundError: If no record has this id
        """
        password = self._password()
        if password and self.gate.has_sensitive_fields(self.name):
            existing = await self.store.get(self.name, record_id)
            if existing is None:
                raise RecordNotFoundError(f"Record with id {record_id} not found in {self.name}")
            plain = await self.gate.decrypt_object(existing, self.name, password)
            merged = {
                k: v for k, v in {**plain, **changes}.items() if k not in _ENCRYPTION_META
            }
            changes = await self.gate.encrypt_object(merged, self.name, password)

        updated = await self.store.update(self.name, record_id, changes)
        self.sync_engine.request_sync(self.name)
        return await self.gate.decrypt_object(updated, self.name, password)

    async def delete(self, record_id: str) -> bool:
        removed = await self.store.delete(self.name, record_id)
        if removed:
            self.sync_engine.request_delete(self.name, record_id)
        return removed


class Entities:
    """Registry of repositories, addressable by entity name."""

    def __init__(
        self,
        store,
        gate: EncryptionGate,
        sync_engine: CloudSyncEngine,
        password_provider: PasswordProvider,
        names: Optional[List[str]] = None,
    ):
        self._repositories: Dict[str, EntityRepository] = {
            name: EntityRepository(name, store, gate, sync_engine, password_provider)
            for name in (names or SYNC_ENTITIES)
        }

    def __getitem__(self, name: str) -> EntityRepository:
        return self._repositories[name]

    def __contains__(self, name: str) -> bool:
        return name in self._repositories

    def __iter__(self) -> Iterator[str]:
        return iter(self._repositories)
