"""
Durable queue of sync operations deferred while offline or after a failure.
"""
import structlog
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pixelsync.database import SYNC_QUEUE_STORE, parse_timestamp
from pixelsync.sync.models import SyncOperation, SyncQueueEntry


logger = structlog.get_logger()

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class SyncQueue:
    """
    Queue persisted in the local store's _syncQueue collection.

    Replay order: priority descending (deletions first), then created_at
    ascending.
    """

    def __init__(self, store):
        self.store = store
        self.length = 0

    async def load(self) -> int:
        """Refresh the cached length from storage."""
        self.length = await self.store.count(SYNC_QUEUE_STORE)
        return self.length

    async def enqueue(
        self,
        entity: str,
        operation: SyncOperation,
        data: Optional[Dict[str, Any]] = None,
    ) -> SyncQueueEntry:
        entry = SyncQueueEntry.for_operation(entity, operation, data)
        await self.store.create(
            SYNC_QUEUE_STORE, entry.model_dump(mode="json"), preserve_timestamps=True
        )
        self.length += 1
        logger.info(
            "sync_operation_queued",
            entity=entity,
            operation=entry.operation.value,
            priority=entry.priority,
        )
        return entry

    async def pending(self) -> List[SyncQueueEntry]:
        """All queued entries in replay order."""
        rows = await self.store.get_all(SYNC_QUEUE_STORE)
        entries = [SyncQueueEntry.model_validate(row) for row in rows]
        self.length = len(entries)
        return sorted(
            entries,
            key=lambda entry: (-entry.priority, parse_timestamp(entry.created_at) or _EPOCH),
        )

    async def remove(self, entry_id: str) -> None:
        if await self.store.delete(SYNC_QUEUE_STORE, entry_id):
            self.length = max(self.length - 1, 0)

    async def clear(self) -> None:
        await self.store.clear(SYNC_QUEUE_STORE)
        self.length = 0
