"""
Pydantic models for the cloud sync engine and the sync REST backend.
"""
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from pixelsync.database import generate_id, utc_now


# ========== Queue Models ==========

class SyncOperation(str, Enum):
    """Deferred operation kinds."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SYNC = "sync"


class SyncQueueEntry(BaseModel):
    """
    Operation that could not reach the remote store.

    Deletions carry priority 1 and are replayed before everything else.
    """
    id: str = Field(default_factory=generate_id)
    entity: str
    operation: SyncOperation
    data: Optional[Dict[str, Any]] = None
    created_at: str = Field(default_factory=utc_now)
    priority: int = 0

    @classmethod
    def for_operation(
        cls, entity: str, operation: SyncOperation, data: Optional[Dict[str, Any]] = None
    ) -> "SyncQueueEntry":
        priority = 1 if operation == SyncOperation.DELETE else 0
        return cls(entity=entity, operation=operation, data=data, priority=priority)


# ========== Engine State ==========

class MergeResult(BaseModel):
    """Outcome of reconciling local and remote records of one entity."""
    to_pull: List[Dict[str, Any]] = Field(default_factory=list)
    to_push: List[Dict[str, Any]] = Field(default_factory=list)


class SyncStatus(BaseModel):
    """Derived snapshot of the engine state."""
    is_online: bool
    sync_in_progress: bool
    last_sync_time: Optional[str] = None
    queue_length: int = 0
    user_id: Optional[str] = None
    device_id: Optional[str] = None
    provider: str = "disabled"


class SyncStatistics(BaseModel):
    """Queue and metadata counters reported to the UI."""
    queue: List[SyncQueueEntry] = Field(default_factory=list)
    queue_length: int = 0
    metadata_count: int = 0
    last_sync_time: Optional[str] = None
    status: SyncStatus


# ========== REST Payloads ==========

class SyncPushRequest(BaseModel):
    """Records pushed to the sync backend for one entity."""
    items: List[Dict[str, Any]] = Field(default_factory=list)
    deviceId: Optional[str] = None
    timestamp: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "items": [{"id": "evt-1", "updated_at": "2024-01-02T00:00:00Z"}],
                "deviceId": "device_abc",
                "timestamp": "2024-01-02T00:00:01Z",
            }
        }


class SyncPushResponse(BaseModel):
    success: bool = True
    saved: int


class SyncItemsResponse(BaseModel):
    """Records of one entity stored for a user."""
    items: List[Dict[str, Any]] = Field(default_factory=list)


class SyncAllResponse(BaseModel):
    """Every entity stored for a user, keyed by entity name."""
    data: Dict[str, List[Dict[str, Any]]] = Field(default_factory=dict)


class SyncDeleteResponse(BaseModel):
    success: bool
