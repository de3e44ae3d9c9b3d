"""
Pydantic models for backup and restore.
"""
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class MergeStrategy(str, Enum):
    """
    How a backup item is applied when the store already holds its id.

    - latest_wins: replace only if the backup copy is strictly newer
    - backup_wins: always replace
    - keep_both: keep the stored item and restore the backup copy under a
      new id
    """
    LATEST_WINS = "latest_wins"
    BACKUP_WINS = "backup_wins"
    KEEP_BOTH = "keep_both"


class BackupOptions(BaseModel):
    include_metadata: bool = True
    include_user_data: bool = True
    include_system_data: bool = True
    compress: bool = True


class RestoreOptions(BaseModel):
    clear_existing: bool = False
    merge_strategy: MergeStrategy = MergeStrategy.LATEST_WINS
    validate_data: bool = True


class RestoreError(BaseModel):
    entity_name: str
    item_id: Optional[Any] = None
    error: str


class RenamedItem(BaseModel):
    """Backup item restored under a new id by the keep_both strategy."""
    entity_name: str
    original_id: Any
    new_id: str


class BackupInfo(BaseModel):
    version: str
    timestamp: str
    device_id: Optional[str] = None
    user_id: Optional[str] = None


class RestoreResult(BaseModel):
    success: bool = True
    restored_count: int = 0
    total_items: int = 0
    skipped_invalid: int = 0
    errors: List[RestoreError] = Field(default_factory=list)
    renamed: List[RenamedItem] = Field(default_factory=list)
    backup_info: BackupInfo


class AutoBackupInfo(BaseModel):
    timestamp: str
    stats: Dict[str, Any] = Field(default_factory=dict)


class ExportResult(BaseModel):
    filename: str
    size: int
