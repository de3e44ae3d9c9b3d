"""
Last-write-wins reconciliation of one entity's local and remote records.
"""
from typing import Iterable

from pixelsync.database import Record, is_newer
from pixelsync.sync.models import MergeResult


def merge_records(local: Iterable[Record], remote: Iterable[Record]) -> MergeResult:
    """
    Compare two record sets keyed by id.

    - Remote-only records are pulled; local-only records are pushed.
    - For shared ids the whole record with the strictly later timestamp
      (updated_at, falling back to created_at) wins.
    - Equal or missing timestamps stage nothing in either direction.

    Returns:
        MergeResult with disjoint to_pull / to_push lists
    """
    local_by_id = {record["id"]: record for record in local if record.get("id") is not None}
    remote_by_id = {record["id"]: record for record in remote if record.get("id") is not None}

    result = MergeResult()

    for record_id, remote_record in remote_by_id.items():
        local_record = local_by_id.get(record_id)
        if local_record is None or is_newer(remote_record, local_record):
            result.to_pull.append(remote_record)

    for record_id, local_record in local_by_id.items():
        remote_record = remote_by_id.get(record_id)
        if remote_record is None or is_newer(local_record, remote_record):
            result.to_push.append(local_record)

    return result
