"""
Local libSQL store with one table per entity collection.

Each record is kept as a JSON document keyed by its id. Secondary lookup
indexes are expression indexes over the JSON payload and are rebuilt
whenever the schema version is bumped.
"""
import asyncio
import inspect
import json
import re
import uuid
import structlog
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from libsql_client import Client, create_client


logger = structlog.get_logger()

Record = Dict[str, Any]

METADATA_STORE = "_metadata"
SYNC_QUEUE_STORE = "_syncQueue"

FIELD_NAME = re.compile(r"[A-Za-z0-9_]+")


def _schema(*index_fields: str, key_path: str = "id") -> Dict[str, Any]:
    return {"key_path": key_path, "indexes": list(index_fields)}


ENTITY_SCHEMAS: Dict[str, Dict[str, Any]] = {
    "events": _schema("date", "status", "client_id", "created_at", "updated_at", "user_id"),
    "tasks": _schema(
        "event_id", "status", "priority", "due_date", "created_at", "updated_at", "assigned_to"
    ),
    "clients": _schema("name", "email", "created_at", "updated_at"),
    "workHours": _schema("event_id", "user_id", "date", "status", "created_at", "updated_at"),
    "systemUsers": _schema("email", "role", "created_at", "updated_at"),
    "seasonalClients": _schema(
        "event_month", "check_status", "next_contact_date", "created_at", "updated_at"
    ),
    "tags": _schema("name", "color", "created_at"),
    "comments": _schema("entity_type", "entity_id", "user_id", "created_at"),
    "personalMessages": _schema("user_id", "is_read", "created_at"),
    "chats": _schema("user_id", "created_at"),
    "canvas": _schema("user_id", "created_at", "updated_at"),
    METADATA_STORE: _schema("updated_at", key_path="key"),
    SYNC_QUEUE_STORE: _schema("entity", "operation", "created_at", "priority"),
}


class StoreOpenError(RuntimeError):
    """The local database could not be opened or its schema applied."""


class UnknownEntityError(KeyError):
    """Entity name is not declared in the schema."""


class RecordNotFoundError(LookupError):
    """No record with the given id exists in the collection."""


class DuplicateRecordError(ValueError):
    """A record with the given id already exists in the collection."""


# ========== Timestamp Helpers ==========

def utc_now() -> str:
    """Current UTC time as an ISO-8601 string with a trailing Z."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a stored timestamp.

    Accepts ISO-8601 strings (with or without a trailing Z), datetimes and
    epoch milliseconds. Returns None for missing or unparseable values.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def record_timestamp(record: Record) -> Optional[datetime]:
    """Last-modified time of a record: updated_at, falling back to created_at."""
    return parse_timestamp(record.get("updated_at") or record.get("created_at"))


def is_newer(candidate: Record, reference: Record) -> bool:
    """True only if candidate's timestamp is strictly later than reference's."""
    candidate_time = record_timestamp(candidate)
    reference_time = record_timestamp(reference)
    if candidate_time is None or reference_time is None:
        return False
    return candidate_time > reference_time


def later_timestamp(current: Any, proposed: Any) -> Any:
    """Return whichever of two timestamps is later, keeping its original form."""
    current_time = parse_timestamp(current)
    proposed_time = parse_timestamp(proposed)
    if current_time is None:
        return proposed
    if proposed_time is None or proposed_time < current_time:
        return current
    return proposed


def generate_id() -> str:
    """Generate a unique record ID (UUID)."""
    return str(uuid.uuid4())


# ========== Local Store ==========

class LocalStore:
    """
    Versioned, indexed local database.

    Architecture:
    - One table per entity: (id TEXT PRIMARY KEY, data TEXT)
    - Secondary indexes are json_extract() expression indexes, non-unique
    - schema_version table tracks the applied schema version
    - Every write stamps timestamps and the per-record _version counter
    """

    DB_VERSION = 2

    def __init__(
        self,
        db_url: str,
        schemas: Optional[Dict[str, Dict[str, Any]]] = None,
        client_factory: Callable[[str], Client] = create_client,
    ):
        self.db_url = db_url
        self.schemas = schemas or ENTITY_SCHEMAS
        self._client_factory = client_factory
        self._client: Optional[Client] = None
        self._init_future: Optional[asyncio.Future] = None

    @property
    def is_initialized(self) -> bool:
        return self._client is not None

    @property
    def entity_names(self) -> List[str]:
        """Public entity collections (internal stores start with an underscore)."""
        return [name for name in self.schemas if not name.startswith("_")]

    # ========== Lifecycle ==========

    async def init(self) -> Client:
        """
        Open the database and apply the schema.

        Idempotent; concurrent callers share the same in-flight initialization.

        Raises:
            StoreOpenError: If the database cannot be opened
        """
        if self._client is not None:
            return self._client

        if self._init_future is None:
            self._init_future = asyncio.ensure_future(self._initialize())

        try:
            return await asyncio.shield(self._init_future)
        except Exception:
            self._init_future = None
            raise

    async def _initialize(self) -> Client:
        client = None
        try:
            client = self._client_factory(self.db_url)
            await self._ensure_schema(client)
        except Exception as e:
            logger.error("local_store_open_failed", db_url=self.db_url, error=str(e))
            if client is not None:
                await self._close_client(client)
            raise StoreOpenError(f"Failed to open local store: {e}") from e

        self._client = client
        logger.info("local_store_initialized", db_url=self.db_url, version=self.DB_VERSION)
        return client

    async def _ensure_schema(self, client: Client) -> None:
        """Create tables and, on a version bump, rebuild every index."""
        statements = [
            "CREATE TABLE IF NOT EXISTS schema_version ("
            "version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)"
        ]
        for name in self.schemas:
            statements.append(
                f'CREATE TABLE IF NOT EXISTS "{name}" (id TEXT PRIMARY KEY, data TEXT NOT NULL)'
            )
        await client.batch(statements)

        result = await client.execute("SELECT MAX(version) FROM schema_version")
        current_version = result.rows[0][0] if result.rows and result.rows[0][0] else 0

        if current_version < self.DB_VERSION:
            logger.info(
                "local_store_schema_upgrade",
                from_version=current_version,
                to_version=self.DB_VERSION,
            )
            await self._rebuild_indexes(client)
            await client.execute(
                "INSERT OR REPLACE INTO schema_version (version, applied_at) VALUES (?, ?)",
                [self.DB_VERSION, utc_now()],
            )
        else:
            await client.batch(self._index_statements())

    async def _rebuild_indexes(self, client: Client) -> None:
        """Drop and recreate all secondary indexes. Record data is untouched."""
        result = await client.execute(
            "SELECT name FROM sqlite_master WHERE type = 'index' AND name LIKE 'idx_%'"
        )
        statements = [f'DROP INDEX IF EXISTS "{row[0]}"' for row in result.rows]
        statements.extend(self._index_statements())
        await client.batch(statements)

    def _index_statements(self) -> List[str]:
        statements = []
        for name, schema in self.schemas.items():
            for field in schema["indexes"]:
                statements.append(
                    f'CREATE INDEX IF NOT EXISTS "idx_{name}_{field}" '
                    f"ON \"{name}\"(json_extract(data, '$.{field}'))"
                )
        return statements

    async def close(self) -> None:
        """Close the database connection."""
        if self._client is not None:
            await self._close_client(self._client)
            self._client = None
            self._init_future = None
            logger.info("local_store_closed", db_url=self.db_url)

    @staticmethod
    async def _close_client(client: Client) -> None:
        result = client.close()
        if inspect.isawaitable(result):
            await result

    # ========== Helpers ==========

    def _table(self, entity: str) -> str:
        if entity not in self.schemas:
            raise UnknownEntityError(entity)
        return entity

    def key_path(self, entity: str) -> str:
        return self.schemas[self._table(entity)]["key_path"]

    @staticmethod
    def _strip_sync_flags(data: Record) -> Record:
        return {k: v for k, v in data.items() if k not in ("_synced", "_version")}

    # ========== CRUD ==========

    async def get_all(self, entity: str) -> List[Record]:
        """Get all records of an entity."""
        client = await self.init()
        result = await client.execute(f'SELECT data FROM "{self._table(entity)}"')
        return [json.loads(row[0]) for row in result.rows]

    async def get(self, entity: str, record_id: str) -> Optional[Record]:
        """Get a single record by id, or None."""
        client = await self.init()
        result = await client.execute(
            f'SELECT data FROM "{self._table(entity)}" WHERE id = ?', [record_id]
        )
        if not result.rows:
            return None
        return json.loads(result.rows[0][0])

    async def find(self, entity: str, field: str, value: Any) -> List[Record]:
        """Look up records by a field value (uses the field's index when declared)."""
        if not FIELD_NAME.fullmatch(field):
            raise ValueError(f"Invalid field name: {field!r}")
        client = await self.init()
        result = await client.execute(
            f'SELECT data FROM "{self._table(entity)}" '
            f"WHERE json_extract(data, '$.{field}') = ?",
            [value],
        )
        return [json.loads(row[0]) for row in result.rows]

    async def create(
        self,
        entity: str,
        data: Record,
        *,
        preserve_timestamps: bool = False,
        synced: bool = False,
    ) -> Record:
        """
        Create a new record.

        Assigns an id if absent, stamps created_at/updated_at, sets
        _version=1 and _synced (False unless written by the sync engine).

        Args:
            entity: Entity collection name
            data: Record fields
            preserve_timestamps: Keep the incoming updated_at (pulled/restored data)
            synced: Mark the record as already present on the remote store

        Raises:
            DuplicateRecordError: If the id already exists
        """
        client = await self.init()
        table = self._table(entity)
        key = self.key_path(entity)
        now = utc_now()

        if preserve_timestamps:
            updated_at = data.get("updated_at") or data.get("created_at") or now
        else:
            updated_at = now

        record = {
            **self._strip_sync_flags(data),
            key: data.get(key) or generate_id(),
            "created_at": data.get("created_at") or now,
            "updated_at": updated_at,
            "_synced": synced,
            "_version": 1,
        }

        result = await client.execute(
            f'INSERT INTO "{table}" (id, data) VALUES (?, ?) ON CONFLICT(id) DO NOTHING',
            [str(record[key]), json.dumps(record)],
        )
        if result.rows_affected == 0:
            raise DuplicateRecordError(f"Record with id {record[key]} already exists in {entity}")

        logger.debug("record_created", entity=entity, record_id=record[key])
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
        """
        Update an existing record.

        Merges updates over the stored record, bumps updated_at (never
        backwards), increments _version and resets _synced.

        Raises:
            RecordNotFoundError: If no record has this id
        """
        client = await self.init()
        table = self._table(entity)
        key = self.key_path(entity)

        existing = await self.get(entity, record_id)
        if existing is None:
            raise RecordNotFoundError(f"Record with id {record_id} not found in {entity}")

        proposed = updates.get("updated_at") if preserve_timestamps else None
        updated_at = later_timestamp(existing.get("updated_at"), proposed or utc_now())

        record = {
            **existing,
            **self._strip_sync_flags(updates),
            key: record_id,
            "updated_at": updated_at,
            "_synced": synced,
            "_version": (existing.get("_version") or 1) + 1,
        }

        await client.execute(
            f'UPDATE "{table}" SET data = ? WHERE id = ?',
            [json.dumps(record), str(record_id)],
        )

        logger.debug(
            "record_updated", entity=entity, record_id=record_id, version=record["_version"]
        )
        return record

    async def backfill(self, entity: str, record_id: str, defaults: Record) -> bool:
        """
        Add fields that are absent from a stored record without counting it
        as a mutation (no timestamp or version change).

        Returns:
            True if the record was changed
        """
        client = await self.init()
        existing = await self.get(entity, record_id)
        if existing is None:
            raise RecordNotFoundError(f"Record with id {record_id} not found in {entity}")

        missing = {k: v for k, v in defaults.items() if k not in existing}
        if not missing:
            return False

        await client.execute(
            f'UPDATE "{self._table(entity)}" SET data = ? WHERE id = ?',
            [json.dumps({**existing, **missing}), str(record_id)],
        )
        return True

    async def put_many(self, entity: str, records: List[Record]) -> None:
        """Write records verbatim, replacing same-id rows. Used for snapshot restore."""
        client = await self.init()
        table = self._table(entity)
        key = self.key_path(entity)
        statements = [
            (
                f'INSERT OR REPLACE INTO "{table}" (id, data) VALUES (?, ?)',
                [str(record[key]), json.dumps(record)],
            )
            for record in records
            if record.get(key) is not None
        ]
        if statements:
            await client.batch(statements)

    async def mark_synced(self, entity: str, record_ids: List[str]) -> int:
        """
        Set _synced=True on records confirmed written to the remote store.

        Not a mutation: timestamps and _version are left alone.
        """
        client = await self.init()
        table = self._table(entity)
        if not record_ids:
            return 0
        placeholders = ", ".join("?" for _ in record_ids)
        result = await client.execute(
            f"UPDATE \"{table}\" SET data = json_set(data, '$._synced', json('true')) "
            f"WHERE id IN ({placeholders})",
            [str(record_id) for record_id in record_ids],
        )
        return result.rows_affected

    async def delete(self, entity: str, record_id: str) -> bool:
        """Delete a record. Returns True if a record was removed."""
        client = await self.init()
        result = await client.execute(
            f'DELETE FROM "{self._table(entity)}" WHERE id = ?', [str(record_id)]
        )
        logger.debug("record_deleted", entity=entity, record_id=record_id)
        return result.rows_affected > 0

    async def count(self, entity: str) -> int:
        client = await self.init()
        result = await client.execute(f'SELECT COUNT(*) FROM "{self._table(entity)}"')
        return result.rows[0][0] if result.rows else 0

    async def clear(self, entity: str) -> None:
        """Remove every record of one collection."""
        client = await self.init()
        await client.execute(f'DELETE FROM "{self._table(entity)}"')

    async def clear_all(self) -> None:
        """Remove every record of every public entity collection."""
        client = await self.init()
        await client.batch([f'DELETE FROM "{name}"' for name in self.entity_names])
        logger.info("local_store_cleared")

    async def get_stats(self) -> Dict[str, int]:
        """Record count per public entity collection."""
        stats = {}
        for name in self.entity_names:
            stats[name] = await self.count(name)
        return stats
