"""
Server-side database for the sync backend.

A single libSQL database holding the user directory and every user's
synced records, stored as JSON blobs keyed by (user_id, entity_name,
entity_id).
"""
import inspect
import json
import structlog
from pathlib import Path
from typing import Any, Dict, List, Optional

from libsql_client import Client, create_client

from pixelsync.auth.crypto import (
    check_server_password,
    generate_consistent_user_id,
    hash_server_password,
)
from pixelsync.config import get_settings
from pixelsync.database import Record, utc_now


logger = structlog.get_logger()


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password TEXT NOT NULL,
        data TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_data (
        user_id TEXT NOT NULL,
        entity_name TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        data TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (user_id, entity_name, entity_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_user_data_user ON user_data(user_id, entity_name)",
]


class ServerDatabase:
    """
    Manages the sync backend's database.

    Schema:
    - users: email, salted password hash and profile fields
    - user_data: one row per synced record
    """

    def __init__(self, db_url: str):
        self.db_url = db_url
        self._client: Optional[Client] = None

    async def get_client(self) -> Client:
        if self._client is None:
            if self.db_url.startswith("file:"):
                Path(self.db_url[len("file:"):]).parent.mkdir(parents=True, exist_ok=True)
            client = create_client(self.db_url)
            await client.batch(SCHEMA)
            self._client = client
            logger.info("server_database_connected", db_url=self.db_url)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            result = self._client.close()
            if inspect.isawaitable(result):
                await result
            self._client = None
            logger.info("server_database_closed")

    # ========== Users ==========

    async def create_user(self, email: str, password: str, **profile: Any) -> Dict[str, Any]:
        """
        Register a user. The id is derived from the email so clients compute
        the same id offline.
        """
        client = await self.get_client()
        user_id = generate_consistent_user_id(email)
        now = utc_now()
        await client.execute(
            "INSERT INTO users (id, email, password, data, created_at) VALUES (?, ?, ?, ?, ?)",
            [user_id, email, hash_server_password(password), json.dumps(profile), now],
        )
        logger.info("server_user_created", user_id=user_id)
        return {**profile, "id": user_id, "email": email, "created_at": now}

    async def authenticate(self, email: str, password: str) -> Optional[Dict[str, Any]]:
        """Return the user without its password, or None."""
        client = await self.get_client()
        result = await client.execute(
            "SELECT id, email, password, data, created_at FROM users WHERE email = ?", [email]
        )
        if not result.rows:
            return None
        user_id, user_email, password_hash, data, created_at = result.rows[0]
        if not check_server_password(password, password_hash):
            return None
        return {**json.loads(data or "{}"), "id": user_id, "email": user_email, "created_at": created_at}

    # ========== Synced Records ==========

    async def get_entity(self, user_id: str, entity_name: str) -> List[Record]:
        client = await self.get_client()
        result = await client.execute(
            "SELECT data FROM user_data WHERE user_id = ? AND entity_name = ?",
            [user_id, entity_name],
        )
        return [json.loads(row[0]) for row in result.rows]

    async def get_all(self, user_id: str) -> Dict[str, List[Record]]:
        client = await self.get_client()
        result = await client.execute(
            "SELECT entity_name, data FROM user_data WHERE user_id = ?", [user_id]
        )
        grouped: Dict[str, List[Record]] = {}
        for entity_name, data in result.rows:
            grouped.setdefault(entity_name, []).append(json.loads(data))
        return grouped

    async def upsert_items(self, user_id: str, entity_name: str, items: List[Record]) -> int:
        """Insert or replace records; items without an id are ignored."""
        client = await self.get_client()
        now = utc_now()
        statements = [
            (
                "INSERT INTO user_data (user_id, entity_name, entity_id, data, updated_at) "
                "VALUES (?, ?, ?, ?, ?) "
                "ON CONFLICT(user_id, entity_name, entity_id) "
                "DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at",
                [user_id, entity_name, str(item["id"]), json.dumps(item), now],
            )
            for item in items
            if item.get("id")
        ]
        if statements:
            await client.batch(statements)
        logger.info("server_items_saved", user_id=user_id, entity=entity_name, count=len(statements))
        return len(statements)

    async def delete_item(self, user_id: str, entity_name: str, entity_id: str) -> bool:
        client = await self.get_client()
        result = await client.execute(
            "DELETE FROM user_data WHERE user_id = ? AND entity_name = ? AND entity_id = ?",
            [user_id, entity_name, entity_id],
        )
        return result.rows_affected > 0


# Global server database instance
server_db = ServerDatabase(get_settings().server_db_url)


def get_server_db() -> ServerDatabase:
    """Dependency injection for the server database."""
    return server_db
