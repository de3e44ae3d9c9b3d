"""
Remote transports for the cloud sync engine.

Every provider stores JSON records keyed by (user id, entity name, record id)
and exposes the same async surface, so the merge logic never depends on
which backend is configured.
"""
import json
import structlog
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from pixelsync.config import Settings
from pixelsync.database import Record, utc_now
from pixelsync.kvstore import KeyValueStore


logger = structlog.get_logger()


class ProviderError(RuntimeError):
    """The remote store rejected a request or could not be reached."""


class SyncProvider(ABC):
    """Polymorphic remote store."""

    name: str = "abstract"
    enabled: bool = True

    def __init__(self, http: httpx.AsyncClient):
        self.http = http

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send a request; transport failures and error statuses raise ProviderError."""
        try:
            response = await self.http.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise ProviderError(f"{self.name} request failed: {e}") from e
        if response.is_error:
            raise ProviderError(
                f"{self.name} returned HTTP {response.status_code} for {method} {url}"
            )
        return response

    async def initialize(self) -> None:
        """
        Verify the backend is reachable.

        Raises:
            ProviderError: If the health check fails
        """
        if not await self.health_check():
            raise ProviderError(f"{self.name} health check failed")

    @abstractmethod
    async def health_check(self) -> bool:
        ...

    @abstractmethod
    async def fetch_entity(self, user_id: str, entity: str) -> List[Record]:
        ...

    @abstractmethod
    async def push_entity(self, user_id: str, entity: str, records: List[Record]) -> None:
        """Upsert records keyed by (user_id, entity, record id)."""

    @abstractmethod
    async def delete_item(self, user_id: str, entity: str, item_id: str) -> None:
        ...


class DisabledProvider(SyncProvider):
    """No remote store configured; every operation is inert."""

    name = "disabled"
    enabled = False

    def __init__(self, http: Optional[httpx.AsyncClient] = None):
        self.http = http

    async def initialize(self) -> None:
        pass

    async def health_check(self) -> bool:
        return False

    async def fetch_entity(self, user_id: str, entity: str) -> List[Record]:
        return []

    async def push_entity(self, user_id: str, entity: str, records: List[Record]) -> None:
        pass

    async def delete_item(self, user_id: str, entity: str, item_id: str) -> None:
        pass


# ========== Custom REST Backend ==========

class CustomAPIProvider(SyncProvider):
    """
    The project's own sync server.

    Endpoints (relative to the configured base URL):
    - GET    /health
    - GET    /sync/{entity}/{user_id}            -> {"items": [...]}
    - POST   /sync/{entity}/{user_id}            <- {"items", "deviceId", "timestamp"}
    - DELETE /sync/{entity}/{user_id}/{item_id}
    """

    name = "custom"

    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: str,
        api_key: Optional[str] = None,
        device_id: Optional[str] = None,
    ):
        super().__init__(http)
        self.base_url = base_url.rstrip("/")
        self.device_id = device_id
        self.headers = {"Content-Type": "application/json"}
        if api_key:
            self.headers["Authorization"] = f"Bearer {api_key}"

    async def health_check(self) -> bool:
        try:
            await self._request("GET", f"{self.base_url}/health", headers=self.headers)
            return True
        except ProviderError as e:
            logger.warning("custom_api_health_check_failed", error=str(e))
            return False

    async def fetch_entity(self, user_id: str, entity: str) -> List[Record]:
        response = await self._request(
            "GET", f"{self.base_url}/sync/{entity}/{user_id}", headers=self.headers
        )
        return response.json().get("items") or []

    async def push_entity(self, user_id: str, entity: str, records: List[Record]) -> None:
        await self._request(
            "POST",
            f"{self.base_url}/sync/{entity}/{user_id}",
            headers=self.headers,
            json={"items": records, "deviceId": self.device_id, "timestamp": utc_now()},
        )
        logger.info("custom_api_pushed", entity=entity, count=len(records))

    async def delete_item(self, user_id: str, entity: str, item_id: str) -> None:
        await self._request(
            "DELETE", f"{self.base_url}/sync/{entity}/{user_id}/{item_id}", headers=self.headers
        )


# ========== Supabase ==========

class SupabaseProvider(SyncProvider):
    """
    Supabase PostgREST table `user_data`.

    Columns: user_id, entity_name, entity_id, data (JSON text). Writes upsert
    on the (user_id, entity_name, entity_id) unique constraint.
    """

    name = "supabase"
    TABLE = "user_data"

    def __init__(self, http: httpx.AsyncClient, url: str, anon_key: str):
        super().__init__(http)
        self.rest_url = f"{url.rstrip('/')}/rest/v1"
        self.headers = {
            "apikey": anon_key,
            "Authorization": f"Bearer {anon_key}",
            "Content-Type": "application/json",
        }

    async def health_check(self) -> bool:
        try:
            response = await self.http.get(
                f"{self.rest_url}/{self.TABLE}",
                headers=self.headers,
                params={"select": "entity_id", "limit": "1"},
            )
        except httpx.HTTPError as e:
            logger.warning("supabase_health_check_failed", error=str(e))
            return False
        # A missing table still proves the project is reachable
        return response.is_success or response.status_code == 404

    async def fetch_entity(self, user_id: str, entity: str) -> List[Record]:
        response = await self._request(
            "GET",
            f"{self.rest_url}/{self.TABLE}",
            headers=self.headers,
            params={
                "select": "entity_id,data",
                "user_id": f"eq.{user_id}",
                "entity_name": f"eq.{entity}",
            },
        )
        records = []
        for row in response.json() or []:
            data = row.get("data")
            records.append(json.loads(data) if isinstance(data, str) else data)
        return records

    async def push_entity(self, user_id: str, entity: str, records: List[Record]) -> None:
        rows = [
            {
                "user_id": user_id,
                "entity_name": entity,
                "entity_id": record["id"],
                "data": json.dumps(record),
            }
            for record in records
            if record.get("id")
        ]
        if not rows:
            return
        await self._request(
            "POST",
            f"{self.rest_url}/{self.TABLE}",
            headers={**self.headers, "Prefer": "resolution=merge-duplicates"},
            params={"on_conflict": "user_id,entity_name,entity_id"},
            json=rows,
        )
        logger.info("supabase_pushed", entity=entity, count=len(rows))

    async def delete_item(self, user_id: str, entity: str, item_id: str) -> None:
        await self._request(
            "DELETE",
            f"{self.rest_url}/{self.TABLE}",
            headers=self.headers,
            params={
                "user_id": f"eq.{user_id}",
                "entity_name": f"eq.{entity}",
                "entity_id": f"eq.{item_id}",
            },
        )


# ========== GitHub Gist ==========

class GistProvider(SyncProvider):
    """
    One private gist per user holding a JSON file per entity.

    The gist id is cached in the key-value store under github_gist_<user_id>;
    files are named <user_id>_<entity>.json.
    """

    name = "github"

    def __init__(
        self,
        http: httpx.AsyncClient,
        token: str,
        username: str,
        kv: KeyValueStore,
        api_url: str = "https://api.github.com",
    ):
        super().__init__(http)
        self.username = username
        self.kv = kv
        self.api_url = api_url.rstrip("/")
        self.headers = {
            "Authorization": f"token {token}",
            "Accept": "application/vnd.github.v3+json",
        }

    @staticmethod
    def _cache_key(user_id: str) -> str:
        return f"github_gist_{user_id}"

    @staticmethod
    def _filename(user_id: str, entity: str) -> str:
        return f"{user_id}_{entity}.json"

    async def health_check(self) -> bool:
        try:
            await self._request("GET", f"{self.api_url}/user", headers=self.headers)
            return True
        except ProviderError as e:
            logger.warning("github_health_check_failed", error=str(e))
            return False

    async def _load_gist(self, gist_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = await self.http.get(f"{self.api_url}/gists/{gist_id}", headers=self.headers)
        except httpx.HTTPError as e:
            raise ProviderError(f"github request failed: {e}") from e
        if response.status_code == 404:
            return None
        if response.is_error:
            raise ProviderError(f"github returned HTTP {response.status_code}")
        return response.json()

    async def _create_gist(self, user_id: str) -> str:
        response = await self._request(
            "POST",
            f"{self.api_url}/gists",
            headers=self.headers,
            json={
                "description": f"Pixel Art VJ - User Data Backup ({user_id})",
                "public": False,
                "files": {
                    "README.md": {
                        "content": (
                            "# Pixel Art VJ - User Data Backup\n\n"
                            f"Automatic backup data for user: {user_id}\n"
                            f"Created: {utc_now()}"
                        )
                    }
                },
            },
        )
        gist_id = response.json()["id"]
        self.kv.set_item(self._cache_key(user_id), gist_id)
        logger.info("github_gist_created", user_id=user_id, gist_id=gist_id)
        return gist_id

    async def _get_or_create_gist(self, user_id: str) -> Dict[str, Any]:
        gist_id = self.kv.get_item(self._cache_key(user_id))
        if gist_id:
            gist = await self._load_gist(gist_id)
            if gist is not None:
                return gist
            logger.warning("github_gist_missing", user_id=user_id, gist_id=gist_id)
        gist_id = await self._create_gist(user_id)
        return {"id": gist_id, "files": {}}

    @staticmethod
    def _read_file(gist: Dict[str, Any], filename: str) -> List[Record]:
        file = (gist.get("files") or {}).get(filename)
        if not file or not file.get("content"):
            return []
        try:
            items = json.loads(file["content"])
        except json.JSONDecodeError as e:
            raise ProviderError(f"gist file {filename} is not valid JSON") from e
        return items if isinstance(items, list) else []

    async def _write_file(self, gist_id: str, filename: str, items: List[Record]) -> None:
        await self._request(
            "PATCH",
            f"{self.api_url}/gists/{gist_id}",
            headers=self.headers,
            json={"files": {filename: {"content": json.dumps(items, indent=2)}}},
        )

    async def fetch_entity(self, user_id: str, entity: str) -> List[Record]:
        gist_id = self.kv.get_item(self._cache_key(user_id))
        if not gist_id:
            return []
        gist = await self._load_gist(gist_id)
        if gist is None:
            return []
        return self._read_file(gist, self._filename(user_id, entity))

    async def push_entity(self, user_id: str, entity: str, records: List[Record]) -> None:
        gist = await self._get_or_create_gist(user_id)
        filename = self._filename(user_id, entity)
        merged = {item.get("id"): item for item in self._read_file(gist, filename)}
        for record in records:
            merged[record.get("id")] = record
        await self._write_file(gist["id"], filename, list(merged.values()))
        logger.info("github_gist_pushed", entity=entity, count=len(records))

    async def delete_item(self, user_id: str, entity: str, item_id: str) -> None:
        gist_id = self.kv.get_item(self._cache_key(user_id))
        if not gist_id:
            return
        gist = await self._load_gist(gist_id)
        if gist is None:
            return
        filename = self._filename(user_id, entity)
        items = self._read_file(gist, filename)
        remaining = [item for item in items if item.get("id") != item_id]
        if len(remaining) != len(items):
            await self._write_file(gist_id, filename, remaining)


# ========== Firebase Realtime Database ==========

class FirebaseProvider(SyncProvider):
    """
    Firebase Realtime Database over its REST API.

    Records live at /users/<user_id>/<entity>/<record id>.json; a PATCH on the
    entity node upserts several records at once.
    """

    name = "firebase"

    def __init__(self, http: httpx.AsyncClient, database_url: str, api_key: Optional[str] = None):
        super().__init__(http)
        self.database_url = database_url.rstrip("/")
        self.params = {"auth": api_key} if api_key else {}

    def _url(self, *parts: str) -> str:
        return f"{self.database_url}/{'/'.join(parts)}.json"

    async def health_check(self) -> bool:
        try:
            await self._request(
                "GET", self._url(".info", "connected"), params=self.params
            )
            return True
        except ProviderError as e:
            logger.warning("firebase_health_check_failed", error=str(e))
            return False

    async def fetch_entity(self, user_id: str, entity: str) -> List[Record]:
        response = await self._request("GET", self._url("users", user_id, entity), params=self.params)
        data = response.json()
        if not data:
            return []
        if isinstance(data, dict):
            return list(data.values())
        return [item for item in data if item]

    async def push_entity(self, user_id: str, entity: str, records: List[Record]) -> None:
        updates = {record["id"]: record for record in records if record.get("id")}
        if not updates:
            return
        await self._request(
            "PATCH", self._url("users", user_id, entity), params=self.params, json=updates
        )
        logger.info("firebase_pushed", entity=entity, count=len(updates))

    async def delete_item(self, user_id: str, entity: str, item_id: str) -> None:
        await self._request(
            "DELETE", self._url("users", user_id, entity, item_id), params=self.params
        )


# ========== Factory ==========

def create_provider(
    settings: Settings,
    http: httpx.AsyncClient,
    kv: KeyValueStore,
    device_id: Optional[str] = None,
) -> SyncProvider:
    """
    Pick the first configured backend.

    Order: Supabase, GitHub gist, Firebase, custom REST. With nothing
    configured the disabled provider is returned.
    """
    if settings.supabase_url and settings.supabase_anon_key:
        return SupabaseProvider(http, settings.supabase_url, settings.supabase_anon_key)
    if settings.github_token and settings.github_username:
        return GistProvider(
            http, settings.github_token, settings.github_username, kv, settings.github_api_url
        )
    if settings.firebase_database_url:
        return FirebaseProvider(http, settings.firebase_database_url, settings.firebase_api_key)
    if settings.custom_api_url:
        return CustomAPIProvider(
            http, settings.custom_api_url, settings.custom_api_key, device_id=device_id
        )
    return DisabledProvider(http)
