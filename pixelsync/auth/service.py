"""
Cross-device authentication and session management.
"""
import asyncio
import secrets
import structlog
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

import httpx

from pixelsync.auth.crypto import (
    create_session_token,
    generate_consistent_user_id,
    hash_password,
    looks_hashed,
    session_expiry,
    verify_password,
)
from pixelsync.auth.models import DeviceInfo, Session
from pixelsync.config import Settings, get_settings
from pixelsync.crypto import EncryptionGate, generate_encryption_password
from pixelsync.database import Record, parse_timestamp, utc_now
from pixelsync.events import EventBus, ForceUIRefresh, SessionChanged
from pixelsync.kvstore import KeyValueStore
from pixelsync.scheduling import PeriodicTask, Sleep
from pixelsync.sync.service import CloudSyncEngine


logger = structlog.get_logger()

SESSION_KEY = "user_session"
CURRENT_USER_KEY = "currentUser"
USERS_ENTITY = "systemUsers"


class InvalidCredentialsError(ValueError):
    """No local or remote user matches the email and password."""


def _public_user(user: Record) -> Dict[str, Any]:
    return {k: v for k, v in user.items() if k != "password"}


class CrossDeviceAuthService:
    """
    Authenticates against local user records first, then the sync server.

    Session lifecycle: none -> active -> (refreshed | expired -> none).
    Sessions are checked at start and on a fixed interval; one close to
    expiry is refreshed silently. Session changes are broadcast on the
    event bus so other instances sharing the device follow along.
    """

    def __init__(
        self,
        store,
        kv: KeyValueStore,
        bus: EventBus,
        sync_engine: CloudSyncEngine,
        gate: EncryptionGate,
        device_id: str,
        settings: Optional[Settings] = None,
        http: Optional[httpx.AsyncClient] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.kv = kv
        self.bus = bus
        self.sync_engine = sync_engine
        self.gate = gate
        self.device_id = device_id
        self.instance_id = secrets.token_hex(8)

        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=self.settings.http_timeout_seconds)
        self._background: Set[asyncio.Task] = set()
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._check_task = PeriodicTask(
            "session_check",
            self.settings.session_check_interval_seconds,
            self.validate_existing_session,
            sleep=sleep,
        )

    # ========== Lifecycle ==========

    async def start(self) -> None:
        self._unsubscribe = self.bus.subscribe(SessionChanged, self.handle_session_change)
        if await self.validate_existing_session():
            user = self.get_current_user()
            self.sync_engine.set_user_id(user.get("id"))
            logger.info("session_restored", user_id=user.get("id"))
        self._check_task.start()

    async def dispose(self) -> None:
        await self._check_task.stop()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()
        if self._owns_http:
            await self.http.aclose()

    # ========== Login / Logout ==========

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        """
        Authenticate and open a session.

        Tries local user records first, then the sync server while online.
        On success the sync engine is unlocked for the user and a full sync
        starts in the background.

        Returns:
            The user without its password

        Raises:
            InvalidCredentialsError: If neither path accepts the credentials
        """
        user = await self.authenticate_local(email, password)
        source = "local"
        if user is None:
            user = await self.authenticate_remote(email, password)
            source = "remote"
        if user is None:
            logger.warning("login_failed", email=email)
            raise InvalidCredentialsError("Invalid credentials")

        session = self.create_session(user)
        await self.store_session(session)
        self.sync_engine.set_user_id(user["id"])
        self._run_in_background(self._initial_sync())

        logger.info("login_succeeded", user_id=user["id"], source=source, device_id=self.device_id)
        return session.user

    async def logout(self) -> bool:
        if self.get_current_session() is not None:
            self.sync_engine.set_user_id(None)
            self.clear_session()
            await self.bus.publish(SessionChanged(session=None, origin=self.instance_id))
            logger.info("logout_succeeded", device_id=self.device_id)
        return True

    async def _initial_sync(self) -> None:
        if not self.sync_engine.is_online:
            logger.info("initial_sync_skipped_offline")
            return
        try:
            await self.sync_engine.sync_all()
        except Exception as e:
            logger.warning("initial_sync_failed", error=str(e))
        await self.bus.publish(ForceUIRefresh(origin=self.instance_id))

    def _run_in_background(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ========== Local Authentication ==========

    async def _find_local_users(self, email: str) -> List[Record]:
        """
        Local user records for an email, decrypted.

        Plain records are found through the email index. Encrypted records
        cannot be searched by email, so the id derived from the email is
        looked up directly and decrypted with that user's own key.
        """
        users = list(await self.store.find(USERS_ENTITY, "email", email))

        user_id = generate_consistent_user_id(email)
        stored = await self.store.get(USERS_ENTITY, user_id)
        if stored and stored.get("_encrypted") is True:
            decrypted = await self.gate.decrypt_object(
                stored, USERS_ENTITY, generate_encryption_password(user_id, email)
            )
            if decrypted.get("email") == email:
                users.append(decrypted)
        return users

    async def authenticate_local(self, email: str, password: str) -> Optional[Dict[str, Any]]:
        try:
            candidates = await self._find_local_users(email)
        except Exception as e:
            logger.error("local_authentication_failed", error=str(e))
            return None

        for user in candidates:
            stored = user.get("password")
            if not verify_password(
                password, stored, allow_plaintext=self.settings.legacy_plaintext_passwords
            ):
                continue
            if not looks_hashed(stored):
                await self._upgrade_password(user, password)
            return {
                **_public_user(user),
                "lastLoginDevice": self.device_id,
                "lastLoginTime": utc_now(),
            }
        return None

    async def _upgrade_password(self, user: Record, password: str) -> None:
        """Replace a legacy plaintext password with its digest, keeping the record's encryption state."""
        digest = hash_password(password)
        try:
            stored = await self.store.get(USERS_ENTITY, user["id"])
            if stored and stored.get("_encrypted") is True:
                await self._save_local_user({**user, "password": digest})
            else:
                await self.store.update(USERS_ENTITY, user["id"], {"password": digest})
            logger.info("legacy_password_rehashed", user_id=user.get("id"))
        except Exception as e:
            logger.error("legacy_password_rehash_failed", user_id=user.get("id"), error=str(e))

    async def _save_local_user(self, user: Record) -> Record:
        """Write a user record encrypted with the user's own key."""
        record = await self.gate.encrypt_object(
            {k: v for k, v in user.items() if k not in ("_encrypted", "_encryptedFields")},
            USERS_ENTITY,
            generate_encryption_password(user["id"], user.get("email", "")),
        )
        if await self.store.get(USERS_ENTITY, user["id"]) is None:
            return await self.store.create(USERS_ENTITY, record)
        return await self.store.update(USERS_ENTITY, user["id"], record)

    # ========== Remote Authentication ==========

    async def authenticate_remote(self, email: str, password: str) -> Optional[Dict[str, Any]]:
        """POST /auth/login on the sync server; only possible while online."""
        base_url = self.settings.custom_api_url
        if not base_url or not self.sync_engine.is_online:
            return None

        try:
            response = await self.http.post(
                f"{base_url.rstrip('/')}/auth/login",
                json={"email": email, "password": password},
            )
        except httpx.HTTPError as e:
            logger.warning("remote_authentication_unreachable", error=str(e))
            return None

        if response.status_code == 401:
            return None
        if response.is_error:
            logger.warning("remote_authentication_failed", status=response.status_code)
            return None

        try:
            body = response.json()
        except ValueError:
            body = None
        user = body.get("user") if isinstance(body, dict) else None
        if not isinstance(user, dict):
            logger.warning("remote_authentication_invalid_response", status=response.status_code)
            return None

        if user.get("email") != email:
            return None
        user = {**user, "id": user.get("id") or generate_consistent_user_id(email)}

        await self.store_user_locally(user, password)
        return _public_user(user)

    async def store_user_locally(self, user: Record, password: str) -> None:
        """Keep a remotely authenticated user for offline login."""
        try:
            await self._save_local_user({**user, "password": hash_password(password)})
        except Exception as e:
            logger.error("store_user_locally_failed", user_id=user.get("id"), error=str(e))

    # ========== Sessions ==========

    def create_session(self, user: Record) -> Session:
        expires_at = session_expiry(self.settings)
        return Session(
            user=_public_user(user),
            device_id=self.device_id,
            login_time=utc_now(),
            expires_at=expires_at.isoformat().replace("+00:00", "Z"),
            auth_token=create_session_token(user["id"], self.device_id, expires_at, self.settings),
        )

    async def store_session(self, session: Session) -> None:
        payload = session.to_storage()
        self.kv.set_json(SESSION_KEY, payload)
        self.kv.set_json(CURRENT_USER_KEY, session.user)
        await self.bus.publish(SessionChanged(session=payload, origin=self.instance_id))

    def clear_session(self) -> None:
        self.kv.remove_item(SESSION_KEY)
        self.kv.remove_item(CURRENT_USER_KEY)

    def _load_session(self) -> Optional[Session]:
        data = self.kv.get_json(SESSION_KEY)
        if not data:
            return None
        try:
            return Session.model_validate(data)
        except ValueError as e:
            logger.warning("stored_session_invalid", error=str(e))
            return None

    def get_current_session(self) -> Optional[Session]:
        """The stored session, or None if absent or expired."""
        session = self._load_session()
        if session is None:
            return None
        expires_at = parse_timestamp(session.expires_at)
        if expires_at is None or datetime.now(timezone.utc) > expires_at:
            self._expire_session(session)
            return None
        return session

    def _expire_session(self, session: Session) -> None:
        logger.info("session_expired", user_id=session.user.get("id"))
        self.clear_session()
        self.sync_engine.set_user_id(None)

    def is_authenticated(self) -> bool:
        return self.get_current_session() is not None

    def get_current_user(self) -> Optional[Dict[str, Any]]:
        session = self.get_current_session()
        return session.user if session else None

    @property
    def encryption_password(self) -> Optional[str]:
        """Field-encryption password of the logged-in user."""
        user = self.get_current_user()
        if not user or not user.get("id") or not user.get("email"):
            return None
        return generate_encryption_password(user["id"], user["email"])

    async def validate_existing_session(self) -> bool:
        """
        Drop an expired session; refresh one that expires within the
        refresh window.
        """
        stored = self._load_session()
        session = self.get_current_session()
        if session is None:
            if stored is not None:
                await self.bus.publish(SessionChanged(session=None, origin=self.instance_id))
            return False

        remaining = parse_timestamp(session.expires_at) - datetime.now(timezone.utc)
        if remaining.total_seconds() < self.settings.session_refresh_window_minutes * 60:
            await self.refresh_session(session)
        return True

    async def refresh_session(self, session: Session) -> Session:
        """New expiry and token for the same user."""
        expires_at = session_expiry(self.settings)
        refreshed = session.model_copy(
            update={
                "expires_at": expires_at.isoformat().replace("+00:00", "Z"),
                "auth_token": create_session_token(
                    session.user["id"], self.device_id, expires_at, self.settings
                ),
            }
        )
        await self.store_session(refreshed)
        logger.info("session_refreshed", user_id=session.user.get("id"))
        return refreshed

    async def handle_session_change(self, event: SessionChanged) -> None:
        """Follow a session change made by another instance."""
        if event.origin == self.instance_id:
            return
        if event.session is None:
            self.clear_session()
            self.sync_engine.set_user_id(None)
            logger.info("session_cleared_elsewhere")
            await self.bus.publish(ForceUIRefresh(origin=self.instance_id))
            return
        user = event.session.get("user")
        if user:
            self.kv.set_json(CURRENT_USER_KEY, user)
            self.sync_engine.set_user_id(user.get("id"))
            logger.info("session_updated_elsewhere", user_id=user.get("id"))

    # ========== Devices ==========

    def get_device_info(self) -> DeviceInfo:
        user = self.get_current_user()
        return DeviceInfo(
            device_id=self.device_id,
            user_id=user.get("id") if user else None,
            timestamp=utc_now(),
        )
