"""
Credential and session-token helpers.

Client-side password digests are unsalted SHA-256 so every device can verify
a login offline against the synced user record. The sync server keeps its
own salted PBKDF2 hashes.
"""
import base64
import hashlib
import hmac
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import structlog
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from jose import JWTError, jwt

from pixelsync.config import Settings, get_settings
from pixelsync.kvstore import KeyValueStore


logger = structlog.get_logger()

DEVICE_ID_KEY = "device_id"


# ========== Session Tokens ==========

def create_session_token(
    user_id: str,
    device_id: str,
    expires_at: datetime,
    settings: Optional[Settings] = None,
) -> str:
    """
    Create a signed session token.

    Args:
        user_id: Authenticated user's id
        device_id: Device the session belongs to
        expires_at: Session expiry (UTC)

    Returns:
        Encoded JWT
    """
    settings = settings or get_settings()
    payload = {
        "sub": user_id,
        "device_id": device_id,
        "exp": expires_at,
        "iat": datetime.now(timezone.utc),
        "jti": secrets.token_hex(8),
        "type": "session",
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_session_token(token: str, settings: Optional[Settings] = None) -> Optional[Dict[str, Any]]:
    """
    Verify and decode a session token.

    Returns:
        Decoded payload, or None if invalid, expired or not a session token
    """
    settings = settings or get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        logger.warning("session_token_verification_failed", error=str(e))
        return None
    if payload.get("type") != "session":
        return None
    return payload


# ========== Client Password Digests ==========

def hash_password(password: str) -> str:
    """base64(SHA-256(password))."""
    digest = hashlib.sha256(password.encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


def looks_hashed(stored: str) -> bool:
    """Digests are base64 with padding and at least 20 characters long."""
    return "=" in stored and len(stored) >= 20


def verify_password(password: str, stored: Optional[str], allow_plaintext: bool = True) -> bool:
    """
    Check a password against a stored value.

    Stored values that do not look like a digest are legacy plaintext and are
    only accepted when allow_plaintext is set.
    """
    if not stored:
        logger.warning("stored_password_missing")
        return False
    if not looks_hashed(stored):
        if not allow_plaintext:
            return False
        return hmac.compare_digest(password.encode("utf-8"), stored.encode("utf-8"))
    return hmac.compare_digest(hash_password(password), stored)


# ========== Server Password Hashes ==========

SERVER_HASH_ITERATIONS = 200_000


def _pbkdf2(password: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=iterations)
    return kdf.derive(password.encode("utf-8"))


def hash_server_password(password: str, iterations: int = SERVER_HASH_ITERATIONS) -> str:
    """Salted hash in the form pbkdf2_sha256$<iterations>$<salt>$<hash>."""
    salt = secrets.token_bytes(16)
    derived = _pbkdf2(password, salt, iterations)
    return "$".join([
        "pbkdf2_sha256",
        str(iterations),
        base64.b64encode(salt).decode("ascii"),
        base64.b64encode(derived).decode("ascii"),
    ])


def check_server_password(password: str, encoded: Optional[str]) -> bool:
    if not encoded:
        return False
    try:
        algorithm, iterations, salt, expected = encoded.split("$")
    except ValueError:
        return False
    if algorithm != "pbkdf2_sha256":
        return False
    derived = _pbkdf2(password, base64.b64decode(salt), int(iterations))
    return hmac.compare_digest(base64.b64encode(derived).decode("ascii"), expected)


# ========== Identity ==========

def generate_consistent_user_id(email: str) -> str:
    """
    Derive a stable user id from an email address.

    32-bit rolling string hash (h = h * 31 + code unit), so the same account
    gets the same id on every device.
    """
    value = 0
    for unit in _utf16_units(email):
        value = (value * 31 + unit) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return f"user_{abs(value)}"


def _utf16_units(text: str):
    data = text.encode("utf-16-le")
    for i in range(0, len(data), 2):
        yield data[i] | (data[i + 1] << 8)


def generate_device_id() -> str:
    """
    Generate a unique device ID.

    Returns:
        Device ID (device_<uuid hex>)
    """
    return f"device_{uuid.uuid4().hex}"


def get_or_create_device_id(kv: KeyValueStore) -> str:
    """Device id persisted once per installation."""
    device_id = kv.get_item(DEVICE_ID_KEY)
    if not device_id:
        device_id = generate_device_id()
        kv.set_item(DEVICE_ID_KEY, device_id)
        logger.info("device_id_created", device_id=device_id)
    return device_id


def session_expiry(settings: Optional[Settings] = None) -> datetime:
    settings = settings or get_settings()
    return datetime.now(timezone.utc) + timedelta(hours=settings.session_timeout_hours)
