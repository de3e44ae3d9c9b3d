"""
Field-level encryption for sensitive entity attributes.

AES-256-GCM with a key derived from a per-user password via
PBKDF2-HMAC-SHA256. Every value gets its own random salt and nonce; the
stored form is base64(salt || nonce || ciphertext+tag).
"""
import asyncio
import base64
import binascii
import secrets
import structlog
from typing import Any, Dict, List, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from pixelsync.database import Record


logger = structlog.get_logger()


SENSITIVE_FIELDS: Dict[str, List[str]] = {
    "systemUsers": ["password", "email", "phone"],
    "clients": ["email", "phone", "address"],
    "personalMessages": ["content"],
    "comments": ["content"],
    "workHours": ["notes"],
}


def generate_encryption_password(user_id: str, email: str) -> str:
    """
    Derive the per-user encryption password.

    Deterministic in (user_id, email) so every device computes the same
    value right after login.
    """
    return f"{user_id}_{email}_pixelart_2024"


class EncryptionGate:
    """
    Encrypts and decrypts the sensitive fields of entity records.

    Decryption never raises: undecryptable values (wrong password, tampered
    or plain data) are returned unchanged and logged.
    """

    SALT_LENGTH = 16
    NONCE_LENGTH = 12  # 96-bit GCM nonce
    KEY_LENGTH = 32  # AES-256

    def __init__(
        self,
        iterations: int = 100_000,
        sensitive_fields: Optional[Dict[str, List[str]]] = None,
    ):
        self.iterations = iterations
        self.sensitive_fields = sensitive_fields or SENSITIVE_FIELDS

    def has_sensitive_fields(self, entity_type: str) -> bool:
        return bool(self.sensitive_fields.get(entity_type))

    def get_sensitive_fields(self, entity_type: str) -> List[str]:
        return list(self.sensitive_fields.get(entity_type, []))

    # ========== Primitives ==========

    def _derive_key(self, password: str, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=self.KEY_LENGTH,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(password.encode("utf-8"))

    def encrypt_value(self, plaintext: str, password: str) -> str:
        """Encrypt one string value."""
        salt = secrets.token_bytes(self.SALT_LENGTH)
        nonce = secrets.token_bytes(self.NONCE_LENGTH)
        key = self._derive_key(password, salt)
        ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(salt + nonce + ciphertext).decode("ascii")

    def decrypt_value(self, encrypted: Any, password: str) -> Any:
        """
        Decrypt one value.

        Returns the input unchanged if it is not a string, not base64, too
        short, or fails authentication.
        """
        if not encrypted or not isinstance(encrypted, str):
            return encrypted

        try:
            combined = base64.b64decode(encrypted, validate=True)
        except (binascii.Error, ValueError):
            return encrypted

        if len(combined) <= self.SALT_LENGTH + self.NONCE_LENGTH:
            return encrypted

        salt = combined[: self.SALT_LENGTH]
        nonce = combined[self.SALT_LENGTH : self.SALT_LENGTH + self.NONCE_LENGTH]
        ciphertext = combined[self.SALT_LENGTH + self.NONCE_LENGTH :]

        try:
            key = self._derive_key(password, salt)
            return AESGCM(key).decrypt(nonce, ciphertext, None).decode("utf-8")
        except (InvalidTag, UnicodeDecodeError) as e:
            logger.warning("field_decryption_failed", error=type(e).__name__)
            return encrypted

    # ========== Records ==========

    def encrypt_record(self, record: Optional[Record], entity_type: str, password: Optional[str]) -> Optional[Record]:
        """
        Encrypt the declared sensitive fields of a record.

        No-op if the entity has no sensitive fields or no password is given.
        Stamps _encrypted=True and _encryptedFields with the fields touched.
        """
        fields = self.sensitive_fields.get(entity_type)
        if not record or not fields or not password:
            return record

        encrypted = dict(record)
        touched = []
        for field in fields:
            value = encrypted.get(field)
            if not value or not isinstance(value, str):
                continue
            try:
                encrypted[field] = self.encrypt_value(value, password)
                touched.append(field)
            except Exception as e:
                logger.error(
                    "field_encryption_failed", entity=entity_type, field=field, error=str(e)
                )

        encrypted["_encrypted"] = True
        encrypted["_encryptedFields"] = touched
        return encrypted

    def decrypt_record(self, record: Optional[Record], entity_type: str, password: Optional[str]) -> Optional[Record]:
        """Inverse of encrypt_record; gated on _encrypted being True."""
        if not record or record.get("_encrypted") is not True or not password:
            return record

        decrypted = dict(record)
        fields = record.get("_encryptedFields")
        if fields is None:
            fields = self.sensitive_fields.get(entity_type, [])

        for field in fields:
            if decrypted.get(field):
                decrypted[field] = self.decrypt_value(decrypted[field], password)

        decrypted.pop("_encrypted", None)
        decrypted.pop("_encryptedFields", None)
        return decrypted

    # ========== Async API ==========

    async def encrypt_object(self, record: Optional[Record], entity_type: str, password: Optional[str]) -> Optional[Record]:
        """Encrypt a record off the event loop (key derivation is slow)."""
        if not record or not self.has_sensitive_fields(entity_type) or not password:
            return record
        return await asyncio.to_thread(self.encrypt_record, record, entity_type, password)

    async def decrypt_object(self, record: Optional[Record], entity_type: str, password: Optional[str]) -> Optional[Record]:
        """Decrypt a record off the event loop. Never raises on bad data."""
        if not record or record.get("_encrypted") is not True or not password:
            return record
        try:
            return await asyncio.to_thread(self.decrypt_record, record, entity_type, password)
        except Exception as e:
            logger.warning("record_decryption_failed", entity=entity_type, error=str(e))
            return record

    async def encrypt_array(self, records: List[Record], entity_type: str, password: Optional[str]) -> List[Record]:
        if not isinstance(records, list) or not password:
            return records
        return [await self.encrypt_object(record, entity_type, password) for record in records]

    async def decrypt_array(self, records: List[Record], entity_type: str, password: Optional[str]) -> List[Record]:
        if not isinstance(records, list) or not password:
            return records
        return [await self.decrypt_object(record, entity_type, password) for record in records]
