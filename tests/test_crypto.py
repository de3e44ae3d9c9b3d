"""
Tests for field-level encryption.
"""
import pytest

from pixelsync.crypto import EncryptionGate, generate_encryption_password


PASSWORD = generate_encryption_password("user_1", "vj@example.com")


@pytest.fixture
def gate():
    return EncryptionGate(iterations=1000)


def test_value_roundtrip(gate):
    encrypted = gate.encrypt_value("secret notes", PASSWORD)
    assert encrypted != "secret notes"
    assert gate.decrypt_value(encrypted, PASSWORD) == "secret notes"


def test_each_encryption_uses_fresh_salt_and_nonce(gate):
    assert gate.encrypt_value("same", PASSWORD) != gate.encrypt_value("same", PASSWORD)


def test_wrong_password_returns_input(gate):
    encrypted = gate.encrypt_value("secret", PASSWORD)
    assert gate.decrypt_value(encrypted, "wrong password") == encrypted


def test_plain_values_pass_through(gate):
    assert gate.decrypt_value("plain text!", PASSWORD) == "plain text!"
    assert gate.decrypt_value("YWJj", PASSWORD) == "YWJj"
    assert gate.decrypt_value(42, PASSWORD) == 42
    assert gate.decrypt_value(None, PASSWORD) is None


def test_record_encrypts_declared_fields_only(gate):
    record = {"id": "c1", "name": "Club", "email": "club@example.com", "phone": ""}
    encrypted = gate.encrypt_record(record, "clients", PASSWORD)

    assert encrypted["_encrypted"] is True
    assert encrypted["_encryptedFields"] == ["email"]
    assert encrypted["name"] == "Club"
    assert encrypted["email"] != "club@example.com"
    assert encrypted["phone"] == ""
    assert record["email"] == "club@example.com"

    decrypted = gate.decrypt_record(encrypted, "clients", PASSWORD)
    assert decrypted == record


def test_record_without_password_is_untouched(gate):
    record = {"id": "c1", "email": "club@example.com"}
    assert gate.encrypt_record(record, "clients", None) is record
    assert gate.encrypt_record(record, "events", PASSWORD) is record


def test_decrypt_requires_encrypted_flag(gate):
    record = {"id": "c1", "email": gate.encrypt_value("club@example.com", PASSWORD)}
    assert gate.decrypt_record(record, "clients", PASSWORD) is record


def test_sensitive_field_lookup(gate):
    assert gate.has_sensitive_fields("systemUsers")
    assert not gate.has_sensitive_fields("events")
    assert gate.get_sensitive_fields("comments") == ["content"]


@pytest.mark.asyncio
async def test_async_array_roundtrip(gate):
    records = [
        {"id": "m1", "content": "hello"},
        {"id": "m2", "content": "world"},
    ]
    encrypted = await gate.encrypt_array(records, "personalMessages", PASSWORD)
    assert all(item["content"] not in ("hello", "world") for item in encrypted)

    decrypted = await gate.decrypt_array(encrypted, "personalMessages", PASSWORD)
    assert decrypted == records


@pytest.mark.asyncio
async def test_async_decrypt_with_wrong_password_never_raises(gate):
    encrypted = await gate.encrypt_object({"id": "m1", "content": "hi"}, "comments", PASSWORD)
    result = await gate.decrypt_object(encrypted, "comments", "nope")
    assert result["content"] == encrypted["content"]
