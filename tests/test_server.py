"""
Tests for the sync backend: HTTP endpoints and the server database.
"""
from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient

from pixelsync.auth.crypto import generate_consistent_user_id
from pixelsync.remote_db import ServerDatabase, get_server_db


# ========== Fixtures ==========

@pytest.fixture
def mock_server_db():
    """Mock server database."""
    db = Mock(spec=ServerDatabase)
    db.authenticate = AsyncMock()
    db.get_entity = AsyncMock(return_value=[])
    db.get_all = AsyncMock(return_value={})
    db.upsert_items = AsyncMock(return_value=0)
    db.delete_item = AsyncMock(return_value=True)
    return db


@pytest.fixture
def client(mock_server_db):
    from pixelsync.main import app

    app.dependency_overrides[get_server_db] = lambda: mock_server_db
    yield TestClient(app)
    app.dependency_overrides.clear()


# ========== Service Endpoints ==========

def test_root_endpoint(client):
    """Test root endpoint returns basic info."""
    response = client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert "service" in data
    assert "version" in data
    assert data["status"] == "operational"


def test_health_check(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


# ========== Auth Endpoints ==========

def test_login_success(client, mock_server_db):
    mock_server_db.authenticate.return_value = {"id": "user_1", "email": "vj@example.com"}

    response = client.post("/api/auth/login", json={"email": "vj@example.com", "password": "pw"})

    assert response.status_code == 200
    assert response.json() == {"user": {"id": "user_1", "email": "vj@example.com"}}
    mock_server_db.authenticate.assert_awaited_once_with("vj@example.com", "pw")


def test_login_invalid_credentials(client, mock_server_db):
    mock_server_db.authenticate.return_value = None

    response = client.post("/api/auth/login", json={"email": "vj@example.com", "password": "bad"})

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid credentials"


def test_login_database_error(client, mock_server_db):
    mock_server_db.authenticate.side_effect = RuntimeError("db down")

    response = client.post("/api/auth/login", json={"email": "vj@example.com", "password": "pw"})

    assert response.status_code == 500
    assert response.json()["detail"] == "Database error"


def test_login_validation(client):
    response = client.post("/api/auth/login", json={"email": "vj@example.com", "password": ""})
    assert response.status_code == 422


# ========== Sync Endpoints ==========

def test_pull_entity(client, mock_server_db):
    mock_server_db.get_entity.return_value = [{"id": "e1"}]

    response = client.get("/api/sync/events/user_1")

    assert response.status_code == 200
    assert response.json() == {"items": [{"id": "e1"}]}
    mock_server_db.get_entity.assert_awaited_once_with("user_1", "events")


def test_pull_all_is_not_an_entity(client, mock_server_db):
    mock_server_db.get_all.return_value = {"events": [{"id": "e1"}]}

    response = client.get("/api/sync/all/user_1")

    assert response.status_code == 200
    assert response.json() == {"data": {"events": [{"id": "e1"}]}}
    mock_server_db.get_entity.assert_not_awaited()


def test_push_entity(client, mock_server_db):
    mock_server_db.upsert_items.return_value = 2
    items = [{"id": "e1"}, {"id": "e2"}]

    response = client.post(
        "/api/sync/events/user_1",
        json={"items": items, "deviceId": "device_1", "timestamp": "2024-01-01T00:00:00Z"},
    )

    assert response.status_code == 200
    assert response.json() == {"success": True, "saved": 2}
    mock_server_db.upsert_items.assert_awaited_once_with("user_1", "events", items)


def test_push_entity_database_error(client, mock_server_db):
    mock_server_db.upsert_items.side_effect = RuntimeError("db down")

    response = client.post("/api/sync/events/user_1", json={"items": []})

    assert response.status_code == 500
    assert response.json()["detail"] == "Database error"


def test_delete_item(client, mock_server_db):
    response = client.delete("/api/sync/events/user_1/e1")

    assert response.status_code == 200
    assert response.json() == {"success": True}
    mock_server_db.delete_item.assert_awaited_once_with("user_1", "events", "e1")


# ========== Server Database ==========

@pytest.fixture
async def server_db(tmp_path):
    db = ServerDatabase(f"file:{tmp_path / 'server' / 'server.db'}")
    yield db
    await db.close()


@pytest.mark.asyncio
async def test_server_users(server_db):
    created = await server_db.create_user("vj@example.com", "pw", name="VJ")
    assert created["id"] == generate_consistent_user_id("vj@example.com")

    user = await server_db.authenticate("vj@example.com", "pw")
    assert user["id"] == created["id"]
    assert user["name"] == "VJ"
    assert "password" not in user

    assert await server_db.authenticate("vj@example.com", "wrong") is None
    assert await server_db.authenticate("nobody@example.com", "pw") is None


@pytest.mark.asyncio
async def test_server_records_upsert(server_db):
    saved = await server_db.upsert_items(
        "user_1", "events", [{"id": "e1", "title": "v1"}, {"title": "no id"}]
    )
    assert saved == 1

    await server_db.upsert_items("user_1", "events", [{"id": "e1", "title": "v2"}])
    await server_db.upsert_items("user_1", "tags", [{"id": "t1"}])
    await server_db.upsert_items("user_2", "events", [{"id": "e9"}])

    assert await server_db.get_entity("user_1", "events") == [{"id": "e1", "title": "v2"}]
    assert set(await server_db.get_all("user_1")) == {"events", "tags"}

    assert await server_db.delete_item("user_1", "events", "e1") is True
    assert await server_db.delete_item("user_1", "events", "e1") is False
    assert await server_db.get_entity("user_1", "events") == []
