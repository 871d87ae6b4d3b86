import logging
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from backend.api.app import app, get_google_service, get_notification_service, get_user_repository
from backend.api.services.google_service import GoogleService

logger = logging.getLogger("test_users_api")

API_URL = "/api/users"
AUTH = ("admin", "admin123")


@pytest.fixture
def client_app(repository, google_service, notification_service, monkeypatch):
    monkeypatch.setenv("ADMIN_USERNAME", AUTH[0])
    monkeypatch.setenv("ADMIN_PASSWORD", AUTH[1])
    app.dependency_overrides[get_user_repository] = lambda: repository
    app.dependency_overrides[get_google_service] = lambda: google_service
    app.dependency_overrides[get_notification_service] = lambda: notification_service
    yield app
    app.dependency_overrides.clear()


def _client(client_app):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=client_app), base_url="http://test")


@pytest.mark.asyncio
async def test_create_user_success(client_app):
    async with _client(client_app) as client:
        response = await client.post(API_URL, auth=AUTH, json={"name": "ana souza", "email": "ana@example.com", "cpf": "52998224725"})
        logger.info(f"[PASS] test_create_user_success: status={response.status_code}, body={response.json()}")
    assert response.status_code == 201
    data = response.json()
    assert data["name"] == "Ana Souza"
    assert data["cpf"] == "529.982.247-25"
    assert "id" in data


@pytest.mark.asyncio
async def test_create_user_requires_auth(client_app):
    async with _client(client_app) as client:
        response = await client.post(API_URL, json={"name": "Ana", "email": "ana@example.com"})
        wrong = await client.post(API_URL, auth=("admin", "errada"), json={"name": "Ana", "email": "ana@example.com"})
    assert response.status_code == 401
    assert wrong.status_code == 401


@pytest.mark.asyncio
async def test_create_user_validation_errors(client_app):
    async with _client(client_app) as client:
        await client.post(API_URL, auth=AUTH, json={"name": "Ana", "email": "ana@example.com"})
        response = await client.post(API_URL, auth=AUTH, json={"name": "Ana", "email": "ana@example.com", "cpf": "123.456"})
        logger.info(f"[PASS/FAIL] test_create_user_validation_errors: status={response.status_code}, body={response.json()}")
    assert response.status_code == 422
    body = response.json()
    assert body["message"] == "Erro de validação."
    assert body["errors"]["email"] == ["Este e-mail já está cadastrado."]
    assert body["errors"]["cpf"] == ["O CPF deve ter 11 dígitos."]


@pytest.mark.asyncio
async def test_list_users_paginated_and_filtered(client_app, repository):
    await repository.create({"name": "Maria Souza", "email": "m1@example.com", "cpf": "52998224725"})
    await repository.create({"name": "Mariana Lima", "email": "m2@example.com", "cpf": "12345678909", "registration_completed": True})
    await repository.create({"name": "Joao Pedro", "email": "j@example.com"})
    async with _client(client_app) as client:
        all_users = await client.get(API_URL, params={"per_page": 2})
        by_name = await client.get(API_URL, params={"name": "maria"})
        by_cpf = await client.get(API_URL, params={"cpf": "123.456"})
        registered = await client.get(API_URL, params={"registration_completed": "true"})
        too_big = await client.get(API_URL, params={"per_page": 1000})

    assert all_users.status_code == 200
    page = all_users.json()
    assert page["total"] == 3 and page["last_page"] == 2 and len(page["data"]) == 2
    assert by_name.json()["total"] == 2
    assert [u["cpf"] for u in by_cpf.json()["data"]] == ["123.456.789-09"]
    assert [u["name"] for u in registered.json()["data"]] == ["Mariana Lima"]
    assert too_big.status_code == 422


@pytest.mark.asyncio
async def test_show_update_and_delete_user(client_app, repository):
    user = await repository.create({"name": "Ana", "email": "ana@example.com"})
    async with _client(client_app) as client:
        shown = await client.get(f"{API_URL}/{user['id']}")
        updated = await client.put(f"{API_URL}/{user['id']}", auth=AUTH, json={"name": "Ana Lima", "email": "ana@example.com", "cpf": "111.444.777-35"})
        deleted = await client.delete(f"{API_URL}/{user['id']}", auth=AUTH)
        gone = await client.get(f"{API_URL}/{user['id']}")
        delete_again = await client.delete(f"{API_URL}/{user['id']}", auth=AUTH)

    assert shown.status_code == 200
    assert updated.status_code == 200
    assert updated.json()["cpf"] == "111.444.777-35"
    assert deleted.status_code == 204
    assert gone.status_code == 404
    assert delete_again.status_code == 404


@pytest.mark.asyncio
async def test_show_user_invalid_id(client_app):
    async with _client(client_app) as client:
        response = await client.get(f"{API_URL}/nao-existe")
        missing = await client.put(f"{API_URL}/{ObjectId()}", auth=AUTH, json={"name": "X", "email": "x@example.com"})
    assert response.status_code == 404
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_google_redirect_points_to_google(client_app, repository):
    app.dependency_overrides[get_google_service] = lambda: GoogleService(repository, client_id="client-id", client_secret="s")
    async with _client(client_app) as client:
        response = await client.get("/api/auth/google/redirect")
    assert response.status_code == 307
    assert response.headers["location"].startswith("https://accounts.google.com/")


@pytest.mark.asyncio
async def test_google_callback_creates_pending_user_and_session(client_app, repository, google_service):
    google_service.exchange_code.return_value = {"access_token": "at", "refresh_token": "rt", "expires_in": 3600}
    google_service.get_user_info.return_value = {"id": "g-1", "email": "ana@example.com", "name": "Ana Souza", "picture": "http://img", "verified_email": True}
    async with _client(client_app) as client:
        response = await client.get("/api/auth/google/callback", params={"code": "abc"})
        user_id = response.cookies.get("user_id")
        me = await client.get("/api/auth/user", headers={"Cookie": f"user_id={user_id}"})

    assert response.status_code == 307
    query = parse_qs(urlparse(response.headers["location"]).query)
    assert query["success"] == ["true"]
    assert query["registration_completed"] == ["false"]
    raw = await repository.find_raw_by_email("ana@example.com")
    assert raw["google_id"] == "g-1"
    assert raw["google_refresh_token"] == "rt"
    assert raw["registration_completed"] is False
    assert me.status_code == 200
    assert me.json()["user"]["email"] == "ana@example.com"


@pytest.mark.asyncio
async def test_google_callback_updates_existing_user(client_app, repository, google_service):
    existing = await repository.create({"name": "Ana", "email": "ana@example.com", "cpf": "52998224725", "registration_completed": True})
    google_service.exchange_code.return_value = {"access_token": "at"}
    google_service.get_user_info.return_value = {"id": "g-9", "email": "ana@example.com", "name": "Ana", "picture": None}
    async with _client(client_app) as client:
        response = await client.get("/api/auth/google/callback", params={"code": "abc"})

    query = parse_qs(urlparse(response.headers["location"]).query)
    assert query["user_id"] == [existing["id"]]
    assert query["registration_completed"] == ["true"]
    assert (await repository.find_raw_by_id(existing["id"]))["google_id"] == "g-9"


@pytest.mark.asyncio
async def test_google_callback_failure_redirects_with_error(client_app, google_service):
    google_service.exchange_code.return_value = None
    async with _client(client_app) as client:
        response = await client.get("/api/auth/google/callback", params={"code": "abc"})
        denied = await client.get("/api/auth/google/callback", params={"error": "access_denied"})
    assert parse_qs(urlparse(response.headers["location"]).query)["success"] == ["false"]
    assert parse_qs(urlparse(denied.headers["location"]).query)["error"] == ["access_denied"]


@pytest.mark.asyncio
async def test_auth_user_and_logout(client_app):
    async with _client(client_app) as client:
        anonymous = await client.get("/api/auth/user")
        logout = await client.post("/api/auth/logout")
    assert anonymous.status_code == 401
    assert anonymous.json() == {"authenticated": False}
    assert logout.status_code == 200


@pytest.mark.asyncio
async def test_api_info_lists_endpoints(client_app):
    async with _client(client_app) as client:
        response = await client.get("/api")
    assert response.status_code == 200
    assert response.json()["endpoints"]["registration"]["complete"].endswith("/api/registration/complete")


@pytest.mark.asyncio
async def test_google_callback_updates_user_created_in_parallel(client_app, repository, users_collection, google_service):
    google_service.exchange_code.return_value = {"access_token": "at", "expires_in": "nao-numerico"}
    google_service.get_user_info.return_value = {"id": "g-2", "email": "ana@example.com", "name": "Ana", "picture": None}

    async def create_after_parallel_callback(data):
        await users_collection.insert_one({"name": "Ana", "email": "ana@example.com", "registration_completed": False})
        raise DuplicateKeyError("E11000 duplicate key error", 11000, {"keyPattern": {"email": 1}})

    repository.create = create_after_parallel_callback
    async with _client(client_app) as client:
        response = await client.get("/api/auth/google/callback", params={"code": "abc"})

    assert response.status_code == 307
    assert parse_qs(urlparse(response.headers["location"]).query)["success"] == ["true"]
    raw = await repository.find_raw_by_email("ana@example.com")
    assert raw["google_id"] == "g-2"
    assert "google_token_expires_at" not in raw
