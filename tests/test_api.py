import pytest
import requests
from fastapi.testclient import TestClient

from ciphervault.client.commands import VaultCommands
from ciphervault.core.settings import Settings
from ciphervault.server.main import create_app


@pytest.fixture
def client(commands, tmp_path):
    app = create_app(commands, Settings(DATA_DIR=tmp_path))
    with TestClient(app) as c:
        yield c


@pytest.fixture
def unlocked(client):
    resp = client.post("/api/v1/initialize", json={"master_password": "correct-key"})
    assert resp.status_code == 200
    return client


def test_root(client):
    assert client.get("/").status_code == 200


def test_locked_vault_is_423(client):
    resp = client.get("/api/v1/passwords")
    assert resp.status_code == 423
    assert resp.json()["code"] == "vault_locked"


def test_initialize_and_verify(client):
    resp = client.post("/api/v1/initialize", json={"master_password": "correct-key"})
    assert resp.json() == {"is_first_setup": True}
    assert client.post("/api/v1/verify", json={"secret": "correct-key"}).json() == {"valid": True}
    assert client.post("/api/v1/verify", json={"secret": "nope"}).json() == {"valid": False}

    assert client.post("/api/v1/lock").status_code == 204
    resp = client.post("/api/v1/initialize", json={"master_password": "wrong-key"})
    assert resp.status_code == 401
    assert resp.json()["code"] == "decryption_failed"


def test_password_lifecycle(unlocked):
    resp = unlocked.post("/api/v1/passwords", json={"title": "Bank", "password": "p@ss1", "tags": ["money"]})
    assert resp.status_code == 200
    body = resp.json()
    assert body["succeeded"] == ["local"]
    entry = body["entry"]
    assert "p@ss1" not in resp.text

    listed = unlocked.get("/api/v1/passwords").json()
    assert listed["failed"] == {}
    assert [e["id"] for e in listed["entries"]] == [entry["id"]]
    assert unlocked.get("/api/v1/passwords", params={"query": "bank", "target": "local"}).json()["entries"][0]["title"] == "Bank"

    resp = unlocked.post("/api/v1/passwords/decrypt",
                         json={"encrypted": entry["encrypted_secret"], "user_secret": "correct-key"})
    assert resp.json() == {"value": "p@ss1"}

    resp = unlocked.patch(f"/api/v1/passwords/{entry['id']}", json={"title": "Bank 2"})
    assert resp.json()["entry"]["title"] == "Bank 2"
    assert unlocked.get(f"/api/v1/passwords/{entry['id']}").json()["entry"]["title"] == "Bank 2"

    assert unlocked.delete(f"/api/v1/passwords/{entry['id']}").status_code == 200
    resp = unlocked.get(f"/api/v1/passwords/{entry['id']}")
    assert resp.status_code == 404
    assert resp.json()["code"] == "not_found"


def test_bad_input_is_400(unlocked):
    assert unlocked.get("/api/v1/passwords/not-a-uuid").status_code == 400
    resp = unlocked.post("/api/v1/generate", json={"length": 2})
    assert resp.status_code == 400
    assert resp.json()["code"] == "validation_error"


def test_wrong_secret_is_401(unlocked):
    entry = unlocked.post("/api/v1/passwords", json={"title": "Bank", "password": "p@ss1"}).json()["entry"]
    resp = unlocked.post("/api/v1/passwords/decrypt",
                         json={"encrypted": entry["encrypted_secret"], "user_secret": "wrong-key"})
    assert resp.status_code == 401


def test_generate(client):
    resp = client.post("/api/v1/generate", json={"length": 12})
    assert len(resp.json()["value"]) == 12


def test_storage_status_and_sync(unlocked):
    status = unlocked.get("/api/v1/storage/status").json()
    assert status["local"]["connected"] is True
    resp = unlocked.post("/api/v1/storage/sync", json={"source": "local", "target": "remote"})
    assert resp.status_code == 400


def test_config_round_trip(client):
    resp = client.patch("/api/v1/config", json={"storage": {"remote": {"token": "ghp_secret"}}})
    assert resp.status_code == 200
    assert "ghp_secret" not in resp.text
    assert client.get("/api/v1/config").json()["default_password_length"] == 16


class OfflineSession(requests.Session):
    def request(self, *args, **kwargs):
        raise requests.ConnectionError("network unreachable")


def test_unreachable_backends_show_in_the_response(config_manager, tmp_path):
    commands = VaultCommands(config_manager, http_session=OfflineSession())
    commands.update_config({"storage": {"remote": {
        "enabled": True, "owner": "me", "repo": "vault", "token": "ghp_secret",
    }}})
    with TestClient(create_app(commands, Settings(DATA_DIR=tmp_path))) as client:
        client.post("/api/v1/initialize", json={"master_password": "correct-key"})
        client.post("/api/v1/passwords", json={"title": "Bank", "password": "p@ss1"})

        listed = client.get("/api/v1/passwords").json()
        assert [e["title"] for e in listed["entries"]] == ["Bank"]
        assert listed["failed"]["remote"]["code"] == "storage_unavailable"

        commands.update_config({"storage": {"local": {"enabled": False}}})
        resp = client.post("/api/v1/passwords", json={"title": "Mail", "password": "x"})
        assert resp.status_code == 503
        assert resp.json()["result"]["failed"]["remote"]["code"] == "storage_unavailable"
