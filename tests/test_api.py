import asyncio
import importlib
import os
import sys

import pytest
import yaml
from fastapi.testclient import TestClient

from utils.auth import hash_password

PASSWORD = "let-me-in"


@pytest.fixture(scope="module")
def daemon(tmp_path_factory):
    root = tmp_path_factory.mktemp("marquee")
    config = {
        "storage": {
            "data_dir": str(root / "data"),
            "upload_dir": str(root / "uploads"),
            "save_delay": 60,
        },
        "security": {"password_hash": hash_password(PASSWORD), "token_secret": "test-secret"},
        "player": {"enabled": False},
    }
    config_path = root / "config.yaml"
    config_path.write_text(yaml.safe_dump(config))

    previous = os.environ.get("MARQUEE_CONFIG_PATH")
    os.environ["MARQUEE_CONFIG_PATH"] = str(config_path)
    sys.modules.pop("main", None)
    try:
        module = importlib.import_module("main")
    finally:
        if previous is None:
            os.environ.pop("MARQUEE_CONFIG_PATH", None)
        else:
            os.environ["MARQUEE_CONFIG_PATH"] = previous
    yield module
    sys.modules.pop("main", None)


@pytest.fixture(scope="module")
def client(daemon):
    with TestClient(daemon.app) as test_client:
        yield test_client


@pytest.fixture(scope="module")
def auth_headers(client):
    response = client.post("/api/auth/login", json={"password": PASSWORD})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['token']}"}


def test_login_rejects_wrong_password(client):
    response = client.post("/api/auth/login", json={"password": "nope"})
    assert response.status_code == 401


def test_mutations_require_token(client):
    assert client.post("/api/files", json={"url": "https://example.com"}).status_code == 401
    assert client.post("/api/schedule", json={}).status_code == 401
    assert client.post("/api/settings", json={"brightness": 10}).status_code == 401
    assert client.post("/api/commands", json={"type": "command", "action": "next"}).status_code == 401
    bogus = {"Authorization": "Bearer not-a-token"}
    assert client.post("/api/settings", json={"brightness": 10}, headers=bogus).status_code == 401


def test_health_reports_player_disabled(client):
    payload = client.get("/api/health").json()
    assert payload["version"] == "0.1.0"
    assert payload["services"]["player"]["status"] == "disabled"


def test_link_lifecycle_with_schedule(client, auth_headers):
    response = client.post(
        "/api/files",
        json={"url": "https://example.com/menu", "name": "Menu"},
        headers=auth_headers,
    )
    assert response.status_code == 200
    item = response.json()["file"]
    assert item["mime"] == "link/external"
    assert item["storage"] == "external"

    response = client.post("/api/schedule", json={"fileId": item["id"], "order": 2}, headers=auth_headers)
    assert response.status_code == 200
    rule = response.json()["schedule"]
    assert rule["durationSeconds"] == 10

    preview = client.get("/api/preview").json()["displayList"]
    assert [entry["fileId"] for entry in preview] == [item["id"]]
    assert preview[0]["effectiveDuration"] == 10.0

    schedules = client.get("/api/schedule").json()["schedules"]
    assert rule["id"] in [entry["id"] for entry in schedules]

    assert client.delete(f"/api/files/{item['id']}", headers=auth_headers).status_code == 200
    assert client.get("/api/schedule").json()["schedules"] == []
    assert client.delete(f"/api/files/{item['id']}", headers=auth_headers).status_code == 404


def test_link_validation(client, auth_headers):
    response = client.post("/api/files", json={"url": "ftp://example.com/a"}, headers=auth_headers)
    assert response.status_code == 400
    assert response.json()["detail"] == "Only http(s) URLs are allowed"

    response = client.post("/api/files", json={}, headers=auth_headers)
    assert response.json()["detail"] == "url is required"


def test_upload_and_ranged_stream(client, auth_headers):
    content = b"0123456789"
    response = client.post(
        "/api/files",
        files={"file": ("poster.png", content, "image/png")},
        headers=auth_headers,
    )
    assert response.status_code == 200
    item = response.json()["file"]
    assert item["size"] == len(content)
    assert item["url"] == f"/api/files/stream/{item['id']}"

    full = client.get(item["url"])
    assert full.status_code == 200
    assert full.content == content

    partial = client.get(item["url"], headers={"Range": "bytes=2-5"})
    assert partial.status_code == 206
    assert partial.content == b"2345"
    assert partial.headers["content-range"] == "bytes 2-5/10"

    suffix = client.get(item["url"], headers={"Range": "bytes=-3"})
    assert suffix.content == b"789"

    invalid = client.get(item["url"], headers={"Range": "bytes=6-2"})
    assert invalid.status_code == 416

    past_end = client.get(item["url"], headers={"Range": "bytes=50-"})
    assert past_end.status_code == 416
    assert past_end.headers["content-range"] == "bytes */10"

    tail = client.get(item["url"], headers={"Range": "bytes=7-"})
    assert tail.status_code == 206
    assert tail.content == b"789"

    files = client.get("/api/files").json()["files"]
    assert files[0]["id"] == item["id"]

    assert client.delete(f"/api/files/{item['id']}", headers=auth_headers).status_code == 200
    assert client.get(item["url"]).status_code == 404


def test_upload_rejects_other_types(client, auth_headers):
    response = client.post(
        "/api/files",
        files={"file": ("notes.txt", b"hello", "text/plain")},
        headers=auth_headers,
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Only images and videos are allowed"

    response = client.post("/api/files", data={"name": "empty"}, headers=auth_headers)
    assert response.status_code == 400
    assert response.json()["detail"] == "No file provided"


def test_schedule_errors(client, auth_headers):
    link_id = client.post(
        "/api/files", json={"url": "https://example.com/clock"}, headers=auth_headers
    ).json()["file"]["id"]
    response = client.post("/api/schedule", json={"fileId": "missing"}, headers=auth_headers)
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid fileId"

    response = client.post(
        "/api/schedule",
        json={"fileId": link_id, "startTime": 930, "endTime": "10:00"},
        headers=auth_headers,
    )
    assert response.status_code == 400
    assert "Invalid time" in response.json()["detail"]

    assert client.delete("/api/schedule", headers=auth_headers).status_code == 400
    response = client.delete("/api/schedule", params={"id": "missing"}, headers=auth_headers)
    assert response.status_code == 404


def test_settings_update(client, auth_headers):
    response = client.post("/api/settings", json={"brightness": 150, "bogus": 1}, headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["settings"]["brightness"] == 150

    response = client.post("/api/settings", json={"brightness": 999}, headers=auth_headers)
    assert response.status_code == 400
    assert response.json()["detail"] == "No valid updates provided"

    assert client.get("/api/settings").json()["settings"]["brightness"] == 150


def test_commands_are_logged_for_polling(client, auth_headers):
    first = client.post(
        "/api/commands", json={"type": "command", "action": "next"}, headers=auth_headers
    ).json()["ts"]
    second = client.post(
        "/api/commands", json={"data": {"type": "command", "action": "power", "value": "off"}}, headers=auth_headers
    ).json()["ts"]
    assert second > first

    commands = client.get("/api/commands", params={"since": first}).json()["commands"]
    assert [entry["payload"]["action"] for entry in commands] == ["power"]
    assert commands[0]["ts"] == second


def test_player_presence_over_http(client):
    assert client.post("/api/players", json={"name": "Lobby", "ua": "test"}).json() == {"ok": True}
    client.post("/api/players", json={"name": "player", "ua": "test"})
    names = [entry["name"] for entry in client.get("/api/players").json()["players"]]
    assert names == ["Lobby"]


def test_websocket_ping_and_broadcast_state(client):
    with client.websocket_connect("/api/ws") as websocket:
        websocket.send_json({"type": "ping"})
        assert websocket.receive_json()["type"] == "pong"
        websocket.send_json({"type": "broadcast", "data": {"type": "player_state", "powered": False}})
        assert websocket.receive_json() == {"type": "player_state", "powered": False}

    state = client.get("/api/player/state").json()["state"]
    assert state == {"type": "player_state", "powered": False}


def test_password_change(client, auth_headers):
    response = client.post(
        "/api/auth/password",
        json={"oldPassword": "wrong", "newPassword": "whatever"},
        headers=auth_headers,
    )
    assert response.status_code == 400

    response = client.post(
        "/api/auth/password",
        json={"oldPassword": PASSWORD, "newPassword": "abc"},
        headers=auth_headers,
    )
    assert response.json()["detail"] == "New password too short"

    changed = client.post(
        "/api/auth/password",
        json={"oldPassword": PASSWORD, "newPassword": "fresh-secret"},
        headers=auth_headers,
    )
    assert changed.status_code == 200
    assert client.post("/api/auth/login", json={"password": "fresh-secret"}).status_code == 200
    assert client.post("/api/auth/login", json={"password": PASSWORD}).status_code == 401

    client.post(
        "/api/auth/password",
        json={"oldPassword": "fresh-secret", "newPassword": PASSWORD},
        headers=auth_headers,
    )


def test_player_state_broadcast_task_is_retained_until_done(daemon):
    snapshot = {"type": "player_state", "powered": True, "phase": "showing"}

    async def scenario():
        daemon._on_player_state(snapshot)
        pending = set(daemon._background_tasks)
        assert len(pending) == 1
        await asyncio.gather(*pending)
        return pending

    pending = asyncio.run(scenario())

    assert all(task.done() for task in pending)
    assert daemon._background_tasks == set()
    assert daemon.state.player == snapshot
