import pytest

from app.services.authme_bridge import AuthmeBridge
from app.services.plugin_db import PluginDatabase
from tests.utils import add_authme_account, auth_headers


@pytest.fixture()
def players(authme_engine):
    add_authme_account(authme_engine, "steve", realname="Steve", lastlogin=1700000003000)
    add_authme_account(authme_engine, "alex", realname="Alex", lastlogin=1700000001000)
    add_authme_account(authme_engine, "notch", realname="Notch", lastlogin=1700000002000, email="notch@mojang.com")


def test_health(client, admin, bridges):
    resp = client.get("/api/admin/authme/health", headers=auth_headers(admin))
    assert resp.status_code == 200
    assert resp.json()["ok"] is True

    bridges["authme"] = AuthmeBridge(PluginDatabase("AUTHME_DB", "", enabled=False))
    resp = client.get("/api/admin/authme/health", headers=auth_headers(admin))
    assert resp.json()["ok"] is False
    assert resp.json()["stage"] == "CONNECT"


def test_list_players_annotates_bound_user(client, admin, member, players):
    headers = auth_headers(admin)
    client.post(f"/api/auth/users/{member.id}/bindings", json={"identifier": "alex"}, headers=headers)

    resp = client.get("/api/admin/authme/players", headers=headers)
    assert resp.status_code == 200
    body = resp.json()
    assert [p["username"] for p in body["items"]] == ["steve", "notch", "alex"]
    bound = {p["username"]: p["boundUserId"] for p in body["items"]}
    assert bound == {"steve": None, "notch": None, "alex": member.id}
    assert body["pagination"]["total"] == 3
    assert "password" not in body["items"][0]


def test_list_players_keyword_and_sort(client, admin, players):
    headers = auth_headers(admin)
    resp = client.get("/api/admin/authme/players", params={"keyword": "mojang"}, headers=headers)
    assert [p["username"] for p in resp.json()["items"]] == ["notch"]

    resp = client.get("/api/admin/authme/players", params={"sortField": "username", "sortOrder": "asc",
                                                           "pageSize": 2}, headers=headers)
    body = resp.json()
    assert [p["username"] for p in body["items"]] == ["alex", "notch"]
    assert body["pagination"]["pageCount"] == 2


def test_list_players_when_authme_is_down(client, admin, bridges, broken_engine):
    bridges["authme"] = AuthmeBridge(PluginDatabase("AUTHME_DB", "", engine=broken_engine))
    resp = client.get("/api/admin/authme/players", headers=auth_headers(admin))
    assert resp.status_code == 503


def test_bind_player_from_directory(client, admin, member, players):
    headers = auth_headers(admin)
    resp = client.post("/api/admin/authme/players/Notch/bind", json={"userId": member.id}, headers=headers)
    assert resp.status_code == 201, resp.text
    assert resp.json()["userId"] == member.id
    assert resp.json()["authmeUsername"] == "notch"

    resp = client.post("/api/admin/authme/players/notch/bind", json={"userId": 9999}, headers=headers)
    assert resp.status_code == 404


def test_player_history(client, admin, member, players):
    headers = auth_headers(admin)
    client.post("/api/admin/authme/players/steve/bind", json={"userId": member.id}, headers=headers)

    resp = client.post(
        "/api/admin/authme/players/steve/history",
        json={"reason": "support ticket", "payload": {"ticket": 42}},
        headers=headers,
    )
    assert resp.status_code == 201
    entry = resp.json()
    assert entry["action"] == "MANUAL_ENTRY"
    assert entry["payload"] == {"ticket": 42, "manual": True}
    assert entry["operator"]["id"] == admin.id
    assert entry["userId"] == member.id
    assert entry["binding"]["authmeUsername"] == "steve"

    bad = client.post("/api/admin/authme/players/steve/history", json={"action": "EXPLODE"}, headers=headers)
    assert bad.status_code == 400
    assert bad.json()["code"] == "INVALID_HISTORY_ACTION"

    page = client.get("/api/admin/authme/players/STEVE/history", headers=headers).json()
    assert [item["action"] for item in page["items"]] == ["MANUAL_ENTRY", "BIND"]
    assert page["pagination"]["total"] == 2


def test_players_require_permission(client, member):
    assert client.get("/api/admin/authme/players", headers=auth_headers(member)).status_code == 403
