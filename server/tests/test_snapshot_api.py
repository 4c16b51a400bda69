from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from featherpanel.core.settings import get_settings
from featherpanel.db.session import SessionLocal
from featherpanel.main import app
from featherpanel.services.accounts import UserService
from featherpanel.services.addons import PluginSettingsService
from featherpanel.services.snapshots import RESTORE_MESSAGE

from conftest import ADMIN_PASSWORD, ADMIN_USERNAME

BASE = "/api/admin/databases/snapshots"


@pytest.fixture()
def client() -> TestClient:
    return TestClient(app)


def _backup_files() -> list[str]:
    backups = get_settings().backups_dir
    if not backups.exists():
        return []
    return sorted(path.name for path in backups.iterdir())


def _create(client, headers) -> str:
    response = client.post(BASE, json={"password": ADMIN_PASSWORD}, headers=headers)
    assert response.status_code == 200, response.text
    return response.json()["data"]["filename"]


def test_listing_requires_developer_mode(client, auth_headers):
    response = client.get(BASE, headers=auth_headers)
    assert response.status_code == 403
    assert response.json()["error_code"] == "DEVELOPER_MODE_REQUIRED"


@pytest.mark.parametrize(
    "body, status, code",
    [
        (None, 400, "PASSWORD_REQUIRED"),
        ({"password": ""}, 400, "PASSWORD_REQUIRED"),
        ({"password": "wrong-password"}, 401, "INVALID_PASSWORD"),
    ],
)
def test_create_password_gate(client, auth_headers, developer_mode, body, status, code):
    response = client.post(BASE, json=body, headers=auth_headers)
    assert response.status_code == status
    assert response.json()["error_code"] == code
    assert _backup_files() == []


def test_create_list_download_delete(client, auth_headers, developer_mode):
    filename = _create(client, auth_headers)

    listing = client.get(BASE, headers=auth_headers).json()["data"]["snapshots"]
    assert [item["filename"] for item in listing] == [filename]

    no_password = client.get(f"{BASE}/{filename}/download", headers=auth_headers)
    assert no_password.status_code == 400
    assert no_password.json()["error_code"] == "PASSWORD_REQUIRED"

    download = client.get(f"{BASE}/{filename}/download", params={"password": ADMIN_PASSWORD}, headers=auth_headers)
    assert download.status_code == 200
    assert download.headers["content-type"].startswith("application/sql")
    assert download.headers["x-file-extension"] == "fpb"
    assert "no-store" in download.headers["cache-control"]
    assert b"CREATE TABLE" in download.content

    rejected = client.request("DELETE", f"{BASE}/{filename}", json={"password": "nope"}, headers=auth_headers)
    assert rejected.status_code == 401
    assert _backup_files() == [filename]

    deleted = client.request("DELETE", f"{BASE}/{filename}", json={"password": ADMIN_PASSWORD}, headers=auth_headers)
    assert deleted.status_code == 200
    assert _backup_files() == []

    missing = client.request("DELETE", f"{BASE}/{filename}", json={"password": ADMIN_PASSWORD}, headers=auth_headers)
    assert missing.status_code == 404
    assert missing.json()["error_code"] == "NOT_FOUND"


def test_restore_round_trip(client, auth_headers, developer_mode):
    filename = _create(client, auth_headers)
    with SessionLocal() as session:
        PluginSettingsService(session).set_setting("billing", "api_key", "after")

    unconfirmed = client.post(f"{BASE}/{filename}/restore", json={"password": ADMIN_PASSWORD}, headers=auth_headers)
    assert unconfirmed.status_code == 400
    assert unconfirmed.json()["error_code"] == "CONFIRMATION_REQUIRED"

    wrong = client.post(
        f"{BASE}/{filename}/restore",
        json={"confirm": True, "password": "nope"},
        headers=auth_headers,
    )
    assert wrong.status_code == 401
    with SessionLocal() as session:
        assert PluginSettingsService(session).get_setting("billing", "api_key") == "after"

    restored = client.post(
        f"{BASE}/{filename}/restore",
        json={"confirm": True, "password": ADMIN_PASSWORD},
        headers=auth_headers,
    )
    assert restored.status_code == 200
    assert restored.json()["message"] == RESTORE_MESSAGE
    with SessionLocal() as session:
        assert PluginSettingsService(session).get_setting("billing", "api_key") is None


def test_restore_upload(client, auth_headers, developer_mode):
    filename = _create(client, auth_headers)
    content = (get_settings().backups_dir / filename).read_bytes()

    wrong_type = client.post(
        f"{BASE}/restore-upload",
        files={"file": ("backup.sql", content, "application/octet-stream")},
        data={"confirm": "true", "password": ADMIN_PASSWORD},
        headers=auth_headers,
    )
    assert wrong_type.status_code == 400
    assert wrong_type.json()["error_code"] == "INVALID_FILE_TYPE"

    unconfirmed = client.post(
        f"{BASE}/restore-upload",
        files={"file": ("backup.fpb", content, "application/octet-stream")},
        data={"confirm": "false", "password": ADMIN_PASSWORD},
        headers=auth_headers,
    )
    assert unconfirmed.json()["error_code"] == "CONFIRMATION_REQUIRED"

    html = client.post(
        f"{BASE}/restore-upload",
        files={"file": ("backup.fpb", b"<!DOCTYPE html><html></html>", "application/octet-stream")},
        data={"confirm": "true", "password": ADMIN_PASSWORD},
        headers=auth_headers,
    )
    assert html.status_code == 400
    assert html.json()["error_code"] == "INVALID_SQL_CONTENT"

    restored = client.post(
        f"{BASE}/restore-upload",
        files={"file": ("backup.fpb", content, "application/octet-stream")},
        data={"confirm": "true", "password": ADMIN_PASSWORD},
        headers=auth_headers,
    )
    assert restored.status_code == 200
    assert restored.json()["data"] == {"message": "Database restored successfully"}


def test_fresh_restore_keeps_session_token(client, auth_headers, developer_mode):
    response = client.post(
        f"{BASE}/fresh-restore",
        json={"confirm": True, "password": ADMIN_PASSWORD},
        headers=auth_headers,
    )
    assert response.status_code == 200, response.text
    data = response.json()["data"]
    assert data["message"] == "Database restored to fresh state successfully"
    assert data["migrations"]["failed"] == 0

    listing = client.get(BASE, headers=auth_headers)
    assert listing.status_code == 200
    with SessionLocal() as session:
        assert UserService(session).find_by_username(ADMIN_USERNAME).role_id == 4


def test_restore_upload_rejects_oversized_file(client, auth_headers, developer_mode, monkeypatch):
    monkeypatch.setattr(get_settings(), "snapshot_upload_limit_bytes", 16)
    response = client.post(
        f"{BASE}/restore-upload",
        files={"file": ("backup.fpb", b"CREATE TABLE big (id INTEGER);", "application/octet-stream")},
        data={"confirm": "true", "password": ADMIN_PASSWORD},
        headers=auth_headers,
    )
    assert response.status_code == 400
    assert response.json()["error_code"] == "FILE_TOO_LARGE"
    with SessionLocal() as session:
        assert UserService(session).find_by_username(ADMIN_USERNAME) is not None
