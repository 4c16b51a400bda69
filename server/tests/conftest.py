from __future__ import annotations

import io
import os
import shutil
import tempfile
import zipfile
from pathlib import Path
from typing import Callable, Optional

import httpx
import pytest
import yaml

_TEST_ROOT = Path(tempfile.mkdtemp(prefix="featherpanel_tests_"))
_REPO_MIGRATIONS = Path(__file__).resolve().parents[1] / "storage" / "migrations"

os.environ.setdefault("FEATHERPANEL_SQLITE_PATH", str(_TEST_ROOT / "featherpanel.db"))
os.environ.setdefault("FEATHERPANEL_STORAGE_ROOT", str(_TEST_ROOT / "storage"))
os.environ.setdefault("FEATHERPANEL_PUBLIC_ROOT", str(_TEST_ROOT / "public"))
os.environ.setdefault("FEATHERPANEL_MIGRATIONS_DIR", str(_REPO_MIGRATIONS))
os.environ.setdefault("FEATHERPANEL_ENV_FILE", str(_TEST_ROOT / ".env"))
os.environ.setdefault("FEATHERPANEL_DEBUG", "true")

from sqlalchemy import MetaData  # noqa: E402

from featherpanel.api import deps  # noqa: E402
from featherpanel.core.crypto import reset_cipher  # noqa: E402
from featherpanel.core.settings import get_settings  # noqa: E402
from featherpanel.db.session import SessionLocal, engine  # noqa: E402
from featherpanel.main import app  # noqa: E402
from featherpanel.services.accounts import ADMIN_ROLE_ID, UserService  # noqa: E402
from featherpanel.services.addons import HookRegistry, PackageRegistryClient  # noqa: E402
from featherpanel.services.events import get_event_bus  # noqa: E402
from featherpanel.services.migrations import MigrationRunner  # noqa: E402
from featherpanel.services.panel_settings import PanelSettingsService  # noqa: E402

ADMIN_USERNAME = "admin"
ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "correct-horse-battery"


def _drop_all_tables() -> None:
    metadata = MetaData()
    metadata.reflect(bind=engine)
    metadata.drop_all(bind=engine)


def _clear_directory(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.exists():
        shutil.rmtree(path)


@pytest.fixture(autouse=True)
def reset_database():
    settings = get_settings()
    original_debug = settings.debug
    settings.debug = True
    settings.encryption_key = None
    reset_cipher()

    for directory in (settings.addons_dir, settings.backups_dir, settings.public_root):
        _clear_directory(directory)
    _clear_directory(settings.env_file)

    _drop_all_tables()
    MigrationRunner(engine).run_all(settings.core_migrations_dir, settings.addons_dir)
    with SessionLocal() as session:
        UserService(session).create_user(ADMIN_USERNAME, ADMIN_EMAIL, ADMIN_PASSWORD, role_id=ADMIN_ROLE_ID)

    get_event_bus().clear()
    app.dependency_overrides[deps.get_hook_registry] = lambda: HookRegistry(use_entry_points=False)
    try:
        yield
    finally:
        app.dependency_overrides.clear()
        get_event_bus().clear()
        settings.debug = original_debug
        settings.encryption_key = None
        reset_cipher()


@pytest.fixture()
def admin_token() -> str:
    with SessionLocal() as session:
        user = UserService(session).find_by_username(ADMIN_USERNAME)
        assert user is not None
        return user.remember_token


@pytest.fixture()
def auth_headers(admin_token) -> dict[str, str]:
    return {"Authorization": f"Bearer {admin_token}"}


@pytest.fixture()
def developer_mode():
    with SessionLocal() as session:
        PanelSettingsService(session).set_developer_mode(True)


@pytest.fixture()
def make_addon() -> Callable[..., bytes]:
    """Build an in-memory ``.fpa`` archive (unencrypted zip) for an addon."""

    def _build(
        identifier: str = "billing",
        version: str = "1.0.0",
        *,
        name: Optional[str] = None,
        dependencies: Optional[list[str]] = None,
        required_configs: Optional[list[str]] = None,
        entrypoint: Optional[str] = None,
        files: Optional[dict[str, str]] = None,
    ) -> bytes:
        plugin = {
            "identifier": identifier,
            "name": name or identifier.title(),
            "version": version,
            "author": "FeatherPanel",
            "description": f"{identifier} addon",
        }
        if dependencies:
            plugin["dependencies"] = dependencies
        if required_configs:
            plugin["requiredConfigs"] = required_configs
        if entrypoint:
            plugin["entrypoint"] = entrypoint

        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
            archive.writestr("conf.yml", yaml.safe_dump({"plugin": plugin}, sort_keys=False))
            for member, content in (files or {}).items():
                archive.writestr(member, content)
        return buffer.getvalue()

    return _build


class RegistryStub:
    """In-memory package registry served through ``httpx.MockTransport``."""

    base_url = "https://registry.test"

    def __init__(self) -> None:
        self.packages: dict[str, dict] = {}
        self.downloads: dict[str, bytes] = {}
        self.calls: list[httpx.Request] = []
        self.offline = False
        self.list_payload: Optional[dict] = None

    def add_package(
        self,
        identifier: str,
        version: str,
        payload: Optional[bytes] = None,
        *,
        package_id: int = 7,
        premium: bool = False,
        downloads: int = 0,
        min_panel_version: Optional[str] = None,
        with_download: bool = True,
    ) -> None:
        download_path = f"/downloads/{identifier}-{version}.fpa" if with_download else None
        if payload is not None and download_path:
            self.downloads[download_path] = payload
        latest = {
            "version": version,
            "download_url": download_path,
            "file_size": len(payload or b""),
            "min_panel_version": min_panel_version,
            "max_panel_version": None,
        }
        self.packages[identifier] = {
            "package": {
                "id": package_id,
                "name": identifier,
                "display_name": identifier.title(),
                "description": f"{identifier} addon",
                "author": "FeatherPanel",
                "icon_url": f"http://cdn.test/{identifier}.png",
                "verified": 1,
                "premium": 1 if premium else 0,
                "premium_link": f"https://store.test/{identifier}" if premium else None,
                "premium_price": "4.99" if premium else None,
                "downloads": downloads,
                "tags": ["billing"],
                "latest_version": latest,
            },
            "latest_version": latest,
            "versions": [latest],
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if self.offline:
            raise httpx.ConnectError("registry offline", request=request)
        path = request.url.path
        if path in self.downloads:
            return httpx.Response(200, content=self.downloads[path])
        if path == "/packages":
            data = self.list_payload
            if data is None:
                data = {
                    "packages": [entry["package"] for entry in self.packages.values()],
                    "pagination": {"page": 1, "total": len(self.packages)},
                }
            return httpx.Response(200, json={"success": True, "data": data})
        if path.startswith("/packages/tag/"):
            tag = path.rsplit("/", 1)[1]
            packages = [entry["package"] for entry in self.packages.values() if tag in entry["package"]["tags"]]
            return httpx.Response(200, json={"success": True, "data": {"packages": packages, "tag": tag}})
        if path.startswith("/packages/"):
            entry = self.packages.get(path.rsplit("/", 1)[1])
            if entry is not None:
                return httpx.Response(200, json={"success": True, "data": entry})
        return httpx.Response(404, json={"success": False, "message": "Not found"})

    def client(self) -> PackageRegistryClient:
        return PackageRegistryClient(self.base_url, transport=httpx.MockTransport(self.handler))


@pytest.fixture()
def registry() -> RegistryStub:
    return RegistryStub()
