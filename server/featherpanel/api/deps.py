from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, Generator, Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session
from starlette.status import HTTP_401_UNAUTHORIZED, HTTP_403_FORBIDDEN

from featherpanel.core.settings import get_settings
from featherpanel.db import User
from featherpanel.db.session import SessionLocal, engine
from featherpanel.services.accounts import UserService
from featherpanel.services.activity_service import ActivityActor
from featherpanel.services.addons import AddonInstaller, CloudClient, HookRegistry, PackageRegistryClient
from featherpanel.services.addons.installer import CloudClientFactory
from featherpanel.services.events import get_event_bus
from featherpanel.services.migrations import MigrationRunner
from featherpanel.services.panel_settings import PanelSettingsService
from featherpanel.services.snapshots import SnapshotManager

PLUGINS_MANAGE = "admin.plugins.manage"
SNAPSHOTS_MANAGE = "admin.databases.snapshots"
TOKEN_COOKIE = "remember_token"

bearer_auth = HTTPBearer(auto_error=False)

_hook_registry = HookRegistry()


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_hook_registry() -> HookRegistry:
    return _hook_registry


@dataclass(frozen=True)
class AdminPrincipal:
    user: User
    permissions: FrozenSet[str]
    ip_address: Optional[str] = None

    @property
    def username(self) -> str:
        return self.user.username

    def has_permission(self, node: str) -> bool:
        if "*" in self.permissions or node in self.permissions:
            return True
        parts = node.split(".")
        return any(".".join(parts[:depth]) + ".*" in self.permissions for depth in range(1, len(parts)))

    def actor(self) -> ActivityActor:
        return ActivityActor(user_uuid=self.user.uuid, username=self.user.username, ip_address=self.ip_address)


def require_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_auth),
    db: Session = Depends(get_db),
) -> AdminPrincipal:
    token = credentials.credentials if credentials else request.cookies.get(TOKEN_COOKIE)
    user = UserService(db).find_by_token(token or "")
    if user is None:
        raise HTTPException(status_code=HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    permissions = frozenset(perm.permission for perm in user.role.permissions) if user.role else frozenset()
    principal = AdminPrincipal(
        user=user,
        permissions=permissions,
        ip_address=request.client.host if request.client else None,
    )
    request.state.admin_principal = principal
    return principal


def require_permission(node: str):
    normalized = (node or "").strip().lower()
    if not normalized:
        raise ValueError("permission_required")

    def _dependency(principal: AdminPrincipal = Depends(require_user)) -> AdminPrincipal:
        if principal.has_permission(normalized):
            return principal
        raise HTTPException(status_code=HTTP_403_FORBIDDEN, detail="Forbidden")

    return _dependency


plugins_admin = require_permission(PLUGINS_MANAGE)
snapshots_admin = require_permission(SNAPSHOTS_MANAGE)


def get_registry_client() -> PackageRegistryClient:
    settings = get_settings()
    return PackageRegistryClient(settings.registry_base_url, timeout=settings.registry_timeout_seconds)


def get_cloud_factory(db: Session = Depends(get_db)) -> CloudClientFactory:
    settings = get_settings()

    def _factory() -> CloudClient:
        public_key, private_key = PanelSettingsService(db).cloud_credentials()
        return CloudClient(
            public_key,
            private_key,
            base_url=settings.cloud_base_url,
            timeout=settings.premium_download_timeout_seconds,
        )

    return _factory


def get_installer(
    db: Session = Depends(get_db),
    principal: AdminPrincipal = Depends(plugins_admin),
    registry: PackageRegistryClient = Depends(get_registry_client),
    cloud_factory: CloudClientFactory = Depends(get_cloud_factory),
) -> AddonInstaller:
    return AddonInstaller(
        db,
        settings=get_settings(),
        registry=registry,
        cloud_factory=cloud_factory,
        migrations=MigrationRunner(engine),
        hooks=get_hook_registry(),
        events=get_event_bus(),
        actor=principal.actor(),
    )


def get_snapshot_manager(
    db: Session = Depends(get_db),
    principal: AdminPrincipal = Depends(snapshots_admin),
) -> SnapshotManager:
    return SnapshotManager(
        db,
        settings=get_settings(),
        engine=engine,
        migrations=MigrationRunner(engine),
        events=get_event_bus(),
        actor=principal.actor(),
    )


__all__ = [
    "AdminPrincipal",
    "PLUGINS_MANAGE",
    "SNAPSHOTS_MANAGE",
    "get_cloud_factory",
    "get_db",
    "get_hook_registry",
    "get_installer",
    "get_registry_client",
    "get_snapshot_manager",
    "plugins_admin",
    "require_permission",
    "require_user",
    "snapshots_admin",
]
