from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Query, UploadFile
from sqlalchemy.exc import SQLAlchemyError

from featherpanel.api import responses
from featherpanel.api.deps import AdminPrincipal, get_installer, get_registry_client, plugins_admin
from featherpanel.core.errors import PanelError
from featherpanel.schemas import (
    AddonInstallRequest,
    AddonUrlInstallRequest,
    PluginSettingDeleteRequest,
    PluginSettingUpdateRequest,
)
from featherpanel.services.activity_service import ActivityService
from featherpanel.services.addons import AddonInstaller, PackageRegistryClient, RegistryError
from featherpanel.services.addons.manifest import is_addon_identifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/plugins", tags=["Admin - Plugins"])


def _install_response(result):
    return responses.success(result.as_dict(), result.message, result.status_code)


# ----------------------------------------------------------------------
# Registry browsing
# ----------------------------------------------------------------------
@router.get("/online/list")
def online_list(
    q: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    verified_only: bool = Query(False),
    tags: Optional[str] = Query(None),
    sort_by: Optional[str] = Query(None),
    sort_order: Optional[str] = Query(None),
    registry: PackageRegistryClient = Depends(get_registry_client),
    _: AdminPrincipal = Depends(plugins_admin),
):
    params = registry.build_list_params(
        q=q,
        page=page,
        per_page=per_page,
        verified_only=verified_only,
        tags=tags,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    try:
        data = registry.list_packages(params)
    except RegistryError as exc:
        if exc.invalid:
            raise PanelError("Invalid response from online addon list", "ONLINE_LIST_INVALID", 500) from exc
        raise PanelError("Failed to fetch online addon list", "ONLINE_LIST_FETCH_FAILED", 500) from exc
    addons = [registry.format_package(pkg) for pkg in data["packages"]]
    return responses.success({"addons": addons, "pagination": data.get("pagination")}, "Online addons fetched")


@router.get("/online/popular")
def online_popular(
    limit: int = Query(10),
    registry: PackageRegistryClient = Depends(get_registry_client),
    _: AdminPrincipal = Depends(plugins_admin),
):
    if limit < 1:
        limit = 10
    limit = min(limit, 50)
    params = registry.build_list_params(page=1, per_page=limit, sort_by="downloads", sort_order="DESC")
    try:
        data = registry.list_packages(params)
    except RegistryError as exc:
        if exc.invalid:
            raise PanelError("Invalid response from popular packages API", "POPULAR_INVALID", 500) from exc
        raise PanelError("Failed to fetch popular packages", "POPULAR_FETCH_FAILED", 500) from exc
    packages = sorted(data["packages"], key=lambda pkg: int(pkg.get("downloads") or 0), reverse=True)
    return responses.success(
        {"addons": [registry.format_package(pkg) for pkg in packages]},
        "Popular packages fetched",
    )


@router.get("/online/tag/{tag}")
def online_by_tag(
    tag: str,
    registry: PackageRegistryClient = Depends(get_registry_client),
    _: AdminPrincipal = Depends(plugins_admin),
):
    try:
        data = registry.packages_by_tag(tag)
    except RegistryError as exc:
        if exc.invalid:
            raise PanelError("Invalid response from tag API", "TAG_INVALID", 500) from exc
        raise PanelError("Failed to fetch packages by tag", "TAG_FETCH_FAILED", 500) from exc
    return responses.success(
        {
            "addons": [registry.format_package(pkg) for pkg in data["packages"]],
            "tag": data.get("tag") or tag,
            "pagination": data.get("pagination"),
        },
        "Packages by tag fetched",
    )


@router.get("/online/{identifier}")
def online_show(
    identifier: str,
    registry: PackageRegistryClient = Depends(get_registry_client),
    _: AdminPrincipal = Depends(plugins_admin),
):
    try:
        data = registry.get_package(identifier)
    except RegistryError as exc:
        raise PanelError("Failed to fetch package details", "PACKAGE_DETAILS_FETCH_FAILED", 500) from exc
    if data is None:
        raise PanelError("Package not found", "PACKAGE_NOT_FOUND", 404)
    package = registry.format_package({**data["package"], "latest_version": data.get("latest_version") or {}})
    versions = [registry.format_version(version) for version in data.get("versions") or []]
    return responses.success({"package": package, "versions": versions}, "Package details fetched")


@router.get("/online/{identifier}/check")
def online_check(identifier: str, installer: AddonInstaller = Depends(get_installer)):
    return responses.success(installer.check_requirements(identifier), "Requirements checked")


@router.post("/online/{identifier}/install")
def online_install(
    identifier: str,
    payload: Optional[AddonInstallRequest] = None,
    installer: AddonInstaller = Depends(get_installer),
):
    version = payload.version if payload else None
    return _install_response(installer.install(identifier, version=version))


# ----------------------------------------------------------------------
# Local addons
# ----------------------------------------------------------------------
@router.get("")
def list_local(installer: AddonInstaller = Depends(get_installer)):
    return responses.success({"plugins": installer.list_local()}, "Successfully fetched plugins overview")


@router.get("/previously-installed")
def previously_installed(installer: AddonInstaller = Depends(get_installer)):
    plugins = [installer.tracking.serialize(record) for record in installer.tracking.list_previously_installed()]
    return responses.success({"plugins": plugins}, "Previously installed plugins retrieved successfully")


@router.get("/installations")
def installations(installer: AddonInstaller = Depends(get_installer)):
    tracking = installer.tracking
    return responses.success(
        {
            "installed": [tracking.serialize(record) for record in tracking.list_installed()],
            "uninstalled": [tracking.serialize(record) for record in tracking.list_uninstalled()],
            "counts": tracking.counts(),
        },
        "Plugin installations retrieved successfully",
    )


@router.post("/upload/install")
def upload_install(
    file: Optional[UploadFile] = File(None),
    installer: AddonInstaller = Depends(get_installer),
):
    filename = file.filename if file else None
    stream = file.file if file else None
    return _install_response(installer.install_upload(filename, stream))


@router.post("/upload/install-url")
def url_install(payload: AddonUrlInstallRequest, installer: AddonInstaller = Depends(get_installer)):
    return _install_response(installer.install_from_url(payload.url))


@router.post("/{identifier}/uninstall")
def uninstall(identifier: str, installer: AddonInstaller = Depends(get_installer)):
    hooks = installer.uninstall(identifier)
    return responses.success({"hooks": [result.as_dict() for result in hooks]}, "Addon uninstalled successfully")


# ----------------------------------------------------------------------
# Plugin settings
# ----------------------------------------------------------------------
def _require_addon(installer: AddonInstaller, identifier: str) -> None:
    if not is_addon_identifier(identifier) or not installer.plugin_dir(identifier).is_dir():
        raise PanelError("Addon not found", "ADDON_NOT_FOUND", 404)


@router.get("/{identifier}/settings")
def list_plugin_settings(identifier: str, installer: AddonInstaller = Depends(get_installer)):
    _require_addon(installer, identifier)
    return responses.success(
        {"identifier": identifier, "settings": installer.plugin_settings.get_settings(identifier)},
        "Plugin settings fetched",
    )


@router.post("/{identifier}/settings/set")
def set_setting(
    identifier: str,
    payload: PluginSettingUpdateRequest,
    installer: AddonInstaller = Depends(get_installer),
):
    _require_addon(installer, identifier)
    value = None if payload.value is None else str(payload.value)
    try:
        installer.plugin_settings.set_setting(identifier, payload.key or "", value)
    except ValueError as exc:
        raise PanelError("Missing key parameter", "SETTING_KEY_REQUIRED", 400) from exc
    except SQLAlchemyError as exc:
        installer.db.rollback()
        logger.exception("Failed to update setting for %s", identifier)
        raise PanelError("Failed to update setting", "SETTING_UPDATE_FAILED", 500) from exc
    ActivityService(installer.db).record(
        name="plugin_setting_update",
        context=f"Updated setting {payload.key} for plugin {identifier}",
        actor=installer.actor,
    )
    return responses.success(
        {"identifier": identifier, "key": (payload.key or "").strip(), "value": value},
        "Setting updated successfully",
    )


@router.post("/{identifier}/settings/remove")
def remove_setting(
    identifier: str,
    payload: PluginSettingDeleteRequest,
    installer: AddonInstaller = Depends(get_installer),
):
    _require_addon(installer, identifier)
    key = (payload.key or "").strip()
    if not key:
        raise PanelError("Missing key parameter", "SETTING_KEY_REQUIRED", 400)
    try:
        installer.plugin_settings.delete_setting(identifier, key)
    except SQLAlchemyError as exc:
        installer.db.rollback()
        logger.exception("Failed to remove setting for %s", identifier)
        raise PanelError("Failed to remove setting", "SETTING_REMOVE_FAILED", 500) from exc
    ActivityService(installer.db).record(
        name="plugin_setting_delete",
        context=f"Removed setting {key} for plugin {identifier}",
        actor=installer.actor,
    )
    return responses.success({"identifier": identifier, "key": key}, "Setting removed successfully")


__all__ = ["router"]
