from __future__ import annotations

import logging
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from featherpanel.core.errors import PanelError
from featherpanel.core.settings import Settings
from featherpanel.services.activity_service import ActivityActor, ActivityService
from featherpanel.services.addons.archive import (
    ADDON_ARCHIVE_SUFFIX,
    MANIFEST_NAME,
    ArchiveError,
    discard_workspace,
    extract_archive,
    make_workspace,
    read_member,
)
from featherpanel.services.addons.cloud import CloudClient, CloudError
from featherpanel.services.addons.filesystem import copy_tree, expose, remove_path
from featherpanel.services.addons.hooks import (
    HookRegistry,
    HookResult,
    run_install_hook,
    run_uninstall_hook,
    run_update_hook,
)
from featherpanel.services.addons.manifest import (
    AddonManifest,
    ManifestError,
    check_dependencies,
    check_panel_version,
    compare_versions,
    is_addon_identifier,
    is_registry_identifier,
)
from featherpanel.services.addons.registry import PackageRegistryClient, RegistryError
from featherpanel.services.addons.settings import PluginSettingsService
from featherpanel.services.addons.tracking import InstalledPluginService
from featherpanel.services.events import EventBus, PluginInstalled, PluginUninstalled, PluginUpdated
from featherpanel.services.migrations import MigrationReport, MigrationRunner
from featherpanel.services.uploads import UploadSource, UploadTooLarge, read_limited

logger = logging.getLogger(__name__)

_URL_RE = re.compile(r"^https?://", re.IGNORECASE)


class _IdentifierLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


_locks_guard = threading.Lock()
_identifier_locks: dict[str, _IdentifierLock] = {}


@contextmanager
def addon_lock(identifier: str) -> Iterator[None]:
    """Serialise disk and ledger mutations for one addon identifier.

    The entry is dropped once no thread holds or waits for it.
    """

    with _locks_guard:
        entry = _identifier_locks.get(identifier)
        if entry is None:
            entry = _identifier_locks[identifier] = _IdentifierLock()
        entry.users += 1
    try:
        with entry.lock:
            yield
    finally:
        with _locks_guard:
            entry.users -= 1
            if entry.users == 0:
                del _identifier_locks[identifier]


class InstallStage(str, Enum):
    EXTRACT = "extract"
    COPY = "copy"
    EXPOSE = "expose"
    MIGRATE = "migrate"
    SETTINGS = "settings"
    HOOKS = "hooks"
    TRACK = "track"
    DONE = "done"


@dataclass
class SettingsRestore:
    restored: int = 0
    failed: list[str] = field(default_factory=list)


@dataclass
class InstallResult:
    identifier: str
    is_update: bool
    name: Optional[str] = None
    old_version: Optional[str] = None
    new_version: Optional[str] = None
    stage: InstallStage = InstallStage.DONE
    assets: dict[str, str] = field(default_factory=dict)
    migrations: MigrationReport = field(default_factory=MigrationReport)
    hooks: list[HookResult] = field(default_factory=list)
    settings: SettingsRestore = field(default_factory=SettingsRestore)

    @property
    def status_code(self) -> int:
        return 200 if self.is_update else 201

    @property
    def message(self) -> str:
        return "Addon updated successfully" if self.is_update else "Addon installed successfully"

    def as_dict(self) -> dict[str, Any]:
        if self.is_update:
            return {
                "identifier": self.identifier,
                "is_update": True,
                "old_version": self.old_version,
                "new_version": self.new_version,
            }
        return {"identifier": self.identifier, "is_update": False, "version": self.new_version}


CloudClientFactory = Callable[[], CloudClient]


class AddonInstaller:
    """Download, unpack and activate addons; remove them again."""

    def __init__(
        self,
        db: Session,
        *,
        settings: Settings,
        registry: PackageRegistryClient,
        cloud_factory: CloudClientFactory,
        migrations: MigrationRunner,
        hooks: HookRegistry,
        events: EventBus,
        actor: Optional[ActivityActor] = None,
        temp_root: Optional[Path] = None,
    ) -> None:
        self.db = db
        self.settings = settings
        self.registry = registry
        self.cloud_factory = cloud_factory
        self.migrations = migrations
        self.hooks = hooks
        self.events = events
        self.actor = actor or ActivityActor()
        self.temp_root = temp_root
        self.activity = ActivityService(db)
        self.plugin_settings = PluginSettingsService(db)
        self.tracking = InstalledPluginService(db)

    @property
    def addons_dir(self) -> Path:
        return self.settings.addons_dir

    def plugin_dir(self, identifier: str) -> Path:
        return self.addons_dir / identifier

    # ------------------------------------------------------------------
    # Install sources
    # ------------------------------------------------------------------
    def install(self, identifier: Optional[str], *, version: Optional[str] = None) -> InstallResult:
        """Install or update an addon from the registry."""

        if not is_registry_identifier(identifier):
            raise PanelError("Invalid identifier", "INVALID_IDENTIFIER", 400)
        assert identifier is not None
        self._ensure_addons_dir()

        try:
            data = self.registry.get_package(identifier, timeout=self.settings.install_timeout_seconds)
        except RegistryError as exc:
            raise PanelError("Failed to fetch package details", "PACKAGE_DETAILS_FETCH_FAILED", 500) from exc
        if data is None:
            raise PanelError("Package not found in registry", "PACKAGE_NOT_FOUND", 404)

        package = data["package"]
        latest = data.get("latest_version") or {}
        if _is_premium(package):
            payload = self._download_premium(identifier, package, latest, version)
        else:
            payload = self._download_free(latest)

        workspace = self._extract(payload)
        result = self.perform_install(workspace, identifier, _as_int(package.get("id")))
        self._announce(
            result,
            installed_activity="cloud_plugin_installed",
            updated_activity="cloud_plugin_updated",
            label="cloud plugin",
        )
        return result

    def install_upload(self, filename: Optional[str], content: Optional[UploadSource]) -> InstallResult:
        if not filename or content is None:
            raise PanelError("No file uploaded", "NO_FILE_UPLOADED", 400)
        if not filename.lower().endswith(ADDON_ARCHIVE_SUFFIX):
            raise PanelError("Invalid file type, expected .fpa", "INVALID_FILE_TYPE", 400)
        try:
            payload = read_limited(content, self.settings.addon_upload_limit_bytes)
        except UploadTooLarge as exc:
            raise PanelError("File size too large", "FILE_TOO_LARGE", 400) from exc
        if not payload:
            raise PanelError("No file uploaded", "NO_FILE_UPLOADED", 400)
        self._ensure_addons_dir()
        workspace = self._extract(payload)
        result = self.perform_install(workspace)
        self._announce(
            result,
            installed_activity="plugin_uploaded",
            updated_activity="plugin_uploaded",
            label="plugin from upload",
        )
        return result

    def install_from_url(self, url: Optional[str]) -> InstallResult:
        if not url or not _URL_RE.match(url.strip()):
            raise PanelError("Invalid URL", "INVALID_URL", 400)
        self._ensure_addons_dir()
        try:
            payload = self.registry.download(url.strip(), timeout=self.settings.url_install_timeout_seconds)
        except RegistryError as exc:
            raise PanelError("Failed to download file from URL", "DOWNLOAD_FAILED", 500) from exc
        workspace = self._extract(payload)
        result = self.perform_install(workspace)
        self._announce(
            result,
            installed_activity="plugin_installed_from_url",
            updated_activity="plugin_installed_from_url",
            label="plugin from URL",
        )
        return result

    # ------------------------------------------------------------------
    # Shared install routine
    # ------------------------------------------------------------------
    def perform_install(
        self,
        temp_dir: Path,
        identifier: Optional[str] = None,
        cloud_id: Optional[int] = None,
    ) -> InstallResult:
        """Install an already extracted addon; ``temp_dir`` is removed whatever the outcome."""

        temp_dir = Path(temp_dir)
        try:
            self._ensure_addons_dir()
            if not (temp_dir / MANIFEST_NAME).is_file():
                raise PanelError("Invalid addon: missing conf.yml", "ADDON_INVALID", 422)
            if identifier is None:
                try:
                    identifier = AddonManifest.load(temp_dir).identifier
                except ManifestError as exc:
                    raise PanelError("Failed to parse conf.yml", "ADDON_CONF_PARSE_FAILED", 422) from exc
            if not is_addon_identifier(identifier):
                raise PanelError("Invalid addon identifier in conf.yml", "ADDON_IDENTIFIER_INVALID", 422)
            assert identifier is not None
            with addon_lock(identifier):
                return self._install_locked(temp_dir, identifier, cloud_id)
        finally:
            discard_workspace(temp_dir)

    def _install_locked(self, temp_dir: Path, identifier: str, cloud_id: Optional[int]) -> InstallResult:
        plugin_dir = self.plugin_dir(identifier)
        result = InstallResult(identifier=identifier, is_update=plugin_dir.exists(), stage=InstallStage.EXTRACT)
        try:
            return self._run_stages(temp_dir, plugin_dir, result, cloud_id)
        except PanelError as exc:
            logger.error("Addon %s install stopped at stage %s: %s", identifier, result.stage.value, exc.code)
            if exc.data is None:
                exc.data = {"stage": result.stage.value}
            else:
                exc.data.setdefault("stage", result.stage.value)
            raise

    def _run_stages(
        self,
        temp_dir: Path,
        plugin_dir: Path,
        result: InstallResult,
        cloud_id: Optional[int],
    ) -> InstallResult:
        identifier = result.identifier
        backup: list[dict[str, Optional[str]]] = []

        self._advance(result, InstallStage.COPY)
        if result.is_update:
            result.old_version = self._read_version(plugin_dir)
            backup = self._backup_settings(identifier)
            try:
                remove_path(plugin_dir)
            except OSError as exc:
                raise PanelError("Failed to create addon directory", "ADDON_DIR_FAILED", 500) from exc
        try:
            plugin_dir.mkdir(parents=True)
            copy_tree(temp_dir, plugin_dir)
        except OSError as exc:
            logger.error("Addon %s: copying files failed: %s", identifier, exc)
            raise PanelError("Failed to create addon directory", "ADDON_DIR_FAILED", 500) from exc
        discard_workspace(temp_dir)

        self._advance(result, InstallStage.EXPOSE)
        result.assets = self._expose_assets(identifier, plugin_dir)

        self._advance(result, InstallStage.MIGRATE)
        # Migrations run on their own connection; the session must not hold a SQLite read lock.
        self.db.commit()
        result.migrations = self.migrations.run_addon(identifier, plugin_dir)
        if not result.migrations.ok:
            logger.error("Addon %s: migrations failed\n%s", identifier, result.migrations.output)
            raise PanelError(
                "Addon migrations failed",
                "ADDON_MIGRATION_FAILED",
                422,
                data={"output": result.migrations.output},
            )

        self._advance(result, InstallStage.SETTINGS)
        if result.is_update and backup:
            result.settings = self._restore_settings(identifier, backup)

        manifest = self._read_manifest(plugin_dir)
        if manifest is not None:
            result.new_version = manifest.version
            result.name = manifest.name or identifier

        self._advance(result, InstallStage.HOOKS)
        result.hooks = self._run_lifecycle_hooks(result, manifest)

        self._advance(result, InstallStage.TRACK)
        self._track(identifier, result.name, result.new_version, cloud_id)

        self._advance(result, InstallStage.DONE)
        if result.is_update:
            logger.info("Addon updated: %s (%s -> %s)", identifier, result.old_version, result.new_version)
        else:
            logger.info("Addon installed: %s", identifier)
        return result

    # ------------------------------------------------------------------
    # Uninstall
    # ------------------------------------------------------------------
    def uninstall(self, identifier: str) -> list[HookResult]:
        plugin_dir = self.plugin_dir(identifier)
        if not identifier or not is_addon_identifier(identifier) or not plugin_dir.exists():
            raise PanelError("Addon not found", "ADDON_NOT_FOUND", 404)

        with addon_lock(identifier):
            manifest = self._read_manifest(plugin_dir)
            results: list[HookResult] = []
            hooks = self._resolve_hooks(identifier, manifest, results)
            if hooks is not None:
                results.append(run_uninstall_hook(hooks))

            try:
                remove_path(plugin_dir)
                for link in self._asset_links(identifier).values():
                    remove_path(link)
            except OSError as exc:
                raise PanelError(f"Failed to uninstall addon: {exc}", "ADDON_UNINSTALL_FAILED", 500) from exc

            try:
                self.tracking.mark_uninstalled(identifier)
            except SQLAlchemyError:
                self.db.rollback()
                logger.warning("Failed to mark addon %s as uninstalled", identifier, exc_info=True)

        self.activity.record(name="plugin_uninstalled", context=f"Uninstalled plugin: {identifier}", actor=self.actor)
        self.events.emit(PluginUninstalled(identifier=identifier, user_uuid=self.actor.user_uuid))
        logger.info("Addon uninstalled: %s", identifier)
        return results

    # ------------------------------------------------------------------
    # Requirements and local inventory
    # ------------------------------------------------------------------
    def check_requirements(self, identifier: str) -> dict[str, Any]:
        if not is_registry_identifier(identifier):
            raise PanelError("Invalid identifier", "INVALID_IDENTIFIER", 400)
        try:
            data = self.registry.get_package(identifier)
        except RegistryError as exc:
            raise PanelError("Failed to fetch package details", "PACKAGE_DETAILS_FETCH_FAILED", 500) from exc
        if data is None:
            raise PanelError("Package not found", "PACKAGE_NOT_FOUND", 404)

        package = data["package"]
        latest = data.get("latest_version") or {}
        latest_version = latest.get("version")

        plugin_dir = self.plugin_dir(identifier)
        already_installed = plugin_dir.exists()
        installed_version = self._read_version(plugin_dir) if already_installed else None
        update_available = bool(
            installed_version and latest_version and compare_versions(str(latest_version), installed_version) > 0
        )

        panel = check_panel_version(
            self.settings.panel_version,
            latest.get("min_panel_version"),
            latest.get("max_panel_version"),
        )

        checks = []
        download_url = self.registry.absolute_url(latest.get("download_url"))
        if download_url and not _is_premium(package):
            manifest = self._fetch_remote_manifest(download_url)
            if manifest is not None:
                checks = check_dependencies(manifest.dependencies, self.installed_identifiers())
        all_met = all(check.met for check in checks)

        return {
            "can_install": (not already_installed or update_available) and panel.ok and all_met,
            "already_installed": already_installed,
            "update_available": update_available,
            "installed_version": installed_version,
            "latest_version": latest_version,
            "package": {
                "identifier": identifier,
                "name": package.get("display_name") or package.get("name") or "",
                "description": package.get("description"),
                "version": latest_version,
                "author": package.get("author"),
                "verified": str(package.get("verified") or 0) == "1",
                "premium": 1 if _is_premium(package) else 0,
            },
            "dependencies": {"checks": [check.as_dict() for check in checks], "all_met": all_met},
            "panel_version": panel.as_dict(),
        }

    def installed_identifiers(self) -> list[str]:
        if not self.addons_dir.is_dir():
            return []
        return sorted(
            path.name
            for path in self.addons_dir.iterdir()
            if path.is_dir() and (path / MANIFEST_NAME).is_file()
        )

    def list_local(self) -> list[dict[str, Any]]:
        installed = self.installed_identifiers()
        items = []
        for identifier in installed:
            manifest = self._read_manifest(self.plugin_dir(identifier))
            if manifest is None:
                continue
            unmet = [
                check.dependency
                for check in check_dependencies(manifest.dependencies, installed)
                if not check.met
            ]
            configured = set(self.plugin_settings.as_mapping(identifier))
            missing = [key for key in manifest.required_configs if key not in configured]
            items.append(
                {
                    "identifier": identifier,
                    "name": manifest.name or identifier,
                    "version": manifest.version,
                    "description": manifest.description,
                    "author": manifest.author,
                    "dependencies": list(manifest.dependencies),
                    "unmet_dependencies": unmet,
                    "missing_configs": missing,
                    "has_hooks": identifier in self.hooks.keys()
                    or (manifest.entrypoint is not None and manifest.entrypoint in self.hooks.keys()),
                }
            )
        return items

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _ensure_addons_dir(self) -> None:
        try:
            self.addons_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PanelError("Failed to prepare addons directory", "ADDONS_DIR_CREATE_FAILED", 500) from exc

    def _download_premium(
        self,
        identifier: str,
        package: dict[str, Any],
        latest: dict[str, Any],
        version: Optional[str],
    ) -> bytes:
        upsell = {"premium_link": package.get("premium_link"), "premium_price": package.get("premium_price")}
        not_configured = PanelError(
            "FeatherCloud credentials are not configured. Please configure your cloud account credentials "
            "in Cloud Management to download premium plugins.",
            "CLOUD_CREDENTIALS_NOT_CONFIGURED",
            503,
            data=upsell,
        )
        cloud = self.cloud_factory()
        if not cloud.is_configured():
            raise not_configured

        resolved_version = latest.get("version") or version
        if not resolved_version:
            raise PanelError("Version is required for premium plugins", "VERSION_REQUIRED", 400, data=upsell)
        try:
            return cloud.download_premium_package(identifier, str(resolved_version))
        except CloudError as exc:
            if exc.error_code == "CREDENTIALS_NOT_CONFIGURED":
                raise not_configured from exc
            raise PanelError(
                exc.message or "This is a premium addon and must be purchased",
                exc.error_code or "PREMIUM_ADDON_PURCHASE_REQUIRED",
                exc.status_code or 402,
                data=upsell,
            ) from exc

    def _download_free(self, latest: dict[str, Any]) -> bytes:
        download_url = self.registry.absolute_url(latest.get("download_url"))
        if not download_url:
            raise PanelError("Package has no download URL available", "PACKAGE_NO_DOWNLOAD_URL", 404)
        try:
            return self.registry.download(download_url, timeout=self.settings.install_timeout_seconds)
        except RegistryError as exc:
            raise PanelError("Failed to download addon package", "ADDON_DOWNLOAD_FAILED", 500) from exc

    def _extract(self, payload: bytes) -> Path:
        workspace = make_workspace(self.temp_root)
        try:
            extract_archive(payload, workspace)
        except ArchiveError as exc:
            discard_workspace(workspace)
            logger.warning("Addon package extraction failed: %s", exc)
            raise PanelError("Failed to extract addon package", "ADDON_EXTRACT_FAILED", 422) from exc
        return workspace

    def _fetch_remote_manifest(self, download_url: str) -> Optional[AddonManifest]:
        try:
            payload = self.registry.download(download_url)
        except RegistryError:
            logger.warning("Could not download %s for requirement checks", download_url)
            return None
        text = read_member(payload, MANIFEST_NAME)
        if text is None:
            return None
        try:
            return AddonManifest.parse(text)
        except ManifestError:
            logger.warning("Remote conf.yml from %s is invalid", download_url)
            return None

    def _advance(self, result: InstallResult, stage: InstallStage) -> None:
        result.stage = stage
        logger.info("Addon %s: %s", result.identifier, stage.value)

    def _read_manifest(self, plugin_dir: Path) -> Optional[AddonManifest]:
        try:
            return AddonManifest.load(plugin_dir)
        except ManifestError as exc:
            logger.warning("Unable to read manifest in %s: %s", plugin_dir, exc)
            return None

    def _read_version(self, plugin_dir: Path) -> Optional[str]:
        manifest = self._read_manifest(plugin_dir)
        return manifest.version if manifest else None

    def _backup_settings(self, identifier: str) -> list[dict[str, Optional[str]]]:
        try:
            return self.plugin_settings.get_settings(identifier)
        except SQLAlchemyError:
            self.db.rollback()
            logger.warning("Settings backup failed for %s, continuing without it", identifier, exc_info=True)
            return []

    def _restore_settings(self, identifier: str, backup: list[dict[str, Optional[str]]]) -> SettingsRestore:
        outcome = SettingsRestore()
        for item in backup:
            key = item["key"] or ""
            try:
                self.plugin_settings.set_setting(identifier, key, item["value"])
            except (SQLAlchemyError, ValueError):
                self.db.rollback()
                logger.warning("Failed to restore setting %s for %s", key, identifier, exc_info=True)
                outcome.failed.append(key)
                continue
            outcome.restored += 1
        return outcome

    def _asset_links(self, identifier: str) -> dict[str, Path]:
        public_root = self.settings.public_root
        return {
            "Public": public_root / "addons" / identifier,
            "Frontend/Components": public_root / "components" / identifier,
        }

    def _expose_assets(self, identifier: str, plugin_dir: Path) -> dict[str, str]:
        exposed: dict[str, str] = {}
        for relative, link_path in self._asset_links(identifier).items():
            source = plugin_dir / relative
            if not source.is_dir():
                continue
            try:
                exposed[relative] = expose(source, link_path)
            except OSError:
                logger.warning("Failed to expose %s for %s", relative, identifier, exc_info=True)
                exposed[relative] = "failed"
        return exposed

    def _resolve_hooks(
        self,
        identifier: str,
        manifest: Optional[AddonManifest],
        results: list[HookResult],
    ) -> Optional[Any]:
        entrypoint = manifest.entrypoint if manifest else None
        try:
            hooks = self.hooks.resolve(identifier, entrypoint)
        except Exception as exc:  # noqa: BLE001 - addon factories are third-party code
            logger.exception("Failed to construct hooks for %s", identifier)
            results.append(HookResult.soft_failure("resolve", str(exc)))
            return None
        if hooks is None:
            logger.debug("No lifecycle hooks registered for %s", identifier)
        return hooks

    def _run_lifecycle_hooks(self, result: InstallResult, manifest: Optional[AddonManifest]) -> list[HookResult]:
        results: list[HookResult] = []
        hooks = self._resolve_hooks(result.identifier, manifest, results)
        if hooks is None:
            return results
        if result.is_update:
            outcome = run_update_hook(hooks, result.old_version, result.new_version)
        else:
            outcome = run_install_hook(hooks)
        if outcome.failed:
            logger.error("Lifecycle hook %s failed for %s: %s", outcome.hook, result.identifier, outcome.message)
        results.append(outcome)
        return results

    def _track(self, identifier: str, name: Optional[str], version: Optional[str], cloud_id: Optional[int]) -> None:
        try:
            self.tracking.upsert(identifier, name=name, version=version, cloud_id=cloud_id)
        except SQLAlchemyError:
            self.db.rollback()
            logger.warning("Failed to track plugin installation for %s", identifier, exc_info=True)

    def _announce(self, result: InstallResult, *, installed_activity: str, updated_activity: str, label: str) -> None:
        verb = "Updated" if result.is_update else "Installed"
        self.activity.record(
            name=updated_activity if result.is_update else installed_activity,
            context=f"{verb} {label}: {result.identifier}",
            actor=self.actor,
        )
        if result.is_update:
            self.events.emit(
                PluginUpdated(
                    identifier=result.identifier,
                    old_version=result.old_version,
                    new_version=result.new_version,
                    payload=result.as_dict(),
                    user_uuid=self.actor.user_uuid,
                )
            )
        else:
            self.events.emit(
                PluginInstalled(
                    identifier=result.identifier,
                    payload=result.as_dict(),
                    user_uuid=self.actor.user_uuid,
                )
            )


def _is_premium(package: dict[str, Any]) -> bool:
    try:
        return int(package.get("premium") or 0) == 1
    except (TypeError, ValueError):
        return package.get("premium") is True


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


__all__ = [
    "AddonInstaller",
    "InstallResult",
    "InstallStage",
    "SettingsRestore",
    "addon_lock",
]
