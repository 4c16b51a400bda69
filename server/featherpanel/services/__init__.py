from __future__ import annotations

from featherpanel.services.accounts import UserService
from featherpanel.services.activity_service import ActivityActor, ActivityService
from featherpanel.services.addons import AddonInstaller, HookRegistry, PackageRegistryClient
from featherpanel.services.events import EventBus, get_event_bus
from featherpanel.services.migrations import MigrationRunner
from featherpanel.services.panel_settings import PanelSettingsService
from featherpanel.services.snapshots import SnapshotManager

__all__ = [
    "ActivityActor",
    "ActivityService",
    "AddonInstaller",
    "EventBus",
    "HookRegistry",
    "MigrationRunner",
    "PackageRegistryClient",
    "PanelSettingsService",
    "SnapshotManager",
    "UserService",
    "get_event_bus",
]
