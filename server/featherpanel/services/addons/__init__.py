from .cloud import CloudClient, CloudError
from .hooks import HookRegistry, HookResult, HookStatus, attach_event_handlers
from .installer import AddonInstaller, InstallResult, InstallStage
from .manifest import AddonManifest, ManifestError
from .registry import PackageRegistryClient, RegistryError
from .settings import PluginSettingsService
from .tracking import InstalledPluginService

__all__ = [
    "AddonInstaller",
    "AddonManifest",
    "CloudClient",
    "CloudError",
    "HookRegistry",
    "HookResult",
    "HookStatus",
    "InstallResult",
    "InstallStage",
    "InstalledPluginService",
    "ManifestError",
    "PackageRegistryClient",
    "PluginSettingsService",
    "RegistryError",
    "attach_event_handlers",
]
