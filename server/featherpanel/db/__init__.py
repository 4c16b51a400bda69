from featherpanel.db.base import Base
from featherpanel.db.models import (
    Activity,
    InstalledPlugin,
    MigrationRecord,
    MigrationState,
    PluginSetting,
    Role,
    RolePermission,
    Setting,
    User,
)

__all__ = [
    "Base",
    "Activity",
    "InstalledPlugin",
    "MigrationRecord",
    "MigrationState",
    "PluginSetting",
    "Role",
    "RolePermission",
    "Setting",
    "User",
]
