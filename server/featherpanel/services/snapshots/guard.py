from __future__ import annotations

from typing import Optional

from sqlalchemy.orm import Session

from featherpanel.core.errors import PanelError
from featherpanel.core.settings import Settings
from featherpanel.db import User
from featherpanel.services.accounts import UserService
from featherpanel.services.panel_settings import PanelSettingsService


class SnapshotGuard:
    """Mode flags and password re-entry required before touching the database wholesale."""

    def __init__(self, db: Session, settings: Settings) -> None:
        self.db = db
        self.settings = settings

    def ensure_enabled(self) -> None:
        if not PanelSettingsService(self.db).is_developer_mode():
            raise PanelError(
                "Developer mode must be enabled before database snapshots can be managed",
                "DEVELOPER_MODE_REQUIRED",
                403,
            )
        if not self.settings.debug:
            raise PanelError(
                "Debug mode is off. Enable it before running destructive database operations",
                "DEBUG_MODE_REQUIRED",
                403,
            )

    def verify_password(self, user: Optional[User], password: Optional[str]) -> User:
        """Return the freshly loaded account once ``password`` matches its stored hash."""

        if user is None:
            raise PanelError("User not authenticated", "UNAUTHORIZED", 401)
        if not password:
            raise PanelError("Password is required to perform this action", "PASSWORD_REQUIRED", 400)
        users = UserService(self.db)
        record = users.find_by_uuid(user.uuid)
        if record is None:
            raise PanelError("Failed to verify user credentials", "USER_NOT_FOUND", 400)
        if not users.verify_password(record, password):
            raise PanelError("Invalid password", "INVALID_PASSWORD", 401)
        return record


__all__ = ["SnapshotGuard"]
