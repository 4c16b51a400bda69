from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from featherpanel.core.crypto import decrypt_secret, encrypt_secret
from featherpanel.db import models

APP_DEVELOPER_MODE = "app_developer_mode"
FEATHERCLOUD_PUBLIC_KEY = "feathercloud_public_key"
FEATHERCLOUD_PRIVATE_KEY = "feathercloud_private_key"


class PanelSettingsService:
    """Encrypted key/value panel configuration stored in ``featherpanel_settings``."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        record = self._find(name)
        if record is None or record.value is None:
            return default
        value = decrypt_secret(record.value)
        return default if value is None else value

    def set(self, name: str, value: Optional[str], *, commit: bool = True) -> models.Setting:
        key = (name or "").strip()
        if not key:
            raise ValueError("setting_name_required")
        record = self._find(key)
        encrypted = encrypt_secret(value) if value is not None else None
        if record is None:
            record = models.Setting(name=key, value=encrypted)
            self.db.add(record)
        else:
            record.value = encrypted
        if commit:
            self.db.commit()
        return record

    def delete(self, name: str) -> bool:
        record = self._find(name)
        if record is None:
            return False
        self.db.delete(record)
        self.db.commit()
        return True

    def is_developer_mode(self) -> bool:
        return (self.get(APP_DEVELOPER_MODE, "false") or "false").lower() == "true"

    def set_developer_mode(self, enabled: bool) -> None:
        self.set(APP_DEVELOPER_MODE, "true" if enabled else "false")

    def cloud_credentials(self) -> tuple[str, str]:
        return (
            self.get(FEATHERCLOUD_PUBLIC_KEY, "") or "",
            self.get(FEATHERCLOUD_PRIVATE_KEY, "") or "",
        )

    def _find(self, name: str) -> Optional[models.Setting]:
        return self.db.scalar(select(models.Setting).where(models.Setting.name == name))


__all__ = [
    "PanelSettingsService",
    "APP_DEVELOPER_MODE",
    "FEATHERCLOUD_PUBLIC_KEY",
    "FEATHERCLOUD_PRIVATE_KEY",
]
