from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from featherpanel.db import PluginSetting


class PluginSettingsService:
    """Per-addon key/value configuration."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def get_settings(self, identifier: str) -> list[dict[str, Optional[str]]]:
        stmt = (
            select(PluginSetting)
            .where(PluginSetting.identifier == identifier)
            .order_by(PluginSetting.key.asc())
        )
        return [{"key": row.key, "value": row.value} for row in self.db.scalars(stmt).all()]

    def as_mapping(self, identifier: str) -> dict[str, Optional[str]]:
        return {item["key"]: item["value"] for item in self.get_settings(identifier)}

    def get_setting(self, identifier: str, key: str) -> Optional[str]:
        record = self._find(identifier, key)
        return record.value if record else None

    def set_setting(self, identifier: str, key: str, value: Optional[str]) -> PluginSetting:
        key = (key or "").strip()
        if not key:
            raise ValueError("setting_key_required")
        record = self._find(identifier, key)
        if record is None:
            record = PluginSetting(identifier=identifier, key=key, value=value)
            self.db.add(record)
        else:
            record.value = value
        self.db.commit()
        return record

    def delete_setting(self, identifier: str, key: str) -> bool:
        record = self._find(identifier, key)
        if record is None:
            return False
        self.db.delete(record)
        self.db.commit()
        return True

    def _find(self, identifier: str, key: str) -> Optional[PluginSetting]:
        stmt = select(PluginSetting).where(
            PluginSetting.identifier == identifier,
            PluginSetting.key == key,
        )
        return self.db.scalar(stmt)


__all__ = ["PluginSettingsService"]
