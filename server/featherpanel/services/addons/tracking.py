from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from featherpanel.db import InstalledPlugin
from featherpanel.db.models import utc_now


class InstalledPluginService:
    """Tracking rows for addons, kept after uninstall for restore-after-upgrade."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self, identifier: str) -> Optional[InstalledPlugin]:
        return self.db.scalar(select(InstalledPlugin).where(InstalledPlugin.identifier == identifier))

    def list_installed(self) -> list[InstalledPlugin]:
        stmt = (
            select(InstalledPlugin)
            .where(InstalledPlugin.uninstalled_at.is_(None))
            .order_by(InstalledPlugin.installed_at.desc())
        )
        return list(self.db.scalars(stmt).all())

    def list_previously_installed(self) -> list[InstalledPlugin]:
        stmt = select(InstalledPlugin).order_by(InstalledPlugin.installed_at.desc())
        return list(self.db.scalars(stmt).all())

    def list_uninstalled(self) -> list[InstalledPlugin]:
        stmt = (
            select(InstalledPlugin)
            .where(InstalledPlugin.uninstalled_at.is_not(None))
            .order_by(InstalledPlugin.uninstalled_at.desc())
        )
        return list(self.db.scalars(stmt).all())

    def upsert(
        self,
        identifier: str,
        *,
        name: Optional[str],
        version: Optional[str],
        cloud_id: Optional[int],
    ) -> InstalledPlugin:
        """Create the row, or refresh it and clear the uninstall marker."""

        record = self.get(identifier)
        if record is None:
            record = InstalledPlugin(
                identifier=identifier,
                name=name or identifier,
                version=version,
                cloud_id=cloud_id,
            )
            self.db.add(record)
        else:
            record.name = name or identifier
            record.version = version
            record.cloud_id = cloud_id
            if record.uninstalled_at is not None:
                record.uninstalled_at = None
                record.installed_at = utc_now()
        self.db.commit()
        self.db.refresh(record)
        return record

    def mark_uninstalled(self, identifier: str, *, when: Optional[datetime] = None) -> bool:
        record = self.get(identifier)
        if record is None:
            return False
        record.uninstalled_at = when or utc_now()
        self.db.commit()
        return True

    def counts(self) -> dict[str, int]:
        total = self.db.scalar(select(func.count()).select_from(InstalledPlugin)) or 0
        active = (
            self.db.scalar(
                select(func.count()).select_from(InstalledPlugin).where(InstalledPlugin.uninstalled_at.is_(None))
            )
            or 0
        )
        return {"total": int(total), "installed": int(active), "uninstalled": int(total - active)}

    @staticmethod
    def serialize(record: InstalledPlugin) -> dict[str, Any]:
        return {
            "id": record.id,
            "identifier": record.identifier,
            "name": record.name,
            "version": record.version,
            "cloud_id": record.cloud_id,
            "installed_at": record.installed_at.isoformat() if record.installed_at else None,
            "uninstalled_at": record.uninstalled_at.isoformat() if record.uninstalled_at else None,
            "is_installed": record.is_installed,
        }


__all__ = ["InstalledPluginService"]
