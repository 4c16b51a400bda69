from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from featherpanel.db import models

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActivityActor:
    """Represents the account that triggered an activity record."""

    user_uuid: Optional[str] = None
    username: Optional[str] = None
    ip_address: Optional[str] = None


class ActivityService:
    """Writes the admin activity trail."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def log_event(
        self,
        *,
        name: str,
        context: Optional[str] = None,
        actor: Optional[ActivityActor] = None,
    ) -> models.Activity:
        actor = actor or ActivityActor()
        record = models.Activity(
            user_uuid=self._normalize_text(actor.user_uuid),
            name=self._normalize_key(name) or "unknown",
            context=self._normalize_text(context),
            ip_address=self._normalize_text(actor.ip_address),
        )
        self.db.add(record)
        return record

    def record(
        self,
        *,
        name: str,
        context: Optional[str] = None,
        actor: Optional[ActivityActor] = None,
    ) -> Optional[models.Activity]:
        """Log and commit an activity; failures are logged and never raised."""

        try:
            record = self.log_event(name=name, context=context, actor=actor)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to record activity %s", name)
            return None
        return record

    def list_recent(self, *, name: Optional[str] = None, limit: int = 50) -> list[models.Activity]:
        limit = max(1, min(limit, 200))
        stmt = select(models.Activity)
        if name:
            stmt = stmt.where(models.Activity.name == self._normalize_key(name))
        stmt = stmt.order_by(models.Activity.id.desc()).limit(limit)
        return list(self.db.scalars(stmt).all())

    @staticmethod
    def _normalize_key(value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        normalized = value.strip().lower()
        return normalized or None

    @staticmethod
    def _normalize_text(value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


__all__ = ["ActivityService", "ActivityActor"]
