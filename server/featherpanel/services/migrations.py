"""SQL migration runner backed by the ``featherpanel_migrations`` ledger.

Core migrations live in ``{storage_root}/migrations`` and are recorded under
their bare filename. Addon migrations live in ``{addon}/Migrations`` and are
recorded as ``addon:{identifier}:{filename}``. Files run in lexical order and a
script key is applied at most once, so re-running a directory is a no-op for
everything already recorded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional

from sqlalchemy import func, insert, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from featherpanel.db.models import MigrationRecord, MigrationState
from featherpanel.services.sql_script import split_statements

logger = logging.getLogger(__name__)

ADDON_MIGRATIONS_DIR = "Migrations"


@dataclass(frozen=True)
class MigrationSource:
    directory: Path
    addon: Optional[str] = None

    @property
    def namespace(self) -> str:
        return f"addon:{self.addon}" if self.addon else "core"

    def script_key(self, filename: str) -> str:
        if self.addon:
            return f"addon:{self.addon}:{filename}"
        return filename

    def files(self) -> list[Path]:
        if not self.directory.is_dir():
            return []
        return sorted(
            (path for path in self.directory.iterdir() if path.is_file() and path.suffix == ".sql"),
            key=lambda path: path.name,
        )


@dataclass
class MigrationReport:
    executed: int = 0
    skipped: int = 0
    failed: int = 0
    lines: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0

    @property
    def output(self) -> str:
        return "\n".join(self.lines)

    def merge(self, other: "MigrationReport") -> None:
        self.executed += other.executed
        self.skipped += other.skipped
        self.failed += other.failed
        self.lines.extend(other.lines)

    def as_dict(self) -> dict[str, object]:
        return {
            "executed": self.executed,
            "skipped": self.skipped,
            "failed": self.failed,
            "lines": list(self.lines),
        }


BeforeExecute = Callable[[MigrationSource, str], None]


class MigrationRunner:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def ensure_ledger(self) -> None:
        with self.engine.begin() as conn:
            MigrationRecord.__table__.create(bind=conn, checkfirst=True)

    def applied_scripts(self) -> list[str]:
        self.ensure_ledger()
        with self.engine.connect() as conn:
            stmt = (
                select(MigrationRecord.script)
                .where(MigrationRecord.migrated == MigrationState.MIGRATED.value)
                .order_by(MigrationRecord.id.asc())
            )
            return list(conn.scalars(stmt).all())

    def run_source(self, source: MigrationSource, *, before_execute: Optional[BeforeExecute] = None) -> MigrationReport:
        self.ensure_ledger()
        report = MigrationReport()
        for path in source.files():
            key = source.script_key(path.name)
            if self._is_applied(key):
                report.skipped += 1
                report.lines.append(f"Skipped (already executed): {path.name}")
                continue
            try:
                if before_execute is not None:
                    before_execute(source, path.name)
                self._apply(path, key)
            except (SQLAlchemyError, OSError, ValueError) as exc:
                logger.exception("Migration %s failed", key)
                report.failed += 1
                report.lines.append(f"Failed: {path.name} -> {exc}")
                continue
            logger.info("Applied migration %s", key)
            report.executed += 1
            report.lines.append(f"Executed: {path.name}")
        return report

    def run_addon(self, identifier: str, plugin_dir: Path) -> MigrationReport:
        directory = Path(plugin_dir) / ADDON_MIGRATIONS_DIR
        if not directory.is_dir():
            report = MigrationReport()
            report.lines.append(f"No migrations directory for addon: {identifier}")
            return report
        return self.run_source(MigrationSource(directory=directory, addon=identifier))

    def run_all(
        self,
        core_dir: Path,
        addons_root: Optional[Path] = None,
        *,
        before_execute: Optional[BeforeExecute] = None,
    ) -> MigrationReport:
        """Apply core migrations, then each addon's, in one ordered pass."""

        report = MigrationReport()
        for source in self.discover_sources(core_dir, addons_root):
            report.merge(self.run_source(source, before_execute=before_execute))
        return report

    @staticmethod
    def discover_sources(core_dir: Path, addons_root: Optional[Path] = None) -> Iterable[MigrationSource]:
        yield MigrationSource(directory=Path(core_dir))
        if addons_root is None or not Path(addons_root).is_dir():
            return
        for addon_dir in sorted(Path(addons_root).iterdir(), key=lambda path: path.name):
            migrations = addon_dir / ADDON_MIGRATIONS_DIR
            if addon_dir.is_dir() and migrations.is_dir():
                yield MigrationSource(directory=migrations, addon=addon_dir.name)

    def _is_applied(self, key: str) -> bool:
        with self.engine.connect() as conn:
            stmt = (
                select(func.count())
                .select_from(MigrationRecord)
                .where(MigrationRecord.script == key)
                .where(MigrationRecord.migrated == MigrationState.MIGRATED.value)
            )
            return bool(conn.scalar(stmt))

    def _apply(self, path: Path, key: str) -> None:
        sql = path.read_text(encoding="utf-8")
        with self.engine.begin() as conn:
            for statement in split_statements(sql):
                conn.exec_driver_sql(statement)
            conn.execute(
                insert(MigrationRecord).values(script=key, migrated=MigrationState.MIGRATED.value)
            )


__all__ = [
    "MigrationRunner",
    "MigrationReport",
    "MigrationSource",
    "ADDON_MIGRATIONS_DIR",
]
