from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from featherpanel.core.crypto import generate_encryption_key, reset_cipher
from featherpanel.core.errors import PanelError
from featherpanel.core.settings import Settings, update_env_value
from featherpanel.db import User
from featherpanel.services.accounts import ADMIN_ROLE_ID, PreservedIdentity, UserService
from featherpanel.services.activity_service import ActivityActor, ActivityService
from featherpanel.services.events import DatabaseRestored, EventBus
from featherpanel.services.migrations import MigrationRunner, MigrationSource
from featherpanel.services.panel_settings import PanelSettingsService
from featherpanel.services.snapshots.dumper import EXCLUDED_TABLES, dump_database, list_tables
from featherpanel.services.snapshots.guard import SnapshotGuard
from featherpanel.services.sql_script import split_statements, validate_sql_content
from featherpanel.services.uploads import UploadSource, UploadTooLarge, read_limited

logger = logging.getLogger(__name__)

SNAPSHOT_SUFFIX = ".fpb"
SETTINGS_MIGRATION = "2024-11-15-22.17-create-settings.sql"
ENCRYPTION_KEY_ENV = "FEATHERPANEL_ENCRYPTION_KEY"

RESTORE_MESSAGE = (
    "Database restored successfully. Please note: This only protects database integrity and does not "
    "protect from deleted servers or other actions performed under Wings. Restoring from this backup "
    "might corrupt your database and unsync your panel with Wings!"
)
FRESH_RESTORE_MESSAGE = (
    "Database has been wiped clean, migrations have been run, and your user account has been recreated "
    "with the same session token. You should remain logged in. Note: Wings daemon, server files, and "
    "server data remain completely untouched and safe - only the database was affected."
)

_BYTE_UNITS = ("B", "KB", "MB", "GB", "TB")

_snapshot_lock = threading.RLock()


def format_bytes(size: int, precision: int = 2) -> str:
    value = float(size)
    unit = 0
    while value > 1024 and unit < len(_BYTE_UNITS) - 1:
        value /= 1024
        unit += 1
    text = f"{round(value, precision):.{precision}f}".rstrip("0").rstrip(".")
    return f"{text} {_BYTE_UNITS[unit]}"


class SnapshotManager:
    """Create, list, download, restore and delete database snapshots.

    Every operation except listing requires the caller's password. All of them
    require developer mode and the debug flag, and only one runs at a time
    per process.
    """

    def __init__(
        self,
        db: Session,
        *,
        settings: Settings,
        engine: Engine,
        migrations: MigrationRunner,
        events: EventBus,
        actor: Optional[ActivityActor] = None,
    ) -> None:
        self.db = db
        self.settings = settings
        self.engine = engine
        self.migrations = migrations
        self.events = events
        self.actor = actor or ActivityActor()
        self.guard = SnapshotGuard(db, settings)

    @property
    def backups_dir(self) -> Path:
        return self.settings.backups_dir

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        with _snapshot_lock:
            yield

    # ------------------------------------------------------------------
    # Listing and files
    # ------------------------------------------------------------------
    def index(self) -> list[dict[str, Any]]:
        self.guard.ensure_enabled()
        return self.list_snapshots()

    def list_snapshots(self) -> list[dict[str, Any]]:
        if not self.backups_dir.is_dir():
            return []
        snapshots = []
        for path in self.backups_dir.glob(f"*{SNAPSHOT_SUFFIX}"):
            if not path.is_file():
                continue
            stat = path.stat()
            snapshots.append(
                {
                    "filename": path.name,
                    "size": stat.st_size,
                    "size_formatted": format_bytes(stat.st_size),
                    "created_at": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).strftime(
                        "%Y-%m-%dT%H:%M:%SZ"
                    ),
                }
            )
        snapshots.sort(key=lambda item: (item["created_at"], item["filename"]), reverse=True)
        return snapshots

    def path_for(self, filename: str) -> Path:
        """Resolve a stored snapshot by its basename."""

        name = Path(filename or "").name
        path = self.backups_dir / name
        if not name or not path.is_file():
            raise PanelError("Snapshot not found", "NOT_FOUND", 404)
        if path.suffix != SNAPSHOT_SUFFIX:
            raise PanelError("Invalid snapshot file", "INVALID_FILE", 400)
        return path

    def create(self, user: Optional[User], password: Optional[str]) -> dict[str, Any]:
        self.guard.ensure_enabled()
        self.guard.verify_password(user, password)
        return self.write_snapshot()

    def write_snapshot(self) -> dict[str, Any]:
        """Dump the database into a new file under the backups directory."""

        with self._exclusive():
            self.backups_dir.mkdir(parents=True, exist_ok=True)
            path = self._next_snapshot_path()
            try:
                with path.open("w", encoding="utf-8", newline="\n") as handle:
                    dump_database(self.engine, handle, exclude=EXCLUDED_TABLES)
            except (SQLAlchemyError, OSError) as exc:
                logger.exception("Snapshot %s failed", path.name)
                path.unlink(missing_ok=True)
                raise PanelError(f"Failed to create snapshot: {exc}", "SNAPSHOT_CREATE_FAILED", 500) from exc

        size = path.stat().st_size
        logger.info("Snapshot created: %s (%s)", path.name, format_bytes(size))
        self._record("database_snapshot_created", f"Created database snapshot: {path.name}")
        return {"filename": path.name, "size": size, "size_formatted": format_bytes(size)}

    def download(self, user: Optional[User], filename: str, password: Optional[str]) -> Path:
        self.guard.ensure_enabled()
        self.guard.verify_password(user, password)
        path = self.path_for(filename)
        try:
            with path.open("rb"):
                pass
        except OSError as exc:
            raise PanelError("Failed to read snapshot file", "READ_ERROR", 500) from exc
        self._record("database_snapshot_downloaded", f"Downloaded database snapshot: {path.name}")
        return path

    def delete(self, user: Optional[User], filename: str, password: Optional[str]) -> None:
        self.guard.ensure_enabled()
        self.guard.verify_password(user, password)
        self.remove(filename)

    def remove(self, filename: str) -> None:
        with self._exclusive():
            path = self.path_for(filename)
            try:
                path.unlink()
            except OSError as exc:
                logger.error("Failed to delete snapshot %s: %s", path.name, exc)
                raise PanelError("Failed to delete snapshot file", "DELETE_ERROR", 500) from exc
        logger.warning("Snapshot deleted: %s", path.name)
        self._record("database_snapshot_deleted", f"Deleted database snapshot: {path.name}")

    # ------------------------------------------------------------------
    # Restores
    # ------------------------------------------------------------------
    def restore(self, user: Optional[User], filename: str, *, confirm: Any, password: Optional[str]) -> str:
        self.guard.ensure_enabled()
        if confirm is not True:
            raise PanelError("Restoration must be confirmed", "CONFIRMATION_REQUIRED", 400)
        self.guard.verify_password(user, password)
        return self.restore_file(filename)

    def restore_file(self, filename: str) -> str:
        path = self.path_for(filename)
        try:
            sql = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise PanelError("Failed to read snapshot file", "READ_ERROR", 500) from exc

        self.perform_restore(sql)
        self._after_restore(path.name, fresh=False, context=f"Restored database from snapshot: {path.name}")
        return RESTORE_MESSAGE

    def restore_upload(
        self,
        user: Optional[User],
        filename: Optional[str],
        content: Optional[UploadSource],
        *,
        confirm: Any,
        password: Optional[str],
    ) -> str:
        self.guard.ensure_enabled()
        if confirm is not True:
            raise PanelError("Restoration must be confirmed", "CONFIRMATION_REQUIRED", 400)
        self.guard.verify_password(user, password)

        if not filename or content is None:
            raise PanelError("No backup file provided", "NO_FILE_PROVIDED", 400)
        if not filename.lower().endswith(SNAPSHOT_SUFFIX):
            raise PanelError(
                "Invalid file type. Only .fpb (FeatherPanel Backup) files are allowed",
                "INVALID_FILE_TYPE",
                400,
            )
        try:
            data = read_limited(content, self.settings.snapshot_upload_limit_bytes)
        except UploadTooLarge as exc:
            raise PanelError("File size too large. Maximum size is 1GB", "FILE_TOO_LARGE", 400) from exc
        try:
            sql = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise PanelError("Failed to read uploaded file", "READ_ERROR", 500) from exc

        self.perform_restore(sql)
        name = Path(filename).name
        self._after_restore(name, fresh=False, context=f"Restored database from uploaded file: {name}")
        return RESTORE_MESSAGE

    def perform_restore(self, sql: str) -> None:
        """Replace every non-excluded table with the contents of ``sql``.

        The drop and replay run in one transaction with foreign key checks off;
        any failure rolls back and surfaces as ``RESTORE_FAILED``.
        """

        validate_sql_content(sql)
        with self._exclusive():
            try:
                self._rebuild(keep=EXCLUDED_TABLES, sql=sql)
            except SQLAlchemyError as exc:
                logger.exception("Database restore failed and was rolled back")
                raise PanelError(f"Failed to restore database: {exc}", "RESTORE_FAILED", 500) from exc
        logger.warning("Database restored from snapshot")

    def fresh_restore(self, user: Optional[User], *, confirm: Any, password: Optional[str]) -> dict[str, Any]:
        """Drop every table, re-run all migrations and recreate the calling admin.

        Only the drop is transactional. If a migration fails afterwards the
        schema is left partially rebuilt; ``manage.py migrate`` resumes it.
        """

        self.guard.ensure_enabled()
        if confirm is not True:
            raise PanelError("Fresh restore must be confirmed", "CONFIRMATION_REQUIRED", 400)
        account = self.guard.verify_password(user, password)
        identity = PreservedIdentity.from_user(account)

        with self._exclusive():
            try:
                self._rebuild(keep=())
            except SQLAlchemyError as exc:
                logger.exception("Fresh restore failed while dropping tables")
                raise PanelError(f"Failed to perform fresh restore: {exc}", "FRESH_RESTORE_FAILED", 500) from exc

            report = self.migrations.run_all(
                self.settings.core_migrations_dir,
                self.settings.addons_dir,
                before_execute=self._rotate_encryption_key,
            )
            if not report.ok:
                logger.error("Fresh restore migrations reported %d failures\n%s", report.failed, report.output)

            try:
                UserService(self.db).recreate(identity, role_id=ADMIN_ROLE_ID)
            except (ValueError, SQLAlchemyError) as exc:
                self.db.rollback()
                logger.exception("Failed to recreate %s after fresh restore", identity.username)
                raise PanelError(
                    "Failed to recreate user after fresh restore",
                    "USER_RECREATE_FAILED",
                    500,
                    data={"migrations": report.as_dict()},
                ) from exc
            try:
                PanelSettingsService(self.db).set_developer_mode(True)
            except SQLAlchemyError as exc:
                self.db.rollback()
                raise PanelError(
                    f"Failed to perform fresh restore: {exc}",
                    "FRESH_RESTORE_FAILED",
                    500,
                    data={"migrations": report.as_dict()},
                ) from exc

        self._after_restore("fresh", fresh=True, context="Reset database to a fresh state")
        return {"message": FRESH_RESTORE_MESSAGE, "migrations": report.as_dict()}

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _rebuild(self, *, keep: Iterable[str], sql: Optional[str] = None) -> None:
        keep = set(keep)
        # Release the request session so SQLite can take the write lock.
        self.db.close()
        with self.engine.connect() as conn:
            quote = conn.dialect.identifier_preparer.quote
            with _foreign_keys_disabled(conn), conn.begin():
                for table in list_tables(conn):
                    if table in keep:
                        continue
                    conn.exec_driver_sql(f"DROP TABLE IF EXISTS {quote(table)}")
                if sql is not None:
                    for statement in split_statements(sql):
                        conn.exec_driver_sql(statement)

    def _rotate_encryption_key(self, source: MigrationSource, filename: str) -> None:
        if source.addon is not None or filename != SETTINGS_MIGRATION:
            return
        key = generate_encryption_key()
        update_env_value(self.settings.env_file, ENCRYPTION_KEY_ENV, key)
        self.settings.encryption_key = key
        reset_cipher()
        logger.warning("Generated a new encryption key and stored it in %s", self.settings.env_file)

    def _next_snapshot_path(self) -> Path:
        stamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
        path = self.backups_dir / f"snapshot_{stamp}{SNAPSHOT_SUFFIX}"
        counter = 1
        while path.exists():
            path = self.backups_dir / f"snapshot_{stamp}-{counter}{SNAPSHOT_SUFFIX}"
            counter += 1
        return path

    def _after_restore(self, source: str, *, fresh: bool, context: str) -> None:
        self._record("database_fresh_restore" if fresh else "database_snapshot_restored", context)
        self.events.emit(DatabaseRestored(source=source, fresh=fresh, user_uuid=self.actor.user_uuid))

    def _record(self, name: str, context: str) -> None:
        ActivityService(self.db).record(name=name, context=context, actor=self.actor)


@contextmanager
def _foreign_keys_disabled(conn: Connection) -> Iterator[None]:
    """Turn foreign key enforcement off for the block, then restore it."""

    previous = _raw_execute(conn, "PRAGMA foreign_keys")
    _raw_execute(conn, "PRAGMA foreign_keys = OFF")
    try:
        yield
    finally:
        _raw_execute(conn, "PRAGMA foreign_keys = ON" if previous and previous[0] else "PRAGMA foreign_keys = OFF")


def _raw_execute(conn: Connection, statement: str) -> Optional[tuple]:
    # Raw cursor so the statement is not wrapped in an implicit transaction.
    cursor = conn.connection.cursor()
    try:
        cursor.execute(statement)
        return cursor.fetchone() if cursor.description else None
    finally:
        cursor.close()


__all__ = [
    "SnapshotManager",
    "format_bytes",
    "RESTORE_MESSAGE",
    "FRESH_RESTORE_MESSAGE",
    "SETTINGS_MIGRATION",
    "SNAPSHOT_SUFFIX",
]
