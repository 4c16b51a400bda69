from __future__ import annotations

import os

import pytest
from sqlalchemy import inspect, select

from featherpanel.core.errors import PanelError
from featherpanel.core.settings import get_settings
from featherpanel.db import Activity, PluginSetting
from featherpanel.db.session import SessionLocal, engine
from featherpanel.services.accounts import ADMIN_ROLE_ID, UserService
from featherpanel.services.activity_service import ActivityActor, ActivityService
from featherpanel.services.addons import PluginSettingsService
from featherpanel.services.events import DatabaseRestored, EventBus
from featherpanel.services.migrations import MigrationRunner
from featherpanel.services.panel_settings import PanelSettingsService
from featherpanel.services.snapshots import (
    EXCLUDED_TABLES,
    FRESH_RESTORE_MESSAGE,
    RESTORE_MESSAGE,
    SnapshotManager,
    format_bytes,
)
from featherpanel.services.snapshots.dumper import sql_literal
from featherpanel.services.sql_script import validate_sql_content

from conftest import ADMIN_PASSWORD, ADMIN_USERNAME


def _manager(session, events=None) -> SnapshotManager:
    return SnapshotManager(
        session,
        settings=get_settings(),
        engine=engine,
        migrations=MigrationRunner(engine),
        events=events or EventBus(),
        actor=ActivityActor(username=ADMIN_USERNAME),
    )


def _admin(session):
    return UserService(session).find_by_username(ADMIN_USERNAME)


def test_format_bytes():
    assert format_bytes(100) == "100 B"
    assert format_bytes(1024) == "1024 B"
    assert format_bytes(1536) == "1.5 KB"
    assert format_bytes(3 * 1024 * 1024) == "3 MB"


def test_sql_literal_escaping():
    assert sql_literal(None) == "NULL"
    assert sql_literal(True) == "1"
    assert sql_literal(42) == "42"
    assert sql_literal("it's") == "'it''s'"
    assert sql_literal("ends with \\") == "'ends with \\'"
    assert sql_literal(b"\x00\xff") == "X'00ff'"


def test_operations_require_developer_mode():
    with SessionLocal() as session:
        with pytest.raises(PanelError) as excinfo:
            _manager(session).index()
    assert excinfo.value.code == "DEVELOPER_MODE_REQUIRED"
    assert excinfo.value.status_code == 403


def test_operations_require_debug_flag(developer_mode):
    get_settings().debug = False
    with SessionLocal() as session:
        with pytest.raises(PanelError) as excinfo:
            _manager(session).create(_admin(session), ADMIN_PASSWORD)
    assert excinfo.value.code == "DEBUG_MODE_REQUIRED"


@pytest.mark.parametrize("password, code", [(None, "PASSWORD_REQUIRED"), ("wrong-password", "INVALID_PASSWORD")])
def test_password_gate_blocks_create(developer_mode, password, code):
    with SessionLocal() as session:
        with pytest.raises(PanelError) as excinfo:
            _manager(session).create(_admin(session), password)
    assert excinfo.value.code == code
    assert not get_settings().backups_dir.exists() or not any(get_settings().backups_dir.iterdir())


def test_created_snapshot_is_valid_sql_without_excluded_tables(developer_mode):
    with SessionLocal() as session:
        ActivityService(session).record(name="before_snapshot", context="noise")
        manager = _manager(session)
        created = manager.create(_admin(session), ADMIN_PASSWORD)

        assert created["filename"].startswith("snapshot_")
        assert created["filename"].endswith(".fpb")
        listing = manager.index()

    path = get_settings().backups_dir / created["filename"]
    content = path.read_text(encoding="utf-8")
    validate_sql_content(content)
    assert "CREATE TABLE" in content
    assert "featherpanel_users" in content
    for table in EXCLUDED_TABLES:
        assert table not in content
    assert [item["filename"] for item in listing] == [created["filename"]]
    assert listing[0]["size"] == path.stat().st_size
    assert listing[0]["created_at"].endswith("Z")


def test_index_is_newest_first(developer_mode):
    backups = get_settings().backups_dir
    backups.mkdir(parents=True)
    (backups / "snapshot_old.fpb").write_text("CREATE TABLE x (id INTEGER);")
    (backups / "snapshot_new.fpb").write_text("CREATE TABLE y (id INTEGER);")
    (backups / "notes.txt").write_text("ignored")
    os.utime(backups / "snapshot_old.fpb", (1_600_000_000, 1_600_000_000))
    os.utime(backups / "snapshot_new.fpb", (1_700_000_000, 1_700_000_000))

    with SessionLocal() as session:
        listing = _manager(session).index()
    assert [item["filename"] for item in listing] == ["snapshot_new.fpb", "snapshot_old.fpb"]


def test_restore_replaces_data_and_keeps_excluded_tables(developer_mode):
    events = EventBus()
    restored = []
    events.on(DatabaseRestored, restored.append)

    with SessionLocal() as session:
        manager = _manager(session, events)
        created = manager.create(_admin(session), ADMIN_PASSWORD)

    with SessionLocal() as session:
        PluginSettingsService(session).set_setting("billing", "api_key", "after-snapshot")
        ActivityService(session).record(name="kept_activity", context="written after the snapshot")

    with SessionLocal() as session:
        message = _manager(session, events).restore(
            _admin(session),
            created["filename"],
            confirm=True,
            password=ADMIN_PASSWORD,
        )
    assert message == RESTORE_MESSAGE

    with SessionLocal() as session:
        assert session.scalars(select(PluginSetting)).all() == []
        names = session.scalars(select(Activity.name)).all()
        assert "kept_activity" in names
        assert "database_snapshot_restored" in names
        assert _admin(session) is not None
        assert PanelSettingsService(session).is_developer_mode()

    assert [(event.source, event.fresh) for event in restored] == [(created["filename"], False)]


def test_restore_round_trips_quotes_backslashes_and_newlines(developer_mode):
    value = "a'; DROP TABLE x; -- b /* c */\n ends with \\"
    with SessionLocal() as session:
        PluginSettingsService(session).set_setting("billing", "api_key", value)
        created = _manager(session).create(_admin(session), ADMIN_PASSWORD)

    with SessionLocal() as session:
        PluginSettingsService(session).set_setting("billing", "api_key", "changed")

    with SessionLocal() as session:
        _manager(session).restore(_admin(session), created["filename"], confirm=True, password=ADMIN_PASSWORD)

    with SessionLocal() as session:
        assert PluginSettingsService(session).get_setting("billing", "api_key") == value


def test_failed_restore_rolls_back(developer_mode):
    bad_dump = (
        "DROP TABLE IF EXISTS featherpanel_users;\n"
        "CREATE TABLE featherpanel_users (id INTEGER PRIMARY KEY);\n"
        "INSERT INTO table_that_does_not_exist VALUES (1);\n"
    )
    with SessionLocal() as session:
        with pytest.raises(PanelError) as excinfo:
            _manager(session).restore_upload(
                _admin(session),
                "broken.fpb",
                bad_dump.encode("utf-8"),
                confirm=True,
                password=ADMIN_PASSWORD,
            )
    assert excinfo.value.code == "RESTORE_FAILED"

    tables = inspect(engine).get_table_names()
    assert "featherpanel_settings" in tables
    assert "featherpanel_roles" in tables
    with SessionLocal() as session:
        assert _admin(session) is not None


def test_restore_requires_confirmation_before_password(developer_mode):
    with SessionLocal() as session:
        with pytest.raises(PanelError) as excinfo:
            _manager(session).restore(_admin(session), "snapshot.fpb", confirm="yes", password=None)
    assert excinfo.value.code == "CONFIRMATION_REQUIRED"


def test_restore_upload_validation(developer_mode):
    with SessionLocal() as session:
        manager = _manager(session)
        user = _admin(session)

        with pytest.raises(PanelError) as missing:
            manager.restore_upload(user, None, None, confirm=True, password=ADMIN_PASSWORD)
        assert missing.value.code == "NO_FILE_PROVIDED"

        with pytest.raises(PanelError) as wrong_type:
            manager.restore_upload(user, "dump.sql", b"CREATE TABLE x (id INTEGER);", confirm=True, password=ADMIN_PASSWORD)
        assert wrong_type.value.code == "INVALID_FILE_TYPE"

        with pytest.raises(PanelError) as html:
            manager.restore_upload(
                user,
                "dump.fpb",
                b"<html><body>Gateway Timeout</body></html>",
                confirm=True,
                password=ADMIN_PASSWORD,
            )
        assert html.value.code == "INVALID_SQL_CONTENT"

    with SessionLocal() as session:
        assert _admin(session) is not None


def test_restore_upload_enforces_size_limit(developer_mode):
    settings = get_settings()
    original = settings.snapshot_upload_limit_bytes
    settings.snapshot_upload_limit_bytes = 10
    try:
        with SessionLocal() as session:
            with pytest.raises(PanelError) as excinfo:
                _manager(session).restore_upload(
                    _admin(session),
                    "dump.fpb",
                    b"CREATE TABLE big (id INTEGER);",
                    confirm=True,
                    password=ADMIN_PASSWORD,
                )
    finally:
        settings.snapshot_upload_limit_bytes = original
    assert excinfo.value.code == "FILE_TOO_LARGE"


def test_path_lookup_and_delete(developer_mode):
    backups = get_settings().backups_dir
    backups.mkdir(parents=True)
    (backups / "notes.txt").write_text("not a snapshot")

    with SessionLocal() as session:
        manager = _manager(session)
        user = _admin(session)
        created = manager.create(user, ADMIN_PASSWORD)

        with pytest.raises(PanelError) as traversal:
            manager.path_for("../featherpanel.db")
        assert traversal.value.code == "NOT_FOUND"

        with pytest.raises(PanelError) as wrong_suffix:
            manager.path_for("notes.txt")
        assert wrong_suffix.value.code == "INVALID_FILE"

        with pytest.raises(PanelError) as bad_password:
            manager.delete(user, created["filename"], "nope")
        assert bad_password.value.code == "INVALID_PASSWORD"
        assert (backups / created["filename"]).exists()

        manager.delete(user, created["filename"], ADMIN_PASSWORD)
        assert not (backups / created["filename"]).exists()
        assert "database_snapshot_deleted" in [record.name for record in ActivityService(session).list_recent()]


def test_fresh_restore_recreates_caller_with_same_identity(developer_mode):
    with SessionLocal() as session:
        PluginSettingsService(session).set_setting("billing", "api_key", "gone-after-reset")
        before = _admin(session)
        identity = (before.uuid, before.remember_token, before.password, before.email)

    with SessionLocal() as session:
        outcome = _manager(session).fresh_restore(_admin(session), confirm=True, password=ADMIN_PASSWORD)

    assert outcome["message"] == FRESH_RESTORE_MESSAGE
    core_count = len(list(get_settings().core_migrations_dir.glob("*.sql")))
    assert outcome["migrations"]["executed"] == core_count
    assert outcome["migrations"]["failed"] == 0

    settings = get_settings()
    assert settings.encryption_key
    assert f"FEATHERPANEL_ENCRYPTION_KEY={settings.encryption_key}" in settings.env_file.read_text()

    with SessionLocal() as session:
        user = _admin(session)
        assert (user.uuid, user.remember_token, user.password, user.email) == identity
        assert user.role_id == ADMIN_ROLE_ID
        assert UserService(session).verify_password(user, ADMIN_PASSWORD)
        assert PanelSettingsService(session).is_developer_mode()
        assert session.scalars(select(PluginSetting)).all() == []
        assert "database_fresh_restore" in session.scalars(select(Activity.name)).all()


def test_fresh_restore_requires_confirmation_and_password(developer_mode):
    with SessionLocal() as session:
        manager = _manager(session)
        with pytest.raises(PanelError) as unconfirmed:
            manager.fresh_restore(_admin(session), confirm=False, password=ADMIN_PASSWORD)
        assert unconfirmed.value.code == "CONFIRMATION_REQUIRED"
        assert unconfirmed.value.message == "Fresh restore must be confirmed"

        with pytest.raises(PanelError) as wrong:
            manager.fresh_restore(_admin(session), confirm=True, password="nope")
        assert wrong.value.code == "INVALID_PASSWORD"

    with SessionLocal() as session:
        assert _admin(session) is not None
