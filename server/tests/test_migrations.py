from __future__ import annotations

from sqlalchemy import inspect, select

from featherpanel.core.settings import get_settings
from featherpanel.db import MigrationRecord
from featherpanel.db.session import SessionLocal, engine
from featherpanel.services.migrations import MigrationRunner, MigrationSource


def test_core_migrations_are_recorded_once():
    settings = get_settings()
    runner = MigrationRunner(engine)

    applied = runner.applied_scripts()
    expected = sorted(path.name for path in settings.core_migrations_dir.glob("*.sql"))
    assert applied == expected

    report = runner.run_all(settings.core_migrations_dir, settings.addons_dir)
    assert report.ok
    assert report.executed == 0
    assert report.skipped == len(expected)
    assert all(line.startswith("Skipped") for line in report.lines)


def test_addon_migrations_use_namespaced_keys(tmp_path):
    migrations = tmp_path / "billing" / "Migrations"
    migrations.mkdir(parents=True)
    (migrations / "2025-01-01-create-invoices.sql").write_text(
        "CREATE TABLE billing_invoices (id INTEGER PRIMARY KEY, total INTEGER NOT NULL);\n"
        "INSERT INTO billing_invoices (id, total) VALUES (1, 42);\n",
        encoding="utf-8",
    )

    runner = MigrationRunner(engine)
    report = runner.run_addon("billing", tmp_path / "billing")
    assert report.executed == 1
    assert "billing_invoices" in inspect(engine).get_table_names()

    with SessionLocal() as session:
        scripts = session.scalars(select(MigrationRecord.script)).all()
    assert "addon:billing:2025-01-01-create-invoices.sql" in scripts

    again = runner.run_addon("billing", tmp_path / "billing")
    assert again.executed == 0
    assert again.skipped == 1


def test_failed_migration_is_rolled_back_and_reported(tmp_path):
    (tmp_path / "001-good.sql").write_text("CREATE TABLE good_table (id INTEGER PRIMARY KEY);", encoding="utf-8")
    (tmp_path / "002-bad.sql").write_text(
        "CREATE TABLE half_table (id INTEGER PRIMARY KEY);\nCREATE TABLE broken (;",
        encoding="utf-8",
    )

    report = MigrationRunner(engine).run_source(MigrationSource(directory=tmp_path))
    assert report.executed == 1
    assert report.failed == 1
    assert not report.ok
    assert any(line.startswith("Failed: 002-bad.sql") for line in report.lines)

    tables = inspect(engine).get_table_names()
    assert "good_table" in tables
    assert "half_table" not in tables


def test_missing_addon_migration_directory_is_not_an_error(tmp_path):
    report = MigrationRunner(engine).run_addon("empty", tmp_path)
    assert report.ok
    assert report.executed == 0
    assert report.lines == ["No migrations directory for addon: empty"]


def test_before_execute_sees_each_pending_script(tmp_path):
    (tmp_path / "001-a.sql").write_text("CREATE TABLE hook_a (id INTEGER PRIMARY KEY);", encoding="utf-8")
    (tmp_path / "002-b.sql").write_text("CREATE TABLE hook_b (id INTEGER PRIMARY KEY);", encoding="utf-8")
    seen = []

    MigrationRunner(engine).run_source(
        MigrationSource(directory=tmp_path),
        before_execute=lambda source, filename: seen.append((source.namespace, filename)),
    )
    assert seen == [("core", "001-a.sql"), ("core", "002-b.sql")]
