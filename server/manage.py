#!/usr/bin/env python
from __future__ import annotations

import argparse
from pathlib import Path

from featherpanel.api.deps import get_hook_registry
from featherpanel.core.errors import PanelError
from featherpanel.core.settings import get_settings
from featherpanel.db.session import SessionLocal, engine
from featherpanel.services.accounts import ADMIN_ROLE_ID, UserService
from featherpanel.services.activity_service import ActivityActor
from featherpanel.services.addons import AddonInstaller, CloudClient, PackageRegistryClient
from featherpanel.services.events import get_event_bus
from featherpanel.services.migrations import MigrationRunner
from featherpanel.services.panel_settings import PanelSettingsService
from featherpanel.services.snapshots import SnapshotManager

settings = get_settings()

CLI_ACTOR = ActivityActor(username="cli")


def _snapshot_manager(session) -> SnapshotManager:
    return SnapshotManager(
        session,
        settings=settings,
        engine=engine,
        migrations=MigrationRunner(engine),
        events=get_event_bus(),
        actor=CLI_ACTOR,
    )


def _installer(session) -> AddonInstaller:
    def _cloud() -> CloudClient:
        public_key, private_key = PanelSettingsService(session).cloud_credentials()
        return CloudClient(
            public_key,
            private_key,
            base_url=settings.cloud_base_url,
            timeout=settings.premium_download_timeout_seconds,
        )

    return AddonInstaller(
        session,
        settings=settings,
        registry=PackageRegistryClient(settings.registry_base_url, timeout=settings.registry_timeout_seconds),
        cloud_factory=_cloud,
        migrations=MigrationRunner(engine),
        hooks=get_hook_registry(),
        events=get_event_bus(),
        actor=CLI_ACTOR,
    )


def migrate() -> None:
    report = MigrationRunner(engine).run_all(settings.core_migrations_dir, settings.addons_dir)
    for line in report.lines:
        print(line)
    print(f"Executed {report.executed}, skipped {report.skipped}, failed {report.failed}")
    if not report.ok:
        raise SystemExit(1)


def create_admin(username: str, email: str, password: str) -> None:
    with SessionLocal() as session:
        try:
            user = UserService(session).create_user(username, email, password, role_id=ADMIN_ROLE_ID)
        except ValueError as exc:
            raise SystemExit(f"Failed to create admin: {exc}") from exc
        print(f"Admin {user.username} created (uuid={user.uuid})")


def list_snapshots() -> None:
    with SessionLocal() as session:
        snapshots = _snapshot_manager(session).list_snapshots()
    if not snapshots:
        print("No snapshots found.")
        return
    header = f"{'FILENAME':<40} {'SIZE':<12} {'CREATED'}"
    print(header)
    print("-" * len(header))
    for item in snapshots:
        print(f"{item['filename']:<40} {item['size_formatted']:<12} {item['created_at']}")


def create_snapshot() -> None:
    with SessionLocal() as session:
        try:
            created = _snapshot_manager(session).write_snapshot()
        except PanelError as exc:
            raise SystemExit(f"Failed to create snapshot: {exc}") from exc
    print(f"Snapshot {created['filename']} written ({created['size_formatted']})")


def restore_snapshot(filename: str, assume_yes: bool) -> None:
    if not assume_yes:
        answer = input(f"Restore {filename}? All non-excluded tables will be replaced [y/N]: ")
        if answer.strip().lower() not in {"y", "yes"}:
            print("Aborted.")
            return
    with SessionLocal() as session:
        try:
            message = _snapshot_manager(session).restore_file(filename)
        except PanelError as exc:
            raise SystemExit(f"Failed to restore snapshot: {exc}") from exc
    print(message)


def delete_snapshot(filename: str) -> None:
    with SessionLocal() as session:
        try:
            _snapshot_manager(session).remove(filename)
        except PanelError as exc:
            raise SystemExit(f"Failed to delete snapshot: {exc}") from exc
    print(f"Snapshot {filename} deleted.")


def list_addons() -> None:
    with SessionLocal() as session:
        installer = _installer(session)
        plugins = installer.list_local()
        counts = installer.tracking.counts()
    if not plugins:
        print("No addons installed.")
        return
    header = f"{'IDENTIFIER':<24} {'VERSION':<12} {'HOOKS':<6} {'UNMET DEPENDENCIES'}"
    print(header)
    print("-" * len(header))
    for plugin in plugins:
        unmet = ", ".join(plugin["unmet_dependencies"]) or "--"
        hooks = "yes" if plugin["has_hooks"] else "no"
        print(f"{plugin['identifier']:<24} {plugin['version'] or '--':<12} {hooks:<6} {unmet}")
    print(f"\n{counts['installed']} installed, {counts['uninstalled']} uninstalled")


def install_addon_file(path: Path) -> None:
    try:
        content = path.read_bytes()
    except OSError as exc:
        raise SystemExit(f"Failed to read {path}: {exc}") from exc
    with SessionLocal() as session:
        try:
            result = _installer(session).install_upload(path.name, content)
        except PanelError as exc:
            raise SystemExit(f"Failed to install addon: {exc} ({exc.code})") from exc
    print(f"{result.message}: {result.identifier} {result.new_version or ''}".rstrip())
    for hook in result.hooks:
        print(f"  hook {hook.hook}: {hook.status.value}")


def uninstall_addon(identifier: str) -> None:
    with SessionLocal() as session:
        try:
            _installer(session).uninstall(identifier)
        except PanelError as exc:
            raise SystemExit(f"Failed to uninstall addon: {exc} ({exc.code})") from exc
    print(f"Addon {identifier} uninstalled.")


def main() -> None:
    parser = argparse.ArgumentParser(description="Manage FeatherPanel")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("migrate", help="Apply pending core and addon migrations")

    admin_parser = sub.add_parser("create-admin", help="Create an administrator account")
    admin_parser.add_argument("username")
    admin_parser.add_argument("email")
    admin_parser.add_argument("password")

    snapshots_parser = sub.add_parser("snapshots", help="Manage database snapshots")
    snapshots_sub = snapshots_parser.add_subparsers(dest="action")
    snapshots_sub.add_parser("list", help="List stored snapshots")
    snapshots_sub.add_parser("create", help="Write a new snapshot")
    restore_parser = snapshots_sub.add_parser("restore", help="Restore a stored snapshot")
    restore_parser.add_argument("filename")
    restore_parser.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    delete_parser = snapshots_sub.add_parser("delete", help="Delete a stored snapshot")
    delete_parser.add_argument("filename")

    addons_parser = sub.add_parser("addons", help="Manage installed addons")
    addons_sub = addons_parser.add_subparsers(dest="action")
    addons_sub.add_parser("list", help="List installed addons")
    install_parser = addons_sub.add_parser("install-file", help="Install an addon from a local .fpa file")
    install_parser.add_argument("path", type=Path)
    uninstall_parser = addons_sub.add_parser("uninstall", help="Uninstall an addon")
    uninstall_parser.add_argument("identifier")

    args = parser.parse_args()

    if args.command == "migrate":
        migrate()
    elif args.command == "create-admin":
        create_admin(args.username, args.email, args.password)
    elif args.command == "snapshots" and args.action == "list":
        list_snapshots()
    elif args.command == "snapshots" and args.action == "create":
        create_snapshot()
    elif args.command == "snapshots" and args.action == "restore":
        restore_snapshot(args.filename, args.yes)
    elif args.command == "snapshots" and args.action == "delete":
        delete_snapshot(args.filename)
    elif args.command == "snapshots":
        snapshots_parser.print_help()
    elif args.command == "addons" and args.action == "list":
        list_addons()
    elif args.command == "addons" and args.action == "install-file":
        install_addon_file(args.path)
    elif args.command == "addons" and args.action == "uninstall":
        uninstall_addon(args.identifier)
    elif args.command == "addons":
        addons_parser.print_help()
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
