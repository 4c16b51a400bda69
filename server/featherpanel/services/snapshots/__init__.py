from .dumper import EXCLUDED_TABLES, dump_database
from .guard import SnapshotGuard
from .manager import FRESH_RESTORE_MESSAGE, RESTORE_MESSAGE, SnapshotManager, format_bytes

__all__ = [
    "EXCLUDED_TABLES",
    "FRESH_RESTORE_MESSAGE",
    "RESTORE_MESSAGE",
    "SnapshotGuard",
    "SnapshotManager",
    "dump_database",
    "format_bytes",
]
