"""Reading ``.fpa`` addon packages.

Packages are zip archives encrypted with a fixed shared password. The
password only keeps casual users from unpacking and editing addons; it is
not a security boundary and package authenticity is not verified.
"""

from __future__ import annotations

import io
import logging
import shutil
import tempfile
import zipfile
from contextlib import contextmanager
from pathlib import Path, PurePosixPath
from typing import Iterator, Optional, Union

logger = logging.getLogger(__name__)

ADDON_ARCHIVE_PASSWORD = b"featherpanel_development_kit_2025_addon_password"
ADDON_ARCHIVE_SUFFIX = ".fpa"
MANIFEST_NAME = "conf.yml"

ArchiveSource = Union[bytes, Path]


class ArchiveError(RuntimeError):
    """Raised when an addon package cannot be extracted."""


def _open(source: ArchiveSource) -> zipfile.ZipFile:
    if isinstance(source, (bytes, bytearray)):
        return zipfile.ZipFile(io.BytesIO(source))
    return zipfile.ZipFile(source)


def _safe_member_path(name: str) -> Optional[PurePosixPath]:
    path = PurePosixPath(name.replace("\\", "/"))
    if path.is_absolute() or ".." in path.parts:
        return None
    return path


def extract_archive(
    source: ArchiveSource,
    destination: Path,
    *,
    password: Optional[bytes] = ADDON_ARCHIVE_PASSWORD,
) -> list[str]:
    """Extract every member of ``source`` into ``destination``.

    Members that would escape ``destination`` abort the extraction.
    """

    extracted: list[str] = []
    try:
        with _open(source) as archive:
            for info in archive.infolist():
                if _safe_member_path(info.filename) is None:
                    raise ArchiveError(f"unsafe_member:{info.filename}")
                archive.extract(info, path=destination, pwd=password)
                extracted.append(info.filename)
    except ArchiveError:
        raise
    except (zipfile.BadZipFile, RuntimeError, NotImplementedError, OSError, ValueError) as exc:
        raise ArchiveError(str(exc)) from exc
    return extracted


def read_member(
    source: ArchiveSource,
    name: str = MANIFEST_NAME,
    *,
    password: Optional[bytes] = ADDON_ARCHIVE_PASSWORD,
) -> Optional[str]:
    """Return the text of a single member, or None when it is absent or unreadable."""

    try:
        with _open(source) as archive:
            try:
                raw = archive.read(name, pwd=password)
            except KeyError:
                return None
    except (zipfile.BadZipFile, RuntimeError, NotImplementedError, OSError, ValueError):
        logger.warning("Unable to read %s from addon package", name, exc_info=True)
        return None
    return raw.decode("utf-8", errors="replace")


def make_workspace(root: Optional[Path] = None, *, prefix: str = "featherpanel_") -> Path:
    if root is not None:
        root.mkdir(parents=True, exist_ok=True)
    return Path(tempfile.mkdtemp(prefix=prefix, dir=str(root) if root else None))


def discard_workspace(path: Optional[Path]) -> None:
    if path is not None and path.exists():
        shutil.rmtree(path, ignore_errors=True)


@contextmanager
def extracted_package(
    payload: ArchiveSource,
    *,
    root: Optional[Path] = None,
    password: Optional[bytes] = ADDON_ARCHIVE_PASSWORD,
) -> Iterator[Path]:
    """Extract ``payload`` into a scratch directory removed on exit, whatever happens."""

    workspace = make_workspace(root)
    try:
        extract_archive(payload, workspace, password=password)
        yield workspace
    finally:
        discard_workspace(workspace)


__all__ = [
    "ADDON_ARCHIVE_PASSWORD",
    "ADDON_ARCHIVE_SUFFIX",
    "MANIFEST_NAME",
    "ArchiveError",
    "extract_archive",
    "read_member",
    "make_workspace",
    "discard_workspace",
    "extracted_package",
]
