from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)


def remove_path(path: Path) -> None:
    """Remove a file, symlink or directory tree if it exists."""

    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)


def copy_tree(source: Path, destination: Path) -> None:
    destination.mkdir(parents=True, exist_ok=True)
    for entry in source.iterdir():
        target = destination / entry.name
        if entry.is_dir() and not entry.is_symlink():
            shutil.copytree(entry, target, dirs_exist_ok=True)
        else:
            shutil.copy2(entry, target)


def expose(source: Path, link_path: Path) -> str:
    """Publish ``source`` at ``link_path`` as a symlink, copying when links are unavailable.

    Returns ``"symlink"`` or ``"copy"``.
    """

    link_path.parent.mkdir(parents=True, exist_ok=True)
    remove_path(link_path)
    try:
        os.symlink(source.resolve(), link_path, target_is_directory=True)
        return "symlink"
    except (OSError, NotImplementedError):
        logger.warning("Symlink %s -> %s failed, copying instead", link_path, source)
    copy_tree(source, link_path)
    return "copy"


__all__ = ["remove_path", "copy_tree", "expose"]
