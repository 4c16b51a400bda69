from __future__ import annotations

import io
import zipfile

import pytest

from featherpanel.services.addons.archive import (
    ArchiveError,
    extract_archive,
    extracted_package,
    read_member,
)
from featherpanel.services.addons.filesystem import expose, remove_path


def _zip(members: dict[str, str]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in members.items():
            archive.writestr(name, content)
    return buffer.getvalue()


def test_extract_archive_writes_members(tmp_path, make_addon):
    payload = make_addon(files={"Public/app.js": "console.log('hi');"})
    extracted = extract_archive(payload, tmp_path)
    assert "conf.yml" in extracted
    assert (tmp_path / "Public" / "app.js").read_text() == "console.log('hi');"


def test_extract_rejects_path_traversal(tmp_path):
    payload = _zip({"../escape.txt": "nope"})
    with pytest.raises(ArchiveError):
        extract_archive(payload, tmp_path / "out")
    assert not (tmp_path / "escape.txt").exists()


def test_extract_rejects_garbage(tmp_path):
    with pytest.raises(ArchiveError):
        extract_archive(b"definitely not a zip", tmp_path)


def test_extracted_package_removes_workspace_on_failure(tmp_path):
    root = tmp_path / "scratch"
    with pytest.raises(ArchiveError):
        with extracted_package(b"broken", root=root):
            pass
    assert list(root.iterdir()) == []


def test_extracted_package_removes_workspace_after_use(tmp_path, make_addon):
    root = tmp_path / "scratch"
    with extracted_package(make_addon(), root=root) as workspace:
        assert (workspace / "conf.yml").is_file()
    assert not workspace.exists()


def test_read_member_returns_manifest_text(make_addon):
    text = read_member(make_addon("billing", "1.2.3"))
    assert text is not None
    assert "identifier: billing" in text
    assert read_member(make_addon(), "missing.txt") is None
    assert read_member(b"garbage") is None


def test_expose_publishes_directory(tmp_path):
    source = tmp_path / "plugin" / "Public"
    source.mkdir(parents=True)
    (source / "logo.svg").write_text("<svg/>")
    link = tmp_path / "public" / "addons" / "billing"

    mode = expose(source, link)
    assert mode in {"symlink", "copy"}
    assert (link / "logo.svg").read_text() == "<svg/>"

    remove_path(link)
    assert not link.exists()
    assert (source / "logo.svg").exists()
