from __future__ import annotations

from pathlib import Path
import zipfile

import pytest

from intelagent_backup.core.errors import CorruptArchiveError
from intelagent_backup.services import archive


def test_pack_and_unpack_preserve_relative_layout(tmp_path: Path) -> None:
    source = tmp_path / "source"
    (source / "files" / "packages").mkdir(parents=True)
    (source / "licenses.json").write_text("[]", encoding="utf-8")
    (source / "files" / "packages" / "readme.txt").write_text("hello", encoding="utf-8")

    target = tmp_path / "out" / "backup.zip"
    archive.pack(source, target)
    assert sorted(archive.list_members(target)) == ["files/packages/readme.txt", "licenses.json"]

    extracted = tmp_path / "extracted"
    archive.unpack(target, extracted)
    assert (extracted / "licenses.json").read_text(encoding="utf-8") == "[]"
    assert (extracted / "files" / "packages" / "readme.txt").read_text(encoding="utf-8") == "hello"


def test_pack_uses_deflate(tmp_path: Path) -> None:
    source = tmp_path / "source"
    source.mkdir()
    (source / "rows.json").write_text("[" + ",".join(["{}"] * 5000) + "]", encoding="utf-8")
    target = tmp_path / "backup.zip"
    archive.pack(source, target)
    with zipfile.ZipFile(target) as handle:
        info = handle.getinfo("rows.json")
    assert info.compress_type == zipfile.ZIP_DEFLATED
    assert info.compress_size < info.file_size


def test_unpack_rejects_entries_escaping_destination(tmp_path: Path) -> None:
    target = tmp_path / "evil.zip"
    with zipfile.ZipFile(target, "w") as handle:
        handle.writestr("../escape.txt", "nope")
    with pytest.raises(CorruptArchiveError):
        archive.unpack(target, tmp_path / "dest")
    assert not (tmp_path / "escape.txt").exists()


def test_unpack_rejects_garbage(tmp_path: Path) -> None:
    target = tmp_path / "garbage.zip"
    target.write_bytes(b"not a zip file at all")
    with pytest.raises(CorruptArchiveError):
        archive.unpack(target, tmp_path / "dest")
    with pytest.raises(CorruptArchiveError):
        archive.list_members(target)
