from __future__ import annotations

from pathlib import Path, PurePosixPath
import zipfile
import zlib

from intelagent_backup.core.errors import CorruptArchiveError


# Snapshots are JSON text, so spend CPU for the smallest archive.
COMPRESSION_LEVEL = 9


def pack(source_dir: Path, dest_archive: Path) -> None:
    # Zip every file under source_dir with paths relative to it; closed before returning.
    dest_archive.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(
        dest_archive,
        "w",
        compression=zipfile.ZIP_DEFLATED,
        compresslevel=COMPRESSION_LEVEL,
    ) as archive:
        for path in sorted(source_dir.rglob("*")):
            if path.is_file():
                archive.write(path, arcname=path.relative_to(source_dir).as_posix())


def _safe_member_path(dest_dir: Path, member: str) -> Path:
    # Reject absolute paths and parent traversal so extraction stays inside dest_dir.
    relative = PurePosixPath(member)
    if relative.is_absolute() or ".." in relative.parts:
        raise CorruptArchiveError(f"archive entry escapes extraction dir: {member}")
    return dest_dir.joinpath(*relative.parts)


def unpack(archive_path: Path, dest_dir: Path) -> None:
    dest_dir.mkdir(parents=True, exist_ok=True)
    try:
        with zipfile.ZipFile(archive_path) as archive:
            for info in archive.infolist():
                _safe_member_path(dest_dir, info.filename)
            archive.extractall(dest_dir)
    except (zipfile.BadZipFile, zipfile.LargeZipFile, zlib.error, EOFError) as exc:
        raise CorruptArchiveError(f"cannot unpack {archive_path.name}: {exc}") from exc


def list_members(archive_path: Path) -> list[str]:
    try:
        with zipfile.ZipFile(archive_path) as archive:
            return [info.filename for info in archive.infolist() if not info.is_dir()]
    except zipfile.BadZipFile as exc:
        raise CorruptArchiveError(f"cannot read {archive_path.name}: {exc}") from exc
