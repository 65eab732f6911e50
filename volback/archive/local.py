# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Local archive directory - persist, list and delete archives in backup_dir.
"""

import errno
import os
from pathlib import Path
from typing import List

import aiofiles
import structlog

from volback.archive.naming import ArchiveEntry, is_archive_name, parse_archive_name
from volback.exceptions import DiskFull, InvalidArchiveName

logger = structlog.get_logger()

COPY_CHUNK_SIZE = 4 * 1024 * 1024


async def persist_local(archive_path: Path, backup_dir: Path) -> Path:
    """
    Copy an archive into the local backup directory.

    The copy is written atomically (write to temp, then rename) so a
    half-written file never shows up in listings.

    Args:
        archive_path: Archive in the staging area
        backup_dir: Local backup directory

    Returns:
        Path to the persisted archive

    Raises:
        DiskFull: If the copy could not be written
    """
    backup_dir = Path(backup_dir)
    final_path = backup_dir / archive_path.name
    temp_path = backup_dir / f".{archive_path.name}.tmp"

    try:
        backup_dir.mkdir(parents=True, exist_ok=True)

        async with aiofiles.open(archive_path, "rb") as src:
            async with aiofiles.open(temp_path, "wb") as dst:
                while True:
                    chunk = await src.read(COPY_CHUNK_SIZE)
                    if not chunk:
                        break
                    await dst.write(chunk)
                await dst.flush()
                os.fsync(dst.fileno())

        os.replace(temp_path, final_path)

    except OSError as e:
        temp_path.unlink(missing_ok=True)
        raise DiskFull(
            f"Failed to persist archive locally: {e}",
            details={
                "archive": archive_path.name,
                "backup_dir": str(backup_dir),
                "no_space": e.errno in (errno.ENOSPC, errno.EDQUOT),
            },
        )

    logger.info(
        "archive_persisted_local",
        archive=archive_path.name,
        path=str(final_path),
        size=final_path.stat().st_size,
    )
    return final_path


def list_local_archives(
    backup_dir: Path,
    prefix: str,
    invalid: List[str] | None = None,
) -> List[ArchiveEntry]:
    """
    List archives in the local backup directory, oldest first.

    Files that do not look like archives are ignored. A file that looks like
    an archive but whose timestamp is invalid raises InvalidArchiveName,
    unless an ``invalid`` list is passed: then its name is appended there
    and the file is skipped.
    """
    backup_dir = Path(backup_dir)
    if not backup_dir.is_dir():
        return []

    entries = []
    for path in backup_dir.iterdir():
        if not (path.is_file() and is_archive_name(path.name, prefix)):
            continue
        try:
            created_at = parse_archive_name(path.name, prefix)
        except InvalidArchiveName:
            if invalid is None:
                raise
            logger.warning("archive_name_invalid", archive=path.name, location="local")
            invalid.append(path.name)
            continue
        entries.append(ArchiveEntry(name=path.name, created_at=created_at, size=path.stat().st_size))

    return sorted(entries, key=lambda e: e.name)


def local_archive_path(backup_dir: Path, name: str) -> Path | None:
    """Return the local path of an archive, or None if it is not there."""
    path = Path(backup_dir) / name
    return path if path.is_file() else None


def delete_local_archive(backup_dir: Path, name: str) -> bool:
    """
    Delete a local archive. Deleting a missing archive is not an error.

    Returns:
        True if a file was removed
    """
    path = Path(backup_dir) / name
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    logger.info("local_archive_deleted", archive=name)
    return True
