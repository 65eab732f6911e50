# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Volback Archive Engine - Build and unpack backup archives.

An archive is a gzip-compressed tar holding one gzip-compressed tar per data
volume plus copies of the configuration files, all at the archive root:

    firefly_backup_20260102_030000.tar.gz
    ├── database.tar.gz      (required)
    ├── uploads.tar.gz       (optional on extraction)
    ├── .env
    └── .db.env

Archives written by older releases use firefly_db.tar.gz/firefly_upload.tar.gz
and may wrap everything in a single top-level directory; both are accepted
when reading.

Tar work is blocking, so it runs in the default executor.
"""

import asyncio
import errno
import functools
import os
import shutil
import tarfile
import zlib
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Mapping

import structlog
from ulid import ULID

from volback.archive.naming import next_archive_name
from volback.config import DataVolume
from volback.exceptions import (
    CorruptArchive,
    DiskFull,
    SourceUnavailable,
    UnsupportedFormat,
    WriteFailure,
)

logger = structlog.get_logger()

CURRENT_PAYLOAD_NAMES: Dict[DataVolume, str] = {
    DataVolume.DATABASE: "database.tar.gz",
    DataVolume.UPLOADS: "uploads.tar.gz",
}

LEGACY_PAYLOAD_NAMES: Dict[DataVolume, str] = {
    DataVolume.DATABASE: "firefly_db.tar.gz",
    DataVolume.UPLOADS: "firefly_upload.tar.gz",
}

# Probed in order on extraction
PAYLOAD_NAME_SETS = (CURRENT_PAYLOAD_NAMES, LEGACY_PAYLOAD_NAMES)

_ALL_PAYLOAD_NAMES = frozenset(
    name for names in PAYLOAD_NAME_SETS for name in names.values()
)

_INCOMING_PREFIX = ".volback-incoming-"
_PREVIOUS_PREFIX = ".volback-previous-"

_NO_SPACE_ERRNOS = (errno.ENOSPC, errno.EDQUOT)


@dataclass(frozen=True)
class Archive:
    """A finished archive on disk."""

    name: str
    path: Path
    size: int
    volumes: List[str] = field(default_factory=list)
    config_files: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ExtractedPayload:
    """Inner payloads of an archive unpacked into a staging directory."""

    root: Path
    db_payload_path: Path
    upload_payload_path: Path | None
    config_paths: List[Path]
    legacy_format: bool = False

    def payload_for(self, volume: DataVolume) -> Path | None:
        if volume is DataVolume.DATABASE:
            return self.db_payload_path
        return self.upload_payload_path


async def _run_blocking(func, *args, **kwargs):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))


def _is_no_space(e: OSError) -> bool:
    return e.errno in _NO_SPACE_ERRNOS


def _check_member_safe(member: tarfile.TarInfo, archive: Path) -> None:
    """Reject members that would land outside the extraction directory."""
    path = PurePosixPath(member.name)
    if path.is_absolute() or ".." in path.parts:
        raise CorruptArchive(
            f"Archive member escapes the extraction directory: {member.name}",
            details={"archive": str(archive), "member": member.name},
        )


# ============================================================================
# Creation
# ============================================================================


def _write_payload(volume_path: Path, payload_path: Path) -> None:
    """Tar+gzip the contents of one volume (not the directory itself)."""
    if not volume_path.is_dir() or not os.access(volume_path, os.R_OK | os.X_OK):
        raise SourceUnavailable(
            f"Volume is not a readable directory: {volume_path}",
            details={"volume": str(volume_path)},
        )

    try:
        with tarfile.open(payload_path, "w:gz") as tar:
            for entry in sorted(volume_path.iterdir()):
                tar.add(entry, arcname=entry.name)
    except OSError as e:
        if _is_no_space(e):
            raise DiskFull(
                f"Staging area full while archiving {volume_path}: {e}",
                details={"volume": str(volume_path), "payload": str(payload_path)},
            )
        raise SourceUnavailable(
            f"Failed to read volume {volume_path}: {e}",
            details={"volume": str(volume_path), "path": getattr(e, "filename", None)},
        )


def _create_archive_sync(
    name: str,
    volumes: Mapping[DataVolume, Path],
    config_files: Iterable[Path],
    staging_dir: Path,
) -> Archive:
    try:
        staging_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise DiskFull(
            f"Cannot create staging directory: {e}",
            details={"staging_dir": str(staging_dir)},
        )

    parts_dir = staging_dir / f".{name}.parts"
    temp_path = staging_dir / f".{name}.tmp"
    final_path = staging_dir / name

    try:
        parts_dir.mkdir(parents=True, exist_ok=True)

        for volume, volume_path in volumes.items():
            payload_path = parts_dir / CURRENT_PAYLOAD_NAMES[volume]
            _write_payload(Path(volume_path), payload_path)
            logger.debug(
                "volume_payload_written",
                volume=volume.value,
                size=payload_path.stat().st_size,
            )

        captured: List[str] = []
        for config_path in config_files:
            config_path = Path(config_path)
            if not config_path.is_file():
                logger.warning("config_file_missing", path=str(config_path))
                continue
            shutil.copy2(config_path, parts_dir / config_path.name)
            captured.append(config_path.name)

        with tarfile.open(temp_path, "w:gz") as tar:
            for part in sorted(parts_dir.iterdir()):
                tar.add(part, arcname=part.name)

        os.replace(temp_path, final_path)

    except OSError as e:
        temp_path.unlink(missing_ok=True)
        raise DiskFull(
            f"Failed to write archive to staging: {e}",
            details={"archive": name, "no_space": _is_no_space(e)},
        )
    except (SourceUnavailable, DiskFull):
        temp_path.unlink(missing_ok=True)
        raise
    finally:
        shutil.rmtree(parts_dir, ignore_errors=True)

    return Archive(
        name=name,
        path=final_path,
        size=final_path.stat().st_size,
        volumes=[v.value for v in volumes],
        config_files=captured,
    )


async def create_archive(
    volumes: Mapping[DataVolume, Path],
    config_files: Iterable[Path],
    staging_dir: Path,
    prefix: str,
    existing_names: Iterable[str] = (),
) -> Archive:
    """
    Build a new archive from the data volumes and configuration files.

    Args:
        volumes: Volume directories to capture, keyed by role
        config_files: Configuration files to copy in; missing ones only warn
        staging_dir: Where the archive is assembled
        prefix: Archive name prefix
        existing_names: Names already in use; the new name sorts after them

    Returns:
        The finished archive in staging_dir

    Raises:
        SourceUnavailable: A volume could not be read
        DiskFull: The staging area could not hold the archive
    """
    name = await next_archive_name(prefix, existing_names)

    logger.info("archive_create_started", archive=name, volumes=[v.value for v in volumes])

    archive = await _run_blocking(
        _create_archive_sync, name, dict(volumes), list(config_files), Path(staging_dir)
    )

    logger.info(
        "archive_created",
        archive=archive.name,
        size=archive.size,
        config_files=archive.config_files,
    )
    return archive


# ============================================================================
# Extraction
# ============================================================================


def _find_payload_root(into: Path) -> Path:
    """Payloads sit at the top level, or inside a single wrapper directory."""
    top = list(into.iterdir())
    if any(p.name in _ALL_PAYLOAD_NAMES for p in top):
        return into
    dirs = [p for p in top if p.is_dir()]
    if len(dirs) == 1 and len(top) == 1:
        return dirs[0]
    return into


def _extract_archive_sync(archive_path: Path, into: Path) -> ExtractedPayload:
    try:
        tar = tarfile.open(archive_path, "r:*")
    except (tarfile.TarError, EOFError, zlib.error, OSError) as e:
        raise UnsupportedFormat(
            f"Not a gzip tar archive: {archive_path.name}",
            details={"archive": str(archive_path), "error": str(e)},
        )

    try:
        with tar:
            members = tar.getmembers()
            for member in members:
                _check_member_safe(member, archive_path)
                if not (member.isfile() or member.isdir()):
                    raise CorruptArchive(
                        f"Unexpected member type in archive: {member.name}",
                        details={"archive": str(archive_path), "member": member.name},
                    )
            into.mkdir(parents=True, exist_ok=True)
            tar.extractall(into, filter="data")
    except (tarfile.TarError, EOFError, zlib.error) as e:
        raise CorruptArchive(
            f"Archive is truncated or damaged: {archive_path.name}",
            details={"archive": str(archive_path), "error": str(e)},
        )
    except OSError as e:
        raise DiskFull(
            f"Failed to unpack archive into staging: {e}",
            details={"archive": str(archive_path), "no_space": _is_no_space(e)},
        )

    root = _find_payload_root(into)

    for index, names in enumerate(PAYLOAD_NAME_SETS):
        db_payload = root / names[DataVolume.DATABASE]
        if db_payload.is_file():
            upload_payload = root / names[DataVolume.UPLOADS]
            config_paths = sorted(
                p for p in root.iterdir()
                if p.is_file() and p.name not in _ALL_PAYLOAD_NAMES
            )
            return ExtractedPayload(
                root=root,
                db_payload_path=db_payload,
                upload_payload_path=upload_payload if upload_payload.is_file() else None,
                config_paths=config_paths,
                legacy_format=index > 0,
            )

    raise CorruptArchive(
        f"Archive has no database payload: {archive_path.name}",
        details={
            "archive": str(archive_path),
            "members": [m.name for m in members],
        },
    )


async def extract_archive(archive_path: Path, into: Path) -> ExtractedPayload:
    """
    Unpack an archive into a staging directory and locate its payloads.

    Current payload names are probed first, then legacy ones.

    Raises:
        UnsupportedFormat: The file is not a (gzip) tar archive
        CorruptArchive: The archive is damaged or has no database payload
    """
    payload = await _run_blocking(_extract_archive_sync, Path(archive_path), Path(into))

    logger.info(
        "archive_extracted",
        archive=Path(archive_path).name,
        legacy_format=payload.legacy_format,
        has_uploads=payload.upload_payload_path is not None,
        config_files=[p.name for p in payload.config_paths],
    )
    return payload


# ============================================================================
# Volume replacement
# ============================================================================


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def _write_volume_sync(volume_path: Path, payload_path: Path) -> int:
    token = str(ULID())
    incoming = volume_path / f"{_INCOMING_PREFIX}{token}"
    previous = volume_path / f"{_PREVIOUS_PREFIX}{token}"
    hidden = {incoming.name, previous.name}

    try:
        volume_path.mkdir(parents=True, exist_ok=True)
        incoming.mkdir()
        with tarfile.open(payload_path, "r:*") as tar:
            members = tar.getmembers()
            for member in members:
                _check_member_safe(member, payload_path)
            # "tar" keeps modes and (as root) numeric ownership, which the
            # database server needs to reopen its files
            tar.extractall(incoming, numeric_owner=True, filter="tar")
    except (tarfile.TarError, EOFError, zlib.error, OSError, CorruptArchive) as e:
        shutil.rmtree(incoming, ignore_errors=True)
        raise WriteFailure(
            f"Failed to unpack payload into {volume_path}: {e}",
            details={"volume": str(volume_path), "payload": payload_path.name},
        )

    stage = "park"
    try:
        previous.mkdir()
        for entry in list(volume_path.iterdir()):
            if entry.name not in hidden:
                entry.rename(previous / entry.name)
        stage = "place"
        for entry in list(incoming.iterdir()):
            entry.rename(volume_path / entry.name)
    except OSError as e:
        rolled_back = True
        try:
            if stage == "place":
                for entry in list(volume_path.iterdir()):
                    if entry.name not in hidden:
                        _remove(entry)
            if previous.exists():
                for entry in list(previous.iterdir()):
                    entry.rename(volume_path / entry.name)
                previous.rmdir()
        except OSError as rollback_error:
            rolled_back = False
            logger.error(
                "volume_rollback_failed",
                volume=str(volume_path),
                error=str(rollback_error),
                previous=str(previous),
            )
        shutil.rmtree(incoming, ignore_errors=True)
        raise WriteFailure(
            f"Failed to swap new contents into {volume_path}: {e}",
            details={"volume": str(volume_path), "rolled_back": rolled_back},
        )

    incoming.rmdir()
    try:
        shutil.rmtree(previous)
    except OSError as e:
        logger.warning(
            "volume_previous_cleanup_failed",
            volume=str(volume_path),
            path=str(previous),
            error=str(e),
        )

    return len(members)


async def write_volume_from_payload(volume_path: Path, payload_path: Path) -> None:
    """
    Replace the contents of a volume with a payload.

    The payload is unpacked next to the live data first; the old contents are
    only moved aside once that succeeded, and are put back if the swap fails.
    The volume directory itself is kept, since it is usually a mount point.

    Raises:
        WriteFailure: The payload could not be unpacked or swapped in
    """
    member_count = await _run_blocking(_write_volume_sync, Path(volume_path), Path(payload_path))
    logger.info(
        "volume_replaced",
        volume=str(volume_path),
        payload=Path(payload_path).name,
        members=member_count,
    )

