# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Archive naming - `<prefix>_<YYYYMMDD>_<HHMMSS>.tar.gz`, always in UTC.

The name is the archive's creation time: lexicographic order equals
chronological order, and listings take `created_at` from the name rather
than from filesystem or object-store metadata.
"""

import asyncio
import re
from datetime import datetime, UTC
from typing import Callable, Iterable, NamedTuple

import structlog

from volback.exceptions import InvalidArchiveName

logger = structlog.get_logger()

ARCHIVE_EXTENSION = "tar.gz"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

# Longest we wait for the clock to move past the newest existing name
MAX_CLOCK_WAIT_SECONDS = 2.0

Clock = Callable[[], datetime]


class ArchiveEntry(NamedTuple):
    """An archive in a listing."""

    name: str
    created_at: datetime
    size: int | None = None


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _name_pattern(prefix: str) -> re.Pattern:
    return re.compile(rf"^{re.escape(prefix)}_(\d{{8}}_\d{{6}})\.tar\.gz$")


def format_archive_name(prefix: str, when: datetime) -> str:
    """
    Build the archive name for a creation time.

    Naive datetimes are taken as UTC.
    """
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    stamp = when.astimezone(UTC).strftime(TIMESTAMP_FORMAT)
    return f"{prefix}_{stamp}.{ARCHIVE_EXTENSION}"


def is_archive_name(name: str, prefix: str) -> bool:
    """Check whether a file/object name looks like one of our archives."""
    return _name_pattern(prefix).match(name) is not None


def parse_archive_name(name: str, prefix: str) -> datetime:
    """
    Decode the creation time encoded in an archive name.

    Raises:
        InvalidArchiveName: If the name does not match the pattern or the
            timestamp is not a real date/time (e.g. month 13)
    """
    match = _name_pattern(prefix).match(name)
    if not match:
        raise InvalidArchiveName(
            f"Not an archive name: {name}",
            details={"name": name, "prefix": prefix},
        )
    try:
        return datetime.strptime(match.group(1), TIMESTAMP_FORMAT).replace(tzinfo=UTC)
    except ValueError as e:
        raise InvalidArchiveName(
            f"Archive name does not encode a valid timestamp: {name}",
            details={"name": name, "error": str(e)},
        )


async def next_archive_name(
    prefix: str,
    existing: Iterable[str],
    clock: Clock = _utcnow,
) -> str:
    """
    Pick a fresh archive name that sorts strictly after every existing one.

    When the current second is already taken, wait for the clock to tick so
    the name never encodes a time later than the moment it was created.

    Raises:
        InvalidArchiveName: If an existing name lies in the future by more
            than MAX_CLOCK_WAIT_SECONDS (clock skew)
    """
    ours = [n for n in existing if is_archive_name(n, prefix)]
    latest = max(ours) if ours else None

    waited = 0.0
    while True:
        now = clock()
        name = format_archive_name(prefix, now)
        if latest is None or name > latest:
            return name

        if waited >= MAX_CLOCK_WAIT_SECONDS:
            logger.error("archive_name_clock_behind", latest=latest, candidate=name)
            raise InvalidArchiveName(
                "Newest existing archive is dated in the future; check the system clock",
                details={"latest": latest, "candidate": name},
            )

        delay = 1.0 - now.microsecond / 1_000_000 + 0.01
        logger.debug("archive_name_wait_next_second", latest=latest, delay=delay)
        await asyncio.sleep(delay)
        waited += delay
