# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Volback archive module - archive format, naming and the local archive directory.
"""

from volback.archive.engine import (
    Archive,
    ExtractedPayload,
    create_archive,
    extract_archive,
    write_volume_from_payload,
    CURRENT_PAYLOAD_NAMES,
    LEGACY_PAYLOAD_NAMES,
)
from volback.archive.local import (
    persist_local,
    list_local_archives,
    local_archive_path,
    delete_local_archive,
)
from volback.archive.naming import (
    ArchiveEntry,
    format_archive_name,
    parse_archive_name,
    is_archive_name,
    next_archive_name,
)

__all__ = [
    "Archive",
    "ArchiveEntry",
    "ExtractedPayload",
    "create_archive",
    "extract_archive",
    "write_volume_from_payload",
    "CURRENT_PAYLOAD_NAMES",
    "LEGACY_PAYLOAD_NAMES",
    "persist_local",
    "list_local_archives",
    "local_archive_path",
    "delete_local_archive",
    "format_archive_name",
    "parse_archive_name",
    "is_archive_name",
    "next_archive_name",
]
