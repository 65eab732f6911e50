# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Volback orchestrator module - backup and restore runs.
"""

from volback.orchestrator.backup import BackupPhase, BackupResult, run_once
from volback.orchestrator.restore import (
    RestorePhase,
    RestoreResult,
    bootstrap,
    resolve_archive,
    restore,
    should_restore_on_startup,
)

__all__ = [
    "BackupPhase",
    "BackupResult",
    "run_once",
    "RestorePhase",
    "RestoreResult",
    "bootstrap",
    "resolve_archive",
    "restore",
    "should_restore_on_startup",
]
