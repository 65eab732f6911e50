# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
volback - Backup and restore of a database-backed application's volumes.

Scheduled and on-demand archives of the database and uploads volumes to an
S3-compatible bucket, with retention cleanup, a cold-start bootstrap
restore, a run-lock against overlapping runs and a durable run journal.
"""

__version__ = "0.1.0"

# Configuration creation (user-facing API)
from volback.builder import create_config
from volback.env import create_config_from_env

# Runtime state, health and status
from volback.core import (
    initialize_state,
    shutdown_state,
    health_check,
    get_status,
    list_backups,
)

# Runs
from volback.orchestrator import run_once, restore, bootstrap
from volback.retention import select_for_deletion, sweep_all

__all__ = [
    # Version
    "__version__",
    # Configuration creation
    "create_config",
    "create_config_from_env",
    # Runtime state
    "initialize_state",
    "shutdown_state",
    "health_check",
    "get_status",
    "list_backups",
    # Runs
    "run_once",
    "restore",
    "bootstrap",
    "select_for_deletion",
    "sweep_all",
]
