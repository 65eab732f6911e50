# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Volback Core - Runtime state shared by the orchestrators, health and status.

The state dict is built once by initialize_state() from an explicit config
and handed to every run; tests inject fake runtimes, probes and stores here.
"""

import shutil
from dataclasses import dataclass, field
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Dict, List, Mapping, Set, TypedDict

import structlog

from volback.config import VolbackConfig

logger = structlog.get_logger()


class VolbackState(TypedDict):
    """Runtime state for backup and restore runs."""

    journal_db_path: Path
    lock_path: Path
    staging_path: Path
    s3_session: Any  # aiobotocore session
    store: Any  # RemoteStore
    controller: Any  # ServiceController, None when services are unmanaged
    pinned_archives: Set[str]  # Archives an in-flight restore is reading
    running_jobs: Set[Any]  # asyncio tasks of scheduled jobs in flight
    last_backup_at: datetime | None
    last_restore_at: datetime | None
    last_archive: str | None
    total_backups: int
    total_restores: int
    total_sweeps: int
    last_error: str | None


@dataclass
class HealthReport:
    """Result of a health probe."""

    remote_reachable: bool
    free_bytes: int
    low_disk_space: bool
    services: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    checked_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def status(self) -> str:
        return "warning" if self.warnings else "ok"


async def initialize_state(
    config: VolbackConfig,
    runtime: Any = None,
    probes: Mapping[Any, Any] | None = None,
    store: Any = None,
) -> VolbackState:
    """
    Initialize runtime state.

    Creates the state directory and the journal, and wires the remote store
    and the service controller.

    Args:
        config: Volback configuration
        runtime: Container runtime (default: ComposeRuntime for compose_file)
        probes: Readiness probe per Target (default: database probe from
            database_url, app probe through the runtime)
        store: Remote store (default: RemoteStore over aiobotocore)

    Raises:
        ConfigurationError: Services are managed but no runtime can be built
    """
    from aiobotocore.session import get_session

    from volback.exceptions import ConfigurationError
    from volback.journal import init_journal_db
    from volback.lifecycle import (
        AppProbe,
        ComposeRuntime,
        ServiceController,
        Target,
        database_probe,
    )
    from volback.store import RemoteStore

    state_path = Path(config.state_path)
    state_path.mkdir(parents=True, exist_ok=True)
    journal_db_path = state_path / "journal.db"
    staging_path = state_path / "staging"

    await init_journal_db(journal_db_path)

    session = get_session()
    if store is None:
        store = RemoteStore(config, session)

    controller = None
    if config.manage_services:
        if runtime is None:
            if config.compose_file is None:
                raise ConfigurationError(
                    "Service management needs a compose file or an injected runtime",
                    details={"errors": ["compose_file is not set"]},
                )
            runtime = ComposeRuntime(config.compose_file, config.compose_project)

        if probes is None:
            probes = {
                Target.DATABASE: (
                    database_probe(
                        config.database_backend,
                        config.database_url,
                        config.connect_timeout_seconds,
                    )
                    if config.database_url
                    else AppProbe(runtime, config.db_service)
                ),
                Target.APP: AppProbe(runtime, config.app_service),
            }

        controller = ServiceController(
            runtime,
            probes,
            {Target.APP: config.app_service, Target.DATABASE: config.db_service},
        )

    logger.info(
        "volback_state_initialized",
        state_path=str(state_path),
        manage_services=config.manage_services,
        backup_mode=config.backup_mode.value,
    )

    return VolbackState(
        journal_db_path=journal_db_path,
        lock_path=state_path / "volback.lock",
        staging_path=staging_path,
        s3_session=session,
        store=store,
        controller=controller,
        pinned_archives=set(),
        running_jobs=set(),
        last_backup_at=None,
        last_restore_at=None,
        last_archive=None,
        total_backups=0,
        total_restores=0,
        total_sweeps=0,
        last_error=None,
    )


def _free_bytes(path: Path) -> int:
    # The backup directory may not exist before the first run
    probe = Path(path).absolute()
    while not probe.exists() and probe != probe.parent:
        probe = probe.parent
    return shutil.disk_usage(probe).free


async def health_check(config: VolbackConfig, state: VolbackState) -> HealthReport:
    """
    Report remote reachability and free local disk space.

    Logs a WARNING below min_free_bytes and when the remote is unreachable.
    """
    warnings: List[str] = []

    remote_reachable = await state["store"].is_reachable()
    if not remote_reachable:
        warnings.append(f"Remote store unreachable (bucket {config.bucket})")

    free_bytes = _free_bytes(config.backup_dir)
    low_disk_space = free_bytes < config.min_free_bytes
    if low_disk_space:
        warnings.append(
            f"Low disk space in {config.backup_dir}: {free_bytes} bytes free, "
            f"threshold {config.min_free_bytes}"
        )
        logger.warning(
            "low_disk_space",
            path=str(config.backup_dir),
            free_bytes=free_bytes,
            threshold=config.min_free_bytes,
        )

    services = state["controller"].states if state["controller"] is not None else {}

    report = HealthReport(
        remote_reachable=remote_reachable,
        free_bytes=free_bytes,
        low_disk_space=low_disk_space,
        services=services,
        warnings=warnings,
    )

    logger.info(
        "health_check_completed",
        status=report.status,
        remote_reachable=remote_reachable,
        free_bytes=free_bytes,
    )
    return report


async def get_status(config: VolbackConfig, state: VolbackState) -> dict:
    """Counters, service states, local archives and journal statistics."""
    from volback.archive.local import list_local_archives
    from volback.journal import get_journal_stats
    from volback.lock import read_lock_holder

    local = list_local_archives(config.backup_dir, config.archive_prefix)

    return {
        "total_backups": state["total_backups"],
        "total_restores": state["total_restores"],
        "total_sweeps": state["total_sweeps"],
        "last_backup_at": state["last_backup_at"].isoformat() if state["last_backup_at"] else None,
        "last_restore_at": (
            state["last_restore_at"].isoformat() if state["last_restore_at"] else None
        ),
        "last_archive": state["last_archive"],
        "last_error": state["last_error"],
        "services": state["controller"].states if state["controller"] is not None else {},
        "pinned_archives": sorted(state["pinned_archives"]),
        "lock_holder": read_lock_holder(state["lock_path"]),
        "local_archives": {
            "count": len(local),
            "latest": local[-1].name if local else None,
            "total_bytes": sum(e.size or 0 for e in local),
        },
        "journal": await get_journal_stats(state["journal_db_path"]),
    }


async def list_backups(
    config: VolbackConfig,
    state: VolbackState,
    location: str = "all",
) -> Dict[str, Any]:
    """
    List archives per location, oldest first.

    Args:
        location: "local", "remote" or "all"

    Returns:
        {"local": [...], "remote": [...]} for the requested locations; an
        unreachable remote is reported under "remote_error"
    """
    from volback.archive.local import list_local_archives
    from volback.exceptions import TransferFailure

    if location not in ("local", "remote", "all"):
        raise ValueError(f"Unknown location: {location}")

    listing: Dict[str, Any] = {}

    if location in ("local", "all"):
        listing["local"] = list_local_archives(config.backup_dir, config.archive_prefix)

    if location in ("remote", "all"):
        try:
            listing["remote"] = await state["store"].list()
        except TransferFailure as e:
            logger.warning("remote_listing_failed", error=str(e))
            listing["remote"] = []
            listing["remote_error"] = e.message

    return listing


async def shutdown_state(state: VolbackState) -> None:
    """Cleanup resources."""
    staging = state["staging_path"]
    if staging.exists():
        shutil.rmtree(staging, ignore_errors=True)

    state["pinned_archives"].clear()
    logger.info("volback_state_shutdown_complete")
