# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup Orchestrator - one backup run, end to end.

    Idle -> Quiescing -> Snapshotting -> Persisting -> Resuming -> CleaningUp -> Idle

Minimum success is a valid archive in the local backup directory. Only a
failure to get there is fatal; remote, resume and cleanup problems become
warnings on the result. Targets stopped while quiescing are always
restarted, whatever happens after.
"""

import asyncio
import shutil
from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from typing import List

import structlog
from ulid import ULID

from volback.archive import create_archive, list_local_archives, persist_local
from volback.config import BackupMode, VolbackConfig
from volback.core import VolbackState
from volback.exceptions import (
    DiskFull,
    FatalBackupError,
    IntegrityMismatch,
    InvalidArchiveName,
    RunCancelled,
    SourceUnavailable,
    TransferFailure,
    VolbackError,
)
from volback.journal import RunKind, RunOutcome, record_run_finished, record_run_started
from volback.lifecycle import ServiceState, Target, start_services
from volback.lock import run_lock
from volback.retention import ArchiveLocation, SweepReport, sweep, sweep_warnings

logger = structlog.get_logger()


class BackupPhase(str, Enum):
    IDLE = "idle"
    QUIESCING = "quiescing"
    SNAPSHOTTING = "snapshotting"
    PERSISTING = "persisting"
    RESUMING = "resuming"
    CLEANING_UP = "cleaning_up"


@dataclass
class BackupResult:
    """Result of a backup run."""

    archive_name: str
    persisted_local: bool
    persisted_remote: bool
    warnings: List[str]
    operation_id: str = ""
    local_path: str | None = None
    size: int = 0
    local_sweep: SweepReport | None = None
    remote_sweep: SweepReport | None = None
    duration_seconds: float = 0.0
    services: dict = field(default_factory=dict)

    @property
    def outcome(self) -> RunOutcome:
        return RunOutcome.WARNING if self.warnings else RunOutcome.SUCCESS


def _check_cancel(cancel: asyncio.Event | None, completed: BackupPhase) -> None:
    if cancel is not None and cancel.is_set():
        raise RunCancelled(
            f"Backup cancelled after {completed.value}",
            details={"last_phase": completed.value},
        )


async def _resume(
    config: VolbackConfig,
    state: VolbackState,
    warnings: List[str],
) -> dict:
    """Restart what quiescing stopped. Problems are errors in the log, warnings on the result."""
    try:
        states = await start_services(state["controller"], config)
    except VolbackError as e:
        logger.error("backup_resume_failed", error=str(e))
        warnings.append(f"Failed to restart services after backup: {e.message}")
        return {}

    for target in (Target.DATABASE, Target.APP):
        result = states.get(target)
        if result is not ServiceState.READY:
            logger.error(
                "backup_resume_not_ready",
                target=target.value,
                state=result.value if result else "not_started",
            )
            warnings.append(
                f"{target.value} did not become ready after backup "
                f"({result.value if result else 'not started'})"
            )

    return {t.value: s.value for t, s in states.items()}


async def _cleanup(
    config: VolbackConfig,
    state: VolbackState,
    result: BackupResult,
    operation_id: str,
    remote_reachable: bool,
) -> None:
    try:
        result.local_sweep = await sweep(config, state, ArchiveLocation.LOCAL, operation_id)
        result.warnings.extend(sweep_warnings(result.local_sweep))
    except InvalidArchiveName as e:
        logger.error("local_retention_invalid_name", error=str(e))
        result.warnings.append(f"Local retention skipped: {e.message}")
    except (VolbackError, OSError) as e:
        logger.warning("local_retention_failed", error=str(e))
        result.warnings.append(f"Local retention failed: {e}")

    if not remote_reachable:
        return

    try:
        result.remote_sweep = await sweep(config, state, ArchiveLocation.REMOTE, operation_id)
        result.warnings.extend(sweep_warnings(result.remote_sweep))
    except InvalidArchiveName as e:
        logger.error("remote_retention_invalid_name", error=str(e))
        result.warnings.append(f"Remote retention skipped: {e.message}")
    except VolbackError as e:
        logger.warning("remote_retention_failed", error=str(e))
        result.warnings.append(f"Remote retention failed: {e.message}")


async def _run_backup(
    config: VolbackConfig,
    state: VolbackState,
    operation_id: str,
    cancel: asyncio.Event | None,
) -> BackupResult:
    controller = state["controller"]
    staging = state["staging_path"] / operation_id
    warnings: List[str] = []
    stopped: List[Target] = []
    services: dict = {}

    phase = BackupPhase.IDLE
    try:
        _check_cancel(cancel, phase)

        # Quiescing
        phase = BackupPhase.QUIESCING
        if config.backup_mode is BackupMode.COLD and controller is not None:
            stopped = [Target.APP, Target.DATABASE]
            await controller.stop(stopped)
        else:
            logger.info(
                "backup_quiesce_skipped",
                backup_mode=config.backup_mode.value,
                managed=controller is not None,
            )
        _check_cancel(cancel, phase)

        # Snapshotting
        phase = BackupPhase.SNAPSHOTTING
        try:
            existing = [e.name for e in list_local_archives(config.backup_dir, config.archive_prefix)]
            archive = await create_archive(
                config.volume_paths(),
                config.config_files,
                staging,
                config.archive_prefix,
                existing,
            )
        except (SourceUnavailable, DiskFull, InvalidArchiveName) as e:
            logger.error("backup_snapshot_failed", error=str(e), cause=type(e).__name__)
            raise FatalBackupError(
                f"Could not produce an archive: {e.message}",
                details={"cause": type(e).__name__, **e.details},
            )
        _check_cancel(cancel, phase)

        # Persisting
        phase = BackupPhase.PERSISTING
        try:
            local_path = await persist_local(archive.path, config.backup_dir)
        except DiskFull as e:
            logger.error("backup_persist_local_failed", error=str(e))
            raise FatalBackupError(
                f"Could not persist the archive locally: {e.message}",
                details={"cause": type(e).__name__, **e.details},
            )

        persisted_remote = False
        remote_reachable = await state["store"].is_reachable()
        if not remote_reachable:
            logger.warning("backup_remote_unreachable", archive=archive.name)
            warnings.append("Remote store unreachable; archive kept locally only")
        else:
            try:
                await state["store"].upload(local_path, archive.name)
                persisted_remote = True
            except (TransferFailure, IntegrityMismatch) as e:
                logger.warning("backup_upload_failed", archive=archive.name, error=str(e))
                warnings.append(f"Upload of {archive.name} failed: {e.message}")

    finally:
        if stopped:
            logger.info("backup_resuming", after_phase=phase.value)
            services = await _resume(config, state, warnings)
        shutil.rmtree(staging, ignore_errors=True)

    result = BackupResult(
        archive_name=archive.name,
        persisted_local=True,
        persisted_remote=persisted_remote,
        warnings=warnings,
        operation_id=operation_id,
        local_path=str(local_path),
        size=archive.size,
        services=services,
    )

    _check_cancel(cancel, BackupPhase.RESUMING)

    # CleaningUp
    await _cleanup(config, state, result, operation_id, remote_reachable)

    return result


async def run_once(
    config: VolbackConfig,
    state: VolbackState,
    cancel: asyncio.Event | None = None,
) -> BackupResult:
    """
    Run one backup.

    Used by the scheduler, the CLI and the HTTP routes alike.

    Args:
        config: Volback configuration
        state: Runtime state
        cancel: Set to request cancellation; honoured between phases only

    Returns:
        BackupResult; warnings list what degraded without failing the run

    Raises:
        Busy: Another run holds the run-lock
        FatalBackupError: No local archive could be produced
        RunCancelled: Cancellation was requested
    """
    operation_id = str(ULID())
    start_time = datetime.now(UTC)

    with structlog.contextvars.bound_contextvars(operation_id=operation_id):
        async with run_lock(
            state["lock_path"], RunKind.BACKUP.value, config.lock_timeout_seconds, operation_id
        ):
            await record_run_started(
                state["journal_db_path"],
                operation_id,
                RunKind.BACKUP,
                {"backup_mode": config.backup_mode.value},
            )
            logger.info("backup_started", backup_mode=config.backup_mode.value)

            try:
                result = await _run_backup(config, state, operation_id, cancel)
            except RunCancelled as e:
                logger.warning("backup_cancelled", last_phase=e.details.get("last_phase"))
                await record_run_finished(
                    state["journal_db_path"], operation_id, RunOutcome.CANCELLED, error=str(e)
                )
                raise
            except Exception as e:
                logger.error("backup_failed", error=str(e), error_type=type(e).__name__)
                state["last_error"] = str(e)
                await record_run_finished(
                    state["journal_db_path"], operation_id, RunOutcome.FATAL, error=str(e)
                )
                raise

            result.duration_seconds = (datetime.now(UTC) - start_time).total_seconds()

            await record_run_finished(
                state["journal_db_path"],
                operation_id,
                result.outcome,
                archive_name=result.archive_name,
                warnings=result.warnings,
                details={
                    "persisted_local": result.persisted_local,
                    "persisted_remote": result.persisted_remote,
                    "size": result.size,
                    "duration_seconds": result.duration_seconds,
                },
            )

        state["total_backups"] += 1
        state["last_backup_at"] = datetime.now(UTC)
        state["last_archive"] = result.archive_name

        logger.info(
            "backup_completed",
            archive=result.archive_name,
            persisted_local=result.persisted_local,
            persisted_remote=result.persisted_remote,
            warnings=len(result.warnings),
            duration=result.duration_seconds,
        )

    return result
