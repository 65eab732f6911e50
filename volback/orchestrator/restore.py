# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Restore Orchestrator - replace live volumes with an archive's contents.

    Idle -> Resolving -> Fetching -> Quiescing -> Replacing -> Resuming -> Idle
                                 (any) -> Failed

The database volume is required: if it cannot be replaced the run fails
with FatalRestoreError, the volume state is reported and services are left
stopped for the operator. The uploads volume is optional and only warns.

bootstrap() is the cold-start variant run once before the protected
service is first started.
"""

import asyncio
import shutil
from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from pathlib import Path
from typing import List, Set, Tuple

import structlog
from ulid import ULID

from volback.archive import (
    extract_archive,
    list_local_archives,
    local_archive_path,
    write_volume_from_payload,
)
from volback.config import BootstrapStrategy, DataVolume, RestoreMode, VolbackConfig
from volback.core import VolbackState
from volback.exceptions import (
    DatabaseUnavailable,
    FatalRestoreError,
    NoBackupAvailable,
    RunCancelled,
    TransferFailure,
    UserCountFailed,
    VolbackError,
    WriteFailure,
)
from volback.journal import RunKind, RunOutcome, record_run_finished, record_run_started
from volback.lifecycle import ServiceState, Target, count_users, start_services
from volback.lock import run_lock

logger = structlog.get_logger()

LATEST = "latest"

USER_COUNT_FAILED = "user_count_failed"


class RestorePhase(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    FETCHING = "fetching"
    QUIESCING = "quiescing"
    REPLACING = "replacing"
    RESUMING = "resuming"
    FAILED = "failed"


@dataclass
class RestoreResult:
    """Result of a restore run."""

    archive_used: str
    volumes_replaced: Set[DataVolume]
    warnings: List[str]
    operation_id: str = ""
    mode: RestoreMode = RestoreMode.FULL
    config_files: List[str] = field(default_factory=list)
    legacy_format: bool = False
    services: dict = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def outcome(self) -> RunOutcome:
        return RunOutcome.WARNING if self.warnings else RunOutcome.SUCCESS


def _check_cancel(cancel: asyncio.Event | None, completed: RestorePhase) -> None:
    if cancel is not None and cancel.is_set():
        raise RunCancelled(
            f"Restore cancelled after {completed.value}",
            details={"last_phase": completed.value},
        )


# ============================================================================
# Resolving
# ============================================================================


async def resolve_archive(
    config: VolbackConfig,
    state: VolbackState,
    archive_name: str | None,
    warnings: List[str],
) -> Tuple[str, Path | None]:
    """
    Resolve a requested archive to (name, local path or None).

    None or "latest" picks the greatest name over the local and remote
    listings. An explicit name may also be a path to an archive file.

    Names that match the archive pattern but encode an invalid timestamp
    are skipped with a warning, so one stray object cannot block a restore.

    Raises:
        NoBackupAvailable: Nothing matches locally or remotely
    """
    invalid: List[str] = []

    if archive_name and archive_name != LATEST:
        as_path = Path(archive_name)
        if as_path.is_file():
            return as_path.name, as_path

        local = local_archive_path(config.backup_dir, archive_name)
        if local is not None:
            return archive_name, local

        try:
            remote_names = {e.name for e in await state["store"].list(invalid=invalid)}
        except TransferFailure as e:
            raise NoBackupAvailable(
                f"Archive {archive_name} is not local and the remote store is unavailable",
                details={"archive": archive_name, "remote_error": e.message},
            )
        if archive_name in remote_names or archive_name in invalid:
            return archive_name, None

        raise NoBackupAvailable(
            f"Archive not found locally or remotely: {archive_name}",
            details={"archive": archive_name},
        )

    local_entries = list_local_archives(config.backup_dir, config.archive_prefix, invalid=invalid)
    local_names = {e.name for e in local_entries}

    remote_names: Set[str] = set()
    try:
        remote_names = {e.name for e in await state["store"].list(invalid=invalid)}
    except TransferFailure as e:
        logger.warning("restore_remote_listing_failed", error=str(e))
        warnings.append(f"Remote listing failed; only local archives considered: {e.message}")

    for bad in sorted(set(invalid)):
        warnings.append(f"Ignored archive with an invalid timestamp in its name: {bad}")

    candidates = local_names | remote_names
    if not candidates:
        raise NoBackupAvailable(
            "No archive exists locally or remotely",
            details={"backup_dir": str(config.backup_dir), "bucket": config.bucket},
        )

    name = max(candidates)
    local = Path(config.backup_dir) / name if name in local_names else None
    return name, local


# ============================================================================
# Replacing
# ============================================================================


def _restore_config_files(
    config: VolbackConfig,
    config_paths: List[Path],
    warnings: List[str],
) -> None:
    if not config_paths or config.config_restore_dir is None:
        return

    target_dir = Path(config.config_restore_dir)
    for path in config_paths:
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(path, target_dir / path.name)
            logger.info("config_file_restored", name=path.name, target=str(target_dir))
        except OSError as e:
            logger.warning("config_file_restore_failed", name=path.name, error=str(e))
            warnings.append(f"Could not restore config file {path.name}: {e}")


async def _resume(config: VolbackConfig, state: VolbackState, warnings: List[str]) -> dict:
    try:
        states = await start_services(state["controller"], config)
    except VolbackError as e:
        logger.warning("restore_resume_failed", error=str(e))
        warnings.append(f"Failed to start services after restore: {e.message}")
        return {}

    for target in (Target.DATABASE, Target.APP):
        result = states.get(target)
        if result is not ServiceState.READY:
            logger.warning(
                "restore_service_not_ready",
                target=target.value,
                state=result.value if result else "not_started",
            )
            warnings.append(
                f"{target.value} did not become ready after restore "
                f"({result.value if result else 'not started'})"
            )

    return {t.value: s.value for t, s in states.items()}


async def _run_restore(
    config: VolbackConfig,
    state: VolbackState,
    operation_id: str,
    archive_name: str | None,
    mode: RestoreMode,
    cancel: asyncio.Event | None,
) -> RestoreResult:
    controller = state["controller"] if mode is RestoreMode.FULL else None
    staging = state["staging_path"] / operation_id
    warnings: List[str] = []
    stopped: List[Target] = []
    replacing_started = False
    phase = RestorePhase.IDLE
    name = None

    try:
        # Resolving
        phase = RestorePhase.RESOLVING
        name, local_path = await resolve_archive(config, state, archive_name, warnings)
        state["pinned_archives"].add(name)
        logger.info("restore_archive_resolved", archive=name, local=local_path is not None)
        _check_cancel(cancel, phase)

        # Fetching
        phase = RestorePhase.FETCHING
        if local_path is None:
            local_path = staging / name
            await state["store"].download(name, local_path)
        payload = await extract_archive(local_path, staging / "extracted")
        _check_cancel(cancel, phase)

        # Quiescing
        phase = RestorePhase.QUIESCING
        if controller is not None:
            stopped = [Target.APP, Target.DATABASE]
            await controller.stop(stopped)
        _check_cancel(cancel, phase)

        # Replacing
        phase = RestorePhase.REPLACING
        replacing_started = True
        replaced: Set[DataVolume] = set()

        try:
            await write_volume_from_payload(config.database_volume, payload.db_payload_path)
        except WriteFailure as e:
            rolled_back = e.details.get("rolled_back", True)
            phase = RestorePhase.FAILED
            logger.error(
                "restore_database_failed",
                archive=name,
                error=str(e),
                rolled_back=rolled_back,
            )
            raise FatalRestoreError(
                f"Database volume could not be replaced: {e.message}",
                details={
                    "archive": name,
                    "volumes": {
                        DataVolume.DATABASE.value: "unchanged" if rolled_back else "indeterminate",
                        DataVolume.UPLOADS.value: "unchanged",
                    },
                },
            )
        replaced.add(DataVolume.DATABASE)

        if payload.upload_payload_path is None:
            logger.warning("restore_uploads_payload_missing", archive=name)
            warnings.append("Archive has no uploads payload; uploads volume left untouched")
        else:
            try:
                await write_volume_from_payload(config.upload_volume, payload.upload_payload_path)
                replaced.add(DataVolume.UPLOADS)
            except WriteFailure as e:
                rolled_back = e.details.get("rolled_back", True)
                volume_state = "unchanged" if rolled_back else "indeterminate"
                logger.warning(
                    "restore_uploads_failed",
                    archive=name,
                    error=str(e),
                    volume_state=volume_state,
                )
                warnings.append(
                    f"Uploads volume could not be replaced (volume {volume_state}): {e.message}"
                )

        _restore_config_files(config, payload.config_paths, warnings)

        # Resuming
        phase = RestorePhase.RESUMING
        services = await _resume(config, state, warnings) if stopped else {}

    except RunCancelled:
        # Cancellation never lands mid-Replacing, so volumes are intact here
        if stopped and not replacing_started:
            await _resume(config, state, warnings)
        raise
    except VolbackError:
        if stopped and not replacing_started:
            logger.info("restore_restarting_untouched_services", after_phase=phase.value)
            await _resume(config, state, warnings)
        raise
    finally:
        if name is not None:
            state["pinned_archives"].discard(name)
        shutil.rmtree(staging, ignore_errors=True)

    return RestoreResult(
        archive_used=name,
        volumes_replaced=replaced,
        warnings=warnings,
        operation_id=operation_id,
        mode=mode,
        config_files=[p.name for p in payload.config_paths],
        legacy_format=payload.legacy_format,
        services=services,
    )


async def _restore_locked(
    config: VolbackConfig,
    state: VolbackState,
    operation_id: str,
    archive_name: str | None,
    mode: RestoreMode,
    cancel: asyncio.Event | None,
    kind: RunKind,
) -> RestoreResult:
    """One journaled restore run. The caller holds the run-lock."""
    start_time = datetime.now(UTC)

    await record_run_started(
        state["journal_db_path"],
        operation_id,
        kind,
        {"requested": archive_name or LATEST, "mode": mode.value},
    )
    logger.info("restore_started", requested=archive_name or LATEST, mode=mode.value)

    try:
        result = await _run_restore(config, state, operation_id, archive_name, mode, cancel)
    except RunCancelled as e:
        logger.warning("restore_cancelled", last_phase=e.details.get("last_phase"))
        await record_run_finished(
            state["journal_db_path"], operation_id, RunOutcome.CANCELLED, error=str(e)
        )
        raise
    except NoBackupAvailable as e:
        # For bootstrap this is the fresh-install path, not a failure
        outcome = RunOutcome.SUCCESS if kind is RunKind.BOOTSTRAP else RunOutcome.FATAL
        log = logger.info if kind is RunKind.BOOTSTRAP else logger.error
        log("restore_no_backup_available", error=str(e))
        await record_run_finished(
            state["journal_db_path"],
            operation_id,
            outcome,
            error=str(e),
            details={"restored": False, **e.details},
        )
        raise
    except Exception as e:
        logger.error("restore_failed", error=str(e), error_type=type(e).__name__)
        state["last_error"] = str(e)
        await record_run_finished(
            state["journal_db_path"],
            operation_id,
            RunOutcome.FATAL,
            error=str(e),
            details=getattr(e, "details", None),
        )
        raise

    result.duration_seconds = (datetime.now(UTC) - start_time).total_seconds()

    await record_run_finished(
        state["journal_db_path"],
        operation_id,
        result.outcome,
        archive_name=result.archive_used,
        warnings=result.warnings,
        details={
            "volumes_replaced": sorted(v.value for v in result.volumes_replaced),
            "legacy_format": result.legacy_format,
            "duration_seconds": result.duration_seconds,
        },
    )

    state["total_restores"] += 1
    state["last_restore_at"] = datetime.now(UTC)

    logger.info(
        "restore_completed",
        archive=result.archive_used,
        volumes_replaced=sorted(v.value for v in result.volumes_replaced),
        warnings=len(result.warnings),
        duration=result.duration_seconds,
    )
    return result


async def restore(
    config: VolbackConfig,
    state: VolbackState,
    archive_name: str | None = None,
    mode: RestoreMode = RestoreMode.FULL,
    cancel: asyncio.Event | None = None,
) -> RestoreResult:
    """
    Restore both volumes from an archive.

    Args:
        config: Volback configuration
        state: Runtime state
        archive_name: Archive name, archive file path, "latest" or None (latest)
        mode: FULL stops/starts services; VOLUMES_ONLY only replaces data
        cancel: Set to request cancellation; honoured between phases only

    Returns:
        RestoreResult; warnings list what degraded without failing the run

    Raises:
        Busy: Another run holds the run-lock
        NoBackupAvailable: No archive to restore from
        FatalRestoreError: The database volume could not be replaced
        RunCancelled: Cancellation was requested
        NotFound, TransferFailure, EmptyObject, CorruptArchive,
        UnsupportedFormat: The archive could not be fetched or read
            (volumes untouched)
    """
    mode = RestoreMode(mode)
    operation_id = str(ULID())

    with structlog.contextvars.bound_contextvars(operation_id=operation_id):
        async with run_lock(
            state["lock_path"], RunKind.RESTORE.value, config.lock_timeout_seconds, operation_id
        ):
            return await _restore_locked(
                config, state, operation_id, archive_name, mode, cancel, RunKind.RESTORE
            )


# ============================================================================
# Startup bootstrap
# ============================================================================


async def _wait_startup_delay(delay: float, cancel: asyncio.Event | None) -> None:
    if delay <= 0:
        return
    logger.info("bootstrap_startup_delay", seconds=delay)
    if cancel is None:
        await asyncio.sleep(delay)
        return
    try:
        await asyncio.wait_for(cancel.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
    raise RunCancelled("Bootstrap cancelled during startup delay", details={"last_phase": "idle"})


async def _probe_user_count(config: VolbackConfig) -> int | None:
    """
    User count, or None when the database never answered.

    Raises:
        UserCountFailed: The database answered but could not be queried
    """
    for attempt in range(1, config.bootstrap_probe_attempts + 1):
        try:
            return await count_users(
                config.database_backend,
                config.database_url,
                config.user_table,
                config.connect_timeout_seconds,
            )
        except DatabaseUnavailable as e:
            logger.info(
                "bootstrap_probe_no_connection",
                attempt=attempt,
                attempts=config.bootstrap_probe_attempts,
                error=str(e),
            )
            if attempt < config.bootstrap_probe_attempts:
                await asyncio.sleep(config.bootstrap_probe_interval)
    return None


async def should_restore_on_startup(config: VolbackConfig, state: VolbackState) -> Tuple[bool, str]:
    """
    Decide whether the cold-start restore is warranted.

    May start and stop the database, so call it with the run-lock held.

    A database that answers but refuses the count (bad credentials, missing
    database, failing query) is not treated as empty: the restore is skipped
    and the failure logged at ERROR, since replacing data nobody could look
    at would risk overwriting a live installation.

    Returns:
        (restore?, reason)
    """
    if config.bootstrap_strategy is BootstrapStrategy.ALWAYS:
        return True, "strategy_always"

    controller = state["controller"]
    if controller is not None and controller.state_of(Target.DATABASE) is ServiceState.STOPPED:
        # The user table can only be counted with the database up
        try:
            await controller.start([Target.DATABASE])
            await controller.wait_ready(
                Target.DATABASE, config.db_ready_timeout, config.poll_interval
            )
        except VolbackError as e:
            logger.warning("bootstrap_database_start_failed", error=str(e))

    try:
        count = await _probe_user_count(config)
    except UserCountFailed as e:
        logger.error("bootstrap_user_count_failed", error=str(e))
        return False, USER_COUNT_FAILED

    if count is None:
        decision = (True, "database_unreachable")
    elif count == 0:
        decision = (True, "no_user_records")
    else:
        decision = (False, "existing_installation")

    if controller is not None and decision[0]:
        await controller.stop([Target.DATABASE])

    return decision


async def bootstrap(
    config: VolbackConfig,
    state: VolbackState,
    cancel: asyncio.Event | None = None,
) -> RestoreResult | None:
    """
    Cold-start restore, run once before the protected service first starts.

    Restores the latest archive in VOLUMES_ONLY mode when the configured
    strategy says so. No archive anywhere means a fresh install: the result
    is None and nothing fails. The run-lock is held from the startup delay
    to the end of the restore, so the decision probe never overlaps another
    run.

    Raises:
        Busy, FatalRestoreError, RunCancelled, and fetch errors: as restore()
    """
    operation_id = str(ULID())

    with structlog.contextvars.bound_contextvars(operation_id=operation_id):
        async with run_lock(
            state["lock_path"], RunKind.BOOTSTRAP.value, config.lock_timeout_seconds, operation_id
        ):
            await _wait_startup_delay(config.startup_delay_seconds, cancel)

            warranted, reason = await should_restore_on_startup(config, state)
            logger.info(
                "bootstrap_decision",
                strategy=config.bootstrap_strategy.value,
                restore=warranted,
                reason=reason,
            )

            if not warranted:
                warnings = []
                if reason == USER_COUNT_FAILED:
                    warnings.append("User records could not be counted; startup restore skipped")

                await record_run_started(
                    state["journal_db_path"],
                    operation_id,
                    RunKind.BOOTSTRAP,
                    {"strategy": config.bootstrap_strategy.value},
                )
                await record_run_finished(
                    state["journal_db_path"],
                    operation_id,
                    RunOutcome.WARNING if warnings else RunOutcome.SUCCESS,
                    warnings=warnings,
                    details={"restored": False, "reason": reason},
                )
                return None

            try:
                return await _restore_locked(
                    config,
                    state,
                    operation_id,
                    None,
                    RestoreMode.VOLUMES_ONLY,
                    cancel,
                    RunKind.BOOTSTRAP,
                )
            except NoBackupAvailable:
                logger.info("bootstrap_fresh_install", reason="no_archive_available")
                return None
