# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Volback Retention - Age/count cleanup of archives, per location.

select_for_deletion() is the pure decision; sweep() applies it to one
location; sweep_all() is the standalone weekly sweep over both locations.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, UTC
from enum import Enum
from typing import Any, Iterable, List, Set, Tuple

import structlog
from ulid import ULID

from volback.archive.local import delete_local_archive, list_local_archives
from volback.config import RetentionPolicy, VolbackConfig
from volback.exceptions import InvalidArchiveName, VolbackError

logger = structlog.get_logger()


class ArchiveLocation(str, Enum):
    """Where an archive copy lives."""

    LOCAL = "local"
    REMOTE = "remote"


@dataclass
class SweepReport:
    """Outcome of applying a retention policy to one location."""

    location: str
    listed: int = 0
    selected: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped_pinned: List[str] = field(default_factory=list)


@dataclass
class RetentionResult:
    """Result of a standalone sweep over both locations."""

    operation_id: str
    reports: List[SweepReport]
    warnings: List[str]
    duration_seconds: float = 0.0


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def select_for_deletion(
    entries: Iterable[Tuple[str, datetime]],
    policy: RetentionPolicy,
    now: datetime | None = None,
) -> Set[str]:
    """
    Decide which archives a policy removes.

    An entry is selected if it is older than max_age_days, or if its rank by
    recency (0 = newest) is max_count or more. A zero field disables that
    criterion. Pure: no I/O, same input gives the same answer.

    Args:
        entries: (name, created_at) pairs, in any order
        policy: Retention policy for this location
        now: Reference time for the age criterion (default: current UTC time)

    Returns:
        Names selected for deletion
    """
    if not policy.enabled:
        return set()

    now = _as_utc(now or datetime.now(UTC))
    cutoff = now - timedelta(days=policy.max_age_days) if policy.max_age_days > 0 else None

    newest_first = sorted(
        ((entry[0], _as_utc(entry[1])) for entry in entries),
        key=lambda e: (e[1], e[0]),
        reverse=True,
    )

    selected: Set[str] = set()
    for rank, (name, created_at) in enumerate(newest_first):
        if policy.max_count > 0 and rank >= policy.max_count:
            selected.add(name)
        elif cutoff is not None and created_at < cutoff:
            selected.add(name)

    return selected


async def sweep(
    config: VolbackConfig,
    state: Any,
    location: ArchiveLocation,
    operation_id: str | None = None,
    now: datetime | None = None,
) -> SweepReport:
    """
    Apply the location's retention policy and delete what it selects.

    Archives pinned by an in-flight restore are removed from the listing
    before selection. Per-archive delete failures are logged and reported,
    not raised.

    Raises:
        TransferFailure: The remote listing could not be retrieved
        InvalidArchiveName: A listed name encodes an invalid timestamp
    """
    location = ArchiveLocation(location)
    report = SweepReport(location=location.value)

    if location is ArchiveLocation.LOCAL:
        policy = config.local_retention
        entries = list_local_archives(config.backup_dir, config.archive_prefix)
    else:
        policy = config.remote_retention
        entries = await state["store"].list()

    report.listed = len(entries)

    pinned = set(state.get("pinned_archives", ()))
    report.skipped_pinned = sorted(e.name for e in entries if e.name in pinned)
    candidates = [e for e in entries if e.name not in pinned]

    report.selected = sorted(select_for_deletion(candidates, policy, now))

    for name in report.selected:
        try:
            if location is ArchiveLocation.LOCAL:
                delete_local_archive(config.backup_dir, name)
            else:
                await state["store"].delete(name)
            report.deleted.append(name)
        except (OSError, VolbackError) as e:
            report.failed.append(name)
            logger.warning(
                "retention_delete_failed",
                operation_id=operation_id,
                location=location.value,
                archive=name,
                error=str(e),
            )

    logger.info(
        "retention_sweep_completed",
        operation_id=operation_id,
        location=location.value,
        listed=report.listed,
        deleted=len(report.deleted),
        failed=len(report.failed),
        pinned=len(report.skipped_pinned),
    )

    return report


def sweep_warnings(report: SweepReport) -> List[str]:
    """Warnings a sweep report contributes to a run result."""
    return [
        f"Failed to delete {report.location} archive {name} during retention"
        for name in report.failed
    ]


async def sweep_all(config: VolbackConfig, state: Any) -> RetentionResult:
    """
    Standalone retention sweep over the local directory and the bucket.

    Holds the run-lock so it never overlaps a backup or restore, and is
    journaled like any other run. An unreachable remote is skipped with a
    warning.

    Raises:
        Busy: The run-lock could not be acquired
        InvalidArchiveName: A listed name encodes an invalid timestamp
    """
    from volback.journal import RunKind, RunOutcome, record_run_finished, record_run_started
    from volback.lock import run_lock

    operation_id = str(ULID())
    log = logger.bind(operation_id=operation_id)
    start_time = datetime.now(UTC)

    reports: List[SweepReport] = []
    warnings: List[str] = []

    async with run_lock(
        state["lock_path"], RunKind.SWEEP.value, config.lock_timeout_seconds, operation_id
    ):
        await record_run_started(state["journal_db_path"], operation_id, RunKind.SWEEP)
        log.info("retention_run_started")

        try:
            reports.append(await sweep(config, state, ArchiveLocation.LOCAL, operation_id))

            if await state["store"].is_reachable():
                try:
                    reports.append(
                        await sweep(config, state, ArchiveLocation.REMOTE, operation_id)
                    )
                except InvalidArchiveName:
                    raise
                except VolbackError as e:
                    warnings.append(f"Remote retention sweep failed: {e.message}")
                    log.warning("remote_sweep_failed", error=str(e))
            else:
                warnings.append("Remote store unreachable; remote retention skipped")

            for report in reports:
                warnings.extend(sweep_warnings(report))

        except VolbackError as e:
            log.error("retention_run_failed", error=str(e))
            await record_run_finished(
                state["journal_db_path"],
                operation_id,
                RunOutcome.FATAL,
                warnings=warnings,
                error=str(e),
            )
            state["last_error"] = str(e)
            raise

        await record_run_finished(
            state["journal_db_path"],
            operation_id,
            RunOutcome.WARNING if warnings else RunOutcome.SUCCESS,
            warnings=warnings,
            details={"reports": [r.__dict__ for r in reports]},
        )

    state["total_sweeps"] = state.get("total_sweeps", 0) + 1

    duration = (datetime.now(UTC) - start_time).total_seconds()
    log.info("retention_run_completed", warnings=len(warnings), duration=duration)

    return RetentionResult(
        operation_id=operation_id,
        reports=reports,
        warnings=warnings,
        duration_seconds=duration,
    )
