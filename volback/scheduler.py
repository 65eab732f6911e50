# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Volback Scheduler - calendar jobs and the daemon loop.

Jobs (UTC): daily backup, weekly retention sweep, daily health probe.
A failing job is logged and the scheduler keeps going.
"""

import asyncio
from contextlib import contextmanager
from typing import Callable, Iterator

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from volback.config import VolbackConfig
from volback.core import VolbackState, health_check
from volback.exceptions import Busy, FatalRestoreError, RunCancelled, VolbackError

logger = structlog.get_logger()

BACKUP_JOB_ID = "volback_backup"
SWEEP_JOB_ID = "volback_sweep"
HEALTH_JOB_ID = "volback_health"


def cron_trigger(schedule: str) -> CronTrigger:
    """
    Build a UTC CronTrigger from "HH:MM" (daily) or "<dow> HH:MM" (weekly).
    """
    parts = schedule.split()
    day_of_week = parts[0].lower() if len(parts) == 2 else None
    hour, minute = map(int, parts[-1].split(":"))
    return CronTrigger(day_of_week=day_of_week, hour=hour, minute=minute, timezone="UTC")


@contextmanager
def _tracked(state: VolbackState) -> Iterator[None]:
    """Register the running job so the daemon can wait for it on shutdown."""
    task = asyncio.current_task()
    state["running_jobs"].add(task)
    try:
        yield
    finally:
        state["running_jobs"].discard(task)


async def scheduled_backup(
    config: VolbackConfig,
    state: VolbackState,
    cancel: asyncio.Event | None = None,
) -> None:
    """Run a scheduled backup."""
    from volback.orchestrator import run_once

    if cancel is not None and cancel.is_set():
        logger.info("scheduled_backup_skipped_shutdown")
        return

    logger.info("scheduled_backup_starting")
    with _tracked(state):
        try:
            result = await run_once(config, state, cancel=cancel)
            logger.info(
                "scheduled_backup_completed",
                archive=result.archive_name,
                persisted_remote=result.persisted_remote,
                warnings=len(result.warnings),
            )
        except Busy as e:
            logger.warning("scheduled_backup_skipped_busy", error=str(e))
        except RunCancelled as e:
            logger.info("scheduled_backup_cancelled", last_phase=e.details.get("last_phase"))
        except Exception as e:
            logger.error("scheduled_backup_failed", error=str(e), error_type=type(e).__name__)


async def scheduled_sweep(
    config: VolbackConfig,
    state: VolbackState,
    cancel: asyncio.Event | None = None,
) -> None:
    """Run the weekly retention sweep."""
    from volback.retention import sweep_all

    if cancel is not None and cancel.is_set():
        logger.info("scheduled_sweep_skipped_shutdown")
        return

    logger.info("scheduled_sweep_starting")
    with _tracked(state):
        try:
            result = await sweep_all(config, state)
            logger.info(
                "scheduled_sweep_completed",
                deleted=sum(len(r.deleted) for r in result.reports),
                warnings=len(result.warnings),
            )
        except Busy as e:
            logger.warning("scheduled_sweep_skipped_busy", error=str(e))
        except Exception as e:
            logger.error("scheduled_sweep_failed", error=str(e), error_type=type(e).__name__)


async def scheduled_health(
    config: VolbackConfig,
    state: VolbackState,
    cancel: asyncio.Event | None = None,
) -> None:
    """Run the daily health probe."""
    if cancel is not None and cancel.is_set():
        return

    with _tracked(state):
        try:
            report = await health_check(config, state)
            if report.warnings:
                logger.warning("scheduled_health_warnings", warnings=report.warnings)
        except Exception as e:
            logger.error("scheduled_health_failed", error=str(e), error_type=type(e).__name__)


def create_scheduler(
    config: VolbackConfig,
    state: VolbackState,
    cancel: asyncio.Event | None = None,
) -> AsyncIOScheduler:
    """
    Build (but do not start) the scheduler with every enabled job.

    Args:
        cancel: Passed to every job; runs stop between phases once it is set
    """
    scheduler = AsyncIOScheduler(timezone="UTC")

    jobs: list[tuple[str, str | None, Callable, str]] = [
        (BACKUP_JOB_ID, config.backup_schedule, scheduled_backup, "Daily backup"),
        (SWEEP_JOB_ID, config.sweep_schedule, scheduled_sweep, "Weekly retention sweep"),
        (HEALTH_JOB_ID, config.health_schedule, scheduled_health, "Daily health probe"),
    ]

    for job_id, schedule, func, name in jobs:
        if not schedule:
            logger.info("scheduled_job_disabled", job=job_id)
            continue

        scheduler.add_job(
            func,
            trigger=cron_trigger(schedule),
            args=[config, state, cancel],
            id=job_id,
            name=name,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            misfire_grace_time=600,
        )
        logger.info("scheduled_job_added", job=job_id, schedule=schedule)

    return scheduler


async def wait_for_running_jobs(state: VolbackState) -> None:
    """Wait until every job started by the scheduler has finished."""
    running = [task for task in state["running_jobs"] if not task.done()]
    if not running:
        return
    logger.info("scheduler_waiting_for_jobs", jobs=len(running))
    await asyncio.gather(*running, return_exceptions=True)


async def run_daemon(
    config: VolbackConfig,
    state: VolbackState,
    shutdown: asyncio.Event,
    run_bootstrap: bool = True,
) -> None:
    """
    Startup hook, then the scheduling loop until shutdown is set.

    The bootstrap restore runs once before services are first started. If
    it leaves the database volume indeterminate the daemon stops instead of
    starting services on top of it.

    Raises:
        FatalRestoreError: The bootstrap restore could not replace the database volume
    """
    from volback.lifecycle import start_services
    from volback.orchestrator import bootstrap

    if run_bootstrap:
        try:
            result = await bootstrap(config, state, cancel=shutdown)
            logger.info(
                "daemon_bootstrap_done",
                restored=result is not None,
                archive=result.archive_used if result else None,
            )
        except RunCancelled:
            logger.info("daemon_bootstrap_cancelled")
            return
        except FatalRestoreError as e:
            logger.error("daemon_bootstrap_fatal", error=str(e), volumes=e.details.get("volumes"))
            raise
        except VolbackError as e:
            # Volumes untouched: start on whatever data is there
            logger.error("daemon_bootstrap_failed", error=str(e))

    if shutdown.is_set():
        return

    if state["controller"] is not None:
        states = await start_services(state["controller"], config)
        logger.info("daemon_services_started", states={t.value: s.value for t, s in states.items()})

    scheduler = create_scheduler(config, state, cancel=shutdown)
    scheduler.start()
    logger.info(
        "scheduler_started",
        jobs=[
            {"id": job.id, "next_run": job.next_run_time.isoformat() if job.next_run_time else None}
            for job in scheduler.get_jobs()
        ],
    )

    try:
        await shutdown.wait()
    finally:
        # AsyncIOScheduler.shutdown() cancels running jobs outright, so let
        # them stop at their next phase boundary first
        scheduler.pause()
        await wait_for_running_jobs(state)
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")
