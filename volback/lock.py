# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Volback Run Lock - Advisory lock serialising backup, restore and sweeps.

A single lock file guards every data-mutating run, so a restore can never
start while a backup is persisting (and vice versa), even across processes.
Acquisition waits at most lock_timeout_seconds and then fails with Busy
instead of blocking indefinitely.

The current holder (kind, pid, operation id) is described in a sidecar
file next to the lock, since filelock truncates the lock file itself on
every acquisition attempt.
"""

import json
import os
from contextlib import asynccontextmanager
from datetime import datetime, UTC
from pathlib import Path
from typing import AsyncIterator

import structlog
from filelock import AsyncFileLock, Timeout

from volback.exceptions import Busy

logger = structlog.get_logger()

DEFAULT_POLL_INTERVAL = 0.05


def holder_path(lock_path: Path) -> Path:
    """Path of the file describing the current lock holder."""
    lock_path = Path(lock_path)
    return lock_path.with_name(f"{lock_path.name}.holder")


def read_lock_holder(lock_path: Path) -> dict | None:
    """Return the holder description written by the current lock owner, if any."""
    try:
        content = holder_path(lock_path).read_text()
    except FileNotFoundError:
        return None
    if not content.strip():
        return None
    try:
        return json.loads(content)
    except json.JSONDecodeError:
        return None


@asynccontextmanager
async def run_lock(
    lock_path: Path,
    kind: str,
    timeout: float,
    operation_id: str | None = None,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
) -> AsyncIterator[None]:
    """
    Hold the process-wide run lock for the duration of the block.

    Every call opens its own lock instance, so two acquisitions in the same
    process exclude each other just like two processes do.

    Args:
        lock_path: Lock file path
        kind: What is running (backup, restore, bootstrap, sweep)
        timeout: Maximum seconds to wait for the lock
        operation_id: Run ID recorded as the holder
        poll_interval: Seconds between acquisition attempts

    Raises:
        Busy: If the lock is still held by someone else after timeout
    """
    lock_path = Path(lock_path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    lock = AsyncFileLock(str(lock_path), timeout=timeout)
    try:
        await lock.acquire(poll_interval=poll_interval)
    except Timeout:
        holder = read_lock_holder(lock_path)
        logger.warning(
            "run_lock_busy",
            kind=kind,
            operation_id=operation_id,
            holder=holder,
            timeout=timeout,
        )
        raise Busy(
            f"Another run holds the lock; gave up after {timeout}s",
            details={"kind": kind, "holder": holder},
        ) from None

    holder = {
        "kind": kind,
        "pid": os.getpid(),
        "operation_id": operation_id,
        "acquired_at": datetime.now(UTC).isoformat(),
    }
    try:
        holder_path(lock_path).write_text(json.dumps(holder))
        logger.debug("run_lock_acquired", **holder)
        yield
    finally:
        holder_path(lock_path).unlink(missing_ok=True)
        await lock.release()
        logger.debug("run_lock_released", kind=kind, operation_id=operation_id)
