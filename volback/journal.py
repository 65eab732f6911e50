# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Volback Journal - Durable record of every backup, restore and sweep.

Each run is inserted when it starts and completed exactly once with its
outcome, warnings and error text. Rows are never deleted, so the journal
doubles as the operator's history of what happened to the data.
"""

import json
from datetime import datetime, UTC
from enum import Enum
from pathlib import Path
from typing import List, TypedDict

import aiosqlite
import structlog

from volback.exceptions import VolbackError

logger = structlog.get_logger()


class RunKind(str, Enum):
    """Kinds of journaled runs."""

    BACKUP = "backup"
    RESTORE = "restore"
    BOOTSTRAP = "bootstrap"
    SWEEP = "sweep"


class RunOutcome(str, Enum):
    """Final outcome of a run."""

    SUCCESS = "success"
    WARNING = "warning"  # Minimum success reached, with degradations
    FATAL = "fatal"
    CANCELLED = "cancelled"


class RunRecord(TypedDict):
    """Record of a journaled run."""

    id: str  # ULID
    kind: str
    started_at: str  # ISO 8601
    completed_at: str | None
    outcome: str | None
    archive_name: str | None
    warnings: List[str]
    error: str | None
    details: dict


async def init_journal_db(db_path: Path) -> None:
    """
    Initialize the journal database schema.

    Creates tables if they don't exist. This is idempotent.

    Args:
        db_path: Path to the SQLite database file
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS runs (
                    id TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    outcome TEXT,
                    archive_name TEXT,
                    warnings TEXT NOT NULL DEFAULT '[]',
                    error TEXT,
                    details TEXT NOT NULL DEFAULT '{}'
                )
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_runs_started_at
                ON runs(started_at)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_runs_kind
                ON runs(kind)
            """)

            await db.commit()

        logger.info("journal_db_initialized", db_path=str(db_path))

    except Exception as e:
        raise VolbackError(
            f"Failed to initialize journal database: {e}",
            details={"db_path": str(db_path)},
        )


async def record_run_started(
    db_path: Path,
    run_id: str,
    kind: RunKind,
    details: dict | None = None,
) -> None:
    """
    Record the start of a run.

    Args:
        db_path: Journal database path
        run_id: Unique run ID (ULID)
        kind: Run kind
        details: Initial details (mode, requested archive, ...)
    """
    now = datetime.now(UTC).isoformat()

    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            """
            INSERT INTO runs (id, kind, started_at, details)
            VALUES (?, ?, ?, ?)
            """,
            (run_id, RunKind(kind).value, now, json.dumps(details or {})),
        )
        await db.commit()

    logger.debug("run_recorded", run_id=run_id, kind=RunKind(kind).value)


async def record_run_finished(
    db_path: Path,
    run_id: str,
    outcome: RunOutcome,
    archive_name: str | None = None,
    warnings: List[str] | None = None,
    error: str | None = None,
    details: dict | None = None,
) -> None:
    """
    Mark a run as completed.

    Args:
        db_path: Journal database path
        run_id: Run ID
        outcome: Final outcome
        archive_name: Archive produced or consumed by the run
        warnings: Warnings attached to the run result
        error: Error message if the run failed
        details: Final details, merged over the initial ones
    """
    now = datetime.now(UTC).isoformat()

    async with aiosqlite.connect(db_path) as db:
        async with db.execute("SELECT details FROM runs WHERE id = ?", (run_id,)) as cursor:
            row = await cursor.fetchone()
        merged = json.loads(row[0]) if row else {}
        merged.update(details or {})

        await db.execute(
            """
            UPDATE runs
            SET completed_at = ?, outcome = ?, archive_name = ?,
                warnings = ?, error = ?, details = ?
            WHERE id = ?
            """,
            (
                now,
                RunOutcome(outcome).value,
                archive_name,
                json.dumps(warnings or []),
                error,
                json.dumps(merged, default=str),
                run_id,
            ),
        )
        await db.commit()

    logger.debug("run_completed", run_id=run_id, outcome=RunOutcome(outcome).value)


def _row_to_record(row: tuple) -> RunRecord:
    return RunRecord(
        id=row[0],
        kind=row[1],
        started_at=row[2],
        completed_at=row[3],
        outcome=row[4],
        archive_name=row[5],
        warnings=json.loads(row[6]),
        error=row[7],
        details=json.loads(row[8]),
    )


_SELECT_RUNS = """
    SELECT id, kind, started_at, completed_at, outcome, archive_name,
           warnings, error, details
    FROM runs
"""


async def get_run(db_path: Path, run_id: str) -> RunRecord | None:
    """
    Get a run record.

    Returns:
        Run record or None if not found
    """
    async with aiosqlite.connect(db_path) as db:
        async with db.execute(_SELECT_RUNS + " WHERE id = ?", (run_id,)) as cursor:
            row = await cursor.fetchone()

    return _row_to_record(row) if row else None


async def list_runs(
    db_path: Path,
    limit: int = 50,
    offset: int = 0,
    kind: str | None = None,
) -> List[RunRecord]:
    """
    List runs, newest first, with pagination.

    Args:
        db_path: Journal database path
        limit: Maximum number of records to return
        offset: Number of records to skip
        kind: Optional filter by run kind
    """
    query = _SELECT_RUNS
    params: List = []

    if kind:
        query += " WHERE kind = ?"
        params.append(RunKind(kind).value)

    # ULIDs sort by creation time; started_at alone ties within a millisecond
    query += " ORDER BY started_at DESC, id DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])

    records: List[RunRecord] = []

    async with aiosqlite.connect(db_path) as db:
        async with db.execute(query, params) as cursor:
            async for row in cursor:
                records.append(_row_to_record(row))

    return records


async def get_journal_stats(db_path: Path) -> dict:
    """
    Get journal statistics.

    Returns:
        Dict with run counts by kind and outcome, and the last success per kind
    """
    stats: dict = {}

    async with aiosqlite.connect(db_path) as db:
        async with db.execute("SELECT COUNT(*) FROM runs") as cursor:
            row = await cursor.fetchone()
            stats["total_runs"] = row[0] if row else 0

        async with db.execute(
            "SELECT kind, outcome, COUNT(*) FROM runs GROUP BY kind, outcome"
        ) as cursor:
            by_kind: dict = {}
            async for row in cursor:
                by_kind.setdefault(row[0], {})[row[1] or "running"] = row[2]
            stats["runs_by_kind"] = by_kind

        async with db.execute(
            """
            SELECT kind, MAX(completed_at) FROM runs
            WHERE outcome IN ('success', 'warning')
            GROUP BY kind
            """
        ) as cursor:
            stats["last_success"] = {row[0]: row[1] async for row in cursor}

    return stats
