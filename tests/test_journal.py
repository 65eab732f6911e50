# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Run journal tests.
"""

from pathlib import Path

import pytest
import pytest_asyncio
from ulid import ULID

from volback.journal import (
    RunKind,
    RunOutcome,
    get_journal_stats,
    get_run,
    init_journal_db,
    list_runs,
    record_run_finished,
    record_run_started,
)


@pytest_asyncio.fixture
async def journal_db_path(temp_dir: Path) -> Path:
    """Create a temporary journal database."""
    db_path = temp_dir / "journal.db"
    await init_journal_db(db_path)
    return db_path


@pytest.mark.asyncio
async def test_init_is_idempotent(journal_db_path: Path):
    await init_journal_db(journal_db_path)
    assert await list_runs(journal_db_path) == []


@pytest.mark.asyncio
async def test_run_lifecycle(journal_db_path: Path):
    run_id = str(ULID())

    await record_run_started(journal_db_path, run_id, RunKind.BACKUP, {"backup_mode": "cold"})
    started = await get_run(journal_db_path, run_id)
    assert started["kind"] == "backup"
    assert started["outcome"] is None
    assert started["completed_at"] is None

    await record_run_finished(
        journal_db_path,
        run_id,
        RunOutcome.WARNING,
        archive_name="firefly_backup_20240101_030000.tar.gz",
        warnings=["Remote store unreachable; archive kept locally only"],
        details={"size": 1234},
    )

    run = await get_run(journal_db_path, run_id)
    assert run["outcome"] == "warning"
    assert run["archive_name"] == "firefly_backup_20240101_030000.tar.gz"
    assert run["warnings"] == ["Remote store unreachable; archive kept locally only"]
    # Final details are merged over the initial ones
    assert run["details"] == {"backup_mode": "cold", "size": 1234}
    assert run["completed_at"] is not None


@pytest.mark.asyncio
async def test_get_missing_run(journal_db_path: Path):
    assert await get_run(journal_db_path, "does-not-exist") is None


@pytest.mark.asyncio
async def test_list_runs_newest_first_with_filter(journal_db_path: Path):
    ids = []
    for kind in (RunKind.BACKUP, RunKind.SWEEP, RunKind.BACKUP):
        run_id = str(ULID())
        ids.append(run_id)
        await record_run_started(journal_db_path, run_id, kind)
        await record_run_finished(journal_db_path, run_id, RunOutcome.SUCCESS)

    runs = await list_runs(journal_db_path)
    assert [r["id"] for r in runs] == list(reversed(ids))

    backups = await list_runs(journal_db_path, kind="backup")
    assert [r["id"] for r in backups] == [ids[2], ids[0]]

    page = await list_runs(journal_db_path, limit=1, offset=1)
    assert [r["id"] for r in page] == [ids[1]]


@pytest.mark.asyncio
async def test_journal_stats(journal_db_path: Path):
    for outcome in (RunOutcome.SUCCESS, RunOutcome.FATAL):
        run_id = str(ULID())
        await record_run_started(journal_db_path, run_id, RunKind.RESTORE)
        await record_run_finished(journal_db_path, run_id, outcome, error="boom")

    stats = await get_journal_stats(journal_db_path)

    assert stats["total_runs"] == 2
    assert stats["runs_by_kind"]["restore"] == {"success": 1, "fatal": 1}
