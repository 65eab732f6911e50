# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup Run Tests for volback.

Guarantees verified here:
1. A backup always leaves a local archive or fails loudly
2. An unreachable remote degrades the run to a single warning
3. Services stopped for a cold backup are started again, even on failure
4. Cancellation is honoured between phases and leaves services running
5. Archive names of consecutive runs strictly increase
6. Every run is journaled with its outcome
"""

import asyncio
import shutil
from pathlib import Path

import pytest

from conftest import FakeRuntime
from volback.archive import extract_archive, is_archive_name
from volback.archive.local import list_local_archives
from volback.config import BackupMode
from volback.core import initialize_state
from volback.exceptions import Busy, FatalBackupError, RunCancelled
from volback.journal import RunOutcome, list_runs
from volback.lifecycle import Target
from volback.lock import run_lock
from volback.orchestrator import run_once


def _local_names(config):
    return [e.name for e in list_local_archives(config.backup_dir, config.archive_prefix)]


# ============================================================================
# Successful runs
# ============================================================================

@pytest.mark.asyncio
async def test_cold_backup(test_config, test_state, fake_runtime, fake_store):
    result = await run_once(test_config, test_state)

    assert result.outcome is RunOutcome.SUCCESS
    assert result.warnings == []
    assert result.persisted_local and result.persisted_remote
    assert is_archive_name(result.archive_name, "firefly_backup")

    assert _local_names(test_config) == [result.archive_name]
    assert list(fake_store.objects) == [result.archive_name]
    assert fake_store.objects[result.archive_name] == Path(result.local_path).read_bytes()

    # Stopped dependents-first, started dependencies-first
    assert fake_runtime.calls == [
        ("stop", "app"),
        ("stop", "db"),
        ("start", "db"),
        ("start", "app"),
    ]
    assert result.services == {"database": "ready", "app": "ready"}

    # Staging is cleaned up
    assert list(test_state["staging_path"].glob("*")) == []

    runs = await list_runs(test_state["journal_db_path"], kind="backup")
    assert runs[0]["outcome"] == "success"
    assert runs[0]["archive_name"] == result.archive_name
    assert test_state["total_backups"] == 1
    assert test_state["last_archive"] == result.archive_name


@pytest.mark.asyncio
async def test_archive_contains_both_volumes_and_config(test_config, test_state, temp_dir):
    result = await run_once(test_config, test_state)

    payload = await extract_archive(Path(result.local_path), temp_dir / "check")

    assert payload.db_payload_path.name == "database.tar.gz"
    assert payload.upload_payload_path.name == "uploads.tar.gz"
    assert [p.name for p in payload.config_paths] == [".env"]


@pytest.mark.asyncio
async def test_hot_backup_leaves_services_alone(test_config, test_state, fake_runtime):
    config = test_config.with_updates(backup_mode=BackupMode.HOT)

    result = await run_once(config, test_state)

    assert result.warnings == []
    assert fake_runtime.calls == []


@pytest.mark.asyncio
async def test_unmanaged_services_are_never_touched(test_config, fake_store, fake_runtime):
    config = test_config.with_updates(manage_services=False)
    state = await initialize_state(config, runtime=fake_runtime, store=fake_store)

    result = await run_once(config, state)

    assert state["controller"] is None
    assert result.persisted_remote
    assert fake_runtime.calls == []


@pytest.mark.asyncio
async def test_consecutive_names_strictly_increase(test_config, test_state):
    first = await run_once(test_config, test_state)
    second = await run_once(test_config, test_state)

    assert second.archive_name > first.archive_name
    assert _local_names(test_config) == [first.archive_name, second.archive_name]


@pytest.mark.asyncio
async def test_local_retention_runs_after_backup(test_config, test_state):
    config = test_config.with_updates(local_max_count=1)

    first = await run_once(config, test_state)
    second = await run_once(config, test_state)

    assert _local_names(config) == [second.archive_name]
    assert second.local_sweep.deleted == [first.archive_name]


# ============================================================================
# Degraded runs
# ============================================================================

@pytest.mark.asyncio
async def test_unreachable_remote_is_one_warning(test_config, test_state, fake_store):
    fake_store.reachable = False

    result = await run_once(test_config, test_state)

    assert result.outcome is RunOutcome.WARNING
    assert result.warnings == ["Remote store unreachable; archive kept locally only"]
    assert result.persisted_local
    assert not result.persisted_remote
    assert result.remote_sweep is None
    assert _local_names(test_config) == [result.archive_name]

    runs = await list_runs(test_state["journal_db_path"], kind="backup")
    assert runs[0]["outcome"] == "warning"
    assert runs[0]["warnings"] == result.warnings


@pytest.mark.asyncio
async def test_failed_upload_is_a_warning(test_config, test_state, fake_store):
    fake_store.fail_uploads = True

    result = await run_once(test_config, test_state)

    assert not result.persisted_remote
    assert len(result.warnings) == 1
    assert result.warnings[0].startswith(f"Upload of {result.archive_name} failed")


@pytest.mark.asyncio
async def test_service_not_ready_after_backup_is_a_warning(
    test_config, test_state, fake_probes
):
    fake_probes[Target.APP].ready = False

    result = await run_once(test_config, test_state)

    assert result.persisted_local
    assert result.services["app"] == "degraded"
    assert any("app did not become ready" in w for w in result.warnings)


# ============================================================================
# Failed and cancelled runs
# ============================================================================

@pytest.mark.asyncio
async def test_snapshot_failure_is_fatal_and_restarts_services(
    test_config, test_state, fake_runtime
):
    shutil.rmtree(test_config.database_volume)

    with pytest.raises(FatalBackupError):
        await run_once(test_config, test_state)

    assert ("start", "db") in fake_runtime.calls
    assert ("start", "app") in fake_runtime.calls
    assert test_state["controller"].states == {"app": "ready", "database": "ready"}
    assert _local_names(test_config) == []
    assert test_state["last_error"] is not None

    runs = await list_runs(test_state["journal_db_path"], kind="backup")
    assert runs[0]["outcome"] == "fatal"


@pytest.mark.asyncio
async def test_cancellation_between_phases(test_config, fake_probes, fake_store):
    cancel = asyncio.Event()

    class CancellingRuntime(FakeRuntime):
        async def stop(self, service):
            await super().stop(service)
            if service == "db":
                cancel.set()

    runtime = CancellingRuntime()
    state = await initialize_state(test_config, runtime=runtime, probes=fake_probes, store=fake_store)

    with pytest.raises(RunCancelled):
        await run_once(test_config, state, cancel=cancel)

    # Quiesced services come back, nothing was archived
    assert runtime.calls[-2:] == [("start", "db"), ("start", "app")]
    assert _local_names(test_config) == []
    assert fake_store.objects == {}

    runs = await list_runs(state["journal_db_path"], kind="backup")
    assert runs[0]["outcome"] == "cancelled"


@pytest.mark.asyncio
async def test_busy_while_another_run_holds_the_lock(test_config, test_state, fake_runtime):
    async with run_lock(test_state["lock_path"], "restore", 1.0):
        with pytest.raises(Busy):
            await run_once(test_config, test_state)

    assert fake_runtime.calls == []
    assert _local_names(test_config) == []
