# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Restore Run Tests for volback.

Guarantees verified here:
1. Restoring a backup reproduces both volumes exactly
2. Legacy archives restore the same as current ones
3. A missing uploads payload replaces only the database, with a warning
4. Unreadable archives fail before any volume or service is touched
5. A failed database replace is fatal and reports the volume state
6. The cold-start bootstrap restores when warranted, and a fresh install
   (no archive anywhere) is not an error
"""

import asyncio
import importlib
import tarfile
from datetime import timedelta
from pathlib import Path

import pytest

from conftest import FakeRuntime, read_tree
from volback.archive import format_archive_name, parse_archive_name
from volback.config import BootstrapStrategy, DataVolume, RestoreMode
from volback.core import initialize_state, shutdown_state
from volback.exceptions import (
    Busy,
    CorruptArchive,
    DatabaseUnavailable,
    FatalRestoreError,
    NoBackupAvailable,
    RunCancelled,
    UserCountFailed,
    WriteFailure,
)
from volback.journal import list_runs
from volback.lock import run_lock
from volback.orchestrator import bootstrap, restore, run_once, should_restore_on_startup

OLD_NAME = "firefly_backup_20200101_000000.tar.gz"

# The package re-exports the restore() function under the submodule name
restore_module = importlib.import_module("volback.orchestrator.restore")


def _tar_dir(source: Path, target: Path) -> Path:
    with tarfile.open(target, "w:gz") as tar:
        for entry in sorted(source.iterdir()):
            tar.add(entry, arcname=entry.name)
    return target


def _tar_files(target: Path, members: dict) -> Path:
    target.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(target, "w:gz") as tar:
        for arcname, path in members.items():
            tar.add(path, arcname=arcname)
    return target


def _one_day_later(name: str):
    return parse_archive_name(name, "firefly_backup") + timedelta(days=1)


def _damage_volumes(db_volume: Path, upload_volume: Path) -> None:
    (db_volume / "ibdata1").write_bytes(b"corrupted")
    (db_volume / "firefly" / "users.ibd").unlink()
    (db_volume / "garbage.log").write_text("written after the backup")
    (upload_volume / "logo.png").unlink()


# ============================================================================
# Round trips
# ============================================================================

@pytest.mark.asyncio
async def test_backup_then_restore_round_trip(test_config, test_state, fake_runtime):
    db_before = read_tree(test_config.database_volume)
    uploads_before = read_tree(test_config.upload_volume)

    backup = await run_once(test_config, test_state)
    _damage_volumes(test_config.database_volume, test_config.upload_volume)
    fake_runtime.calls.clear()

    result = await restore(test_config, test_state)

    assert result.archive_used == backup.archive_name
    assert result.volumes_replaced == {DataVolume.DATABASE, DataVolume.UPLOADS}
    assert result.warnings == []
    assert not result.legacy_format
    assert read_tree(test_config.database_volume) == db_before
    assert read_tree(test_config.upload_volume) == uploads_before

    assert fake_runtime.calls == [
        ("stop", "app"),
        ("stop", "db"),
        ("start", "db"),
        ("start", "app"),
    ]
    assert test_state["pinned_archives"] == set()
    assert test_state["total_restores"] == 1

    runs = await list_runs(test_state["journal_db_path"], kind="restore")
    assert runs[0]["outcome"] == "success"
    assert runs[0]["archive_name"] == backup.archive_name


@pytest.mark.asyncio
async def test_restore_downloads_remote_only_archive(test_config, test_state):
    db_before = read_tree(test_config.database_volume)
    backup = await run_once(test_config, test_state)
    Path(backup.local_path).unlink()
    _damage_volumes(test_config.database_volume, test_config.upload_volume)

    result = await restore(test_config, test_state, backup.archive_name)

    assert result.archive_used == backup.archive_name
    assert read_tree(test_config.database_volume) == db_before


@pytest.mark.asyncio
async def test_latest_considers_local_and_remote(test_config, test_state, fake_store):
    backup = await run_once(test_config, test_state)
    newer = format_archive_name("firefly_backup", _one_day_later(backup.archive_name))
    fake_store.objects[newer] = Path(backup.local_path).read_bytes()

    result = await restore(test_config, test_state, "latest", RestoreMode.VOLUMES_ONLY)

    assert result.archive_used == newer


@pytest.mark.asyncio
async def test_restore_from_archive_file_path(test_config, test_state, temp_dir):
    db_before = read_tree(test_config.database_volume)
    backup = await run_once(test_config, test_state)
    elsewhere = temp_dir / "usb" / backup.archive_name
    elsewhere.parent.mkdir()
    Path(backup.local_path).rename(elsewhere)
    _damage_volumes(test_config.database_volume, test_config.upload_volume)

    result = await restore(test_config, test_state, str(elsewhere), RestoreMode.VOLUMES_ONLY)

    assert result.archive_used == backup.archive_name
    assert read_tree(test_config.database_volume) == db_before


@pytest.mark.asyncio
async def test_legacy_archive_restores_like_current(test_config, test_state, temp_dir):
    db_volume, upload_volume = test_config.database_volume, test_config.upload_volume
    db_before = read_tree(db_volume)
    uploads_before = read_tree(upload_volume)

    parts = temp_dir / "parts"
    parts.mkdir()
    _tar_files(
        test_config.backup_dir / OLD_NAME,
        {
            "firefly_db.tar.gz": _tar_dir(db_volume, parts / "db.tgz"),
            "firefly_upload.tar.gz": _tar_dir(upload_volume, parts / "up.tgz"),
        },
    )
    _damage_volumes(db_volume, upload_volume)

    result = await restore(test_config, test_state, OLD_NAME)

    assert result.legacy_format
    assert result.volumes_replaced == {DataVolume.DATABASE, DataVolume.UPLOADS}
    assert read_tree(db_volume) == db_before
    assert read_tree(upload_volume) == uploads_before


@pytest.mark.asyncio
async def test_missing_uploads_payload_only_replaces_database(test_config, test_state, temp_dir):
    db_volume, upload_volume = test_config.database_volume, test_config.upload_volume
    db_before = read_tree(db_volume)

    _tar_files(
        test_config.backup_dir / OLD_NAME,
        {"database.tar.gz": _tar_dir(db_volume, temp_dir / "db.tgz")},
    )
    _damage_volumes(db_volume, upload_volume)
    uploads_damaged = read_tree(upload_volume)

    result = await restore(test_config, test_state, OLD_NAME)

    assert result.volumes_replaced == {DataVolume.DATABASE}
    assert result.warnings == ["Archive has no uploads payload; uploads volume left untouched"]
    assert read_tree(db_volume) == db_before
    assert read_tree(upload_volume) == uploads_damaged

    runs = await list_runs(test_state["journal_db_path"], kind="restore")
    assert runs[0]["outcome"] == "warning"


@pytest.mark.asyncio
async def test_config_files_are_restored_when_configured(test_config, fake_runtime, fake_store, temp_dir):
    restore_dir = temp_dir / "restored-config"
    config = test_config.with_updates(config_restore_dir=restore_dir)
    state = await initialize_state(config, runtime=fake_runtime, store=fake_store)

    await run_once(config, state)
    result = await restore(config, state, mode=RestoreMode.VOLUMES_ONLY)

    assert result.config_files == [".env"]
    assert (restore_dir / ".env").read_text() == "APP_KEY=SomeRandomStringOf32CharsExactly\n"


# ============================================================================
# Failures
# ============================================================================

@pytest.mark.asyncio
async def test_no_archive_anywhere(test_config, test_state):
    with pytest.raises(NoBackupAvailable):
        await restore(test_config, test_state)

    runs = await list_runs(test_state["journal_db_path"], kind="restore")
    assert runs[0]["outcome"] == "fatal"


@pytest.mark.asyncio
async def test_unknown_archive_name(test_config, test_state):
    await run_once(test_config, test_state)

    with pytest.raises(NoBackupAvailable):
        await restore(test_config, test_state, "firefly_backup_19990101_000000.tar.gz")


@pytest.mark.asyncio
async def test_corrupt_archive_touches_nothing(test_config, test_state, fake_runtime, temp_dir):
    db_before = read_tree(test_config.database_volume)
    stray = temp_dir / "stray.txt"
    stray.write_text("no payloads here")
    _tar_files(test_config.backup_dir / OLD_NAME, {"stray.txt": stray})

    with pytest.raises(CorruptArchive):
        await restore(test_config, test_state, OLD_NAME)

    assert read_tree(test_config.database_volume) == db_before
    assert fake_runtime.calls == []
    assert test_state["pinned_archives"] == set()


@pytest.mark.asyncio
async def test_database_write_failure_is_fatal(test_config, test_state, fake_runtime, monkeypatch):
    await run_once(test_config, test_state)
    fake_runtime.calls.clear()

    async def failing_write(volume_path, payload_path):
        raise WriteFailure("disk on fire", details={"rolled_back": True})

    monkeypatch.setattr(restore_module, "write_volume_from_payload", failing_write)

    with pytest.raises(FatalRestoreError) as exc_info:
        await restore(test_config, test_state)

    assert exc_info.value.details["volumes"] == {
        "database": "unchanged",
        "uploads": "unchanged",
    }
    # Left stopped for the operator
    assert fake_runtime.calls == [("stop", "app"), ("stop", "db")]

    runs = await list_runs(test_state["journal_db_path"], kind="restore")
    assert runs[0]["outcome"] == "fatal"


@pytest.mark.asyncio
async def test_restore_is_busy_while_a_backup_runs(test_config, test_state):
    await run_once(test_config, test_state)

    async with run_lock(test_state["lock_path"], "backup", 1.0):
        with pytest.raises(Busy):
            await restore(test_config, test_state)


@pytest.mark.asyncio
async def test_uploads_write_failure_is_a_warning(test_config, test_state, monkeypatch):
    db_before = read_tree(test_config.database_volume)
    await run_once(test_config, test_state)
    _damage_volumes(test_config.database_volume, test_config.upload_volume)
    real_write = restore_module.write_volume_from_payload

    async def write(volume_path, payload_path):
        if volume_path == test_config.upload_volume:
            raise WriteFailure("swap failed", details={"rolled_back": False})
        await real_write(volume_path, payload_path)

    monkeypatch.setattr(restore_module, "write_volume_from_payload", write)

    result = await restore(test_config, test_state)

    assert result.volumes_replaced == {DataVolume.DATABASE}
    assert result.warnings == [
        "Uploads volume could not be replaced (volume indeterminate): swap failed"
    ]
    assert read_tree(test_config.database_volume) == db_before

    runs = await list_runs(test_state["journal_db_path"], kind="restore")
    assert runs[0]["outcome"] == "warning"


@pytest.mark.asyncio
async def test_invalid_archive_names_are_skipped_for_latest(test_config, test_state, fake_store):
    backup = await run_once(test_config, test_state)
    remote_stray = "firefly_backup_20231399_000000.tar.gz"
    local_stray = "firefly_backup_20240231_250000.tar.gz"
    fake_store.objects[remote_stray] = b"not an archive"
    (test_config.backup_dir / local_stray).write_bytes(b"not an archive")

    result = await restore(test_config, test_state, mode=RestoreMode.VOLUMES_ONLY)

    assert result.archive_used == backup.archive_name
    assert sorted(result.warnings) == sorted(
        f"Ignored archive with an invalid timestamp in its name: {name}"
        for name in (remote_stray, local_stray)
    )


# ============================================================================
# Cancellation
# ============================================================================

@pytest.mark.asyncio
async def test_restore_cancelled_before_quiescing_touches_nothing(
    test_config, test_state, fake_runtime
):
    await run_once(test_config, test_state)
    db_before = read_tree(test_config.database_volume)
    fake_runtime.calls.clear()
    cancel = asyncio.Event()
    cancel.set()

    with pytest.raises(RunCancelled) as exc_info:
        await restore(test_config, test_state, cancel=cancel)

    assert exc_info.value.details["last_phase"] == "resolving"
    assert fake_runtime.calls == []
    assert read_tree(test_config.database_volume) == db_before
    assert test_state["pinned_archives"] == set()


@pytest.mark.asyncio
async def test_restore_cancelled_after_quiescing_restarts_services(
    test_config, fake_probes, fake_store
):
    cancel = asyncio.Event()

    class CancellingRuntime(FakeRuntime):
        async def stop(self, service):
            await super().stop(service)
            if service == "db":
                cancel.set()

    runtime = CancellingRuntime()
    state = await initialize_state(
        test_config, runtime=runtime, probes=fake_probes, store=fake_store
    )
    await run_once(test_config, state)
    cancel.clear()
    _damage_volumes(test_config.database_volume, test_config.upload_volume)
    damaged = read_tree(test_config.database_volume)
    runtime.calls.clear()

    with pytest.raises(RunCancelled) as exc_info:
        await restore(test_config, state, cancel=cancel)

    assert exc_info.value.details["last_phase"] == "quiescing"
    assert runtime.calls == [
        ("stop", "app"),
        ("stop", "db"),
        ("start", "db"),
        ("start", "app"),
    ]
    # Volumes are left exactly as they were
    assert read_tree(test_config.database_volume) == damaged

    runs = await list_runs(state["journal_db_path"], kind="restore")
    assert runs[0]["outcome"] == "cancelled"
    await shutdown_state(state)


# ============================================================================
# Startup bootstrap
# ============================================================================

@pytest.mark.asyncio
async def test_bootstrap_fresh_install(test_config, test_state):
    result = await bootstrap(test_config, test_state)

    assert result is None
    runs = await list_runs(test_state["journal_db_path"], kind="bootstrap")
    assert runs[0]["outcome"] == "success"
    assert runs[0]["details"]["restored"] is False


@pytest.mark.asyncio
async def test_bootstrap_always_restores_volumes_only(test_config, test_state, fake_runtime):
    db_before = read_tree(test_config.database_volume)
    await run_once(test_config, test_state)
    _damage_volumes(test_config.database_volume, test_config.upload_volume)
    fake_runtime.calls.clear()

    result = await bootstrap(test_config, test_state)

    assert result.mode is RestoreMode.VOLUMES_ONLY
    assert read_tree(test_config.database_volume) == db_before
    assert fake_runtime.calls == []


@pytest.fixture
def if_empty_config(test_config):
    return test_config.with_updates(
        bootstrap_strategy=BootstrapStrategy.IF_EMPTY,
        database_url="mysql://firefly:secret@db:3306/firefly",
        bootstrap_probe_attempts=2,
        bootstrap_probe_interval=0.01,
    )


@pytest.mark.asyncio
async def test_if_empty_skips_existing_installation(if_empty_config, test_state, monkeypatch):
    async def count_users(backend, url, table, connect_timeout):
        return 3

    monkeypatch.setattr(restore_module, "count_users", count_users)

    assert await should_restore_on_startup(if_empty_config, test_state) == (
        False,
        "existing_installation",
    )
    # The database was started for the probe and left running
    assert test_state["controller"].states["database"] == "ready"

    assert await bootstrap(if_empty_config, test_state) is None
    runs = await list_runs(test_state["journal_db_path"], kind="bootstrap")
    assert runs[0]["details"]["reason"] == "existing_installation"


@pytest.mark.asyncio
async def test_if_empty_restores_empty_database(if_empty_config, test_state, monkeypatch):
    async def count_users(backend, url, table, connect_timeout):
        return 0

    monkeypatch.setattr(restore_module, "count_users", count_users)

    assert await should_restore_on_startup(if_empty_config, test_state) == (
        True,
        "no_user_records",
    )
    # Stopped again so the restore can replace its files
    assert test_state["controller"].states["database"] == "stopped"


@pytest.mark.asyncio
async def test_if_empty_restores_when_database_never_answers(
    if_empty_config, test_state, monkeypatch
):
    attempts = []

    async def count_users(backend, url, table, connect_timeout):
        attempts.append(1)
        raise DatabaseUnavailable("connection refused")

    monkeypatch.setattr(restore_module, "count_users", count_users)

    assert await should_restore_on_startup(if_empty_config, test_state) == (
        True,
        "database_unreachable",
    )
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_bootstrap_decides_under_the_run_lock(
    if_empty_config, test_state, fake_runtime, monkeypatch
):
    counted = []

    async def count_users(backend, url, table, connect_timeout):
        counted.append(1)
        return 0

    monkeypatch.setattr(restore_module, "count_users", count_users)

    async with run_lock(test_state["lock_path"], "backup", 1.0):
        with pytest.raises(Busy):
            await bootstrap(if_empty_config, test_state)

    # Neither the services nor the database were touched while the backup held the lock
    assert fake_runtime.calls == []
    assert counted == []


@pytest.mark.asyncio
async def test_if_empty_skips_restore_when_users_cannot_be_counted(
    if_empty_config, test_state, monkeypatch
):
    async def count_users(backend, url, table, connect_timeout):
        raise UserCountFailed("password authentication failed for user firefly")

    monkeypatch.setattr(restore_module, "count_users", count_users)

    assert await should_restore_on_startup(if_empty_config, test_state) == (
        False,
        "user_count_failed",
    )
    # Left running so the operator can look at it
    assert test_state["controller"].states["database"] == "ready"

    assert await bootstrap(if_empty_config, test_state) is None
    runs = await list_runs(test_state["journal_db_path"], kind="bootstrap")
    assert runs[0]["outcome"] == "warning"
    assert runs[0]["details"]["restored"] is False
    assert runs[0]["details"]["reason"] == "user_count_failed"
