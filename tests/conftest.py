# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for volback tests.

Provides populated volumes, test configuration, and in-memory fakes for the
remote store, the container runtime and readiness probes.
"""

import os
import tempfile
from pathlib import Path
from typing import Dict, Generator, List, Tuple

import pytest
import pytest_asyncio

from volback.archive.naming import ArchiveEntry, is_archive_name, parse_archive_name
from volback.exceptions import (
    EmptyObject,
    InvalidArchiveName,
    NotFound,
    ServiceCommandError,
    TransferFailure,
)
from volback.log import configure_logging

# Set test environment variables
os.environ["VOLBACK_ADMIN_API_KEY"] = "test-api-key-12345"

AUTH_HEADERS = {"Authorization": "Bearer test-api-key-12345"}


# ============================================================================
# Fakes
# ============================================================================


class FakeStore:
    """In-memory remote store with a reachability switch."""

    def __init__(self, archive_prefix: str = "firefly_backup"):
        self.objects: Dict[str, bytes] = {}
        self.archive_prefix = archive_prefix
        self.reachable = True
        self.fail_uploads = False
        self.fail_deletes: set = set()
        self.deleted: List[str] = []

    def _check_reachable(self, operation: str, name: str) -> None:
        if not self.reachable:
            raise TransferFailure(
                f"{operation} of {name} failed: endpoint unreachable",
                details={"operation": operation},
            )

    async def upload(self, local_path: Path, name: str) -> None:
        self._check_reachable("upload", name)
        if self.fail_uploads:
            raise TransferFailure(f"Upload of {name} failed: connection reset")
        self.objects[name] = Path(local_path).read_bytes()

    async def download(self, name: str, local_path: Path) -> None:
        self._check_reachable("download", name)
        if name not in self.objects:
            raise NotFound(f"Archive not found in bucket: {name}")
        if not self.objects[name]:
            raise EmptyObject(f"Downloaded archive is empty: {name}")
        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        local_path.write_bytes(self.objects[name])

    async def list(self, invalid: List[str] | None = None) -> List[ArchiveEntry]:
        self._check_reachable("list", "/")
        entries = []
        for name, data in self.objects.items():
            if not is_archive_name(name, self.archive_prefix):
                continue
            try:
                created_at = parse_archive_name(name, self.archive_prefix)
            except InvalidArchiveName:
                if invalid is None:
                    raise
                invalid.append(name)
                continue
            entries.append(ArchiveEntry(name, created_at, len(data)))
        return sorted(entries, key=lambda e: e.name)

    async def delete(self, name: str) -> None:
        self._check_reachable("delete", name)
        if name in self.fail_deletes:
            raise TransferFailure(f"Delete of {name} failed: access denied")
        self.objects.pop(name, None)
        self.deleted.append(name)

    async def is_reachable(self) -> bool:
        return self.reachable


class FakeRuntime:
    """Container runtime that records calls."""

    def __init__(self):
        self.calls: List[Tuple[str, str]] = []
        self.running: set = set()
        self.fail_start: set = set()
        self.fail_stop: set = set()

    async def stop(self, service: str) -> None:
        self.calls.append(("stop", service))
        if service in self.fail_stop:
            raise ServiceCommandError(f"docker compose stop {service} failed")
        self.running.discard(service)

    async def start(self, service: str) -> None:
        self.calls.append(("start", service))
        if service in self.fail_start:
            raise ServiceCommandError(f"docker compose up {service} failed")
        self.running.add(service)

    async def is_running(self, service: str) -> bool:
        return service in self.running


class FakeProbe:
    """Readiness probe answering a fixed value."""

    def __init__(self, ready: bool = True):
        self.ready = ready
        self.checks = 0

    async def check(self) -> bool:
        self.checks += 1
        return self.ready


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture(scope="session", autouse=True)
def structured_logging():
    """Route structlog output to stderr so stdout carries only command output."""
    configure_logging("DEBUG")


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def volumes(temp_dir: Path) -> Tuple[Path, Path]:
    """Database and upload volumes with a few files each."""
    db_volume = temp_dir / "firefly_iii_db"
    upload_volume = temp_dir / "firefly_iii_upload"

    (db_volume / "firefly").mkdir(parents=True)
    (db_volume / "ibdata1").write_bytes(b"\x00" * 4096)
    (db_volume / "firefly" / "users.ibd").write_bytes(b"user-rows" * 100)
    (db_volume / "mysql.sock.lock").write_text("1")

    (upload_volume / "attachments").mkdir(parents=True)
    (upload_volume / "attachments" / "receipt-1.pdf").write_bytes(b"%PDF-1.4 receipt")
    (upload_volume / "logo.png").write_bytes(b"\x89PNG" + b"\x01" * 64)

    return db_volume, upload_volume


@pytest.fixture
def env_file(temp_dir: Path) -> Path:
    path = temp_dir / "compose" / ".env"
    path.parent.mkdir(parents=True)
    path.write_text("APP_KEY=SomeRandomStringOf32CharsExactly\n")
    return path


@pytest.fixture
def test_config(temp_dir: Path, volumes: Tuple[Path, Path], env_file: Path):
    """Create a test configuration (cold backups, managed services)."""
    from volback.builder import create_config

    db_volume, upload_volume = volumes
    return create_config(
        bucket="test-bucket",
        database_volume=db_volume,
        upload_volume=upload_volume,
        backup_dir=temp_dir / "backup",
        state_path=temp_dir / "state",
        config_files=[env_file],
        startup_delay_seconds=0,
        lock_timeout_seconds=0.3,
        db_ready_timeout=1.0,
        app_ready_timeout=1.0,
        poll_interval=0.01,
        local_max_count=30,
        remote_max_age_days=30,
    )


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def fake_probes():
    from volback.lifecycle import Target

    return {Target.DATABASE: FakeProbe(), Target.APP: FakeProbe()}


@pytest_asyncio.fixture
async def test_state(test_config, fake_runtime, fake_probes, fake_store):
    """Create initialized runtime state wired to the fakes."""
    from volback.core import initialize_state, shutdown_state

    state = await initialize_state(
        test_config, runtime=fake_runtime, probes=fake_probes, store=fake_store
    )
    yield state
    await shutdown_state(state)


def read_tree(root: Path) -> Dict[str, bytes]:
    """Relative path -> content for every file below root."""
    return {
        str(path.relative_to(root)): path.read_bytes()
        for path in sorted(Path(root).rglob("*"))
        if path.is_file()
    }


def clear_dir(root: Path) -> None:
    """Empty a directory but keep it (volumes are mount points)."""
    import shutil

    for entry in Path(root).iterdir():
        if entry.is_dir():
            shutil.rmtree(entry)
        else:
            entry.unlink()
