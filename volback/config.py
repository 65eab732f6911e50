# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Volback Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation and passed explicitly
into every component. Nothing below the CLI/app edge reads the environment.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List
import re


class BackupMode(str, Enum):
    """How volumes are quiesced before archiving."""

    COLD = "cold"  # Stop app and database while archiving
    HOT = "hot"  # Read live volumes without stopping anything


class RestoreMode(str, Enum):
    """How much service management a restore performs."""

    FULL = "full"  # Stop, replace, start and verify
    VOLUMES_ONLY = "volumes_only"  # Replace data only, caller sequences services


class BootstrapStrategy(str, Enum):
    """Decision policy for the cold-start restore."""

    ALWAYS = "always"  # Always restore the latest archive
    IF_EMPTY = "if_empty"  # Restore only when no user records exist


class DatabaseBackend(str, Enum):
    """Database engine of the protected application."""

    MYSQL = "mysql"
    POSTGRES = "postgres"


class DataVolume(str, Enum):
    """Persistent data areas of the protected application."""

    DATABASE = "database"
    UPLOADS = "uploads"


WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


@dataclass(frozen=True)
class RetentionPolicy:
    """
    Age/count retention rule for one archive location.

    A zero field disables that criterion.
    """

    max_age_days: int = 0
    max_count: int = 0

    @property
    def enabled(self) -> bool:
        return self.max_age_days > 0 or self.max_count > 0


def _validate_bucket_name(bucket: str) -> bool:
    """
    Validate S3 bucket name according to AWS rules.

    Rules:
    - 3-63 characters
    - Lowercase letters, numbers, hyphens
    - Must start and end with letter or number
    - No consecutive periods
    - Not formatted as IP address
    """
    if not bucket or len(bucket) < 3 or len(bucket) > 63:
        return False

    if not re.match(r"^[a-z0-9][a-z0-9.-]*[a-z0-9]$", bucket):
        return False

    if ".." in bucket:
        return False

    if re.match(r"^\d+\.\d+\.\d+\.\d+$", bucket):
        return False

    return True


def _validate_cron_time(time_str: str) -> bool:
    """Validate HH:MM time format."""
    if not time_str:
        return False
    try:
        parts = time_str.split(":")
        if len(parts) != 2:
            return False
        hour, minute = int(parts[0]), int(parts[1])
        return 0 <= hour <= 23 and 0 <= minute <= 59
    except (ValueError, AttributeError):
        return False


def _validate_weekly_time(value: str) -> bool:
    """Validate '<dow> HH:MM' format, e.g. 'sun 04:00'."""
    parts = value.split()
    if len(parts) != 2:
        return False
    return parts[0].lower() in WEEKDAYS and _validate_cron_time(parts[1])


def _validate_archive_prefix(prefix: str) -> bool:
    """Archive prefixes end up in file and object names."""
    return bool(re.match(r"^[A-Za-z0-9][A-Za-z0-9_-]*$", prefix or ""))


@dataclass(frozen=True)
class VolbackConfig:
    """
    Immutable configuration for backup and restore runs.

    Defaults match a docker compose Firefly III deployment: MySQL database,
    `app`/`db` compose services, local copies in ./backup, local retention by
    count and remote retention by age.
    """

    # Required: bucket holding remote archives
    bucket: str

    # S3-compatible endpoint
    region: str = "us-east-1"
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None

    # Flat key prefix inside the bucket ("" = bucket root)
    remote_prefix: str = ""

    # Archive names are <archive_prefix>_<YYYYMMDD>_<HHMMSS>.tar.gz
    archive_prefix: str = "firefly_backup"

    # Data volumes, accessed as directories
    database_volume: Path = field(default_factory=lambda: Path("/data/firefly_iii_db"))
    upload_volume: Path = field(default_factory=lambda: Path("/data/firefly_iii_upload"))

    # Configuration files captured into every archive
    config_files: List[Path] = field(default_factory=list)

    # Where configuration files from a restored archive are written (None = report only)
    config_restore_dir: Path | None = None

    # Local archive copies
    backup_dir: Path = field(default_factory=lambda: Path("./backup"))

    # Journal, run-lock and staging area
    state_path: Path = field(default_factory=lambda: Path("./volback_state"))

    # Quiesce strategy for backups
    backup_mode: BackupMode = BackupMode.COLD

    # Whether volback starts/stops services at all
    manage_services: bool = True

    # docker compose project driving the services
    compose_file: Path | None = None
    compose_project: str = "firefly"
    app_service: str = "app"
    db_service: str = "db"

    # Database readiness and user-count probes
    database_backend: DatabaseBackend = DatabaseBackend.MYSQL
    database_url: str | None = None
    user_table: str = "users"

    # Cold-start restore
    bootstrap_strategy: BootstrapStrategy = BootstrapStrategy.ALWAYS
    bootstrap_probe_attempts: int = 3
    bootstrap_probe_interval: float = 5.0
    startup_delay_seconds: float = 5.0

    # Readiness polling
    db_ready_timeout: float = 240.0
    app_ready_timeout: float = 120.0
    poll_interval: float = 10.0

    # Run-lock
    lock_timeout_seconds: float = 30.0

    # Remote transfers (overall deadline, not just connect)
    transfer_timeout_seconds: float = 3600.0
    connect_timeout_seconds: float = 10.0

    # Retention, applied independently per location
    local_max_age_days: int = 0
    local_max_count: int = 30
    remote_max_age_days: int = 30
    remote_max_count: int = 0

    # Schedules (UTC); None disables the job
    backup_schedule: str | None = "03:00"
    sweep_schedule: str | None = "sun 04:00"
    health_schedule: str | None = "06:00"

    # Health check threshold
    min_free_bytes: int = 1024 * 1024 * 1024

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        if not _validate_bucket_name(self.bucket):
            errors.append(f"Invalid bucket name: {self.bucket}")

        if not _validate_archive_prefix(self.archive_prefix):
            errors.append(f"Invalid archive_prefix: {self.archive_prefix!r}")

        if self.remote_prefix and (
            self.remote_prefix.startswith("/") or not self.remote_prefix.endswith("/")
        ):
            errors.append(
                f"remote_prefix must be relative and end with '/', got {self.remote_prefix!r}"
            )

        for name in (
            "local_max_age_days",
            "local_max_count",
            "remote_max_age_days",
            "remote_max_count",
            "min_free_bytes",
        ):
            if getattr(self, name) < 0:
                errors.append(f"{name} must be >= 0, got {getattr(self, name)}")

        for name in (
            "db_ready_timeout",
            "app_ready_timeout",
            "poll_interval",
            "lock_timeout_seconds",
            "transfer_timeout_seconds",
            "connect_timeout_seconds",
            "bootstrap_probe_interval",
        ):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be > 0, got {getattr(self, name)}")

        if self.startup_delay_seconds < 0:
            errors.append(
                f"startup_delay_seconds must be >= 0, got {self.startup_delay_seconds}"
            )

        if self.bootstrap_probe_attempts < 1:
            errors.append(
                f"bootstrap_probe_attempts must be >= 1, got {self.bootstrap_probe_attempts}"
            )

        for name in ("backup_schedule", "health_schedule"):
            value = getattr(self, name)
            if value and not _validate_cron_time(value):
                errors.append(f"Invalid {name} format: {value}, expected HH:MM")

        if self.sweep_schedule and not _validate_weekly_time(self.sweep_schedule):
            errors.append(
                f"Invalid sweep_schedule format: {self.sweep_schedule}, expected '<dow> HH:MM'"
            )

        if Path(self.database_volume) == Path(self.upload_volume):
            errors.append("database_volume and upload_volume must be different directories")

        if self.bootstrap_strategy == BootstrapStrategy.IF_EMPTY and not self.database_url:
            errors.append("database_url required when bootstrap_strategy is 'if_empty'")

        if not re.match(r"^[A-Za-z_][A-Za-z0-9_.]*$", self.user_table):
            errors.append(f"Invalid user_table: {self.user_table!r}")

        if errors:
            from volback.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

    @property
    def local_retention(self) -> RetentionPolicy:
        return RetentionPolicy(self.local_max_age_days, self.local_max_count)

    @property
    def remote_retention(self) -> RetentionPolicy:
        return RetentionPolicy(self.remote_max_age_days, self.remote_max_count)

    def volume_paths(self) -> Dict[DataVolume, Path]:
        """Map each data volume to its directory."""
        return {
            DataVolume.DATABASE: Path(self.database_volume),
            DataVolume.UPLOADS: Path(self.upload_volume),
        }

    def with_updates(self, **kwargs) -> "VolbackConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance.
        """
        from dataclasses import fields

        current = {f.name: getattr(self, f.name) for f in fields(self)}
        current.update(kwargs)
        return VolbackConfig(**current)
