# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
JSON-ready views of run results, shared by the CLI and the HTTP routes so
both surfaces report exactly the same thing.
"""

from dataclasses import asdict
from typing import Iterable

from volback.archive.naming import ArchiveEntry
from volback.config import VolbackConfig
from volback.core import HealthReport
from volback.exceptions import VolbackError
from volback.orchestrator import BackupResult, RestoreResult
from volback.retention import RetentionResult, SweepReport


def _sweep(report: SweepReport | None) -> dict | None:
    return asdict(report) if report is not None else None


def backup_result_to_dict(result: BackupResult) -> dict:
    return {
        "outcome": result.outcome.value,
        "operation_id": result.operation_id,
        "archive_name": result.archive_name,
        "persisted_local": result.persisted_local,
        "persisted_remote": result.persisted_remote,
        "local_path": result.local_path,
        "size": result.size,
        "warnings": list(result.warnings),
        "local_sweep": _sweep(result.local_sweep),
        "remote_sweep": _sweep(result.remote_sweep),
        "services": result.services,
        "duration_seconds": result.duration_seconds,
    }


def restore_result_to_dict(result: RestoreResult) -> dict:
    return {
        "outcome": result.outcome.value,
        "operation_id": result.operation_id,
        "archive_used": result.archive_used,
        "mode": result.mode.value,
        "volumes_replaced": sorted(v.value for v in result.volumes_replaced),
        "config_files": list(result.config_files),
        "legacy_format": result.legacy_format,
        "warnings": list(result.warnings),
        "services": result.services,
        "duration_seconds": result.duration_seconds,
    }


def retention_result_to_dict(result: RetentionResult) -> dict:
    return {
        "outcome": "warning" if result.warnings else "success",
        "operation_id": result.operation_id,
        "reports": [asdict(r) for r in result.reports],
        "warnings": list(result.warnings),
        "duration_seconds": result.duration_seconds,
    }


def health_report_to_dict(report: HealthReport) -> dict:
    return {
        "status": report.status,
        "remote_reachable": report.remote_reachable,
        "free_bytes": report.free_bytes,
        "low_disk_space": report.low_disk_space,
        "services": report.services,
        "warnings": list(report.warnings),
        "checked_at": report.checked_at.isoformat(),
    }


def archive_entries_to_list(entries: Iterable[ArchiveEntry]) -> list:
    return [
        {"name": e.name, "created_at": e.created_at.isoformat(), "size": e.size}
        for e in entries
    ]


def error_to_dict(error: VolbackError) -> dict:
    return {
        "outcome": "fatal",
        "error": type(error).__name__,
        "message": error.message,
        "details": error.details,
    }


def redacted_config(config: VolbackConfig) -> dict:
    """Configuration with credentials and database passwords removed."""
    from volback.lifecycle.probes import mask_password

    return {
        "bucket": config.bucket,
        "region": config.region,
        "endpoint_url": config.endpoint_url,
        "credentials": "explicit" if config.access_key_id else "default_chain",
        "remote_prefix": config.remote_prefix,
        "archive_prefix": config.archive_prefix,
        "database_volume": str(config.database_volume),
        "upload_volume": str(config.upload_volume),
        "config_files": [str(p) for p in config.config_files],
        "config_restore_dir": str(config.config_restore_dir) if config.config_restore_dir else None,
        "backup_dir": str(config.backup_dir),
        "state_path": str(config.state_path),
        "backup_mode": config.backup_mode.value,
        "manage_services": config.manage_services,
        "compose_file": str(config.compose_file) if config.compose_file else None,
        "compose_project": config.compose_project,
        "database_backend": config.database_backend.value,
        "database_url": mask_password(config.database_url) if config.database_url else None,
        "bootstrap_strategy": config.bootstrap_strategy.value,
        "local_retention": asdict(config.local_retention),
        "remote_retention": asdict(config.remote_retention),
        "backup_schedule": config.backup_schedule,
        "sweep_schedule": config.sweep_schedule,
        "health_schedule": config.health_schedule,
        "min_free_bytes": config.min_free_bytes,
    }
