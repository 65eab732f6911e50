# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Environment-based configuration helpers.

Deployments ship their settings as .s3.env/.env files sourced
into the shell. create_config_from_env() reads the same variable names once,
at the process edge, and turns them into an immutable VolbackConfig.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Mapping

from volback.builder import create_config
from volback.config import BackupMode, BootstrapStrategy, DatabaseBackend, VolbackConfig
from volback.errors import (
    explain_invalid_backup_mode_env,
    explain_invalid_bootstrap_strategy_env,
    explain_invalid_database_backend_env,
    explain_invalid_float_env,
    explain_invalid_int_env,
    explain_missing_bucket_env,
    explain_missing_volumes_env,
)
from volback.exceptions import ConfigurationError


def _parse_int(env: Mapping[str, str], name: str, default: int) -> int:
    value = env.get(name)
    if not value:
        return default
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_int_env(name, value)) from exc
    if number < 0:
        raise ConfigurationError(explain_invalid_int_env(name, value))
    return number


def _parse_seconds(env: Mapping[str, str], name: str, default: float) -> float:
    value = env.get(name)
    if not value:
        return default
    try:
        seconds = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_float_env(name, value)) from exc
    if seconds < 0:
        raise ConfigurationError(explain_invalid_float_env(name, value))
    return seconds


def _parse_backup_mode(value: str | None) -> BackupMode:
    if not value:
        return BackupMode.COLD
    try:
        return BackupMode(value.lower())
    except ValueError as exc:
        raise ConfigurationError(explain_invalid_backup_mode_env(value)) from exc


def _parse_bootstrap_strategy(value: str | None) -> BootstrapStrategy:
    if not value:
        return BootstrapStrategy.ALWAYS
    try:
        return BootstrapStrategy(value.lower())
    except ValueError as exc:
        raise ConfigurationError(explain_invalid_bootstrap_strategy_env(value)) from exc


def _parse_database_backend(value: str | None, db_url: str | None) -> DatabaseBackend:
    if value:
        try:
            return DatabaseBackend(value.lower())
        except ValueError as exc:
            raise ConfigurationError(explain_invalid_database_backend_env(value)) from exc
    if db_url and db_url.lower().startswith(("postgres://", "postgresql://")):
        return DatabaseBackend.POSTGRES
    return DatabaseBackend.MYSQL


def _parse_paths(value: str | None) -> List[Path]:
    if not value:
        return []
    return [Path(p.strip()) for p in value.split(",") if p.strip()]


def _optional_schedule(env: Mapping[str, str], name: str, default: str) -> str | None:
    value = env.get(name)
    if value is None:
        return default
    if value.strip().lower() in ("", "off", "none", "disabled"):
        return None
    return value.strip()


def create_config_from_env(env: Mapping[str, str] | None = None) -> VolbackConfig:
    """
    Create a VolbackConfig from environment variables.

    Required:
        - S3_BUCKET: Bucket holding remote archives
        - VOLBACK_DB_VOLUME / VOLBACK_UPLOAD_VOLUME: Volume directories

    Optional environment variables:
        - S3_REGION, S3_ENDPOINT, S3_ACCESS_KEY, S3_SECRET_KEY
        - S3_PREFIX: Flat key prefix inside the bucket (must end with '/')
        - BACKUP_RETENTION_DAYS: Remote retention by age (default: 30)
        - BACKUP_KEEP_LOCAL: Number of local archives kept (default: 30)
        - STARTUP_DELAY: Seconds to wait before the startup restore (default: 5)
        - VOLBACK_BACKUP_DIR, VOLBACK_STATE_PATH
        - VOLBACK_CONFIG_FILES: Comma-separated files captured in archives
        - VOLBACK_CONFIG_RESTORE_DIR: Where restored config files are written
        - VOLBACK_BACKUP_MODE: 'cold' | 'hot' (default: cold)
        - VOLBACK_BOOTSTRAP_STRATEGY: 'always' | 'if_empty' (default: always)
        - VOLBACK_MANAGE_SERVICES: 'false' to never touch services
        - VOLBACK_COMPOSE_FILE, VOLBACK_COMPOSE_PROJECT
        - VOLBACK_APP_SERVICE, VOLBACK_DB_SERVICE
        - DATABASE_URL, VOLBACK_DB_BACKEND, VOLBACK_USER_TABLE
        - VOLBACK_LOCK_TIMEOUT, VOLBACK_TRANSFER_TIMEOUT
        - VOLBACK_BACKUP_SCHEDULE (HH:MM), VOLBACK_SWEEP_SCHEDULE ('sun 04:00'),
          VOLBACK_HEALTH_SCHEDULE (HH:MM); 'off' disables a job
        - VOLBACK_MIN_FREE_BYTES
    """
    env = os.environ if env is None else env

    bucket = env.get("S3_BUCKET")
    if not bucket:
        raise ConfigurationError(explain_missing_bucket_env())

    db_volume = env.get("VOLBACK_DB_VOLUME")
    upload_volume = env.get("VOLBACK_UPLOAD_VOLUME")
    if not db_volume or not upload_volume:
        raise ConfigurationError(explain_missing_volumes_env())

    db_url = env.get("DATABASE_URL")
    restore_dir = env.get("VOLBACK_CONFIG_RESTORE_DIR")
    manage = env.get("VOLBACK_MANAGE_SERVICES", "true").lower() not in ("0", "false", "no")

    return create_config(
        bucket=bucket,
        database_volume=db_volume,
        upload_volume=upload_volume,
        region=env.get("S3_REGION", "us-east-1"),
        endpoint_url=env.get("S3_ENDPOINT") or None,
        backup_dir=env.get("VOLBACK_BACKUP_DIR") or None,
        state_path=env.get("VOLBACK_STATE_PATH") or None,
        config_files=_parse_paths(env.get("VOLBACK_CONFIG_FILES")),
        backup_mode=_parse_backup_mode(env.get("VOLBACK_BACKUP_MODE")),
        bootstrap_strategy=_parse_bootstrap_strategy(env.get("VOLBACK_BOOTSTRAP_STRATEGY")),
        database_url=db_url,
        compose_file=env.get("VOLBACK_COMPOSE_FILE") or None,
        compose_project=env.get("VOLBACK_COMPOSE_PROJECT", "firefly"),
        access_key_id=env.get("S3_ACCESS_KEY") or None,
        secret_access_key=env.get("S3_SECRET_KEY") or None,
        remote_prefix=env.get("S3_PREFIX", ""),
        remote_max_age_days=_parse_int(env, "BACKUP_RETENTION_DAYS", 30),
        local_max_count=_parse_int(env, "BACKUP_KEEP_LOCAL", 30),
        startup_delay_seconds=_parse_seconds(env, "STARTUP_DELAY", 5.0),
        config_restore_dir=Path(restore_dir) if restore_dir else None,
        manage_services=manage,
        app_service=env.get("VOLBACK_APP_SERVICE", "app"),
        db_service=env.get("VOLBACK_DB_SERVICE", "db"),
        database_backend=_parse_database_backend(env.get("VOLBACK_DB_BACKEND"), db_url),
        user_table=env.get("VOLBACK_USER_TABLE", "users"),
        lock_timeout_seconds=_parse_seconds(env, "VOLBACK_LOCK_TIMEOUT", 30.0),
        transfer_timeout_seconds=_parse_seconds(env, "VOLBACK_TRANSFER_TIMEOUT", 3600.0),
        backup_schedule=_optional_schedule(env, "VOLBACK_BACKUP_SCHEDULE", "03:00"),
        sweep_schedule=_optional_schedule(env, "VOLBACK_SWEEP_SCHEDULE", "sun 04:00"),
        health_schedule=_optional_schedule(env, "VOLBACK_HEALTH_SCHEDULE", "06:00"),
        min_free_bytes=_parse_int(env, "VOLBACK_MIN_FREE_BYTES", 1024 * 1024 * 1024),
    )
