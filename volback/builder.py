# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Volback Builder - Functional builder pattern for configuration.

This module provides pure functions for building VolbackConfig objects.
Each function takes a config dict and returns a new dict with the
modification applied (immutable updates).
"""

from dataclasses import MISSING, fields
from pathlib import Path
from typing import Any, Callable, Dict, List

from volback.config import (
    BackupMode,
    BootstrapStrategy,
    DatabaseBackend,
    VolbackConfig,
)


# Type alias for builder functions
ConfigDict = Dict[str, Any]
BuilderFunc = Callable[[ConfigDict], ConfigDict]


def create_empty_config() -> ConfigDict:
    """
    Create an initial configuration dictionary.

    Returns:
        Dict with default values for all configuration fields
    """
    config: ConfigDict = {"bucket": ""}
    for f in fields(VolbackConfig):
        if f.default is not MISSING:
            config[f.name] = f.default
        elif f.default_factory is not MISSING:
            config[f.name] = f.default_factory()
    return config


def with_bucket(config: ConfigDict, bucket_name: str) -> ConfigDict:
    """
    Set the bucket holding remote archives.

    Args:
        config: Current configuration dictionary
        bucket_name: Name of the bucket

    Returns:
        New configuration dictionary with bucket set
    """
    return {**config, "bucket": bucket_name}


def with_endpoint(
    config: ConfigDict,
    endpoint_url: str | None,
    region: str = "us-east-1",
) -> ConfigDict:
    """
    Point the remote store at an S3-compatible endpoint.

    Args:
        config: Current configuration dictionary
        endpoint_url: Endpoint URL (None = AWS)
        region: Region name
    """
    return {**config, "endpoint_url": endpoint_url, "region": region}


def with_credentials(
    config: ConfigDict,
    access_key_id: str,
    secret_access_key: str,
) -> ConfigDict:
    """Set explicit remote store credentials."""
    return {
        **config,
        "access_key_id": access_key_id,
        "secret_access_key": secret_access_key,
    }


def with_volumes(
    config: ConfigDict,
    database_volume: Path,
    upload_volume: Path,
) -> ConfigDict:
    """
    Set the directories holding the database and upload volumes.

    Args:
        config: Current configuration dictionary
        database_volume: Database files directory
        upload_volume: Uploaded files directory
    """
    return {
        **config,
        "database_volume": Path(database_volume),
        "upload_volume": Path(upload_volume),
    }


def include_config_files(config: ConfigDict, paths: List[Path]) -> ConfigDict:
    """
    Add configuration files captured into every archive.

    Args:
        config: Current configuration dictionary
        paths: Files such as .env and .db.env
    """
    new_files = list(config["config_files"]) + [Path(p) for p in paths]
    return {**config, "config_files": new_files}


def hot_backups(config: ConfigDict) -> ConfigDict:
    """
    Archive live volumes without stopping services.

    Only safe when the database tolerates file-level copies while running.
    """
    return {**config, "backup_mode": BackupMode.HOT}


def cold_backups(config: ConfigDict) -> ConfigDict:
    """Stop services while archiving (the default)."""
    return {**config, "backup_mode": BackupMode.COLD}


def keep_local(config: ConfigDict, max_count: int = 0, max_age_days: int = 0) -> ConfigDict:
    """
    Set retention for the local backup directory.

    Args:
        config: Current configuration dictionary
        max_count: Keep at most this many archives (0 = unlimited)
        max_age_days: Delete archives older than this (0 = never)
    """
    return {**config, "local_max_count": max_count, "local_max_age_days": max_age_days}


def keep_remote(config: ConfigDict, max_count: int = 0, max_age_days: int = 0) -> ConfigDict:
    """
    Set retention for the remote bucket.

    Args:
        config: Current configuration dictionary
        max_count: Keep at most this many archives (0 = unlimited)
        max_age_days: Delete archives older than this (0 = never)
    """
    return {**config, "remote_max_count": max_count, "remote_max_age_days": max_age_days}


def run_daily_at(config: ConfigDict, time: str) -> ConfigDict:
    """
    Schedule the daily backup run.

    Args:
        config: Current configuration dictionary
        time: Time in HH:MM format (UTC)

    Returns:
        New configuration dictionary with schedule set
    """
    return {**config, "backup_schedule": time}


def restore_on_startup(
    config: ConfigDict,
    strategy: BootstrapStrategy | str = BootstrapStrategy.ALWAYS,
    delay_seconds: float | None = None,
) -> ConfigDict:
    """
    Choose the cold-start restore strategy.

    Args:
        config: Current configuration dictionary
        strategy: 'always' or 'if_empty'
        delay_seconds: Pre-flight delay before the decision is made
    """
    updated = {**config, "bootstrap_strategy": BootstrapStrategy(strategy)}
    if delay_seconds is not None:
        updated["startup_delay_seconds"] = delay_seconds
    return updated


def with_compose(
    config: ConfigDict,
    compose_file: Path,
    project: str = "firefly",
    app_service: str = "app",
    db_service: str = "db",
) -> ConfigDict:
    """Manage services through a docker compose project."""
    return {
        **config,
        "manage_services": True,
        "compose_file": Path(compose_file),
        "compose_project": project,
        "app_service": app_service,
        "db_service": db_service,
    }


def unmanaged_services(config: ConfigDict) -> ConfigDict:
    """Never start or stop services; another controller owns them."""
    return {**config, "manage_services": False}


def with_database(
    config: ConfigDict,
    url: str,
    backend: DatabaseBackend | str | None = None,
    user_table: str = "users",
) -> ConfigDict:
    """
    Set the database used by readiness and user-count probes.

    Args:
        config: Current configuration dictionary
        url: mysql://... or postgresql://... URL
        backend: Explicit backend, inferred from the URL scheme when omitted
        user_table: Table counted by the conditional bootstrap probe
    """
    if backend is None:
        backend = (
            DatabaseBackend.POSTGRES
            if url.lower().startswith(("postgres://", "postgresql://"))
            else DatabaseBackend.MYSQL
        )
    return {
        **config,
        "database_url": url,
        "database_backend": DatabaseBackend(backend),
        "user_table": user_table,
    }


def build_config(config_dict: ConfigDict) -> VolbackConfig:
    """
    Validate and build an immutable VolbackConfig from a configuration dictionary.

    Args:
        config_dict: Configuration dictionary built using builder functions

    Returns:
        Validated, immutable VolbackConfig instance

    Raises:
        ConfigurationError: If validation fails
    """
    if not config_dict.get("bucket"):
        from volback.exceptions import ConfigurationError

        raise ConfigurationError("bucket is required")

    return VolbackConfig(**config_dict)


def pipe(*funcs: BuilderFunc) -> BuilderFunc:
    """
    Compose multiple builder functions into a single function.

        config = pipe(
            lambda c: with_bucket(c, "my-bucket"),
            hot_backups,
        )(create_empty_config())
    """

    def composed(config: ConfigDict) -> ConfigDict:
        result = config
        for func in funcs:
            result = func(result)
        return result

    return composed


def build_from_steps(*steps: BuilderFunc) -> VolbackConfig:
    """
    Build config by applying a sequence of builder functions.

    This is a convenience function that combines pipe() and build_config().
    """
    config = create_empty_config()
    for step in steps:
        config = step(config)
    return build_config(config)


def create_config(
    bucket: str,
    *,
    database_volume: str | Path,
    upload_volume: str | Path,
    region: str = "us-east-1",
    endpoint_url: str | None = None,
    backup_dir: str | Path | None = None,
    state_path: str | Path | None = None,
    config_files: List[str | Path] | None = None,
    backup_mode: str | BackupMode = "cold",
    bootstrap_strategy: str | BootstrapStrategy = "always",
    database_url: str | None = None,
    compose_file: str | Path | None = None,
    **kwargs: Any,
) -> VolbackConfig:
    """
    Create volback configuration from simple parameters.

    This is the recommended user-facing API for creating configurations.

    Example:
        config = create_config(
            bucket="firefly-backups",
            database_volume="/data/firefly_iii_db",
            upload_volume="/data/firefly_iii_upload",
            endpoint_url="https://s3.eu-central-1.wasabisys.com",
            config_files=["/.env", "/.db.env"],
            compose_file="/docker-compose.yml",
        )
    """
    config_dict = create_empty_config()
    config_dict = with_bucket(config_dict, bucket)
    config_dict = with_endpoint(config_dict, endpoint_url, region)
    config_dict = with_volumes(config_dict, Path(database_volume), Path(upload_volume))

    if backup_dir:
        config_dict["backup_dir"] = Path(backup_dir)

    if state_path:
        config_dict["state_path"] = Path(state_path)

    if config_files:
        config_dict = include_config_files(config_dict, [Path(p) for p in config_files])

    if BackupMode(backup_mode) == BackupMode.HOT:
        config_dict = hot_backups(config_dict)

    config_dict = restore_on_startup(config_dict, bootstrap_strategy)

    if database_url:
        config_dict = with_database(config_dict, database_url)

    if compose_file:
        config_dict = with_compose(
            config_dict,
            Path(compose_file),
            project=kwargs.pop("compose_project", "firefly"),
        )

    for key, value in kwargs.items():
        if key in config_dict:
            config_dict[key] = value

    return build_config(config_dict)
