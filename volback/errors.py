# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for volback.

These helpers centralize wording for common configuration errors so that
all modules present consistent, actionable messages.
"""


def explain_missing_bucket_env() -> str:
    """
    Explain that the S3 bucket environment variable is missing.
    """

    return (
        "S3 bucket is not configured. "
        "Set the S3_BUCKET environment variable or pass bucket=... to create_config()."
    )


def explain_missing_volumes_env() -> str:
    """
    Explain that the volume paths are missing.
    """

    return (
        "Volume paths are not configured. "
        "Set VOLBACK_DB_VOLUME and VOLBACK_UPLOAD_VOLUME to the directories holding "
        "the database files and the uploaded files."
    )


def explain_invalid_int_env(name: str, value: str | None) -> str:
    """
    Explain that an integer environment variable is invalid.
    """

    return (
        f"Invalid {name} value: {value!r}. "
        "It must be a non-negative integer."
    )


def explain_invalid_float_env(name: str, value: str | None) -> str:
    """
    Explain that a numeric (seconds) environment variable is invalid.
    """

    return (
        f"Invalid {name} value: {value!r}. "
        "It must be a non-negative number of seconds."
    )


def explain_invalid_backup_mode_env(value: str | None) -> str:
    """
    Explain that VOLBACK_BACKUP_MODE is invalid.
    """

    return (
        f"Invalid VOLBACK_BACKUP_MODE value: {value!r}. "
        "Expected 'cold' (stop services while archiving) or 'hot' (read live volumes)."
    )


def explain_invalid_bootstrap_strategy_env(value: str | None) -> str:
    """
    Explain that VOLBACK_BOOTSTRAP_STRATEGY is invalid.
    """

    return (
        f"Invalid VOLBACK_BOOTSTRAP_STRATEGY value: {value!r}. "
        "Expected 'always' or 'if_empty'."
    )


def explain_invalid_database_backend_env(value: str | None) -> str:
    """
    Explain that the database backend env is invalid.
    """

    return (
        f"Invalid VOLBACK_DB_BACKEND value: {value!r}. "
        "Expected 'mysql' or 'postgres', or leave unset to infer it from DATABASE_URL."
    )
