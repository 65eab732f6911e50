# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Example FastAPI Application with volback Integration.

A small admin service living next to a docker compose Firefly III stack:
it restores the latest archive on first start, runs the daily backup and
the weekly retention sweep, and exposes admin endpoints.

Run with:
    uvicorn examples.basic_app:app

Environment variables:
    S3_BUCKET, S3_ENDPOINT, S3_ACCESS_KEY, S3_SECRET_KEY: Remote store
    VOLBACK_DB_VOLUME, VOLBACK_UPLOAD_VOLUME: Volume directories
    VOLBACK_COMPOSE_FILE: docker-compose.yml of the protected stack
    DATABASE_URL: mysql://user:pass@db:3306/firefly (readiness probes)
    VOLBACK_ADMIN_API_KEY: API key for admin endpoints
"""

import os
from pathlib import Path

from fastapi import FastAPI

from volback.builder import (
    build_config,
    create_empty_config,
    include_config_files,
    keep_local,
    keep_remote,
    restore_on_startup,
    run_daily_at,
    with_bucket,
    with_compose,
    with_credentials,
    with_database,
    with_endpoint,
    with_volumes,
)
from volback.config import BootstrapStrategy
from volback.integrations.fastapi import volback_lifespan


def create_volback_config():
    """
    Create volback configuration from environment variables.

    This uses the functional builder pattern for clean, composable configuration.
    For a plain environment-driven setup, create_config_from_env() does the same.
    """
    root = Path(os.getenv("FIREFLY_ROOT", "/srv/firefly"))

    config = create_empty_config()

    # Remote store
    config = with_bucket(config, os.getenv("S3_BUCKET", "firefly-backups"))
    config = with_endpoint(config, os.getenv("S3_ENDPOINT"), os.getenv("S3_REGION", "us-east-1"))
    if os.getenv("S3_ACCESS_KEY"):
        config = with_credentials(config, os.environ["S3_ACCESS_KEY"], os.environ["S3_SECRET_KEY"])

    # What goes into every archive
    config = with_volumes(
        config,
        Path(os.getenv("VOLBACK_DB_VOLUME", "/data/firefly_iii_db")),
        Path(os.getenv("VOLBACK_UPLOAD_VOLUME", "/data/firefly_iii_upload")),
    )
    config = include_config_files(config, [root / ".env", root / ".db.env"])

    # Services
    config = with_compose(config, root / "docker-compose.yml")
    if os.getenv("DATABASE_URL"):
        config = with_database(config, os.environ["DATABASE_URL"])

    # Retention: 30 local copies, 30 days remotely
    config = keep_local(config, max_count=30)
    config = keep_remote(config, max_age_days=30)

    # Schedule (UTC) and cold start
    config = run_daily_at(config, "03:00")
    strategy = (
        BootstrapStrategy.IF_EMPTY if os.getenv("DATABASE_URL") else BootstrapStrategy.ALWAYS
    )
    config = restore_on_startup(config, strategy, delay_seconds=5)

    return build_config(config)


volback_config = create_volback_config()

# Create FastAPI app
app = FastAPI(
    title="Firefly III backup admin",
    description="Backup and restore of the Firefly III volumes",
    version="1.0.0",
    lifespan=lambda app: volback_lifespan(app, volback_config),
)


@app.get("/")
async def root():
    return {"service": "volback", "admin": "/admin/volback"}


# ============================================================================
# Admin endpoints (automatically registered by the volback lifespan)
# ============================================================================
#
# POST /admin/volback/backup
#   - Run a backup now (409 while another run holds the lock)
#
# POST /admin/volback/restore
#   - Body: {"archive": "firefly_backup_20240101_030000.tar.gz", "volumes_only": false}
#   - "archive" may be omitted or "latest"
#
# GET /admin/volback/backups?location=all
#   - Local and remote archives, oldest first
#
# GET /admin/volback/health
#   - Remote reachability, free disk space, service states
#
# GET /admin/volback/status
#   - Counters, lock holder, journal statistics
#
# GET /admin/volback/runs?limit=50&offset=0&kind=backup
#   - Journaled runs, newest first
#
# GET /admin/volback/config
#   - Current configuration (credentials redacted)
#
# All admin endpoints require:
#   Authorization: Bearer <VOLBACK_ADMIN_API_KEY>


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
