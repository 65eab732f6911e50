# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Volback FastAPI Integration - admin routes and lifespan.

This module provides:
- Protected admin endpoints (backup, restore, listings, health, status, runs)
- A lifespan that runs the startup bootstrap and the scheduler
"""

import asyncio
import os
from contextlib import asynccontextmanager
from typing import Any, Literal, Mapping

import structlog
from fastapi import Depends, FastAPI, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from volback.config import RestoreMode, VolbackConfig
from volback.core import (
    VolbackState,
    get_status,
    health_check,
    initialize_state,
    list_backups,
    shutdown_state,
)
from volback.exceptions import Busy, NoBackupAvailable, VolbackError
from volback.journal import list_runs
from volback.orchestrator import restore, run_once
from volback.reporting import (
    archive_entries_to_list,
    backup_result_to_dict,
    error_to_dict,
    health_report_to_dict,
    redacted_config,
    restore_result_to_dict,
)

logger = structlog.get_logger()

# Security
security = HTTPBearer(auto_error=False)


class RestoreRequest(BaseModel):
    """Body of POST /restore."""

    archive: str | None = None  # Name, or "latest"/None for the newest
    volumes_only: bool = False


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> bool:
    """
    Verify API key from Authorization header.

    The API key is read from the VOLBACK_ADMIN_API_KEY environment variable.
    Requests must include: Authorization: Bearer <api_key>

    Raises:
        HTTPException: If API key is missing or invalid
    """
    api_key = os.getenv("VOLBACK_ADMIN_API_KEY")

    if not api_key:
        raise HTTPException(
            status_code=500,
            detail="VOLBACK_ADMIN_API_KEY environment variable not set",
        )

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Authorization header required",
        )

    if credentials.credentials != api_key:
        raise HTTPException(
            status_code=403,
            detail="Invalid API key",
        )

    return True


def _http_error(error: VolbackError) -> HTTPException:
    if isinstance(error, Busy):
        status_code = 409
    elif isinstance(error, NoBackupAvailable):
        status_code = 404
    else:
        status_code = 500
    return HTTPException(status_code=status_code, detail=error_to_dict(error))


def register_volback_routes(
    app: FastAPI,
    config: VolbackConfig,
    state: VolbackState,
    prefix: str = "/admin/volback",
) -> None:
    """
    Register volback admin endpoints on a FastAPI app.

    All endpoints require Bearer token authentication.

    Args:
        app: FastAPI application
        config: Volback configuration
        state: Runtime state
        prefix: URL prefix for endpoints (default: /admin/volback)
    """

    @app.post(f"{prefix}/backup", dependencies=[Depends(verify_api_key)])
    async def trigger_backup() -> dict:
        """
        Run a backup now.

        Busy -> 409, fatal -> 500.
        """
        try:
            result = await run_once(config, state)
        except VolbackError as e:
            raise _http_error(e)
        return backup_result_to_dict(result)

    @app.post(f"{prefix}/restore", dependencies=[Depends(verify_api_key)])
    async def trigger_restore(request: RestoreRequest) -> dict:
        """
        Restore an archive (latest when none is named).

        Busy -> 409, no archive -> 404, fatal -> 500.
        """
        mode = RestoreMode.VOLUMES_ONLY if request.volumes_only else RestoreMode.FULL
        try:
            result = await restore(config, state, request.archive, mode)
        except VolbackError as e:
            raise _http_error(e)
        return restore_result_to_dict(result)

    @app.get(f"{prefix}/backups", dependencies=[Depends(verify_api_key)])
    async def get_backups(location: Literal["local", "remote", "all"] = "all") -> dict:
        """
        List archives per location, oldest first.
        """
        try:
            listing = await list_backups(config, state, location)
        except VolbackError as e:
            raise _http_error(e)
        return {
            key: archive_entries_to_list(value) if key in ("local", "remote") else value
            for key, value in listing.items()
        }

    @app.get(f"{prefix}/health", dependencies=[Depends(verify_api_key)])
    async def get_health() -> dict:
        """
        Remote reachability and local free space.
        """
        return health_report_to_dict(await health_check(config, state))

    @app.get(f"{prefix}/status", dependencies=[Depends(verify_api_key)])
    async def get_volback_status() -> dict:
        """
        Counters, service states and journal statistics.
        """
        return await get_status(config, state)

    @app.get(f"{prefix}/runs", dependencies=[Depends(verify_api_key)])
    async def get_runs(
        limit: int = 50,
        offset: int = 0,
        kind: Literal["backup", "restore", "bootstrap", "sweep"] | None = None,
    ) -> list:
        """
        List journaled runs, newest first.

        Args:
            limit: Maximum number of runs to return
            offset: Number of runs to skip
            kind: Filter by run kind
        """
        return await list_runs(state["journal_db_path"], limit, offset, kind)

    @app.get(f"{prefix}/config", dependencies=[Depends(verify_api_key)])
    async def get_config() -> dict:
        """
        Get current configuration (sensitive values redacted).
        """
        return redacted_config(config)


@asynccontextmanager
async def volback_lifespan(
    app: FastAPI,
    config: VolbackConfig,
    prefix: str = "/admin/volback",
    run_daemon_loop: bool = True,
    runtime: Any = None,
    probes: Mapping[Any, Any] | None = None,
    store: Any = None,
):
    """
    Lifespan context manager for FastAPI.

        app = FastAPI(lifespan=lambda app: volback_lifespan(app, config))

    Runs the startup bootstrap, starts services and the scheduler in the
    background; routes are served meanwhile (the run-lock keeps a manual
    backup or restore from overlapping the bootstrap).

    Args:
        app: FastAPI application
        config: Volback configuration
        prefix: URL prefix for admin endpoints
        run_daemon_loop: Run bootstrap and the scheduler
        runtime, probes, store: Injected collaborators (see initialize_state)
    """
    from volback.scheduler import run_daemon

    logger.info("volback_lifespan_starting", bucket=config.bucket)

    state = await initialize_state(config, runtime=runtime, probes=probes, store=store)
    app.state.volback_state = state
    app.state.volback_config = config

    register_volback_routes(app, config, state, prefix)

    shutdown = asyncio.Event()
    daemon_task = None
    if run_daemon_loop:
        daemon_task = asyncio.create_task(run_daemon(config, state, shutdown))

    logger.info("volback_lifespan_started")

    try:
        yield
    finally:
        logger.info("volback_lifespan_stopping")
        shutdown.set()
        if daemon_task is not None:
            try:
                await daemon_task
            except VolbackError as e:
                logger.error("volback_daemon_failed", error=str(e))
        await shutdown_state(state)
        logger.info("volback_lifespan_stopped")


def get_volback_state(app: FastAPI) -> VolbackState:
    """
    Get volback state from a FastAPI app.

    Raises:
        RuntimeError: If volback is not initialized
    """
    state = getattr(app.state, "volback_state", None)
    if not state:
        raise RuntimeError("volback not initialized. Use volback_lifespan first.")
    return state
