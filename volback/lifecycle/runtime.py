# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Container runtime driver - starts, stops and inspects compose services.
"""

import asyncio
from pathlib import Path
from typing import List, Protocol

import structlog

from volback.exceptions import ServiceCommandError

logger = structlog.get_logger()

DEFAULT_COMMAND_TIMEOUT = 120.0


class ContainerRuntime(Protocol):
    """What the lifecycle controller needs from a container runtime."""

    async def stop(self, service: str) -> None: ...

    async def start(self, service: str) -> None: ...

    async def is_running(self, service: str) -> bool: ...


class ComposeRuntime:
    """
    Drives services through the docker compose CLI.

    `start` uses `up -d --no-deps` so a service whose container does not
    exist yet (first boot after a bootstrap restore) is created as well.
    """

    def __init__(
        self,
        compose_file: Path,
        project: str,
        docker_binary: str = "docker",
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ):
        self.compose_file = Path(compose_file)
        self.project = project
        self.docker_binary = docker_binary
        self.command_timeout = command_timeout

    def _compose_args(self, *args: str) -> List[str]:
        return [
            self.docker_binary,
            "compose",
            "-f",
            str(self.compose_file),
            "-p",
            self.project,
            *args,
        ]

    async def _run(self, argv: List[str]) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ServiceCommandError(
                f"Failed to run {argv[0]}: {e}",
                details={"command": argv},
            )

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.command_timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise ServiceCommandError(
                f"Command timed out after {self.command_timeout}s",
                details={"command": argv},
            )

        if process.returncode != 0:
            raise ServiceCommandError(
                f"Command exited with status {process.returncode}",
                details={
                    "command": argv,
                    "stderr": stderr.decode(errors="replace").strip()[-2000:],
                },
            )

        return stdout.decode(errors="replace")

    async def stop(self, service: str) -> None:
        logger.info("compose_service_stopping", service=service, project=self.project)
        await self._run(self._compose_args("stop", service))

    async def start(self, service: str) -> None:
        logger.info("compose_service_starting", service=service, project=self.project)
        await self._run(self._compose_args("up", "-d", "--no-deps", service))

    async def is_running(self, service: str) -> bool:
        output = await self._run(self._compose_args("ps", "-q", service))
        container_ids = output.split()
        if not container_ids:
            return False

        state = await self._run(
            [self.docker_binary, "inspect", "-f", "{{.State.Running}}", container_ids[0]]
        )
        return state.strip().lower() == "true"
