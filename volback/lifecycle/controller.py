# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Service Lifecycle Controller - stops and starts the app and its database.

State machine per target:

    Stopped --start()--> Starting --ready probe--> Ready
    Ready|Starting --stop()--> Stopped
    any --unexpected probe error / readiness timeout--> Degraded

Degraded is only left through stop() followed by start(). Orchestrators
observe states through wait_ready(); they never drive the runtime directly.
"""

import asyncio
import time
from enum import Enum
from typing import Any, Dict, Iterable, Mapping

import structlog

from volback.exceptions import ServiceTransitionError, VolbackError

logger = structlog.get_logger()


class ServiceState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    READY = "ready"
    DEGRADED = "degraded"


class Target(str, Enum):
    APP = "app"
    DATABASE = "database"


# Dependents stop first and start last
STOP_ORDER = (Target.APP, Target.DATABASE)
START_ORDER = (Target.DATABASE, Target.APP)


def _ordered(targets: Iterable[Target], order: tuple) -> list:
    wanted = {Target(t) for t in targets}
    return [t for t in order if t in wanted]


class ServiceController:
    """
    Owns the ServiceState of each target.

    Args:
        runtime: Container runtime (stop/start/is_running by service name)
        probes: Readiness probe per target
        services: Runtime service name per target
    """

    def __init__(
        self,
        runtime: Any,
        probes: Mapping[Target, Any],
        services: Mapping[Target, str],
    ):
        self.runtime = runtime
        self.probes = dict(probes)
        self.services = dict(services)
        self._states: Dict[Target, ServiceState] = {t: ServiceState.STOPPED for t in Target}

    def state_of(self, target: Target) -> ServiceState:
        return self._states[Target(target)]

    @property
    def states(self) -> Dict[str, str]:
        return {t.value: s.value for t, s in self._states.items()}

    async def stop(self, targets: Iterable[Target]) -> None:
        """
        Best-effort graceful shutdown.

        Runtime errors are logged and the target is still recorded Stopped;
        this never fails the enclosing run.
        """
        for target in _ordered(targets, STOP_ORDER):
            service = self.services[target]
            try:
                await self.runtime.stop(service)
                logger.info("service_stopped", target=target.value, service=service)
            except (VolbackError, OSError) as e:
                logger.warning(
                    "service_stop_failed",
                    target=target.value,
                    service=service,
                    error=str(e),
                )
            self._states[target] = ServiceState.STOPPED

    async def start(self, targets: Iterable[Target]) -> None:
        """
        Ask the runtime to start targets. Returns as soon as the runtime
        accepted the request; follow with wait_ready().

        Raises:
            ServiceTransitionError: A target is not Stopped
            ServiceCommandError: The runtime refused to start a target
                (the target is left Degraded)
        """
        ordered = _ordered(targets, START_ORDER)

        not_stopped = [t.value for t in ordered if self._states[t] is not ServiceState.STOPPED]
        if not_stopped:
            raise ServiceTransitionError(
                "start() is only allowed from Stopped",
                details={
                    "targets": not_stopped,
                    "states": {t: self._states[Target(t)].value for t in not_stopped},
                },
            )

        for target in ordered:
            service = self.services[target]
            try:
                await self.runtime.start(service)
            except (VolbackError, OSError) as e:
                self._states[target] = ServiceState.DEGRADED
                logger.error(
                    "service_start_failed",
                    target=target.value,
                    service=service,
                    error=str(e),
                )
                raise
            self._states[target] = ServiceState.STARTING
            logger.info("service_starting", target=target.value, service=service)

    async def wait_ready(
        self,
        target: Target,
        timeout: float,
        poll_interval: float,
    ) -> ServiceState:
        """
        Poll the target's readiness probe until Ready or timeout.

        Never raises for readiness: a timeout or an unexpected probe error
        leaves the target Degraded and returns that state.
        """
        target = Target(target)

        if self._states[target] is ServiceState.DEGRADED:
            return ServiceState.DEGRADED

        probe = self.probes.get(target)
        if probe is None:
            self._states[target] = ServiceState.READY
            return ServiceState.READY

        deadline = time.monotonic() + timeout
        attempts = 0

        while True:
            attempts += 1
            remaining = deadline - time.monotonic()
            try:
                ready = await asyncio.wait_for(probe.check(), timeout=max(remaining, 0.1))
            except asyncio.TimeoutError:
                ready = False
            except Exception as e:
                logger.warning(
                    "readiness_probe_error",
                    target=target.value,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                self._states[target] = ServiceState.DEGRADED
                return ServiceState.DEGRADED

            if ready:
                self._states[target] = ServiceState.READY
                logger.info("service_ready", target=target.value, attempts=attempts)
                return ServiceState.READY

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._states[target] = ServiceState.DEGRADED
                logger.warning(
                    "service_not_ready",
                    target=target.value,
                    timeout=timeout,
                    attempts=attempts,
                )
                return ServiceState.DEGRADED

            await asyncio.sleep(min(poll_interval, remaining))


async def start_services(controller: ServiceController, config: Any) -> Dict[Target, ServiceState]:
    """
    Start the database, wait for it, then start the app and wait for it.

    Returns:
        Final state per target. A runtime refusal leaves the target Degraded
        and skips the targets after it.
    """
    results: Dict[Target, ServiceState] = {}
    timeouts = {
        Target.DATABASE: config.db_ready_timeout,
        Target.APP: config.app_ready_timeout,
    }

    for target in START_ORDER:
        current = controller.state_of(target)
        if current is ServiceState.READY:
            results[target] = current
            continue
        if current is ServiceState.DEGRADED:
            await controller.stop([target])
        if controller.state_of(target) is ServiceState.STOPPED:
            try:
                await controller.start([target])
            except VolbackError:
                results[target] = ServiceState.DEGRADED
                break
        results[target] = await controller.wait_ready(
            target, timeouts[target], config.poll_interval
        )

    return results
