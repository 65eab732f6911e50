# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Volback lifecycle module - service state machine, runtime driver and probes.
"""

from volback.lifecycle.controller import (
    ServiceController,
    ServiceState,
    Target,
    start_services,
)
from volback.lifecycle.probes import (
    AppProbe,
    MySQLProbe,
    PostgresProbe,
    count_users,
    database_probe,
)
from volback.lifecycle.runtime import ComposeRuntime, ContainerRuntime

__all__ = [
    "ServiceController",
    "ServiceState",
    "Target",
    "start_services",
    "AppProbe",
    "MySQLProbe",
    "PostgresProbe",
    "count_users",
    "database_probe",
    "ComposeRuntime",
    "ContainerRuntime",
]
