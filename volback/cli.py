# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
volback command line.

    volback backup
    volback restore <name|latest> [--volumes-only]
    volback list [local|remote|all]
    volback health-check
    volback bootstrap
    volback sweep
    volback runs [--limit N] [--kind KIND]
    volback daemon

Configuration comes from the environment (see volback.env). Results are
printed to stdout as JSON, logs go to stderr.

Exit codes: 0 success, 1 success with warnings, 2 fatal failure (including
Busy), 64 usage or configuration error.
"""

import argparse
import asyncio
import json
import signal
import sys
from typing import Any, List

import structlog

from volback.config import RestoreMode, VolbackConfig
from volback.exceptions import ConfigurationError, VolbackError

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_WARNINGS = 1
EXIT_FATAL = 2
EXIT_USAGE = 64


class _ArgumentParser(argparse.ArgumentParser):
    """argparse exits with 2 on usage errors; 2 means fatal here."""

    def error(self, message: str):
        self.print_usage(sys.stderr)
        self.exit(EXIT_USAGE, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="volback",
        description="Backup and restore of the application's data volumes to S3",
    )
    parser.add_argument("--log-level", default="INFO", help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--json-logs", action="store_true", help="Log JSON lines to stderr")

    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("backup", help="Run a backup now")

    restore_parser = commands.add_parser("restore", help="Restore an archive")
    restore_parser.add_argument("archive", help="Archive name, archive file path, or 'latest'")
    restore_parser.add_argument(
        "--volumes-only",
        action="store_true",
        help="Only replace volume data; do not stop or start services",
    )

    list_parser = commands.add_parser("list", help="List archives")
    list_parser.add_argument(
        "location", nargs="?", default="all", choices=["local", "remote", "all"]
    )

    commands.add_parser("health-check", help="Check remote reachability and free disk space")
    commands.add_parser("bootstrap", help="Run the cold-start restore decision and restore")
    commands.add_parser("sweep", help="Apply retention to local and remote archives")

    runs_parser = commands.add_parser("runs", help="Show the run journal")
    runs_parser.add_argument("--limit", type=int, default=20)
    runs_parser.add_argument(
        "--kind", choices=["backup", "restore", "bootstrap", "sweep"], default=None
    )

    commands.add_parser("daemon", help="Bootstrap, start services and run the schedule")

    return parser


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _exit_code(warnings: List[str]) -> int:
    return EXIT_WARNINGS if warnings else EXIT_OK


async def _run_daemon(config: VolbackConfig, state: Any) -> int:
    from volback.scheduler import run_daemon

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown.set)

    logger.info("daemon_starting", bucket=config.bucket)
    await run_daemon(config, state, shutdown)
    logger.info("daemon_stopped")
    return EXIT_OK


async def run_command(args: argparse.Namespace, config: VolbackConfig, state: Any = None) -> int:
    """
    Execute one CLI command and print its result.

    Args:
        args: Parsed arguments
        config: Volback configuration
        state: Runtime state (default: initialize_state(config))
    """
    from volback import reporting
    from volback.core import get_status, health_check, initialize_state, list_backups, shutdown_state
    from volback.journal import list_runs
    from volback.orchestrator import bootstrap, restore, run_once
    from volback.retention import sweep_all

    owns_state = state is None
    if owns_state:
        state = await initialize_state(config)

    try:
        if args.command == "backup":
            result = await run_once(config, state)
            _emit(reporting.backup_result_to_dict(result))
            return _exit_code(result.warnings)

        if args.command == "restore":
            mode = RestoreMode.VOLUMES_ONLY if args.volumes_only else RestoreMode.FULL
            result = await restore(config, state, args.archive, mode)
            _emit(reporting.restore_result_to_dict(result))
            return _exit_code(result.warnings)

        if args.command == "list":
            listing = await list_backups(config, state, args.location)
            _emit(
                {
                    key: reporting.archive_entries_to_list(value)
                    if key in ("local", "remote")
                    else value
                    for key, value in listing.items()
                }
            )
            return EXIT_WARNINGS if "remote_error" in listing else EXIT_OK

        if args.command == "health-check":
            report = await health_check(config, state)
            _emit(reporting.health_report_to_dict(report))
            return _exit_code(report.warnings)

        if args.command == "bootstrap":
            result = await bootstrap(config, state)
            if result is None:
                _emit({"outcome": "skipped", "restored": False})
                return EXIT_OK
            _emit(reporting.restore_result_to_dict(result))
            return _exit_code(result.warnings)

        if args.command == "sweep":
            result = await sweep_all(config, state)
            _emit(reporting.retention_result_to_dict(result))
            return _exit_code(result.warnings)

        if args.command == "runs":
            _emit(
                {
                    "runs": await list_runs(state["journal_db_path"], args.limit, 0, args.kind),
                    "status": await get_status(config, state),
                }
            )
            return EXIT_OK

        if args.command == "daemon":
            return await _run_daemon(config, state)

        raise ValueError(f"Unknown command: {args.command}")

    except VolbackError as e:
        _emit(reporting.error_to_dict(e))
        return EXIT_FATAL

    finally:
        if owns_state:
            await shutdown_state(state)


def main(argv: List[str] | None = None) -> int:
    """Console entry point."""
    from volback.env import create_config_from_env
    from volback.log import configure_logging

    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, json_output=args.json_logs)

    try:
        config = create_config_from_env()
        return asyncio.run(run_command(args, config))
    except ConfigurationError as e:
        logger.error("configuration_error", error=str(e))
        print(json.dumps({"outcome": "config_error", "message": e.message, "details": e.details}),
              file=sys.stderr)
        return EXIT_USAGE


if __name__ == "__main__":
    sys.exit(main())
