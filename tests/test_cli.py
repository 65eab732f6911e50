# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Command line tests: exit codes and JSON output.
"""

import json

import pytest

from volback.cli import EXIT_FATAL, EXIT_OK, EXIT_USAGE, EXIT_WARNINGS, build_parser, main, run_command
from volback.lock import run_lock


def _run(args):
    return build_parser().parse_args(args)


@pytest.mark.asyncio
async def test_backup_command(test_config, test_state, capsys):
    code = await run_command(_run(["backup"]), test_config, test_state)

    assert code == EXIT_OK
    output = json.loads(capsys.readouterr().out)
    assert output["outcome"] == "success"
    assert output["persisted_remote"] is True


@pytest.mark.asyncio
async def test_backup_with_unreachable_remote_exits_with_warnings(
    test_config, test_state, fake_store, capsys
):
    fake_store.reachable = False

    code = await run_command(_run(["backup"]), test_config, test_state)

    assert code == EXIT_WARNINGS
    output = json.loads(capsys.readouterr().out)
    assert output["warnings"] == ["Remote store unreachable; archive kept locally only"]


@pytest.mark.asyncio
async def test_restore_without_archives_is_fatal(test_config, test_state, capsys):
    code = await run_command(_run(["restore", "latest"]), test_config, test_state)

    assert code == EXIT_FATAL
    output = json.loads(capsys.readouterr().out)
    assert output["error"] == "NoBackupAvailable"


@pytest.mark.asyncio
async def test_busy_is_fatal(test_config, test_state, capsys):
    async with run_lock(test_state["lock_path"], "backup", 1.0):
        code = await run_command(_run(["sweep"]), test_config, test_state)

    assert code == EXIT_FATAL
    assert json.loads(capsys.readouterr().out)["error"] == "Busy"


@pytest.mark.asyncio
async def test_list_and_runs_commands(test_config, test_state, capsys):
    await run_command(_run(["backup"]), test_config, test_state)
    capsys.readouterr()

    code = await run_command(_run(["list", "local"]), test_config, test_state)
    assert code == EXIT_OK
    listing = json.loads(capsys.readouterr().out)
    assert list(listing) == ["local"]
    assert len(listing["local"]) == 1

    code = await run_command(_run(["runs", "--kind", "backup"]), test_config, test_state)
    assert code == EXIT_OK
    runs = json.loads(capsys.readouterr().out)
    assert runs["runs"][0]["kind"] == "backup"


@pytest.mark.asyncio
async def test_bootstrap_command_on_fresh_install(test_config, test_state, capsys):
    code = await run_command(_run(["bootstrap"]), test_config, test_state)

    assert code == EXIT_OK
    assert json.loads(capsys.readouterr().out) == {"outcome": "skipped", "restored": False}


def test_usage_error_exit_code():
    with pytest.raises(SystemExit) as exc_info:
        build_parser().parse_args(["explode"])
    assert exc_info.value.code == EXIT_USAGE


def test_missing_configuration_exit_code(monkeypatch):
    monkeypatch.delenv("S3_BUCKET", raising=False)

    assert main(["health-check"]) == EXIT_USAGE
