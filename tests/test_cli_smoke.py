"""Smoke tests for the procpilot CLI entry point."""

from __future__ import annotations

import json
import sys
from pathlib import Path

from procpilot import __version__


def test_help_lists_commands(run_procpilot) -> None:
    result = run_procpilot(["--help"])

    assert result.returncode == 0
    for expected in ["run", "next-name", "config"]:
        assert expected in result.stdout


def test_version_flag(run_procpilot) -> None:
    result = run_procpilot(["--version"])

    assert result.returncode == 0
    assert __version__ in result.stdout


def test_run_json_reports_logs_and_exit_code(run_procpilot, tmp_path: Path) -> None:
    log_dir = tmp_path / "logs"
    result = run_procpilot(
        [
            "--json",
            "run",
            "--log-dir",
            str(log_dir),
            "--prefix",
            "hello",
            "--",
            sys.executable,
            "-c",
            "print('hi from child')",
        ],
        cwd=tmp_path,
    )

    assert result.returncode == 0, result.stderr
    payload = json.loads(result.stdout)
    assert payload["exit_code"] == 0
    assert payload["iterations"] == 1
    assert payload["stdout_log"] == str(log_dir / "hello.out")
    assert payload["stderr_log"] == str(log_dir / "hello.err")
    assert (log_dir / "hello.out").read_text(encoding="utf-8").strip() == "hi from child"


def test_run_propagates_exit_code(run_procpilot, tmp_path: Path) -> None:
    result = run_procpilot(
        [
            "run",
            "--log-dir",
            str(tmp_path / "logs"),
            "--",
            sys.executable,
            "-c",
            "import sys; sys.exit(7)",
        ],
        cwd=tmp_path,
    )

    assert result.returncode == 7
    assert "exit=7" in result.stdout


def test_run_show_output_and_delete_logs(run_procpilot, tmp_path: Path) -> None:
    log_dir = tmp_path / "logs"
    result = run_procpilot(
        [
            "run",
            "--log-dir",
            str(log_dir),
            "--prefix",
            "shown",
            "--join",
            "--show-output",
            "--delete-logs",
            "--env",
            "GREETING=howdy",
            "--",
            sys.executable,
            "-c",
            "import os; print(os.environ['GREETING'])",
        ],
        cwd=tmp_path,
    )

    assert result.returncode == 0, result.stderr
    assert "howdy" in result.stdout
    assert not (log_dir / "shown.out").exists()


def test_run_timeout_exits_124(run_procpilot, tmp_path: Path) -> None:
    result = run_procpilot(
        [
            "run",
            "--log-dir",
            str(tmp_path / "logs"),
            "--timeout",
            "0.5",
            "--",
            sys.executable,
            "-c",
            "import time; time.sleep(30)",
        ],
        cwd=tmp_path,
    )

    assert result.returncode == 124
    assert "error:" in result.stderr


def test_run_missing_executable_fails(run_procpilot, tmp_path: Path) -> None:
    result = run_procpilot(
        [
            "--json",
            "run",
            "--log-dir",
            str(tmp_path / "logs"),
            "--",
            str(tmp_path / "no-such-binary"),
        ],
        cwd=tmp_path,
    )

    assert result.returncode == 1
    payload = json.loads(result.stdout)
    assert payload["exit_code"] is None
    assert payload["attempts"] == 1
    assert payload["error"]


def test_next_name_prints_free_stem(run_procpilot, tmp_path: Path) -> None:
    (tmp_path / "foo.out").write_text("", encoding="utf-8")

    result = run_procpilot(["next-name", str(tmp_path), "foo"], cwd=tmp_path)

    assert result.returncode == 0
    assert result.stdout.strip() == "foo-1"


def test_config_show_reads_project_config(run_procpilot, tmp_path: Path) -> None:
    config_dir = tmp_path / ".procpilot"
    config_dir.mkdir()
    (config_dir / "config.toml").write_text("[defaults]\nrestart_code = 12\n", encoding="utf-8")

    result = run_procpilot(["--json", "config", "show"], cwd=tmp_path)

    assert result.returncode == 0, result.stderr
    payload = json.loads(result.stdout)
    assert payload["restart_exit_code"] == 12
    assert payload["fork_retries"] == 1
