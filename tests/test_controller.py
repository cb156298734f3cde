"""Lifecycle controller: launch retry, restart policy, stop and state queries."""

from __future__ import annotations

import os
import signal
import subprocess
import sys
import time
from datetime import timedelta
from pathlib import Path
from typing import Any

import pytest

from procpilot.lib.exec.command import Command
from procpilot.lib.exec.controller import (
    SENTINEL_EXIT_CODE,
    ProcessLifecycleController,
    RetryPolicy,
    RunState,
)
from procpilot.lib.exec.errors import (
    ConfigurationError,
    LaunchError,
    NotStartedError,
    RunnerError,
    WaitInterruptedError,
)
from procpilot.lib.exec.streams import FileStreams, PipeStreams

_SLEEP_FOREVER = "import time; print('up', flush=True); time.sleep(60)"

posix_only = pytest.mark.skipif(os.name == "nt", reason="POSIX signals and /bin/sh")


class _CountingSpawn:
    def __init__(self) -> None:
        self.calls: list[list[str]] = []

    def __call__(self, argv: list[str], **kwargs: Any) -> subprocess.Popen[bytes]:
        self.calls.append(list(argv))
        return subprocess.Popen(argv, **kwargs)


class _FlakySpawn:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    def __call__(self, argv: list[str], **kwargs: Any) -> subprocess.Popen[bytes]:
        self.calls += 1
        if self.calls <= self.failures:
            raise OSError(11, "Resource temporarily unavailable")
        return subprocess.Popen(argv, **kwargs)


class _LostChildProcess:
    pid = 4242
    returncode = None
    stdin = None
    stdout = None
    stderr = None

    def wait(self, timeout: float | None = None) -> int:
        _ = timeout
        raise ChildProcessError("child was reaped elsewhere")


def _controller(
    argv: tuple[str, ...],
    log_dir: Path,
    **kwargs: Any,
) -> ProcessLifecycleController:
    return ProcessLifecycleController(Command(argv=argv), FileStreams(log_dir), **kwargs)


def test_finished_run_exposes_exit_code(tmp_path: Path, python_command) -> None:
    controller = _controller(python_command("import sys; sys.exit(3)"), tmp_path / "logs")
    assert controller.state == RunState.NOT_STARTED

    controller.start()
    exit_code = controller.wait_finished(30)

    assert exit_code == 3
    assert controller.is_finished() is True
    assert controller.is_started() is True
    assert controller.is_running() is False
    assert controller.exit_code() == 3
    assert controller.last_error == ""
    assert controller.attempts == 1
    controller.join(30)
    assert controller.state == RunState.FINISHED
    assert controller.pid is None


def test_wait_before_start_times_out(tmp_path: Path, python_command) -> None:
    controller = _controller(python_command("pass"), tmp_path / "logs")

    with pytest.raises(TimeoutError):
        controller.wait_finished(0.05)
    with pytest.raises(TimeoutError):
        controller.finished.wait(0.05)
    assert controller.is_finished() is False


def test_exit_code_before_any_run_fails_after_grace(tmp_path: Path, python_command) -> None:
    controller = _controller(
        python_command("pass"),
        tmp_path / "logs",
        exit_code_grace_seconds=0.05,
    )

    with pytest.raises(RunnerError):
        controller.exit_code()
    assert controller.recorded_exit_code == SENTINEL_EXIT_CODE


def test_missing_executable_uses_every_fork_retry(tmp_path: Path) -> None:
    spawn = _CountingSpawn()
    missing = str(tmp_path / "definitely-not-an-executable")
    controller = _controller(
        (missing, "--flag"),
        tmp_path / "logs",
        policy=RetryPolicy(fork_retries=3),
        spawn=spawn,
    )

    controller.start()
    controller.join(30)

    assert len(spawn.calls) == 3
    assert controller.attempts == 3
    assert isinstance(controller.exception, LaunchError)
    assert controller.last_error != ""
    assert isinstance(controller.exception.cause, OSError)
    assert controller.is_started() is False
    assert controller.is_finished() is True
    assert controller.iterations == 1
    with pytest.raises(NotStartedError) as exc_info:
        controller.wait_finished(1)
    assert exc_info.value.cause is controller.exception


@pytest.mark.parametrize(
    "requested,expected",
    [
        pytest.param(7, 3, id="clamped-high"),
        pytest.param(0, 1, id="clamped-low"),
        pytest.param(2, 2, id="unchanged"),
    ],
)
def test_fork_retries_are_clamped(requested: int, expected: int) -> None:
    assert RetryPolicy(fork_retries=requested).fork_retries == expected


def test_restart_on_matching_exit_code(tmp_path: Path, python_command) -> None:
    counter = tmp_path / "count.txt"
    source = (
        "import pathlib, sys, time\n"
        "path = pathlib.Path(sys.argv[1])\n"
        "count = int(path.read_text()) if path.exists() else 0\n"
        "path.write_text(str(count + 1))\n"
        "time.sleep(0.2)\n"
        "sys.exit(42 if count == 0 else 0)\n"
    )
    controller = _controller(
        python_command(source, str(counter)),
        tmp_path / "logs",
        policy=RetryPolicy(restart_exit_code=42),
    )

    controller.start()
    controller.join(60)

    assert counter.read_text() == "2"
    assert controller.iterations == 2
    assert controller.exit_code() == 0
    assert controller.duration >= timedelta(seconds=0.4)
    assert controller.last_error == ""


def test_restart_disabled_when_code_is_zero(tmp_path: Path, python_command) -> None:
    controller = _controller(
        python_command("import sys; sys.exit(0)"),
        tmp_path / "logs",
        policy=RetryPolicy(restart_exit_code=0),
    )

    controller.start()
    controller.join(30)

    assert controller.iterations == 1
    assert controller.exit_code() == 0


def test_configuration_rejection_never_spawns(tmp_path: Path, python_command) -> None:
    spawn = _CountingSpawn()
    controller = ProcessLifecycleController(
        Command(argv=python_command("pass")),
        FileStreams(None),
        policy=RetryPolicy(restart_exit_code=SENTINEL_EXIT_CODE),
        spawn=spawn,
    )

    controller.start()
    controller.join(30)

    assert spawn.calls == []
    assert isinstance(controller.exception, ConfigurationError)
    assert "log directory" in controller.last_error
    assert controller.is_finished() is True
    assert controller.is_started() is False
    assert controller.iterations == 1
    assert controller.duration == timedelta(0)


def test_wait_failure_is_recorded_and_finishes(tmp_path: Path, python_command) -> None:
    controller = ProcessLifecycleController(
        Command(argv=python_command("pass")),
        PipeStreams(),
        policy=RetryPolicy(restart_exit_code=SENTINEL_EXIT_CODE),
        spawn=lambda argv, **kwargs: _LostChildProcess(),
        exit_code_grace_seconds=0.05,
    )

    controller.start()
    controller.join(30)

    assert controller.is_started() is True
    assert controller.is_finished() is True
    assert isinstance(controller.exception, WaitInterruptedError)
    assert "reaped elsewhere" in controller.last_error
    assert controller.iterations == 1
    with pytest.raises(RunnerError):
        controller.exit_code()


@posix_only
def test_stop_terminates_running_process(tmp_path: Path, python_command) -> None:
    controller = _controller(python_command(_SLEEP_FOREVER), tmp_path / "logs")

    controller.start()
    controller.wait_started(30)
    assert controller.is_running() is True
    assert controller.pid is not None

    assert controller.stop() is True

    assert controller.is_finished() is True
    assert controller.is_running() is False
    assert controller.exit_code() == -signal.SIGTERM


@posix_only
def test_stop_suppresses_restart(tmp_path: Path, python_command) -> None:
    controller = _controller(
        python_command(_SLEEP_FOREVER),
        tmp_path / "logs",
        policy=RetryPolicy(restart_exit_code=-signal.SIGTERM),
    )

    controller.start()
    controller.wait_started(30)
    controller.stop()
    controller.join(5)

    assert controller.iterations == 1
    assert controller.exit_code() == -signal.SIGTERM


def test_stop_before_start_is_a_no_op(tmp_path: Path, python_command) -> None:
    controller = _controller(python_command("pass"), tmp_path / "logs")

    assert controller.stop() is True
    assert controller.is_finished() is False


def test_start_and_configure_rejected_while_running(tmp_path: Path, python_command) -> None:
    controller = _controller(python_command(_SLEEP_FOREVER), tmp_path / "logs")
    controller.start()
    try:
        controller.wait_started(30)
        with pytest.raises(ConfigurationError):
            controller.start()
        with pytest.raises(ConfigurationError):
            controller.configure(restart_exit_code=5)
    finally:
        controller.stop()


def test_configure_updates_command_and_policy(tmp_path: Path, python_command) -> None:
    controller = _controller(python_command("pass"), tmp_path / "logs")

    controller.configure(
        python_command("import os, sys; sys.exit(int(os.environ['EXIT_WITH']))"),
        env_overrides={"EXIT_WITH": "5"},
        join_streams=True,
        fork_retries=9,
        restart_exit_code=7,
    )

    assert controller.policy == RetryPolicy(fork_retries=3, restart_exit_code=7)
    assert controller.join_streams is True
    controller.start()
    assert controller.wait_finished(30) == 5


def test_env_overrides_and_cwd_reach_the_child(tmp_path: Path, python_command) -> None:
    workdir = tmp_path / "work"
    workdir.mkdir()
    source = "import os; print(os.environ['PROCPILOT_CHILD_VALUE']); print(os.getcwd())"
    command = Command(
        argv=python_command(source),
        cwd=workdir,
        env_overrides={"PROCPILOT_CHILD_VALUE": "from-parent"},
    )
    controller = ProcessLifecycleController(command, FileStreams(tmp_path / "logs"))

    controller.start()
    controller.wait_finished(30)

    value, cwd = controller.files.stdout_lines()
    assert value == "from-parent"
    assert Path(cwd).resolve() == workdir.resolve()


@posix_only
def test_shell_wrap_runs_joined_command(tmp_path: Path) -> None:
    command = Command(
        argv=("echo", "hello", "$PROCPILOT_SHELL_VALUE"),
        env_overrides={"PROCPILOT_SHELL_VALUE": "world"},
        shell=True,
    )
    streams = FileStreams(tmp_path / "logs", prefix="echo")
    controller = ProcessLifecycleController(command, streams)

    controller.start()
    assert controller.wait_finished(30) == 0

    assert streams.read_stdout() == "hello world\n"


def test_stream_mode_accessors_reject_wrong_mode(tmp_path: Path, python_command) -> None:
    file_backed = _controller(python_command("pass"), tmp_path / "logs")
    pipe_backed = ProcessLifecycleController(Command(argv=python_command("pass")), PipeStreams())

    with pytest.raises(ConfigurationError):
        _ = file_backed.pipes
    with pytest.raises(ConfigurationError):
        _ = pipe_backed.files
    assert isinstance(file_backed.files, FileStreams)
    assert isinstance(pipe_backed.pipes, PipeStreams)


def test_controller_can_run_again_after_finishing(tmp_path: Path, python_command) -> None:
    controller = _controller(python_command("import sys; sys.exit(1)"), tmp_path / "logs")

    controller.start()
    assert controller.wait_finished(30) == 1
    controller.join(30)

    controller.configure(python_command("import sys; sys.exit(0)"))
    controller.start()
    assert controller.wait_finished(30) == 0
    controller.join(30)
    assert controller.iterations == 1


def test_uses_interpreter_for_prefix(tmp_path: Path, python_command) -> None:
    controller = _controller(python_command("pass"), tmp_path / "logs")

    controller.start()
    controller.wait_finished(30)

    expected = Command(argv=(sys.executable,)).exec_name()
    assert controller.files.stdout_path is not None
    assert controller.files.stdout_path.name == f"{expected}.out"


def test_duration_excludes_failed_fork_attempts(tmp_path: Path, python_command) -> None:
    spawn = _FlakySpawn(failures=2)
    controller = _controller(
        python_command("pass"),
        tmp_path / "logs",
        policy=RetryPolicy(fork_retries=3, fork_backoff_seconds=0.5),
        spawn=spawn,
    )

    began = time.monotonic()
    controller.start()
    assert controller.wait_finished(30) == 0
    elapsed = time.monotonic() - began

    assert spawn.calls == 3
    assert controller.attempts == 3
    assert controller.exception is None
    # Backoff grows linearly: 0.5s after the first failure, 1.0s after the second.
    assert elapsed >= 1.5
    assert controller.duration < timedelta(seconds=1)


class _UnopenableStreams(PipeStreams):
    def open_attempt(self) -> dict[str, Any]:
        raise PermissionError(13, "Permission denied")


def test_output_open_failure_is_a_configuration_error(python_command) -> None:
    spawn = _CountingSpawn()
    controller = ProcessLifecycleController(
        Command(argv=python_command("pass")),
        _UnopenableStreams(),
        policy=RetryPolicy(fork_retries=3),
        spawn=spawn,
    )

    controller.start()
    controller.join(30)

    assert spawn.calls == []
    assert controller.attempts == 1
    assert isinstance(controller.exception, ConfigurationError)
    assert isinstance(controller.exception.cause, PermissionError)
    assert controller.is_finished() is True


class _StateRecordingStreams(FileStreams):
    def __init__(self, log_dir: Path) -> None:
        super().__init__(log_dir, "states")
        self.controller: ProcessLifecycleController | None = None
        self.seen: list[RunState] = []

    def configure(self, request: Any) -> None:
        assert self.controller is not None
        self.seen.append(self.controller.state)
        super().configure(request)


def test_restart_reenters_from_not_started(tmp_path: Path, python_command) -> None:
    counter = tmp_path / "count.txt"
    source = (
        "import pathlib, sys\n"
        "path = pathlib.Path(sys.argv[1])\n"
        "count = int(path.read_text()) if path.exists() else 0\n"
        "path.write_text(str(count + 1))\n"
        "sys.exit(4 if count == 0 else 0)\n"
    )
    streams = _StateRecordingStreams(tmp_path / "logs")
    spawn_states: list[RunState] = []

    def spawn(argv: list[str], **kwargs: Any) -> subprocess.Popen[bytes]:
        spawn_states.append(controller.state)
        return subprocess.Popen(argv, **kwargs)

    controller = ProcessLifecycleController(
        Command(argv=python_command(source, str(counter))),
        streams,
        policy=RetryPolicy(restart_exit_code=4),
        spawn=spawn,
    )
    streams.controller = controller

    controller.start()
    controller.join(60)

    assert controller.iterations == 2
    assert streams.seen == [RunState.NOT_STARTED, RunState.NOT_STARTED]
    assert spawn_states == [RunState.STARTING, RunState.STARTING]
    assert controller.state == RunState.FINISHED
