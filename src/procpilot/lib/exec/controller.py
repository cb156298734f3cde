"""Lifecycle controller for one external process.

Each ``start()`` creates one run thread. That thread is the only owner of the
process handle, the only caller of ``Popen.wait`` and the only writer of exit
code, duration and the started/finished events. Callers read snapshots or block
on the events.
"""

from __future__ import annotations

import subprocess
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, replace
from datetime import timedelta
from enum import StrEnum
from pathlib import Path
from typing import Any

import structlog

from procpilot.lib.config.settings import ProcpilotConfig
from procpilot.lib.exec.command import Command, LaunchRequest, build_launch_request
from procpilot.lib.exec.errors import (
    ConfigurationError,
    LaunchError,
    NotStartedError,
    RunnerError,
    WaitInterruptedError,
)
from procpilot.lib.exec.event import EventTimeoutError, SyncEvent
from procpilot.lib.exec.process_groups import isolation_kwargs, kill, terminate
from procpilot.lib.exec.streams import FileStreams, PipeStreams, StreamStrategy
from procpilot.lib.platform import Platform, detect_platform

SENTINEL_EXIT_CODE = -1
MAX_FORK_RETRIES = 3
_DEFAULT_CONFIG = ProcpilotConfig()
DEFAULT_KILL_GRACE_SECONDS = _DEFAULT_CONFIG.kill_grace_seconds
DEFAULT_EXIT_CODE_GRACE_SECONDS = _DEFAULT_CONFIG.exit_code_grace_seconds

Spawner = Callable[..., subprocess.Popen[bytes]]

logger = structlog.get_logger(__name__)


class RunState(StrEnum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    FINISHED = "finished"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Fork-retry and restart-on-exit-code policy.

    ``fork_retries`` is clamped to 1..MAX_FORK_RETRIES. A ``restart_exit_code``
    of 0 disables restarts.
    """

    fork_retries: int = 1
    restart_exit_code: int = 0
    fork_backoff_seconds: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "fork_retries", max(1, min(self.fork_retries, MAX_FORK_RETRIES)))
        if self.fork_backoff_seconds < 0:
            raise ValueError("fork_backoff_seconds must be >= 0.")

    @classmethod
    def from_config(cls, config: ProcpilotConfig) -> RetryPolicy:
        return cls(
            fork_retries=config.fork_retries,
            restart_exit_code=config.restart_exit_code,
            fork_backoff_seconds=config.fork_backoff_seconds,
        )

    def should_restart(self, exit_code: int | None) -> bool:
        return self.restart_exit_code != 0 and exit_code == self.restart_exit_code


class ProcessLifecycleController:
    """Run one command in a background thread with fork-retry and restart policy."""

    def __init__(
        self,
        command: Command,
        streams: StreamStrategy,
        *,
        policy: RetryPolicy | None = None,
        join_streams: bool = False,
        spawn: Spawner = subprocess.Popen,
        platform: Platform | None = None,
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
        exit_code_grace_seconds: float = DEFAULT_EXIT_CODE_GRACE_SECONDS,
        base_env: Mapping[str, str] | None = None,
    ) -> None:
        self._command = command
        self._streams = streams
        self._policy = policy or RetryPolicy()
        self._join_streams = join_streams
        self._spawn = spawn
        self._platform = platform or detect_platform()
        self._kill_grace_seconds = kill_grace_seconds
        self._exit_code_grace_seconds = exit_code_grace_seconds
        self._base_env = base_env

        self.started = SyncEvent("Process started")
        self.finished = SyncEvent("Process finished")
        streams.bind(self.started, self.finished)

        # Guards handoff of the process handle between the run thread and stop().
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._process: subprocess.Popen[bytes] | None = None
        self._stop_requested = False

        self._state = RunState.NOT_STARTED
        self._exit_code: int | None = None
        self._duration = timedelta(0)
        self._error: RunnerError | None = None
        self._attempts = 0
        self._iterations = 0

    @classmethod
    def from_config(
        cls,
        command: Command,
        streams: StreamStrategy,
        config: ProcpilotConfig,
        **kwargs: Any,
    ) -> ProcessLifecycleController:
        return cls(
            command,
            streams,
            policy=RetryPolicy.from_config(config),
            join_streams=config.join_streams,
            kill_grace_seconds=config.kill_grace_seconds,
            exit_code_grace_seconds=config.exit_code_grace_seconds,
            **kwargs,
        )

    @property
    def command(self) -> Command:
        return self._command

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def join_streams(self) -> bool:
        return self._join_streams

    @property
    def streams(self) -> StreamStrategy:
        return self._streams

    @property
    def files(self) -> FileStreams:
        if not isinstance(self._streams, FileStreams):
            raise ConfigurationError("Process streams are not redirected to files.")
        return self._streams

    @property
    def pipes(self) -> PipeStreams:
        if not isinstance(self._streams, PipeStreams):
            raise ConfigurationError(
                "Process streams are redirected to file, no live pipes are available."
            )
        return self._streams

    def configure(
        self,
        command: Command | Sequence[str] | str | None = None,
        *,
        cwd: Path | None = None,
        env_overrides: Mapping[str, str] | None = None,
        join_streams: bool | None = None,
        shell: bool | None = None,
        fork_retries: int | None = None,
        restart_exit_code: int | None = None,
    ) -> None:
        """Update command and policy; only allowed while no run is in flight."""

        self._ensure_idle()

        if command is None:
            updated = self._command
        elif isinstance(command, Command):
            updated = command
        else:
            updated = Command.from_args(
                command,
                cwd=self._command.cwd,
                env_overrides=self._command.env_overrides,
                shell=self._command.shell,
            )
        if cwd is not None:
            updated = replace(updated, cwd=cwd)
        if env_overrides is not None:
            updated = replace(updated, env_overrides={**updated.env_overrides, **env_overrides})
        if shell is not None:
            updated = replace(updated, shell=shell)
        self._command = updated

        if join_streams is not None:
            self._join_streams = join_streams
        if fork_retries is not None:
            self._policy = replace(self._policy, fork_retries=fork_retries)
        if restart_exit_code is not None:
            self._policy = replace(self._policy, restart_exit_code=restart_exit_code)

    def _ensure_idle(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            raise ConfigurationError("A run is already in progress for this controller.")

    def start(self) -> None:
        """Spawn the run thread and return immediately."""

        with self._lock:
            self._ensure_idle()
            # No run thread exists here, so resetting from the caller is safe.
            self.started.reset()
            self.finished.reset()
            self._stop_requested = False
            self._state = RunState.NOT_STARTED
            self._exit_code = None
            self._duration = timedelta(0)
            self._error = None
            self._attempts = 0
            self._iterations = 0
            self._thread = threading.Thread(
                target=self._run,
                name=f"procpilot-{self._command.exec_name()}",
                daemon=True,
            )
            self._thread.start()

    def stop(self) -> bool:
        """Kill the current process, suppress restarts and wait for the run to end."""

        with self._lock:
            self._stop_requested = True
            process = self._process
            thread = self._thread

        if process is not None:
            logger.debug("Stopping process.", pid=process.pid)
            terminate(process, self._platform)
            try:
                self.finished.wait(self._kill_grace_seconds)
            except EventTimeoutError:
                logger.warning("Process ignored termination, killing.", pid=process.pid)
                kill(process, self._platform)

        if thread is not None and thread is not threading.current_thread():
            thread.join()
        return True

    def join(self, timeout: float | None = None) -> None:
        """Block until the run thread, including every restart, has ended."""

        thread = self._thread
        if thread is None:
            return
        thread.join(timeout)
        if thread.is_alive():
            raise EventTimeoutError("Run thread", timeout or 0.0)

    def wait_started(self, timeout: float | None = None) -> None:
        self.started.wait(timeout)

    def wait_finished(self, timeout: float | None = None) -> int:
        """Wait for the current iteration to finish and return its exit code."""

        self.finished.wait(timeout)
        if not self.started.is_set():
            raise NotStartedError(
                f"Was not able to start process successfully: {self._command.executable}",
                cause=self._error,
            )
        return self.exit_code()

    def is_started(self) -> bool:
        return self.started.is_set()

    def is_finished(self) -> bool:
        return self.finished.is_set()

    def is_running(self) -> bool:
        return self.started.is_set() and not self.finished.is_set()

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def recorded_exit_code(self) -> int:
        """Last exit code, or SENTINEL_EXIT_CODE until the process has exited."""

        if self._exit_code is None:
            return SENTINEL_EXIT_CODE
        return self._exit_code

    def exit_code(self) -> int:
        exit_code = self._exit_code
        if exit_code is not None:
            return exit_code

        logger.warning(
            "Exit code requested before it was recorded, waiting before checking again.",
            grace_seconds=self._exit_code_grace_seconds,
        )
        try:
            self.finished.wait(self._exit_code_grace_seconds)
        except EventTimeoutError:
            logger.debug("Finished event still clear after grace period.")

        exit_code = self._exit_code
        if exit_code is not None:
            return exit_code
        raise RunnerError(
            f"Exit code is not available for {self._command.executable}",
            cause=self._error,
        )

    @property
    def last_error(self) -> str:
        if self._error is None:
            return ""
        return str(self._error)

    @property
    def exception(self) -> RunnerError | None:
        return self._error

    @property
    def duration(self) -> timedelta:
        return self._duration

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def iterations(self) -> int:
        return self._iterations

    @property
    def pid(self) -> int | None:
        process = self._process
        if process is None:
            return None
        return process.pid

    def _run(self) -> None:
        log = logger.bind(command=self._command.executable)
        restart = True
        while restart:
            restart = self._run_iteration(log)
            if restart:
                log.info(
                    "Restarting process.",
                    restart_exit_code=self._policy.restart_exit_code,
                    duration_ms=int(self._duration.total_seconds() * 1000),
                )

    def _run_iteration(self, log: Any) -> bool:
        self.started.reset()
        self.finished.reset()
        self._exit_code = None
        self._attempts = 0
        self._iterations += 1
        self._state = RunState.NOT_STARTED

        elapsed = 0.0
        attempt_started: float | None = None
        try:
            try:
                request = build_launch_request(
                    self._command,
                    join_streams=self._join_streams,
                    platform=self._platform,
                    base_env=self._base_env,
                )
                self._streams.configure(request)
            except ConfigurationError as exc:
                self._record(exc, log)
                return False
            except OSError as exc:
                self._record(ConfigurationError("Failed to prepare process output.", cause=exc), log)
                return False

            self._state = RunState.STARTING
            process, attempt_started = self._launch(request, log)
            if process is None:
                return False

            try:
                exit_code = process.wait()
            except Exception as exc:
                self._record(
                    WaitInterruptedError("Exception while waiting for process exit", cause=exc),
                    log,
                )
                return False
            elapsed = time.monotonic() - attempt_started
            self._exit_code = exit_code
            log.debug("Process returned exit value.", pid=process.pid, exit_code=exit_code)
            self._streams.drain()
        except Exception as exc:
            log.exception("Process execution failed.")
            self._record(RunnerError("Process execution failed", cause=exc), log)
            return False
        finally:
            try:
                self._streams.close()
            finally:
                with self._lock:
                    self._process = None
                if elapsed == 0.0 and attempt_started is not None:
                    elapsed = time.monotonic() - attempt_started
                self._duration += timedelta(seconds=elapsed)
                self._state = RunState.FINISHED
                self.finished.signal()
                log.debug(
                    "Finished executing.",
                    exit_code=self.recorded_exit_code,
                    iteration=self._iterations,
                )

        with self._lock:
            stop_requested = self._stop_requested
        return not stop_requested and self._policy.should_restart(self._exit_code)

    def _launch(
        self,
        request: LaunchRequest,
        log: Any,
    ) -> tuple[subprocess.Popen[bytes] | None, float]:
        log.debug(
            "Starting process.",
            argv=list(request.argv),
            cwd=str(request.cwd) if request.cwd is not None else None,
        )
        retries = self._policy.fork_retries
        last_failure: BaseException | None = None
        attempt_started = time.monotonic()
        for attempt in range(1, retries + 1):
            self._attempts = attempt
            # Duration only counts from the attempt that actually started.
            attempt_started = time.monotonic()
            try:
                stdio = self._streams.open_attempt()
            except OSError as exc:
                self._record(ConfigurationError("Failed to open process output.", cause=exc), log)
                return None, attempt_started
            try:
                process = self._spawn(
                    list(request.argv),
                    cwd=request.cwd,
                    env=request.env,
                    **stdio,
                    **isolation_kwargs(self._platform),
                )
            except (OSError, ValueError, subprocess.SubprocessError) as exc:
                last_failure = exc
                log.error(
                    "Could not fork process, retrying.",
                    attempt=attempt,
                    fork_retries=retries,
                    error=str(exc),
                )
                if self._policy.fork_backoff_seconds > 0 and attempt < retries:
                    time.sleep(self._policy.fork_backoff_seconds * attempt)
                continue

            self._streams.attach(process)
            with self._lock:
                self._process = process
                stop_requested = self._stop_requested
            if stop_requested:
                kill(process, self._platform)
            self._state = RunState.RUNNING
            self.started.signal()
            log.debug("Process started.", pid=process.pid, attempt=attempt)
            return process, attempt_started

        log.error("Could not fork process, ran out of retries.", fork_retries=retries)
        self._record(
            LaunchError(f"Failed to fork process after {retries} attempts", cause=last_failure),
            log,
        )
        return None, attempt_started

    def _record(self, error: RunnerError, log: Any) -> None:
        self._error = error
        log.error("Run failed.", error=str(error), error_type=type(error).__name__)
