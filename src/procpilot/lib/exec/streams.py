"""Child stdout/stderr destinations: log files or live pipes.

A stream strategy is injected into the lifecycle controller and called from the
run thread at fixed points of every iteration:

1. ``configure(request)`` once before any launch attempt; may reject the request.
2. ``open_attempt()`` before each spawn attempt; returns the Popen stdio kwargs.
3. ``attach(process)`` after a successful spawn.
4. ``drain()`` after the process exited.
5. ``close()`` on every exit path.

The read-side accessors are called from caller threads and consult the
controller's started/finished events passed in through ``bind()``.
"""

from __future__ import annotations

import subprocess
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Protocol, TextIO

import structlog

from procpilot.lib.exec.command import LaunchRequest
from procpilot.lib.exec.errors import (
    AlreadyFinishedError,
    ConfigurationError,
    IncompleteOutputWarning,
    NotStartedError,
    RunnerError,
)
from procpilot.lib.exec.event import SyncEvent
from procpilot.lib.exec.lognames import STDERR_EXTENSION, STDOUT_EXTENSION, find_next_stem

logger = structlog.get_logger(__name__)


class StreamStrategy(Protocol):
    """Capability set the controller uses to wire child stdio."""

    def bind(self, started: SyncEvent, finished: SyncEvent) -> None: ...

    def configure(self, request: LaunchRequest) -> None: ...

    def open_attempt(self) -> dict[str, Any]: ...

    def attach(self, process: subprocess.Popen[bytes]) -> None: ...

    def drain(self) -> None: ...

    def close(self) -> None: ...


@dataclass(frozen=True, slots=True)
class LogFilePair:
    """Log files of one iteration; ``stderr`` is None when joined into stdout."""

    stdout: Path
    stderr: Path | None


class _EventBoundStreams:
    def __init__(self) -> None:
        self._started: SyncEvent | None = None
        self._finished: SyncEvent | None = None
        self._join_streams = False

    def bind(self, started: SyncEvent, finished: SyncEvent) -> None:
        self._started = started
        self._finished = finished

    @property
    def join_streams(self) -> bool:
        return self._join_streams

    def _is_started(self) -> bool:
        return self._started is not None and self._started.is_set()

    def _is_finished(self) -> bool:
        return self._finished is not None and self._finished.is_set()


class FileStreams(_EventBoundStreams):
    """Redirect child output to ``<stem>.out`` / ``<stem>.err`` in a log directory."""

    def __init__(self, log_dir: Path | None, prefix: str | None = None) -> None:
        super().__init__()
        self._log_dir = log_dir.absolute() if log_dir is not None else None
        self._prefix = prefix or None
        self._files: LogFilePair | None = None
        self._handles: list[IO[bytes]] = []

    @property
    def log_dir(self) -> Path | None:
        return self._log_dir

    @property
    def log_files(self) -> LogFilePair | None:
        return self._files

    @property
    def stdout_path(self) -> Path | None:
        if self._files is None:
            return None
        return self._files.stdout

    @property
    def stderr_path(self) -> Path | None:
        """Stderr log path; identical to ``stdout_path`` when streams are joined."""

        if self._files is None:
            return None
        if self._files.stderr is None:
            return self._files.stdout
        return self._files.stderr

    def configure(self, request: LaunchRequest) -> None:
        if self._log_dir is None:
            raise ConfigurationError("File output requires a log directory.")

        self._files = None
        prefix = self._prefix or request.command.exec_name()
        self._log_dir.mkdir(parents=True, exist_ok=True)
        stem = find_next_stem(self._log_dir, prefix, (STDOUT_EXTENSION, STDERR_EXTENSION))

        self._join_streams = request.join_streams
        stdout_path = self._log_dir / f"{stem}.{STDOUT_EXTENSION}"
        stderr_path = None if request.join_streams else self._log_dir / f"{stem}.{STDERR_EXTENSION}"
        if not stdout_path.parent.is_dir():
            raise ConfigurationError(f"Log file directory {stdout_path.parent} does not exist.")
        self._files = LogFilePair(stdout=stdout_path, stderr=stderr_path)
        logger.debug(
            "Redirecting process output to files.",
            executable=request.command.executable,
            stdout=str(stdout_path),
            stderr=str(stderr_path) if stderr_path is not None else "joined",
        )

    def open_attempt(self) -> dict[str, Any]:
        if self._files is None:
            raise ConfigurationError("Log files were not configured before launch.")

        self._close_handles()
        stdout_handle = self._files.stdout.open("wb")
        self._handles.append(stdout_handle)
        stderr_target: IO[bytes] | int
        if self._files.stderr is None:
            stderr_target = subprocess.STDOUT
        else:
            stderr_target = self._files.stderr.open("wb")
            self._handles.append(stderr_target)
        return {
            "stdin": subprocess.DEVNULL,
            "stdout": stdout_handle,
            "stderr": stderr_target,
        }

    def attach(self, process: subprocess.Popen[bytes]) -> None:
        # The child holds its own descriptors now.
        _ = process
        self._close_handles()

    def drain(self) -> None:
        return

    def close(self) -> None:
        self._close_handles()

    def _close_handles(self) -> None:
        while self._handles:
            self._handles.pop().close()

    def _verify_readable(self, path: Path | None) -> Path:
        if not self._is_started():
            raise NotStartedError(
                f"Attempting to read from file {path} before the process started."
            )
        if path is None or not path.exists():
            raise RunnerError(f"File {path} doesn't exist.")
        if not self._is_finished():
            logger.warning("Reading from file before process is finished.", path=str(path))
            warnings.warn(
                f"Reading from file {path} before process is finished.",
                IncompleteOutputWarning,
                stacklevel=3,
            )
        return path

    def read_stdout(self) -> str:
        path = self._verify_readable(self.stdout_path)
        return path.read_text(encoding="utf-8", errors="replace")

    def read_stderr(self) -> str:
        path = self._verify_readable(self.stderr_path)
        return path.read_text(encoding="utf-8", errors="replace")

    def stdout_lines(self) -> list[str]:
        return self.read_stdout().splitlines()

    def stderr_lines(self) -> list[str]:
        return self.read_stderr().splitlines()

    def open_stdout(self) -> TextIO:
        path = self._verify_readable(self.stdout_path)
        return path.open("r", encoding="utf-8", errors="replace")

    def open_stderr(self) -> TextIO:
        path = self._verify_readable(self.stderr_path)
        return path.open("r", encoding="utf-8", errors="replace")

    def delete_logs(self) -> bool:
        """Delete this run's log files; returns False if any deletion failed."""

        if not self._is_finished():
            raise ConfigurationError("Cannot delete logs while process is still running.")
        if self._files is None:
            return True

        deleted = True
        for path in (self._files.stderr, self._files.stdout):
            if path is None:
                continue
            try:
                path.unlink()
            except OSError as exc:
                logger.warning("Failed to delete log file.", path=str(path), error=str(exc))
                deleted = False
        return deleted


class PipeStreams(_EventBoundStreams):
    """Expose the child's stdin/stdout/stderr as live pipes."""

    def __init__(self) -> None:
        super().__init__()
        self._process: subprocess.Popen[bytes] | None = None

    def configure(self, request: LaunchRequest) -> None:
        self._join_streams = request.join_streams
        self._release_output_pipes()
        self._process = None
        logger.debug(
            "Log files disabled, output is only available through pipes.",
            executable=request.command.executable,
        )

    def open_attempt(self) -> dict[str, Any]:
        return {
            "stdin": subprocess.PIPE,
            "stdout": subprocess.PIPE,
            "stderr": subprocess.STDOUT if self._join_streams else subprocess.PIPE,
        }

    def attach(self, process: subprocess.Popen[bytes]) -> None:
        self._process = process

    def drain(self) -> None:
        return

    def close(self) -> None:
        process = self._process
        if process is None or process.stdin is None or process.stdin.closed:
            return
        try:
            process.stdin.close()
        except OSError:
            logger.debug("Closing child stdin failed.", pid=process.pid, exc_info=True)

    def _release_output_pipes(self) -> None:
        # Readers may drain a finished process until the next iteration replaces it.
        process = self._process
        if process is None:
            return
        for stream in (process.stdout, process.stderr):
            if stream is not None and not stream.closed:
                stream.close()

    def _live_process(self, timeout: float | None) -> subprocess.Popen[bytes]:
        if self._started is None:
            raise NotStartedError("Pipe streams are not bound to a controller.")
        self._started.wait(timeout)
        if self._is_finished():
            raise AlreadyFinishedError("Process already finished.")
        if self._process is None:
            raise RunnerError("Process object is missing.")
        return self._process

    def stdin(self, timeout: float | None = None) -> IO[bytes]:
        stream = self._live_process(timeout).stdin
        if stream is None:
            raise RunnerError("Process does not expose stdin.")
        return stream

    def stdout(self, timeout: float | None = None) -> IO[bytes]:
        stream = self._live_process(timeout).stdout
        if stream is None:
            raise RunnerError("Process does not expose stdout.")
        return stream

    def stderr(self, timeout: float | None = None) -> IO[bytes]:
        if self._join_streams:
            raise ConfigurationError("Stderr is joined with stdout, read stdout instead.")
        stream = self._live_process(timeout).stderr
        if stream is None:
            raise RunnerError("Process does not expose stderr.")
        return stream

    def output_lines(self, timeout: float | None = None) -> list[str]:
        """Read stdout to EOF and return its decoded lines."""

        if self._started is None:
            raise NotStartedError("Pipe streams are not bound to a controller.")
        self._started.wait(timeout)
        process = self._process
        if process is None or process.stdout is None:
            raise RunnerError("Process object is missing.")
        data = process.stdout.read()
        return data.decode("utf-8", errors="replace").splitlines()
