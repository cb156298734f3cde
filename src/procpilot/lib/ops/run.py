"""Run operations shared by the CLI: run one command, pick log names, show config."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

import structlog

from procpilot.lib.config.settings import ProcpilotConfig, load_config
from procpilot.lib.exec.command import Command
from procpilot.lib.exec.controller import SENTINEL_EXIT_CODE, ProcessLifecycleController
from procpilot.lib.exec.errors import RunnerError
from procpilot.lib.exec.event import EventTimeoutError
from procpilot.lib.exec.lognames import LOG_EXTENSIONS, find_next_stem
from procpilot.lib.exec.streams import FileStreams
from procpilot.lib.formatting import FormatContext, format_duration, join_fields

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class RunCommandInput:
    command: tuple[str, ...]
    log_dir: str | None = None
    prefix: str | None = None
    join_streams: bool | None = None
    shell: bool | None = None
    restart_exit_code: int | None = None
    fork_retries: int | None = None
    timeout_seconds: float | None = None
    env: tuple[str, ...] = ()
    cwd: str | None = None
    delete_logs: bool = False
    show_output: bool = False


@dataclass(frozen=True, slots=True)
class RunCommandOutput:
    command: tuple[str, ...]
    exit_code: int | None
    duration_secs: float
    iterations: int
    attempts: int
    stdout_log: str | None
    stderr_log: str | None
    logs_deleted: bool = False
    error: str | None = None
    stdout: str | None = None
    stderr: str | None = None

    def format_text(self, ctx: FormatContext | None = None) -> str:
        verbose = ctx is not None and ctx.verbosity > 0
        show_logs = self.stdout_log is not None and not self.logs_deleted
        joined = self.stderr_log is None or self.stderr_log == self.stdout_log
        summary = join_fields(
            [
                self.command[0] if self.command else "(empty)",
                f"exit={self.exit_code}" if self.exit_code is not None else None,
                format_duration(self.duration_secs),
                f"iterations={self.iterations}" if verbose or self.iterations > 1 else None,
                f"attempts={self.attempts}" if verbose or self.attempts > 1 else None,
                f"out={self.stdout_log}" if show_logs else None,
                f"err={self.stderr_log}" if show_logs and not joined else None,
                f"error={self.error}" if self.error is not None else None,
            ]
        )
        lines = [summary]
        if self.stdout:
            lines.append(self.stdout.rstrip("\n"))
        if self.stderr:
            lines.append(self.stderr.rstrip("\n"))
        return "\n".join(lines)


@dataclass(frozen=True, slots=True)
class NextNameInput:
    directory: str
    prefix: str
    extensions: tuple[str, ...] = LOG_EXTENSIONS


@dataclass(frozen=True, slots=True)
class NextNameOutput:
    directory: str
    prefix: str
    stem: str

    def format_text(self, ctx: FormatContext | None = None) -> str:
        _ = ctx
        return self.stem


def parse_env_assignments(entries: Sequence[str]) -> dict[str, str]:
    """Parse repeated KEY=VALUE entries."""

    parsed: dict[str, str] = {}
    for entry in entries:
        key, sep, value = entry.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ValueError(f"Invalid environment assignment {entry!r}: expected KEY=VALUE.")
        parsed[key] = value
    return parsed


def _resolve_path(raw: str, root: Path) -> Path:
    path = Path(raw).expanduser()
    if path.is_absolute():
        return path
    return root / path


def run_command_sync(
    payload: RunCommandInput,
    *,
    root: Path | None = None,
    config: ProcpilotConfig | None = None,
) -> RunCommandOutput:
    """Run one command to completion with file-backed output capture."""

    resolved_root = (root or Path.cwd()).resolve()
    resolved_config = config or load_config(resolved_root)

    command = Command.from_args(
        payload.command,
        cwd=_resolve_path(payload.cwd, resolved_root) if payload.cwd is not None else None,
        env_overrides=parse_env_assignments(payload.env),
        shell=resolved_config.shell if payload.shell is None else payload.shell,
    )
    log_dir = _resolve_path(payload.log_dir or resolved_config.log_dir, resolved_root)
    streams = FileStreams(log_dir, payload.prefix)
    controller = ProcessLifecycleController.from_config(command, streams, resolved_config)
    controller.configure(
        join_streams=payload.join_streams,
        fork_retries=payload.fork_retries,
        restart_exit_code=payload.restart_exit_code,
    )

    timeout = (
        payload.timeout_seconds
        if payload.timeout_seconds is not None
        else resolved_config.wait_timeout_seconds
    )
    controller.start()
    try:
        controller.join(timeout)
    except EventTimeoutError:
        logger.warning("Run exceeded timeout, stopping.", timeout_seconds=timeout)
        controller.stop()
        raise

    stdout_text: str | None = None
    stderr_text: str | None = None
    if payload.show_output and controller.is_started():
        try:
            stdout_text = streams.read_stdout()
            if not controller.join_streams:
                stderr_text = streams.read_stderr()
        except RunnerError as exc:
            logger.warning("Could not read captured output.", error=str(exc))

    logs_deleted = False
    if payload.delete_logs:
        logs_deleted = streams.delete_logs()

    exit_code: int | None = controller.recorded_exit_code
    if exit_code == SENTINEL_EXIT_CODE and controller.exception is not None:
        exit_code = None
    return RunCommandOutput(
        command=command.argv,
        exit_code=exit_code,
        duration_secs=controller.duration.total_seconds(),
        iterations=controller.iterations,
        attempts=controller.attempts,
        stdout_log=str(streams.stdout_path) if streams.stdout_path is not None else None,
        stderr_log=str(streams.stderr_path) if streams.stderr_path is not None else None,
        logs_deleted=logs_deleted,
        error=controller.last_error or None,
        stdout=stdout_text,
        stderr=stderr_text,
    )


def next_name_sync(payload: NextNameInput) -> NextNameOutput:
    directory = Path(payload.directory).expanduser()
    stem = find_next_stem(directory, payload.prefix, payload.extensions)
    return NextNameOutput(directory=str(directory), prefix=payload.prefix, stem=stem)


def config_show_sync(root: Path | None = None) -> ProcpilotConfig:
    return load_config((root or Path.cwd()).resolve())
