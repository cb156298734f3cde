"""Cyclopts CLI entry point for procpilot."""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from dataclasses import dataclass
from typing import TYPE_CHECKING, Annotated

from cyclopts import App, Parameter

from procpilot import __version__
from procpilot.cli.output import OutputConfig
from procpilot.cli.output import emit as emit_output
from procpilot.lib.exec.errors import RunnerError
from procpilot.lib.ops.run import (
    NextNameInput,
    RunCommandInput,
    config_show_sync,
    next_name_sync,
    run_command_sync,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124


@dataclass(frozen=True, slots=True)
class GlobalOptions:
    """Top-level options that apply to all commands."""

    output: OutputConfig
    verbosity: int = 0


_GLOBAL_OPTIONS: ContextVar[GlobalOptions | None] = ContextVar("_GLOBAL_OPTIONS", default=None)


def get_global_options() -> GlobalOptions:
    default = GlobalOptions(output=OutputConfig(format="text"))
    return _GLOBAL_OPTIONS.get() or default


def emit(payload: object) -> None:
    """Write command output using current output format settings."""

    emit_output(payload, get_global_options().output)


def _extract_global_options(argv: Sequence[str]) -> tuple[list[str], GlobalOptions]:
    json_mode = False
    verbosity = 0
    cleaned: list[str] = []

    for index, arg in enumerate(argv):
        if arg == "--":
            cleaned.extend(argv[index:])
            break
        if arg == "--json":
            json_mode = True
            continue
        if arg == "--no-json":
            json_mode = False
            continue
        if arg in {"-v", "--verbose"}:
            verbosity += 1
            continue
        cleaned.append(arg)

    return cleaned, GlobalOptions(
        output=OutputConfig(format="json" if json_mode else "text", verbosity=verbosity),
        verbosity=verbosity,
    )


app = App(
    name="procpilot",
    help="Run external commands with fork retry, restart-on-exit-code and log capture.",
    version=__version__,
    help_formatter="plain",
)
config_app = App(name="config", help="Config commands", help_formatter="plain")
app.command(config_app, name="config")


@app.command(name="run")
def run(
    *command: Annotated[str, Parameter(help="Command and arguments to run (after --).")],
    log_dir: Annotated[
        str | None,
        Parameter(name="--log-dir", help="Directory for .out/.err log files."),
    ] = None,
    prefix: Annotated[
        str | None,
        Parameter(name="--prefix", help="Log filename prefix (default: executable name)."),
    ] = None,
    join: Annotated[
        bool | None,
        Parameter(name="--join", help="Merge stderr into the stdout log."),
    ] = None,
    shell: Annotated[
        bool | None,
        Parameter(name="--shell", help="Run the joined command through the platform shell."),
    ] = None,
    restart_code: Annotated[
        int | None,
        Parameter(name="--restart-code", help="Restart while the command exits with this code."),
    ] = None,
    fork_retries: Annotated[
        int | None,
        Parameter(name="--fork-retries", help="Spawn attempts before giving up (max 3)."),
    ] = None,
    timeout: Annotated[
        float | None,
        Parameter(name="--timeout", help="Seconds to wait before stopping the command."),
    ] = None,
    env: Annotated[
        tuple[str, ...],
        Parameter(
            name="--env",
            help="Environment overrides in KEY=VALUE form (repeatable).",
            negative_iterable=(),
        ),
    ] = (),
    cwd: Annotated[
        str | None,
        Parameter(name="--cwd", help="Working directory for the command."),
    ] = None,
    delete_logs: Annotated[
        bool,
        Parameter(name="--delete-logs", help="Delete the log files after the run."),
    ] = False,
    show_output: Annotated[
        bool,
        Parameter(name="--show-output", help="Print captured output after the summary."),
    ] = False,
) -> None:
    """Run one command to completion and exit with its exit code."""

    if not command:
        raise ValueError("No command given. Pass it after '--'.")

    result = run_command_sync(
        RunCommandInput(
            command=tuple(command),
            log_dir=log_dir,
            prefix=prefix,
            join_streams=join,
            shell=shell,
            restart_exit_code=restart_code,
            fork_retries=fork_retries,
            timeout_seconds=timeout,
            env=env,
            cwd=cwd,
            delete_logs=delete_logs,
            show_output=show_output,
        )
    )
    emit(result)
    exit_code = result.exit_code if result.exit_code is not None else 1
    if exit_code != 0:
        raise SystemExit(exit_code if 0 < exit_code < 256 else 1)


@app.command(name="next-name")
def next_name(
    directory: Annotated[str, Parameter(help="Directory holding the log files.")],
    prefix: Annotated[str, Parameter(help="Filename prefix.")],
    ext: Annotated[
        tuple[str, ...],
        Parameter(name="--ext", help="Tracked extension (repeatable).", negative_iterable=()),
    ] = (),
) -> None:
    """Print the next unused log filename stem."""

    payload = NextNameInput(directory=directory, prefix=prefix)
    if ext:
        payload = NextNameInput(directory=directory, prefix=prefix, extensions=ext)
    emit(next_name_sync(payload))


@config_app.command(name="show")
def config_show() -> None:
    """Show the resolved configuration."""

    emit(config_show_sync())


def main(argv: Sequence[str] | None = None) -> None:
    """CLI entry point used by `procpilot` and `python -m procpilot`."""

    from procpilot.lib.logging import configure_logging

    args = list(sys.argv[1:] if argv is None else argv)
    cleaned_args, options = _extract_global_options(args)

    # Configure logging early so structlog warnings go to stderr, not stdout.
    configure_logging(json_mode=options.output.format == "json", verbosity=options.verbosity)

    token = _GLOBAL_OPTIONS.set(options)
    try:
        try:
            app(cleaned_args)
        except TimeoutError as exc:
            print(f"error: {exc}", file=sys.stderr)
            raise SystemExit(TIMEOUT_EXIT_CODE) from None
        except (RunnerError, ValueError, OSError) as exc:
            print(f"error: {exc}", file=sys.stderr)
            raise SystemExit(1) from None
    finally:
        _GLOBAL_OPTIONS.reset(token)
