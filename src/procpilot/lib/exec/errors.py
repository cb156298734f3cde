"""Error taxonomy for external process execution."""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    SYSTEM = "system"
    USER = "user"


class RunnerError(Exception):
    """Base error carrying a message and an optional wrapped cause.

    The rendered message includes the cause's message so logs carry the whole
    chain on one line.
    """

    default_kind: ErrorKind = ErrorKind.SYSTEM

    def __init__(
        self,
        message: str,
        *,
        cause: BaseException | None = None,
        kind: ErrorKind | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.__cause__ = cause
        if kind is None and isinstance(cause, RunnerError):
            kind = cause.kind
        self.kind = kind or self.default_kind

    @property
    def cause(self) -> BaseException | None:
        return self.__cause__

    @property
    def is_user_error(self) -> bool:
        return self.kind == ErrorKind.USER

    def __str__(self) -> str:
        if self.__cause__ is None:
            return self.message
        return f"{self.message}: {self.__cause__}"


class ConfigurationError(RunnerError):
    """Invalid launch request or accessor used in the wrong stream mode."""

    default_kind = ErrorKind.USER


class LaunchError(RunnerError):
    """Process could not be spawned within the fork-retry bound."""


class WaitInterruptedError(RunnerError):
    """Waiting for process exit failed before an exit code was observed."""


class NotStartedError(RunnerError):
    """Operation requires a process that has started."""

    default_kind = ErrorKind.USER


class AlreadyFinishedError(RunnerError):
    """Live stream requested after the process finished."""

    default_kind = ErrorKind.USER


class IncompleteOutputWarning(UserWarning):
    """Captured output was read while the process was still running."""
