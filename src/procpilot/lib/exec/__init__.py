"""Execution engine primitives."""

from procpilot.lib.exec.command import Command, LaunchRequest, build_launch_request, shell_wrap
from procpilot.lib.exec.controller import (
    MAX_FORK_RETRIES,
    SENTINEL_EXIT_CODE,
    ProcessLifecycleController,
    RetryPolicy,
    RunState,
)
from procpilot.lib.exec.errors import (
    AlreadyFinishedError,
    ConfigurationError,
    ErrorKind,
    IncompleteOutputWarning,
    LaunchError,
    NotStartedError,
    RunnerError,
    WaitInterruptedError,
)
from procpilot.lib.exec.event import EventTimeoutError, SyncEvent
from procpilot.lib.exec.lognames import MAX_UNIQUE_FILENAME, can_use_stem, find_next_stem
from procpilot.lib.exec.streams import FileStreams, LogFilePair, PipeStreams, StreamStrategy

__all__ = [
    "MAX_FORK_RETRIES",
    "MAX_UNIQUE_FILENAME",
    "SENTINEL_EXIT_CODE",
    "AlreadyFinishedError",
    "Command",
    "ConfigurationError",
    "ErrorKind",
    "EventTimeoutError",
    "FileStreams",
    "IncompleteOutputWarning",
    "LaunchError",
    "LaunchRequest",
    "LogFilePair",
    "NotStartedError",
    "PipeStreams",
    "ProcessLifecycleController",
    "RetryPolicy",
    "RunState",
    "RunnerError",
    "StreamStrategy",
    "SyncEvent",
    "WaitInterruptedError",
    "build_launch_request",
    "can_use_stem",
    "find_next_stem",
    "shell_wrap",
]
