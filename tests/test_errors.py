"""Runner error taxonomy."""

from __future__ import annotations

import pytest

from procpilot.lib.exec.errors import (
    AlreadyFinishedError,
    ConfigurationError,
    ErrorKind,
    LaunchError,
    NotStartedError,
    RunnerError,
    WaitInterruptedError,
)


def test_message_includes_cause() -> None:
    cause = FileNotFoundError(2, "No such file or directory")
    error = LaunchError("Failed to start process", cause=cause)

    assert str(error) == f"Failed to start process: {cause}"
    assert error.cause is cause
    assert error.__cause__ is cause


def test_message_without_cause() -> None:
    assert str(RunnerError("plain")) == "plain"
    assert RunnerError("plain").cause is None


@pytest.mark.parametrize(
    "error_type,expected_kind",
    [
        pytest.param(ConfigurationError, ErrorKind.USER, id="configuration"),
        pytest.param(NotStartedError, ErrorKind.USER, id="not-started"),
        pytest.param(AlreadyFinishedError, ErrorKind.USER, id="already-finished"),
        pytest.param(LaunchError, ErrorKind.SYSTEM, id="launch"),
        pytest.param(WaitInterruptedError, ErrorKind.SYSTEM, id="wait"),
    ],
)
def test_default_kinds(error_type: type[RunnerError], expected_kind: ErrorKind) -> None:
    error = error_type("boom")

    assert isinstance(error, RunnerError)
    assert error.kind == expected_kind
    assert error.is_user_error is (expected_kind == ErrorKind.USER)


def test_wrapper_inherits_kind_from_runner_cause() -> None:
    inner = ConfigurationError("bad request")

    assert NotStartedError("never ran", cause=inner).kind == ErrorKind.USER
    assert RunnerError("wrapped", cause=inner).is_user_error is True
    assert RunnerError("wrapped", cause=inner, kind=ErrorKind.SYSTEM).is_user_error is False
