"""Operations shared by CLI commands."""

from procpilot.lib.ops.run import (
    NextNameInput,
    NextNameOutput,
    RunCommandInput,
    RunCommandOutput,
    config_show_sync,
    next_name_sync,
    run_command_sync,
)

__all__ = [
    "NextNameInput",
    "NextNameOutput",
    "RunCommandInput",
    "RunCommandOutput",
    "config_show_sync",
    "next_name_sync",
    "run_command_sync",
]
