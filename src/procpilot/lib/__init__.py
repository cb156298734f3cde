"""Core procpilot library exports."""

from procpilot.lib.exec.command import Command
from procpilot.lib.exec.controller import ProcessLifecycleController, RetryPolicy
from procpilot.lib.exec.streams import FileStreams, PipeStreams

__all__ = ["Command", "FileStreams", "PipeStreams", "ProcessLifecycleController", "RetryPolicy"]
