"""Command description and per-iteration launch requests."""

from __future__ import annotations

import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

from procpilot.lib.exec.errors import ConfigurationError
from procpilot.lib.platform import Platform

UNIX_SHELL: tuple[str, ...] = ("/bin/sh", "-c")
WINDOWS_SHELL: tuple[str, ...] = ("CMD.exe", "/C")


@dataclass(frozen=True, slots=True)
class Command:
    """Immutable description of one external command."""

    argv: tuple[str, ...]
    cwd: Path | None = None
    env_overrides: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    shell: bool = False

    def __post_init__(self) -> None:
        if not self.argv:
            raise ConfigurationError("Exec command is empty.")
        object.__setattr__(self, "argv", tuple(self.argv))
        object.__setattr__(self, "env_overrides", MappingProxyType(dict(self.env_overrides)))

    @classmethod
    def from_string(
        cls,
        command_line: str,
        *,
        cwd: Path | None = None,
        env_overrides: Mapping[str, str] | None = None,
        shell: bool = False,
    ) -> Command:
        """Build a command by splitting ``command_line`` on whitespace."""

        return cls(
            argv=tuple(command_line.split()),
            cwd=cwd,
            env_overrides=env_overrides or {},
            shell=shell,
        )

    @classmethod
    def from_args(
        cls,
        args: Sequence[str] | str,
        *,
        cwd: Path | None = None,
        env_overrides: Mapping[str, str] | None = None,
        shell: bool = False,
    ) -> Command:
        if isinstance(args, str):
            return cls.from_string(args, cwd=cwd, env_overrides=env_overrides, shell=shell)
        return cls(argv=tuple(args), cwd=cwd, env_overrides=env_overrides or {}, shell=shell)

    @property
    def executable(self) -> str:
        return self.argv[0]

    def exec_name(self) -> str:
        """Executable basename up to its first '.'."""

        base = Path(self.executable).name
        head, dot, _ = base.partition(".")
        if dot and head:
            return head
        return base


def shell_wrap(argv: Sequence[str], platform: Platform) -> tuple[str, ...]:
    """Replace ``argv`` with a platform shell invocation of the joined arguments."""

    joined = " ".join(argv)
    if platform.is_windows:
        return (*WINDOWS_SHELL, joined)
    return (*UNIX_SHELL, joined)


@dataclass(slots=True)
class LaunchRequest:
    """Everything needed for one iteration's launch attempts."""

    command: Command
    argv: tuple[str, ...]
    cwd: Path | None
    env: dict[str, str]
    join_streams: bool


def build_launch_request(
    command: Command,
    *,
    join_streams: bool,
    platform: Platform,
    base_env: Mapping[str, str] | None = None,
) -> LaunchRequest:
    env = dict(os.environ if base_env is None else base_env)
    env.update(command.env_overrides)
    argv = shell_wrap(command.argv, platform) if command.shell else command.argv
    return LaunchRequest(
        command=command,
        argv=argv,
        cwd=command.cwd,
        env=env,
        join_streams=join_streams,
    )
