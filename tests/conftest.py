"""Shared pytest fixtures for library and CLI checks."""

from __future__ import annotations

import os
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

if TYPE_CHECKING:
    from collections.abc import Callable

PACKAGE_ROOT = Path(__file__).resolve().parents[1]


@dataclass(frozen=True, slots=True)
class CliResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str


@pytest.fixture
def package_root() -> Path:
    return PACKAGE_ROOT


@pytest.fixture
def cli_env(package_root: Path) -> dict[str, str]:
    env = os.environ.copy()
    existing = env.get("PYTHONPATH", "")
    root = str(package_root / "src")
    env["PYTHONPATH"] = root if not existing else f"{root}{os.pathsep}{existing}"
    for name in list(env):
        if name.startswith("PROCPILOT_"):
            del env[name]
    return env


@pytest.fixture
def run_procpilot(package_root: Path, cli_env: dict[str, str]) -> Callable[..., CliResult]:
    def _run(args: list[str], timeout: float = 30.0, cwd: Path | None = None) -> CliResult:
        completed = subprocess.run(
            [sys.executable, "-m", "procpilot", *args],
            cwd=cwd or package_root,
            env=cli_env,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
        return CliResult(
            args=tuple(args),
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )

    return _run


@pytest.fixture
def python_command() -> Callable[..., tuple[str, ...]]:
    """Build an argv that runs a Python snippet with the test interpreter."""

    def _build(source: str, *args: str) -> tuple[str, ...]:
        return (sys.executable, "-c", source, *args)

    return _build
