"""Collision-free log filename selection.

Selection is best effort: it checks the directory at call time and is not
atomic against other writers in the same directory.
"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

import structlog

MAX_UNIQUE_FILENAME = 100000
STDOUT_EXTENSION = "out"
STDERR_EXTENSION = "err"
LOG_EXTENSIONS: tuple[str, ...] = (STDOUT_EXTENSION, STDERR_EXTENSION)

logger = structlog.get_logger(__name__)


def can_use_stem(directory: Path, stem: str, extensions: Iterable[str]) -> bool:
    """Return True when no ``<stem>.<ext>`` exists for any tracked extension."""

    return not any((directory / f"{stem}.{extension}").exists() for extension in extensions)


def find_next_stem(
    directory: Path,
    prefix: str,
    extensions: Iterable[str] = LOG_EXTENSIONS,
    *,
    limit: int = MAX_UNIQUE_FILENAME,
) -> str:
    """Return the first unused stem among ``prefix``, ``prefix-1``, ``prefix-2``...

    With ``foo.out``, ``foo-1.err``, ``foo-2.out``, ``foo-2.err`` and
    ``foo-3.out`` present, ``find_next_stem(dir, "foo")`` returns ``foo-4``.
    When every candidate below ``limit`` is taken the bare prefix is returned
    and the caller overwrites it.
    """

    tracked = tuple(extensions)
    if can_use_stem(directory, prefix, tracked):
        return prefix

    for counter in range(1, limit):
        candidate = f"{prefix}-{counter}"
        if can_use_stem(directory, candidate, tracked):
            return candidate

    logger.warning(
        "No unused log filename found, reusing prefix.",
        directory=str(directory),
        prefix=prefix,
        limit=limit,
    )
    return prefix
