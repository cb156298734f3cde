"""Text rendering helpers for ops results.

Ops results implement ``format_text``; the CLI picks between that and JSON.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

FIELD_SEPARATOR = "  "


@dataclass(frozen=True, slots=True)
class FormatContext:
    verbosity: int = 0


@runtime_checkable
class TextFormattable(Protocol):
    def format_text(self, ctx: FormatContext | None = None) -> str: ...


def format_duration(seconds: float) -> str:
    """Render a duration as ``0.4s``, ``12.0s`` or ``3m05s``."""

    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, remainder = divmod(int(round(seconds)), 60)
    return f"{minutes}m{remainder:02d}s"


def join_fields(fields: Iterable[str | None]) -> str:
    """Join the non-empty summary fields on one line."""

    return FIELD_SEPARATOR.join(field for field in fields if field)
