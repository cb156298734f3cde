"""CLI output emission: text summaries or one JSON document per command."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Literal

from procpilot.lib.formatting import FormatContext, TextFormattable
from procpilot.lib.serialization import to_jsonable

OutputFormat = Literal["text", "json"]


@dataclass(frozen=True, slots=True)
class OutputConfig:
    format: OutputFormat
    verbosity: int = 0

    @property
    def format_context(self) -> FormatContext:
        return FormatContext(verbosity=self.verbosity)


def emit(value: Any, config: OutputConfig) -> None:
    if config.format == "json":
        print(json.dumps(to_jsonable(value), sort_keys=True))
        return
    if isinstance(value, TextFormattable):
        print(value.format_text(config.format_context))
        return
    # Plain dataclasses such as the resolved config have no text form.
    print(json.dumps(to_jsonable(value), sort_keys=True, indent=2))
