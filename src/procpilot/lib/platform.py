"""Operating-system family detection."""

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Platform:
    is_unix: bool
    is_windows: bool


UNIX = Platform(is_unix=True, is_windows=False)
WINDOWS = Platform(is_unix=False, is_windows=True)


def detect_platform() -> Platform:
    """Return the platform family of the running interpreter."""

    if os.name == "nt":
        return WINDOWS
    return UNIX
