"""Process-group helpers for subprocess lifecycle management."""

from __future__ import annotations

import os
import signal
import subprocess
from typing import Any

from procpilot.lib.platform import Platform


def isolation_kwargs(platform: Platform) -> dict[str, Any]:
    """Popen kwargs placing the child in its own process group."""

    if platform.is_windows:
        return {"creationflags": getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)}
    return {"start_new_session": True}


def signal_process_group(
    process: subprocess.Popen[bytes],
    signum: signal.Signals,
) -> None:
    """Send one signal to the subprocess process group.

    The child may exit between returncode checks and signal delivery, so
    ProcessLookupError is treated as an expected race.
    """

    if process.returncode is not None:
        return

    try:
        pgid = os.getpgid(process.pid)
        os.killpg(pgid, signum)
    except ProcessLookupError:
        return
    except OSError:
        # Not a group leader; signal the child alone.
        process.send_signal(signum)


def terminate(process: subprocess.Popen[bytes], platform: Platform) -> None:
    if platform.is_windows:
        process.terminate()
        return
    signal_process_group(process, signal.SIGTERM)


def kill(process: subprocess.Popen[bytes], platform: Platform) -> None:
    if platform.is_windows:
        process.kill()
        return
    signal_process_group(process, signal.SIGKILL)
