"""One-shot resettable event shared between the run thread and callers."""

from __future__ import annotations

import threading
import time


class EventTimeoutError(TimeoutError):
    """Raised when a bounded event wait reaches its deadline first."""

    def __init__(self, name: str, timeout_seconds: float) -> None:
        self.name = name
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Wait for event '{name}' took more than {timeout_seconds:.3f}s")


class SyncEvent:
    """Boolean flag with broadcast wake-up on set.

    Only the owning run thread calls ``signal()`` and ``reset()``; any number of
    threads may wait. ``reset()`` is only safe between run iterations.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._flag = False
        self._condition = threading.Condition(threading.Lock())

    def __repr__(self) -> str:
        return f"SyncEvent({self.name!r}, set={self.is_set()})"

    def reset(self) -> None:
        with self._condition:
            self._flag = False

    def signal(self) -> None:
        with self._condition:
            self._flag = True
            self._condition.notify_all()

    def is_set(self) -> bool:
        with self._condition:
            return self._flag

    def wait(self, timeout: float | None = None) -> None:
        """Block until the event is set.

        ``timeout=None`` waits forever. With a timeout the remaining budget is
        recomputed after every wake-up so spurious wake-ups never shorten or
        extend the total wait.
        """

        if timeout is None:
            with self._condition:
                while not self._flag:
                    self._condition.wait()
            return

        self._wait_deadline(time.monotonic() + timeout, timeout)

    def wait_until(self, deadline: float) -> None:
        """Block until set or until the ``time.monotonic()`` deadline passes."""

        self._wait_deadline(deadline, max(deadline - time.monotonic(), 0.0))

    def _wait_deadline(self, deadline: float, budget: float) -> None:
        with self._condition:
            while not self._flag:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise EventTimeoutError(self.name, budget)
                self._condition.wait(remaining)
