# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Run context: the cancellation token shared by every worker of a run."""

import threading
import time
from typing import Callable, List, Optional

from frags.errors import RunCancelled


DEFAULT_TIMEOUT_S = 15 * 60


class RunContext:
    """Cooperative cancellation with a deadline.

    Blocking operations call ``check()`` between remote requests; the first
    unrecovered error calls ``cancel()`` so peers stop promptly.
    """

    def __init__(
        self,
        timeout_s: Optional[float] = DEFAULT_TIMEOUT_S,
        time_func: Optional[Callable[[], float]] = None,
        parent: Optional["RunContext"] = None,
    ):
        self._time = time_func or time.monotonic
        self._event = threading.Event()
        self._reason: Optional[str] = None
        self._children: List["RunContext"] = []
        self._lock = threading.Lock()
        self.parent = parent
        self.deadline = self._time() + timeout_s if timeout_s else None
        if parent is not None and parent.deadline is not None:
            if self.deadline is None or parent.deadline < self.deadline:
                self.deadline = parent.deadline

    def child(self, timeout_s: Optional[float] = None) -> "RunContext":
        """A context cancelled with this one, optionally with a shorter deadline."""
        child = RunContext(timeout_s=timeout_s, time_func=self._time, parent=self)
        with self._lock:
            self._children.append(child)
        if self.cancelled:
            child.cancel(self.reason)
        return child

    def cancel(self, reason: str = "run cancelled") -> None:
        """Cancel this context and every child, waking their sleepers."""
        with self._lock:
            if not self._event.is_set():
                self._reason = reason
                self._event.set()
            children = list(self._children)
        for child in children:
            child.cancel(self.reason)

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self.parent is not None and self.parent.cancelled:
            return True
        return self.deadline is not None and self._time() >= self.deadline

    @property
    def reason(self) -> str:
        if self._reason:
            return self._reason
        if self.parent is not None and self.parent.cancelled:
            return self.parent.reason
        return "deadline exceeded"

    def remaining(self) -> Optional[float]:
        """Seconds until the deadline, or None when there is none."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - self._time())

    def check(self) -> None:
        """Raise RunCancelled if the run has been cancelled or timed out."""
        if self.cancelled:
            raise RunCancelled(self.reason)

    def sleep(self, seconds: float) -> None:
        """Sleep, waking early (and raising) on cancellation."""
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        if self._event.wait(seconds):
            raise RunCancelled(self.reason)
        self.check()
