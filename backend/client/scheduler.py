"""Timers used by sessions for the payment verification and display delays."""

import threading
from typing import Any, Callable, List


class ThreadingScheduler:
    """Runs callbacks on daemon timer threads."""

    def call_later(self, delay: float, callback: Callable, *args: Any):
        timer = threading.Timer(delay, callback, args=args)
        timer.daemon = True
        timer.start()
        return timer


class _ManualHandle:
    def __init__(self, due: float, seq: int, callback: Callable, args):
        self.due = due
        self.seq = seq
        self.callback = callback
        self.args = args


class ManualScheduler:
    """
    Deterministic scheduler driven by `advance()`.

    Used by tests and simulations; nothing runs until time is advanced.
    Sessions guard stale callbacks themselves, so there is no cancel.
    """

    def __init__(self):
        self.now = 0.0
        self._seq = 0
        self._pending: List[_ManualHandle] = []

    def call_later(self, delay: float, callback: Callable, *args: Any):
        self._seq += 1
        handle = _ManualHandle(self.now + delay, self._seq, callback, args)
        self._pending.append(handle)
        return handle

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def advance(self, seconds: float):
        """Move time forward, running due callbacks in order (including ones they schedule)."""
        target = self.now + seconds
        while True:
            due = [h for h in self._pending if h.due <= target]
            if not due:
                break
            handle = min(due, key=lambda h: (h.due, h.seq))
            self._pending.remove(handle)
            self.now = handle.due
            handle.callback(*handle.args)
        self.now = target
