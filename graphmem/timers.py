from __future__ import annotations

import heapq
import itertools
import logging
import threading
from collections.abc import Callable
from typing import Protocol

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Timers(Protocol):
    def call_later(self, delay_ms: int, callback: Callable[[], None]) -> TimerHandle: ...


class ThreadingTimers:
    """Daemon ``threading.Timer`` per scheduled callback."""

    def call_later(self, delay_ms: int, callback: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(max(0, delay_ms) / 1000.0, _run_logged, args=(callback,))
        timer.daemon = True
        timer.start()
        return timer


def _run_logged(callback: Callable[[], None]) -> None:
    try:
        callback()
    except Exception as exc:
        logger.exception("timer callback failed", exc_info=exc)


class _ManualHandle:
    def __init__(self, owner: ManualTimers, key: int) -> None:
        self._owner = owner
        self._key = key

    def cancel(self) -> None:
        self._owner._cancel(self._key)


class ManualTimers:
    """Virtual clock; callbacks only run from ``advance``/``run_all``."""

    def __init__(self) -> None:
        self.now_ms = 0
        self._seq = itertools.count()
        self._heap: list[tuple[int, int, Callable[[], None]]] = []
        self._cancelled: set[int] = set()

    def call_later(self, delay_ms: int, callback: Callable[[], None]) -> TimerHandle:
        key = next(self._seq)
        heapq.heappush(self._heap, (self.now_ms + max(0, delay_ms), key, callback))
        return _ManualHandle(self, key)

    def _cancel(self, key: int) -> None:
        if any(entry[1] == key for entry in self._heap):
            self._cancelled.add(key)

    def pending(self) -> int:
        return sum(1 for _, key, _ in self._heap if key not in self._cancelled)

    def next_due_ms(self) -> int | None:
        self._discard_cancelled()
        if not self._heap:
            return None
        return self._heap[0][0]

    def advance(self, delta_ms: int) -> int:
        """Move the clock forward, firing every callback that becomes due."""

        target = self.now_ms + max(0, delta_ms)
        fired = 0
        while True:
            self._discard_cancelled()
            if not self._heap or self._heap[0][0] > target:
                break
            due, _key, callback = heapq.heappop(self._heap)
            self.now_ms = max(self.now_ms, due)
            callback()
            fired += 1
        self.now_ms = target
        return fired

    def run_all(self, *, max_callbacks: int = 10_000) -> int:
        fired = 0
        while fired < max_callbacks:
            due = self.next_due_ms()
            if due is None:
                break
            fired += self.advance(due - self.now_ms)
        return fired

    def _discard_cancelled(self) -> None:
        while self._heap and self._heap[0][1] in self._cancelled:
            _, key, _ = heapq.heappop(self._heap)
            self._cancelled.discard(key)
