from __future__ import annotations

import heapq
import json
from collections.abc import Callable
from typing import Any

import pytest


class _ManualHandle:
    def __init__(self, when: float, callback: Callable[[], None]) -> None:
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Deterministic clock: callbacks run only inside :meth:`advance`."""

    def __init__(self) -> None:
        self._now = 0.0
        self._seq = 0
        self._heap: list[tuple[float, int, _ManualHandle]] = []

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> _ManualHandle:
        handle = _ManualHandle(self._now + max(0.0, delay), callback)
        self._seq += 1
        heapq.heappush(self._heap, (handle.when, self._seq, handle))
        return handle

    def advance(self, seconds: float) -> None:
        target = self._now + seconds
        while self._heap and self._heap[0][0] <= target:
            when, _, handle = heapq.heappop(self._heap)
            if handle.cancelled:
                continue
            self._now = when
            handle.callback()
        self._now = target

    @property
    def pending(self) -> int:
        return sum(1 for _, _, handle in self._heap if not handle.cancelled)


class RecordingPublisher:
    """Publisher double that records every publish as decoded JSON (or text)."""

    def __init__(self) -> None:
        self.published: list[tuple[str, Any, bool]] = []
        self.fail = False

    def publish(self, topic: str, payload: Any, *, retain: bool = False) -> bool:
        if self.fail:
            return False
        if isinstance(payload, (bytes, str)):
            text = payload.decode() if isinstance(payload, bytes) else payload
            try:
                payload = json.loads(text)
            except ValueError:
                payload = text
        self.published.append((topic, payload, retain))
        return True

    def on(self, topic: str) -> list[Any]:
        return [payload for t, payload, _ in self.published if t == topic]

    def clear(self) -> None:
        self.published.clear()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()
