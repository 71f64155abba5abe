"""Clock, expiring windows, and cancel-and-replace timers.

Every component that needs time takes a :class:`Scheduler`. Production
code uses :class:`LoopScheduler` (the asyncio loop clock and
``call_later``); tests drive a manual clock instead. All callbacks run on
the owning process's event loop thread, one at a time.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from typing import Any, Protocol

_logger = logging.getLogger(__name__)


class Cancellable(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Monotonic clock plus one-shot delayed callbacks."""

    def now(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> Cancellable: ...


class LoopScheduler:
    """:class:`Scheduler` backed by an asyncio event loop.

    With *dispatch*, due callbacks are handed to it instead of running
    directly, so a process can queue them behind inbound messages.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop | None = None,
        *,
        dispatch: Callable[[Callable[[], None]], None] | None = None,
    ) -> None:
        self._loop = loop or asyncio.get_running_loop()
        self._dispatch = dispatch

    def now(self) -> float:
        return self._loop.time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> Cancellable:
        if self._dispatch is None:
            return self._loop.call_later(max(0.0, delay), callback)
        return self._loop.call_later(max(0.0, delay), self._dispatch, callback)


@dataclass
class ExpiringWindow:
    """A ``(key, value)`` marker that is open until ``expires_at``."""

    key: Hashable
    value: Any
    expires_at: float

    def is_open(self, now: float) -> bool:
        return now < self.expires_at

    def expire(self) -> None:
        self.expires_at = float("-inf")


class WindowTable:
    """Per-key table of :class:`ExpiringWindow` with one window per key.

    Opening a window for a key replaces the previous one.
    """

    def __init__(self, scheduler: Scheduler) -> None:
        self._scheduler = scheduler
        self._windows: dict[Hashable, ExpiringWindow] = {}

    def open(self, key: Hashable, value: Any, duration: float) -> ExpiringWindow:
        window = ExpiringWindow(key=key, value=value, expires_at=self._scheduler.now() + duration)
        self._windows[key] = window
        return window

    def active(self, key: Hashable) -> ExpiringWindow | None:
        """Return the open window for *key*, dropping it if it has expired."""
        window = self._windows.get(key)
        if window is None:
            return None
        if not window.is_open(self._scheduler.now()):
            self._windows.pop(key, None)
            return None
        return window

    def clear(self) -> None:
        self._windows.clear()


class TimerSlot:
    """A named one-shot timer.

    ``start`` always cancels whatever the slot was holding, so a slot
    never leaks a second pending callback.
    """

    def __init__(self, scheduler: Scheduler, name: str) -> None:
        self._scheduler = scheduler
        self.name = name
        self._handle: Cancellable | None = None
        self._token: object | None = None
        self.deadline: float | None = None

    @property
    def active(self) -> bool:
        return self._handle is not None

    def start(self, delay: float, callback: Callable[[], None]) -> None:
        self.cancel()
        self.deadline = self._scheduler.now() + delay
        token = self._token = object()

        def _fire() -> None:
            # A dispatched fire may run after the slot was cancelled or restarted.
            if self._token is not token:
                return
            self._token = None
            self._handle = None
            self.deadline = None
            try:
                callback()
            except Exception:
                _logger.exception("Timer %s callback failed", self.name)

        self._handle = self._scheduler.call_later(delay, _fire)

    def cancel(self) -> None:
        handle = self._handle
        self._handle = None
        self._token = None
        self.deadline = None
        if handle is not None:
            handle.cancel()


class RecurringTimer:
    """A named periodic timer with an idempotent :meth:`rearm`."""

    def __init__(self, scheduler: Scheduler, name: str) -> None:
        self._slot = TimerSlot(scheduler, name)
        self._callback: Callable[[], None] | None = None
        self.interval: float | None = None

    @property
    def active(self) -> bool:
        return self._slot.active

    def rearm(self, interval: float, callback: Callable[[], None] | None = None) -> None:
        """Cancel the current schedule and start ticking every *interval*.

        Without *callback*, the previously registered callback is kept.
        """
        if callback is not None:
            self._callback = callback
        if self._callback is None:
            raise ValueError(f"RecurringTimer {self._slot.name} has no callback")
        self.interval = interval
        self._slot.start(interval, self._tick)

    def cancel(self) -> None:
        self._slot.cancel()
        self.interval = None

    def _tick(self) -> None:
        interval = self.interval
        # Re-schedule first so a callback calling rearm()/cancel() wins.
        if interval is not None:
            self._slot.start(interval, self._tick)
        if self._callback is not None:
            self._callback()
