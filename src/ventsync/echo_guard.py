"""Per-field echo suppression for locally originated settings changes.

After a viewer publishes its own value for a field two windows open:

* the *suppress* window recognises the viewer's own value coming back and
  treats it as a confirmation instead of a change;
* the shorter *guard* window rejects any non-matching value, so a stale
  write from elsewhere cannot clobber the in-flight local edit.

Callers feed every inbound field update through :meth:`EchoGuard.filter_inbound`.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Hashable
from typing import Any

from ventsync._constants import ANGLE_MATCH_TOLERANCE, GUARD_WINDOW, SUPPRESS_WINDOW
from ventsync._timers import Scheduler, WindowTable
from ventsync.models.settings import SettingsField

_logger = logging.getLogger(__name__)


class InboundVerdict(enum.StrEnum):
    REJECT = "reject"
    CONFIRM = "confirm"
    APPLY = "apply"


def values_match(key: Hashable, expected: Any, incoming: Any) -> bool:
    """Field-aware equality: ``angle`` tolerates rounding, the rest is exact."""
    if key == SettingsField.ANGLE:
        if isinstance(expected, bool) or isinstance(incoming, bool):
            return False
        if not isinstance(expected, (int, float)) or not isinstance(incoming, (int, float)):
            return False
        return abs(float(expected) - float(incoming)) <= ANGLE_MATCH_TOLERANCE
    return expected == incoming


class EchoGuard:
    """Suppress and guard windows keyed by field name."""

    def __init__(
        self,
        scheduler: Scheduler,
        *,
        suppress_window: float = SUPPRESS_WINDOW,
        guard_window: float = GUARD_WINDOW,
    ) -> None:
        self._suppress = WindowTable(scheduler)
        self._guard = WindowTable(scheduler)
        self.suppress_window = suppress_window
        self.guard_window = guard_window

    def begin_intent(self, key: Hashable, value: Any, *, guard_window: float | None = None) -> None:
        """Record a local change of *key* to *value*.

        Both windows are replaced, so the latest intent always wins.
        """
        self._suppress.open(key, value, self.suppress_window)
        self._guard.open(key, value, self.guard_window if guard_window is None else guard_window)

    def should_suppress_echo(self, key: Hashable, incoming: Any) -> bool:
        window = self._suppress.active(key)
        return window is not None and values_match(key, window.value, incoming)

    def is_guarded_mismatch(self, key: Hashable, incoming: Any) -> bool:
        window = self._guard.active(key)
        return window is not None and not values_match(key, window.value, incoming)

    def clear_guard_if_match(self, key: Hashable, incoming: Any) -> None:
        window = self._guard.active(key)
        if window is not None and values_match(key, window.value, incoming):
            window.expire()

    def filter_inbound(self, key: Hashable, incoming: Any) -> InboundVerdict:
        """Classify an inbound update of *key*.

        The guard is checked first: a mismatch inside the guard window is
        rejected even if the suppress window would not match either.
        """
        if self.is_guarded_mismatch(key, incoming):
            _logger.debug("Rejecting %s=%r inside guard window", key, incoming)
            return InboundVerdict.REJECT
        self.clear_guard_if_match(key, incoming)
        if self.should_suppress_echo(key, incoming):
            return InboundVerdict.CONFIRM
        return InboundVerdict.APPLY

    def reset(self) -> None:
        self._suppress.clear()
        self._guard.clear()
