"""Preview/commit protocol for the continuous window angle.

Producers stream throttled, non-final previews while the user drags and
publish exactly one final value on release. Consumers animate foreign
previews, apply finals immediately, and leave a drag in progress alone.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable

from ventsync._constants import (
    ANGLE_MATCH_TOLERANCE,
    ANGLE_PUBLISH_THROTTLE,
    ANGLE_TRAILING_DELAY,
    DASHBOARD_SOURCE,
)
from ventsync._timers import Scheduler, TimerSlot
from ventsync.models.messages import WindowCommand

_logger = logging.getLogger(__name__)


class AngleAction(enum.StrEnum):
    IGNORE = "ignore"
    ANIMATE = "animate"
    SNAP = "snap"


def classify_inbound_angle(
    command: WindowCommand,
    *,
    dragging: bool = False,
    local_value: float | None = None,
    local_source: str | None = None,
) -> AngleAction:
    """Decide how a consumer applies an inbound angle.

    Run the echo guard first; this only covers the preview/final split.
    """
    is_local = local_source is not None and command.source == local_source
    if dragging:
        if (
            command.final
            and local_value is not None
            and abs(command.angle - local_value) <= ANGLE_MATCH_TOLERANCE
        ):
            return AngleAction.SNAP
        return AngleAction.IGNORE
    if command.final:
        return AngleAction.SNAP
    if is_local:
        return AngleAction.IGNORE
    return AngleAction.ANIMATE


class AnglePublisher:
    """Throttled preview publisher with a trailing flush and a single final.

    ``publish`` receives every outgoing :class:`WindowCommand`; it must not
    raise for transport problems.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        publish: Callable[[WindowCommand], None],
        *,
        source: str = DASHBOARD_SOURCE,
        throttle: float = ANGLE_PUBLISH_THROTTLE,
        trailing_delay: float = ANGLE_TRAILING_DELAY,
    ) -> None:
        self._scheduler = scheduler
        self._publish = publish
        self.source = source
        self.throttle = throttle
        self.trailing_delay = trailing_delay
        self._trailing = TimerSlot(scheduler, "angle-trailing")
        self._last_sent_at: float | None = None
        self._last_sent_value: int | None = None
        self.displayed: int | None = None
        self.dragging = False

    def move(self, angle: float) -> None:
        """Record a drag position; publish a preview if the throttle allows."""
        self.dragging = True
        self.displayed = round(angle)
        now = self._scheduler.now()
        if self._last_sent_at is None or now - self._last_sent_at >= self.throttle:
            self._send_preview()
        self._trailing.start(self.trailing_delay, self._flush_trailing)

    def release(self, angle: float | None = None) -> WindowCommand | None:
        """End the gesture with exactly one final publish.

        The final carries the last displayed value unless *angle* is given.
        Returns the published command, or ``None`` if nothing was shown.
        """
        self._trailing.cancel()
        self.dragging = False
        if angle is not None:
            self.displayed = round(angle)
        if self.displayed is None:
            return None
        command = WindowCommand(angle=self.displayed, final=True, source=self.source)
        self._emit(command)
        self._last_sent_value = self.displayed
        self._last_sent_at = self._scheduler.now()
        return command

    def cancel(self) -> None:
        self._trailing.cancel()
        self.dragging = False

    def _flush_trailing(self) -> None:
        if self.dragging and self.displayed != self._last_sent_value:
            self._send_preview()

    def _send_preview(self) -> None:
        assert self.displayed is not None
        self._emit(WindowCommand(angle=self.displayed, final=False, source=self.source))
        self._last_sent_at = self._scheduler.now()
        self._last_sent_value = self.displayed

    def _emit(self, command: WindowCommand) -> None:
        try:
            self._publish(command)
        except Exception:
            _logger.debug("Angle publish failed", exc_info=True)
