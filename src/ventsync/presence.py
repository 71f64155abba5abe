"""Device presence detection from heartbeats and availability messages.

The device may publish a retained availability token (often its MQTT last
will), periodic heartbeats, both, or neither. Heartbeats optionally declare
their own interval; otherwise the interval is estimated from observed gaps.

Transitions:

* offline -> online on any heartbeat or ``online`` availability.
* online -> offline on an ``offline`` availability after a short debounce
  (restarted by each new offline message), or when the monitor tick finds
  the last signal older than ``min(expected * stale_factor, hard_cap)``.

The staleness monitor stays idle until a heartbeat has been seen, so a
device without heartbeat firmware is governed by availability alone.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from ventsync._constants import (
    HEARTBEAT_EWMA_WEIGHT,
    HEARTBEAT_GAP_RANGE,
    HEARTBEAT_INTERVAL_RANGE,
    HEARTBEAT_MAX_SAMPLES,
    HEARTBEAT_MIN_SAMPLES,
    HEARTBEAT_NOISE_ABS,
    HEARTBEAT_NOISE_REL,
    MONITOR_TICK_RANGE,
    OFFLINE_DEBOUNCE,
)
from ventsync._timers import RecurringTimer, Scheduler, TimerSlot
from ventsync.config import PresenceConfig
from ventsync.models.messages import DeviceAvailability, DeviceHeartbeat

_logger = logging.getLogger(__name__)


@dataclass
class LivenessBelief:
    """Current belief about the device. Times are scheduler seconds."""

    online: bool = False
    last_signal_at: float | None = None
    expected_interval: float = 30.0
    stale_factor: float = 1.5
    hard_cap: float = 6.5
    ever_signaled: bool = False

    @property
    def stale_after(self) -> float:
        return min(self.expected_interval * self.stale_factor, self.hard_cap)

    def age(self, now: float) -> float | None:
        if self.last_signal_at is None:
            return None
        return now - self.last_signal_at


def monitor_tick_period(expected_interval: float) -> float:
    """Tick period for the staleness monitor, scaled to the device cadence."""
    low, high = MONITOR_TICK_RANGE
    return max(low, min(expected_interval / 2.0, high))


class _GapEstimator:
    """EWMA of heartbeat gaps, ignoring implausible gaps."""

    def __init__(self) -> None:
        self.last_at: float | None = None
        self.estimate: float | None = None
        self.samples = 0

    def observe(self, now: float) -> float | None:
        """Record a heartbeat at *now*; return the estimate once trustworthy."""
        previous = self.last_at
        self.last_at = now
        if previous is None:
            return None
        gap = now - previous
        low, high = HEARTBEAT_GAP_RANGE
        if not low <= gap <= high:
            return None
        if self.estimate is None:
            self.estimate = gap
        else:
            self.estimate = self.estimate * (1.0 - HEARTBEAT_EWMA_WEIGHT) + gap * HEARTBEAT_EWMA_WEIGHT
        self.samples = min(self.samples + 1, HEARTBEAT_MAX_SAMPLES)
        if self.samples < HEARTBEAT_MIN_SAMPLES:
            return None
        return self.estimate

    def reset(self) -> None:
        self.last_at = None


class PresenceDetector:
    """Tracks whether the device is reachable.

    Parameters
    ----------
    scheduler
        Clock and timers of the owning process.
    config
        Expected interval, stale factor, and hard cap.
    on_change
        Called with ``(online, reason)`` on every actual transition.
    offline_debounce
        Seconds an ``offline`` availability must stand before it applies.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        config: PresenceConfig | None = None,
        *,
        on_change: Callable[[bool, str], None] | None = None,
        offline_debounce: float = OFFLINE_DEBOUNCE,
    ) -> None:
        config = config or PresenceConfig()
        self._scheduler = scheduler
        self._on_change = on_change
        self._offline_debounce = offline_debounce
        self._belief = LivenessBelief(
            expected_interval=config.expected_interval,
            stale_factor=config.stale_factor,
            hard_cap=config.hard_cap,
        )
        self._gaps = _GapEstimator()
        self._monitor = RecurringTimer(scheduler, "presence-monitor")
        self._offline_timer = TimerSlot(scheduler, "presence-offline-debounce")

    @property
    def belief(self) -> LivenessBelief:
        return self._belief

    @property
    def is_online(self) -> bool:
        return self._belief.online

    def start(self) -> None:
        """(Re)start the staleness monitor at the current cadence."""
        self._monitor.rearm(monitor_tick_period(self._belief.expected_interval), self._check_stale)

    def stop(self) -> None:
        self._monitor.cancel()
        self._offline_timer.cancel()

    def handle_availability(self, message: DeviceAvailability) -> None:
        if message.online:
            self._offline_timer.cancel()
            self._belief.last_signal_at = self._scheduler.now()
            self._mark_seen("availability")
            return
        # Restart, not extend: the latest offline message owns the deadline.
        self._offline_timer.start(self._offline_debounce, lambda: self._set_online(False, "availability-offline"))

    def handle_heartbeat(self, message: DeviceHeartbeat) -> None:
        now = self._scheduler.now()
        belief = self._belief
        belief.last_signal_at = now
        belief.ever_signaled = True
        self._offline_timer.cancel()

        if message.interval is not None:
            self._gaps.reset()
            low, high = HEARTBEAT_INTERVAL_RANGE
            if low <= message.interval <= high:
                if abs(message.interval - belief.expected_interval) > HEARTBEAT_NOISE_ABS:
                    self._adopt_interval(message.interval, "declared")
            else:
                _logger.debug("Ignoring implausible heartbeat interval %.3fs", message.interval)
        else:
            estimate = self._gaps.observe(now)
            if estimate is not None:
                diff = abs(estimate - belief.expected_interval)
                if diff > HEARTBEAT_NOISE_ABS and diff / max(belief.expected_interval, 1e-3) > HEARTBEAT_NOISE_REL:
                    self._adopt_interval(estimate, "estimated")

        self._mark_seen("heartbeat")

    def handle_bus_disconnected(self) -> None:
        """Without a bus nothing can be observed: fall back to offline."""
        self._offline_timer.cancel()
        self._gaps.reset()
        self._set_online(False, "bus-disconnected")

    def _adopt_interval(self, interval: float, how: str) -> None:
        _logger.debug(
            "Heartbeat interval %s: %.3fs -> %.3fs",
            how,
            self._belief.expected_interval,
            interval,
        )
        self._belief.expected_interval = interval
        self._monitor.rearm(monitor_tick_period(interval), self._check_stale)

    def _check_stale(self) -> None:
        belief = self._belief
        if not belief.online or not belief.ever_signaled:
            return
        age = belief.age(self._scheduler.now())
        if age is not None and age > belief.stale_after:
            self._set_online(False, "heartbeat-timeout")

    def _mark_seen(self, reason: str) -> None:
        self._set_online(True, f"seen:{reason}")

    def _set_online(self, online: bool, reason: str) -> None:
        if self._belief.online == online:
            return
        self._belief.online = online
        _logger.info("Device %s (%s)", "online" if online else "offline", reason)
        if self._on_change is not None:
            self._on_change(online, reason)
