"""Per-viewer liveness probe for the bridge/store path.

Evidence comes from three places: the retained ``bridge_status`` topic,
active ``bridge_ping``/``bridge_pong`` round trips, and passive success or
failure of the viewer's own store requests. The prober turns that into a
tri-state :class:`BridgeState` and decides whether the warning is shown.
"""

from __future__ import annotations

import enum
import logging
import uuid
from collections.abc import Callable

from ventsync._constants import (
    BRIDGE_PING_FAST_BURST,
    BRIDGE_PING_FAST_INTERVAL,
    BRIDGE_PING_SLOW_INTERVAL,
    BRIDGE_STARTUP_GRACE,
    SETTINGS_REQUEST_COOLDOWN,
)
from ventsync._timers import RecurringTimer, Scheduler, TimerSlot
from ventsync.exceptions import StoreError
from ventsync.models.messages import BridgePong, BridgeStatus

_logger = logging.getLogger(__name__)


class BridgeState(enum.StrEnum):
    UNKNOWN = "unknown"
    ONLINE = "online"
    OFFLINE = "offline"


def _new_ping_id() -> str:
    return uuid.uuid4().hex[:12]


class BridgeLivenessProber:
    """Bridge liveness state machine with a dismissible warning.

    Parameters
    ----------
    scheduler
        Clock and timers of the owning viewer.
    send_ping
        Publishes a ping with the given id. Failures are logged and the
        ping is simply retried on the next tick.
    request_settings
        Asks the bridge for a settings snapshot. Called on transitions to
        online, at most once per cooldown.
    on_change
        Called with the new state on every transition.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        send_ping: Callable[[str], None],
        *,
        request_settings: Callable[[], None] | None = None,
        on_change: Callable[[BridgeState], None] | None = None,
        startup_grace: float = BRIDGE_STARTUP_GRACE,
        settings_cooldown: float = SETTINGS_REQUEST_COOLDOWN,
        id_factory: Callable[[], str] = _new_ping_id,
    ) -> None:
        self._scheduler = scheduler
        self._send_ping = send_ping
        self._request_settings = request_settings
        self._on_change = on_change
        self._startup_grace = startup_grace
        self._settings_cooldown = settings_cooldown
        self._id_factory = id_factory

        self._ping_timer = RecurringTimer(scheduler, "bridge-ping")
        self._grace_timer = TimerSlot(scheduler, "bridge-startup-grace")
        self._ping_attempts = 0
        self._last_settings_request_at: float | None = None

        self.state = BridgeState.UNKNOWN
        self.dismissed_by_user = False
        self.connected = False
        self.last_ping_id: str | None = None

    @property
    def warning_visible(self) -> bool:
        """The warning shows only while connected, offline, and not dismissed."""
        return self.connected and self.state == BridgeState.OFFLINE and not self.dismissed_by_user

    @property
    def probing(self) -> bool:
        return self._ping_timer.active

    # ------------------------------------------------------------------
    # Bus lifecycle
    # ------------------------------------------------------------------

    def on_connected(self) -> None:
        """Start a fresh probe cycle after a (re)connect."""
        self.connected = True
        self.dismissed_by_user = False
        self._set_state(BridgeState.UNKNOWN, "bus-connected")
        self._start_pinging(fast=True)
        self._grace_timer.start(self._startup_grace, self._on_grace_expired)

    def on_disconnected(self) -> None:
        """Bridge health cannot be assessed without a bus."""
        self.connected = False
        self._ping_timer.cancel()
        self._grace_timer.cancel()
        self._set_state(BridgeState.UNKNOWN, "bus-disconnected")

    # ------------------------------------------------------------------
    # Evidence
    # ------------------------------------------------------------------

    def handle_status(self, message: BridgeStatus) -> None:
        if message.online:
            self._mark_healthy("status")
            return
        was_online = self.state == BridgeState.ONLINE
        self._grace_timer.cancel()
        self._set_state(BridgeState.OFFLINE, "status")
        if was_online or not self.probing:
            # Keep probing slowly so recovery is noticed without a new status.
            self._start_pinging(fast=False)

    def handle_pong(self, message: BridgePong) -> None:
        self._mark_healthy(f"pong:{message.id}" if message.id else "pong")

    def note_store_success(self) -> None:
        self._mark_healthy("store")

    def note_store_failure(self, exc: StoreError) -> None:
        """Outage-class store failures count against the bridge path."""
        if not exc.is_outage:
            _logger.debug("Store error %s is not an outage; bridge state unchanged", exc)
            return
        self._grace_timer.cancel()
        self._set_state(BridgeState.OFFLINE, "store-outage")

    def dismiss(self) -> None:
        """Hide the warning until the next transition to online."""
        self.dismissed_by_user = True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _mark_healthy(self, reason: str) -> None:
        self._ping_timer.cancel()
        self._grace_timer.cancel()
        if self.state == BridgeState.ONLINE:
            return
        self.dismissed_by_user = False
        self._set_state(BridgeState.ONLINE, reason)
        self._maybe_request_settings()

    def _on_grace_expired(self) -> None:
        if self.state != BridgeState.ONLINE:
            self._set_state(BridgeState.OFFLINE, "startup-grace")

    def _maybe_request_settings(self) -> None:
        if self._request_settings is None:
            return
        now = self._scheduler.now()
        last = self._last_settings_request_at
        if last is not None and now - last < self._settings_cooldown:
            return
        self._last_settings_request_at = now
        try:
            self._request_settings()
        except Exception:
            _logger.debug("Settings request publish failed", exc_info=True)

    def _start_pinging(self, *, fast: bool) -> None:
        if fast:
            self._ping_attempts = 0
            self._ping_timer.rearm(BRIDGE_PING_FAST_INTERVAL, self._ping_tick)
            self._ping_tick()
        else:
            self._ping_attempts = BRIDGE_PING_FAST_BURST
            self._ping_timer.rearm(BRIDGE_PING_SLOW_INTERVAL, self._ping_tick)

    def _ping_tick(self) -> None:
        if self.state == BridgeState.ONLINE or not self.connected:
            self._ping_timer.cancel()
            return
        ping_id = self._id_factory()
        self.last_ping_id = ping_id
        try:
            self._send_ping(ping_id)
        except Exception:
            _logger.debug("Bridge ping publish failed; retrying on next tick", exc_info=True)
        self._ping_attempts += 1
        if self._ping_attempts == BRIDGE_PING_FAST_BURST:
            self._ping_timer.rearm(BRIDGE_PING_SLOW_INTERVAL)

    def _set_state(self, state: BridgeState, reason: str) -> None:
        if self.state == state:
            return
        _logger.info("Bridge %s -> %s (%s)", self.state, state, reason)
        self.state = state
        if self._on_change is not None:
            self._on_change(state)
