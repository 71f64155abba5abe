"""Bridge-side settings reconciliation.

The synchronizer is the only writer of the settings row. For every
field-bearing message it builds a candidate partial update, drops fields
equal to ``last_known``, writes what remains, and rebroadcasts the full
canonical snapshot. Rules per field:

* ``angle``: clamped to the store's ``max_angle`` when one is known. Previews
  (``final=False``) are never persisted and never touch ``last_known``.
  A clamp that reduced a foreign value is corrected on the bus once.
* ``threshold``: previews update ``last_known`` at once and arm a single
  debounced write whose deadline later previews do not move. A final
  value flushes immediately. Other fields never force that flush.
* ``max_angle``: read from the store row only, never from the bus.

Store failures are logged; ``last_known`` is optimistic and not rolled
back, and the failed write is not retried on its own.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from ventsync._constants import BRIDGE_SOURCE, THRESHOLD_DEBOUNCE
from ventsync._mqtt import Publisher
from ventsync._pump import Job
from ventsync._timers import Scheduler, TimerSlot
from ventsync.config import TopicMap
from ventsync.exceptions import StoreError
from ventsync.models.messages import (
    AutoCommand,
    GraphRangeCommand,
    Message,
    SensorFlagsUpdate,
    SettingsRequest,
    ThresholdCommand,
    VentCommand,
    WindowCommand,
)
from ventsync.models.settings import CanonicalSettings, SettingsField
from ventsync.store import SettingsStore

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class PendingWrite:
    """A coalesced write waiting for its debounce deadline."""

    value: Any
    deadline: float


class SettingsSynchronizer:
    """Deduplicating, coalescing writer of the canonical settings record.

    Parameters
    ----------
    scheduler
        Clock and timers of the bridge process.
    store
        Durable settings store.
    publisher
        Bus publisher for snapshots and corrections.
    topics
        Topic names.
    submit
        Queues an async job on the bridge's message pump. Debounced flushes
        go through it so they run in order with inbound messages.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        store: SettingsStore,
        publisher: Publisher,
        topics: TopicMap,
        *,
        submit: Callable[[Job], None],
        threshold_debounce: float = THRESHOLD_DEBOUNCE,
        change_detection: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._scheduler = scheduler
        self._store = store
        self._publisher = publisher
        self._topics = topics
        self._submit = submit
        self._threshold_debounce = threshold_debounce
        self._change_detection = change_detection
        self._clock = clock
        self._threshold_timer = TimerSlot(scheduler, "threshold-debounce")
        self.pending_threshold: PendingWrite | None = None
        self.last_known = CanonicalSettings()

    @property
    def max_angle(self) -> int | None:
        """Angle limit from the store row, ``None`` until the store has one."""
        return self.last_known.max_angle

    async def start(self) -> None:
        """Load the latest row so dedup and clamping start from stored state."""
        try:
            row = await self._store.fetch_latest_settings()
        except StoreError as exc:
            _logger.warning("Could not load settings at start: %s", exc)
            return
        if row is None:
            _logger.info("Settings table is empty; starting from defaults")
            return
        self.last_known = row
        _logger.info("Loaded settings: %s", row.to_payload())

    def stop(self) -> None:
        self._threshold_timer.cancel()

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def handle(self, message: Message) -> None:
        """Reconcile one parsed settings-bearing message."""
        if isinstance(message, WindowCommand):
            await self._handle_angle(message)
        elif isinstance(message, ThresholdCommand):
            await self._handle_threshold(message)
        elif isinstance(message, VentCommand):
            await self._apply({SettingsField.VENT: message.vent})
        elif isinstance(message, AutoCommand):
            await self._apply({SettingsField.AUTO: message.auto})
        elif isinstance(message, SensorFlagsUpdate):
            await self._apply(dict(message.flags))
        elif isinstance(message, GraphRangeCommand):
            await self._apply({SettingsField.GRAPH_RANGE: message.range})
        elif isinstance(message, SettingsRequest):
            self.publish_snapshot()
        else:
            _logger.debug("Ignoring %s in synchronizer", type(message).__name__)

    async def _handle_angle(self, command: WindowCommand) -> None:
        limit = self.max_angle
        angle = command.angle if limit is None else min(command.angle, float(limit))
        if angle < command.angle and not command.from_bridge:
            corrected = WindowCommand(angle=angle, final=command.final, source=BRIDGE_SOURCE, clamped=True)
            _logger.info("Clamped angle %s -> %s (max_angle=%s)", command.angle, angle, limit)
            self._publisher.publish(self._topics.window, corrected.to_payload())
        if not command.final:
            return
        await self._apply({SettingsField.ANGLE: angle})

    async def _handle_threshold(self, command: ThresholdCommand) -> None:
        value = command.threshold
        if not command.final:
            if value == self.last_known.threshold and self.pending_threshold is None:
                return
            self.last_known = self.last_known.merged({SettingsField.THRESHOLD: value})
            if self.pending_threshold is None:
                deadline = self._scheduler.now() + self._threshold_debounce
                self.pending_threshold = PendingWrite(value=value, deadline=deadline)
                self._threshold_timer.start(self._threshold_debounce, self._on_threshold_deadline)
            else:
                self.pending_threshold.value = value
            return

        pending = self.pending_threshold
        self._threshold_timer.cancel()
        self.pending_threshold = None
        if pending is not None:
            self.last_known = self.last_known.merged({SettingsField.THRESHOLD: value})
            await self._persist({SettingsField.THRESHOLD: value})
        else:
            await self._apply({SettingsField.THRESHOLD: value})

    def _on_threshold_deadline(self) -> None:
        self._submit(self.flush_threshold)

    async def flush_threshold(self) -> None:
        """Persist the pending threshold, if any."""
        pending = self.pending_threshold
        if pending is None:
            return
        self.pending_threshold = None
        self._threshold_timer.cancel()
        await self._persist({SettingsField.THRESHOLD: pending.value})

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def changed_fields(self, candidate: dict[str, Any]) -> dict[str, Any]:
        """Fields of *candidate* that differ from ``last_known``."""
        if not self._change_detection:
            return dict(candidate)
        current = self.last_known.fields()
        return {key: value for key, value in candidate.items() if current.get(key) != value}

    async def _apply(self, candidate: dict[str, Any]) -> bool:
        changed = self.changed_fields(candidate)
        if not changed:
            _logger.debug("No settings change in %s", candidate)
            return False
        self.last_known = self.last_known.merged(changed)
        return await self._persist(changed)

    async def _persist(self, changed: dict[str, Any]) -> bool:
        stamp = self._clock()
        row = {str(key): value for key, value in changed.items()}
        row["ts"] = stamp
        _logger.debug("Writing settings %s", row)
        try:
            stored = await self._store.upsert_settings(row)
        except StoreError as exc:
            _logger.error("Settings write failed: %s", exc)
            return False

        previous_max = self.last_known.max_angle
        if stored is not None:
            # Store row first, then in-memory values on top: pending previews win.
            self.last_known = stored.merged(self.last_known.fields(), updated_at=stamp)
        else:
            self.last_known = self.last_known.merged({}, updated_at=stamp)
        if stored is not None and stored.max_angle is not None and stored.max_angle != previous_max:
            self._broadcast_max_angle(stored.max_angle)
        self.publish_snapshot()
        return True

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def publish_snapshot(self) -> None:
        """Broadcast the full record: live topic plus retained snapshot."""
        payload = self.last_known.to_payload(source=BRIDGE_SOURCE)
        self._publisher.publish(self._topics.settings, payload)
        self._publisher.publish(self._topics.settings_snapshot, payload, retain=True)

    def _broadcast_max_angle(self, max_angle: int) -> None:
        _logger.info("max_angle is now %s", max_angle)
        self._publisher.publish(self._topics.max_angle, {"max_angle": max_angle, "source": BRIDGE_SOURCE})
