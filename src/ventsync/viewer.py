"""Viewer session: the per-process context of one dashboard.

A :class:`ViewerSession` owns the presence detector, the echo guard, the
bridge prober, and the angle publisher, and applies inbound settings to
its local copy. All state lives on the instance; a process runs exactly
one session from :func:`run_viewer`.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import secrets
from collections.abc import Callable
from typing import Any

from ventsync._constants import DASHBOARD_SOURCE, FINAL_ANGLE_GUARD_WINDOW, SENSOR_FLAGS
from ventsync._mqtt import BusRuntime, Publisher
from ventsync._pump import MessagePump
from ventsync._timers import LoopScheduler, Scheduler
from ventsync.bridge_probe import BridgeLivenessProber, BridgeState
from ventsync.config import ViewerConfig
from ventsync.echo_guard import EchoGuard, InboundVerdict
from ventsync.exceptions import MalformedMessageError, StoreError
from ventsync.models.messages import (
    AutoCommand,
    BridgePong,
    BridgeStatus,
    BusMessage,
    DeviceAvailability,
    DeviceHeartbeat,
    GraphRangeCommand,
    MaxAngleBroadcast,
    SensorFlagsUpdate,
    TelemetryReading,
    ThresholdCommand,
    VentCommand,
    WindowCommand,
    classify_topic,
    parse_message,
)
from ventsync.models.settings import CanonicalSettings, GraphRange, SettingsField, clamp_threshold
from ventsync.presence import PresenceDetector
from ventsync.store import PostgrestStore, SettingsStore
from ventsync.transient import AngleAction, AnglePublisher, classify_inbound_angle

_logger = logging.getLogger(__name__)

# Called with (field, value, animate) whenever the local view changes.
FieldListener = Callable[[str, Any, bool], None]


def _new_source() -> str:
    return f"{DASHBOARD_SOURCE}-{secrets.token_hex(3)}"


class ViewerSession:
    """Liveness and settings view of one dashboard process."""

    def __init__(
        self,
        config: ViewerConfig,
        *,
        scheduler: Scheduler,
        publisher: Publisher,
        store: SettingsStore | None = None,
        source: str | None = None,
        on_field: FieldListener | None = None,
        on_device_change: Callable[[bool, str], None] | None = None,
        on_bridge_change: Callable[[BridgeState], None] | None = None,
    ) -> None:
        self._config = config
        self._topics = config.bus.topics
        self._scheduler = scheduler
        self._publisher = publisher
        self._store = store
        self.source = source or _new_source()
        self._on_field = on_field

        self.presence = PresenceDetector(scheduler, config.presence, on_change=on_device_change)
        self.guard = EchoGuard(scheduler)
        self.prober = BridgeLivenessProber(
            scheduler,
            self._send_ping,
            request_settings=self._request_settings,
            on_change=on_bridge_change,
        )
        self.angle = AnglePublisher(scheduler, self._publish_angle, source=self.source)

        self.settings = CanonicalSettings()
        self.latest_reading: TelemetryReading | None = None
        self.connected = False
        self._bootstrap_pending: CanonicalSettings | None = None
        self._queued_sensor_flags: dict[str, bool] = {}

    def subscriptions(self) -> list[str]:
        t = self._topics
        return [
            t.data,
            t.window,
            t.threshold,
            t.vent,
            t.auto,
            t.sensors,
            t.graph_range,
            t.max_angle,
            t.settings,
            t.settings_snapshot,
            t.bridge_status,
            t.bridge_pong,
            *t.device_availability_topics(),
            t.device_heartbeat,
        ]

    @property
    def max_angle(self) -> int | None:
        return self.settings.max_angle

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def bootstrap(self) -> None:
        """Cold start: load the latest settings row and apply it locally.

        The row is republished to the device after the first bus connect.
        """
        if self._store is None:
            return
        try:
            row = await self._store.fetch_latest_settings()
        except StoreError as exc:
            _logger.warning("Settings bootstrap failed: %s", exc)
            self.prober.note_store_failure(exc)
            return
        self.prober.note_store_success()
        if row is None:
            return
        if row.max_angle is not None:
            self._set_field("max_angle", row.max_angle)
        for key, value in row.fields().items():
            self._set_field(key, value)
        self._bootstrap_pending = row

    def start(self) -> None:
        self.presence.start()

    def stop(self) -> None:
        self.presence.stop()
        self.prober.on_disconnected()
        self.angle.cancel()

    def on_connected(self) -> None:
        self.connected = True
        self.prober.on_connected()
        self._republish_bootstrap()
        self._flush_sensor_queue()

    def on_disconnected(self) -> None:
        self.connected = False
        self.presence.handle_bus_disconnected()
        self.prober.on_disconnected()

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def handle(self, message: BusMessage) -> None:
        kind = classify_topic(self._topics, message.topic)
        if kind is None:
            _logger.debug("Ignoring message on unknown topic %s", message.topic)
            return
        try:
            parsed = parse_message(kind, message.payload, topic=message.topic)
        except MalformedMessageError as exc:
            _logger.debug("Discarding malformed message on %s: %s", exc.topic, exc)
            return

        if isinstance(parsed, DeviceHeartbeat):
            self.presence.handle_heartbeat(parsed)
        elif isinstance(parsed, DeviceAvailability):
            self.presence.handle_availability(parsed)
        elif isinstance(parsed, BridgeStatus):
            self.prober.handle_status(parsed)
        elif isinstance(parsed, BridgePong):
            self.prober.handle_pong(parsed)
        elif isinstance(parsed, WindowCommand):
            self._handle_angle(parsed)
        elif isinstance(parsed, ThresholdCommand):
            self._inbound(SettingsField.THRESHOLD, parsed.threshold)
        elif isinstance(parsed, VentCommand):
            self._inbound(SettingsField.VENT, parsed.vent)
        elif isinstance(parsed, AutoCommand):
            self._inbound(SettingsField.AUTO, parsed.auto)
        elif isinstance(parsed, SensorFlagsUpdate):
            for flag, value in parsed.flags.items():
                self._inbound(flag, value)
        elif isinstance(parsed, GraphRangeCommand):
            self._inbound(SettingsField.GRAPH_RANGE, parsed.range)
        elif isinstance(parsed, MaxAngleBroadcast):
            self._set_field("max_angle", parsed.max_angle)
        elif isinstance(parsed, CanonicalSettings):
            self._apply_snapshot(parsed)
        elif isinstance(parsed, TelemetryReading):
            self.latest_reading = parsed

    def _inbound(self, key: str, value: Any) -> InboundVerdict:
        verdict = self.guard.filter_inbound(key, value)
        if verdict == InboundVerdict.APPLY:
            self._set_field(key, value)
        return verdict

    def _handle_angle(self, command: WindowCommand) -> None:
        if command.clamped and command.from_bridge:
            # Authoritative correction: replaces whatever this viewer intended.
            self.guard.begin_intent(SettingsField.ANGLE, command.angle)
            self._set_field(SettingsField.ANGLE, command.angle)
            return
        verdict = self.guard.filter_inbound(SettingsField.ANGLE, command.angle)
        if verdict != InboundVerdict.APPLY:
            return
        action = classify_inbound_angle(
            command,
            dragging=self.angle.dragging,
            local_value=self.angle.displayed,
            local_source=self.source,
        )
        if action == AngleAction.IGNORE:
            return
        self._set_field(SettingsField.ANGLE, command.angle, animate=action == AngleAction.ANIMATE)

    def _apply_snapshot(self, snapshot: CanonicalSettings) -> None:
        if snapshot.max_angle is not None:
            self._set_field("max_angle", snapshot.max_angle)
        for key, value in snapshot.fields().items():
            if key == SettingsField.ANGLE and self.angle.dragging:
                continue
            self._inbound(key, value)

    def _set_field(self, key: str, value: Any, *, animate: bool = False) -> None:
        current = self.settings.to_row().get(str(key))
        if current == value:
            return
        self.settings = self.settings.merged({str(key): value})
        if self._on_field is not None:
            self._on_field(str(key), value, animate)

    # ------------------------------------------------------------------
    # Local intents
    # ------------------------------------------------------------------

    def set_threshold(self, value: float, *, final: bool = False) -> None:
        value = clamp_threshold(value)
        self._intend(SettingsField.THRESHOLD, value)
        payload: dict[str, Any] = {"threshold": value, "source": self.source}
        if final:
            payload["final"] = True
        self._publisher.publish(self._topics.threshold, payload)

    def set_vent(self, value: bool) -> None:
        self._intend(SettingsField.VENT, value)
        self._publisher.publish(self._topics.vent, {"vent": value, "source": self.source})

    def set_auto(self, value: bool) -> None:
        self._intend(SettingsField.AUTO, value)
        self._publisher.publish(self._topics.auto, {"auto": value, "source": self.source})

    def set_graph_range(self, value: GraphRange | str) -> None:
        value = GraphRange(value)
        self._intend(SettingsField.GRAPH_RANGE, value)
        self._publisher.publish(self._topics.graph_range, {"range": value.value, "source": self.source})

    def set_sensor_flag(self, flag: str, value: bool) -> None:
        """Toggle one sensor; queued while the bus is down, flushed on reconnect."""
        if flag not in SENSOR_FLAGS:
            raise ValueError(f"unknown sensor flag {flag!r}")
        self._intend(flag, value)
        if not self.connected or not self._publish_sensor_flag(flag, value):
            _logger.debug("Queueing sensor flag %s=%s until reconnect", flag, value)
            self._queued_sensor_flags[flag] = value

    def drag_angle(self, angle: float) -> None:
        angle = self._clamp_angle(angle)
        self.guard.begin_intent(SettingsField.ANGLE, round(angle))
        self._set_field(SettingsField.ANGLE, float(round(angle)))
        self.angle.move(angle)

    def release_angle(self, angle: float | None = None) -> None:
        if angle is not None:
            angle = self._clamp_angle(angle)
        command = self.angle.release(angle)
        if command is None:
            return
        self.guard.begin_intent(SettingsField.ANGLE, command.angle, guard_window=FINAL_ANGLE_GUARD_WINDOW)
        self._set_field(SettingsField.ANGLE, command.angle)

    def dismiss_bridge_warning(self) -> None:
        self.prober.dismiss()

    def _intend(self, key: str, value: Any) -> None:
        self.guard.begin_intent(key, value)
        self._set_field(key, value)

    def _clamp_angle(self, angle: float) -> float:
        limit = self.max_angle
        angle = max(0.0, angle)
        return min(angle, float(limit)) if limit is not None else angle

    # ------------------------------------------------------------------
    # Outbound helpers
    # ------------------------------------------------------------------

    def _publish_angle(self, command: WindowCommand) -> None:
        payload = command.to_payload()
        self._publisher.publish(self._topics.window, payload)
        if not command.final and self._config.publish_window_stream:
            self._publisher.publish(self._topics.window_stream, payload)

    def _publish_sensor_flag(self, flag: str, value: bool) -> bool:
        return self._publisher.publish(self._topics.sensors, {flag: value, "source": self.source}, retain=True)

    def _flush_sensor_queue(self) -> None:
        queued, self._queued_sensor_flags = self._queued_sensor_flags, {}
        for flag, value in queued.items():
            if not self._publish_sensor_flag(flag, value):
                self._queued_sensor_flags[flag] = value

    def _republish_bootstrap(self) -> None:
        row = self._bootstrap_pending
        if row is None:
            return
        self._bootstrap_pending = None
        t = self._topics
        if row.threshold is not None:
            self._publisher.publish(t.threshold, {"threshold": clamp_threshold(row.threshold), "source": self.source})
        if row.angle is not None:
            angle = round(self._clamp_angle(row.angle))
            self._publisher.publish(t.window, {"angle": angle, "final": False, "source": self.source})
        if row.vent is not None:
            self._publisher.publish(t.vent, {"vent": row.vent, "source": self.source})
        if row.auto is not None:
            self._publisher.publish(t.auto, {"auto": row.auto, "source": self.source})

    def _send_ping(self, ping_id: str) -> None:
        self._publisher.publish(self._topics.bridge_ping, {"id": ping_id})

    def _request_settings(self) -> None:
        self._publisher.publish(self._topics.settings_get, {"requestor": self.source})


async def run_viewer(config: ViewerConfig, *, stop: asyncio.Event | None = None, **session_kwargs: Any) -> None:
    """Run a headless viewer until *stop* is set."""
    loop = asyncio.get_running_loop()
    pump: MessagePump | None = None

    def _dispatch(func: Callable[[], None]) -> None:
        assert pump is not None
        pump.submit_call(func)

    scheduler = LoopScheduler(loop, dispatch=_dispatch)
    stop = stop or asyncio.Event()

    runtime: BusRuntime | None = None
    store = PostgrestStore(config.store) if config.store is not None else None

    class _LazyPublisher:
        def publish(self, topic: str, payload: Any, *, retain: bool = False) -> bool:
            return runtime.publish(topic, payload, retain=retain) if runtime is not None else False

    session = ViewerSession(config, scheduler=scheduler, publisher=_LazyPublisher(), store=store, **session_kwargs)
    pump = MessagePump(session.handle, name="viewer-pump")
    runtime = BusRuntime(
        config.bus,
        loop=loop,
        on_message=pump.put_message,
        subscriptions=session.subscriptions(),
        on_connect=lambda: pump.submit_call(session.on_connected),
        on_disconnect=lambda: pump.submit_call(session.on_disconnected),
    )

    async with contextlib.AsyncExitStack() as stack:
        if store is not None:
            await stack.enter_async_context(store)
        try:
            await session.bootstrap()
            session.start()
            pump.start()
            runtime.start()
            await stop.wait()
        finally:
            runtime.stop()
            session.stop()
            await pump.stop()
