"""The bridge process: bus to durable store, and canonical settings back.

Besides the settings synchronizer the bridge ingests telemetry readings,
answers liveness pings, keeps a retained ``bridge_status`` (with an MQTT
last will for crashes), serves ``settings/get`` and optionally purges old
readings once a day.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta
from typing import Any, Protocol

from ventsync._mqtt import BusRuntime, Publisher
from ventsync._pump import Job, MessagePump
from ventsync._timers import LoopScheduler, RecurringTimer, Scheduler
from ventsync.config import BridgeConfig
from ventsync.exceptions import MalformedMessageError, StoreError, VentSyncConfigError
from ventsync.models.messages import (
    BridgePing,
    BusMessage,
    DeviceAvailability,
    DeviceHeartbeat,
    TelemetryReading,
    classify_topic,
    parse_message,
)
from ventsync.presence import PresenceDetector
from ventsync.store import PostgrestStore, ReadingsStore, SettingsStore
from ventsync.synchronizer import SettingsSynchronizer

_logger = logging.getLogger(__name__)

STATUS_ONLINE = "online"
STATUS_OFFLINE = "offline"


class BridgeStore(SettingsStore, ReadingsStore, Protocol):
    pass


def parse_cleanup_time(value: str) -> tuple[int, int]:
    """Parse a local ``HH:MM`` time of day."""
    try:
        hours_text, minutes_text = value.strip().split(":", 1)
        hours, minutes = int(hours_text), int(minutes_text)
    except ValueError as exc:
        raise VentSyncConfigError(f"CLEANUP_TIME must be HH:MM, got {value!r}") from exc
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise VentSyncConfigError(f"CLEANUP_TIME out of range: {value!r}")
    return hours, minutes


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Bridge:
    """Single bridge instance. Running two against one store is unsupported."""

    def __init__(
        self,
        config: BridgeConfig,
        *,
        scheduler: Scheduler,
        publisher: Publisher,
        store: BridgeStore,
        submit: Callable[[Job], None],
        clock: Callable[[], datetime] = _utcnow,
        local_clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._config = config
        self._topics = config.bus.topics
        self._publisher = publisher
        self._store = store
        self._submit = submit
        self._clock = clock
        self._local_clock = local_clock
        self._cleanup_at = parse_cleanup_time(config.cleanup_time)
        self._cleanup_timer = RecurringTimer(scheduler, "readings-cleanup")
        self.last_cleanup_day: date | None = None

        self.synchronizer = SettingsSynchronizer(
            scheduler,
            store,
            publisher,
            self._topics,
            submit=submit,
            threshold_debounce=config.threshold_debounce,
            change_detection=config.store.change_detection,
            clock=clock,
        )
        self.presence = PresenceDetector(scheduler, config.presence)

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
            t.settings_get,
            t.bridge_ping,
            *t.device_availability_topics(),
            t.device_heartbeat,
        ]

    def last_will(self) -> tuple[str, str]:
        return (self._topics.bridge_status, STATUS_OFFLINE)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.synchronizer.start()
        self.presence.start()
        if self._config.cleanup_enabled:
            _logger.info(
                "Daily cleanup enabled: time=%s purge_days=%s",
                self._config.cleanup_time,
                self._config.cleanup_purge_days,
            )
            self._cleanup_timer.rearm(
                self._config.cleanup_check_interval,
                lambda: self._submit(self.run_cleanup_if_due),
            )

    def stop(self) -> None:
        self._cleanup_timer.cancel()
        self.synchronizer.stop()
        self.presence.stop()

    def on_connected(self) -> None:
        self._publisher.publish(self._topics.bridge_status, STATUS_ONLINE, retain=True)
        if self.synchronizer.last_known.fields():
            self.synchronizer.publish_snapshot()

    def on_disconnected(self) -> None:
        self.presence.handle_bus_disconnected()

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

        if isinstance(parsed, TelemetryReading):
            await self._ingest_reading(parsed)
        elif isinstance(parsed, BridgePing):
            self._publisher.publish(self._topics.bridge_pong, {"id": parsed.id})
        elif isinstance(parsed, DeviceHeartbeat):
            self.presence.handle_heartbeat(parsed)
        elif isinstance(parsed, DeviceAvailability):
            self.presence.handle_availability(parsed)
        else:
            await self.synchronizer.handle(parsed)

    async def _ingest_reading(self, reading: TelemetryReading) -> None:
        if not reading.has_climate:
            return
        try:
            await self._store.insert_reading(
                self._clock(),
                temperature=reading.temperature,
                humidity=reading.humidity,
            )
        except StoreError as exc:
            _logger.error("Insert reading failed: %s", exc)

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def cleanup_due(self, now_local: datetime) -> bool:
        hours, minutes = self._cleanup_at
        if (now_local.hour, now_local.minute) < (hours, minutes):
            return False
        return self.last_cleanup_day != now_local.date()

    async def run_cleanup_if_due(self) -> bool:
        """Purge old readings once per local day after the configured time."""
        now_local = self._local_clock()
        if not self.cleanup_due(now_local):
            return False
        cutoff = self._clock() - timedelta(days=self._config.cleanup_purge_days)
        _logger.info("Purging readings older than %s", cutoff.isoformat())
        try:
            await self._store.purge_readings_before(cutoff)
        except StoreError as exc:
            _logger.warning("Readings purge failed: %s", exc)
        # One attempt per day, successful or not.
        self.last_cleanup_day = now_local.date()
        return True


async def run_bridge(config: BridgeConfig, *, stop: asyncio.Event | None = None, **bridge_kwargs: Any) -> None:
    """Run the bridge until *stop* is set."""
    loop = asyncio.get_running_loop()
    pump: MessagePump | None = None

    def _submit(job: Job) -> None:
        assert pump is not None
        pump.submit(job)

    def _dispatch(func: Callable[[], None]) -> None:
        assert pump is not None
        pump.submit_call(func)

    scheduler = LoopScheduler(loop, dispatch=_dispatch)
    stop = stop or asyncio.Event()

    runtime: BusRuntime | None = None

    class _LazyPublisher:
        def publish(self, topic: str, payload: Any, *, retain: bool = False) -> bool:
            return runtime.publish(topic, payload, retain=retain) if runtime is not None else False

    async with contextlib.AsyncExitStack() as stack:
        store = await stack.enter_async_context(PostgrestStore(config.store))
        bridge = Bridge(config, scheduler=scheduler, publisher=_LazyPublisher(), store=store, submit=_submit, **bridge_kwargs)
        pump = MessagePump(bridge.handle, name="bridge-pump")
        runtime = BusRuntime(
            config.bus,
            loop=loop,
            on_message=pump.put_message,
            subscriptions=bridge.subscriptions(),
            on_connect=lambda: pump.submit_call(bridge.on_connected),
            on_disconnect=lambda: pump.submit_call(bridge.on_disconnected),
            will=bridge.last_will(),
        )
        try:
            await bridge.start()
            pump.start()
            runtime.start()
            await stop.wait()
        finally:
            runtime.stop(farewell=(config.bus.topics.bridge_status, STATUS_OFFLINE))
            bridge.stop()
            await pump.stop()
