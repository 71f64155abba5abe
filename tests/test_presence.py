from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from ventsync.config import PresenceConfig
from ventsync.models.messages import DeviceAvailability, DeviceHeartbeat, TopicKind, parse_message
from ventsync.presence import PresenceDetector, monitor_tick_period

if TYPE_CHECKING:
    from conftest import ManualScheduler


def _detector(scheduler: ManualScheduler, **config: float) -> tuple[PresenceDetector, list[tuple[bool, str]]]:
    changes: list[tuple[bool, str]] = []
    detector = PresenceDetector(
        scheduler,
        PresenceConfig(**config),
        on_change=lambda online, reason: changes.append((online, reason)),
    )
    detector.start()
    return detector, changes


def test_heartbeat_marks_device_online(scheduler: ManualScheduler) -> None:
    detector, changes = _detector(scheduler)
    detector.handle_heartbeat(DeviceHeartbeat())

    assert detector.is_online
    assert detector.belief.ever_signaled
    assert changes == [(True, "seen:heartbeat")]


def test_heartbeat_hard_cap_flips_offline_strictly_after_cap(scheduler: ManualScheduler) -> None:
    detector, changes = _detector(scheduler, expected_interval=30.0, stale_factor=3.0, hard_cap=6.5)
    detector.handle_heartbeat(DeviceHeartbeat())
    assert detector.belief.stale_after == pytest.approx(6.5)

    # Monitor ticks every clamp(30 / 2, 1.5, 8) = 8 s.
    scheduler.advance(6.5)
    assert detector.is_online

    scheduler.advance(1.6)
    assert not detector.is_online
    assert changes[-1] == (False, "heartbeat-timeout")


def test_hard_cap_wins_over_adapted_interval(scheduler: ManualScheduler) -> None:
    detector, _ = _detector(scheduler)
    detector.handle_heartbeat(DeviceHeartbeat(interval=60.0))
    assert detector.belief.expected_interval == 60.0
    assert detector.belief.stale_after == pytest.approx(6.5)

    scheduler.advance(8.1)
    assert not detector.is_online


def test_repeated_heartbeats_keep_device_online(scheduler: ManualScheduler) -> None:
    detector, changes = _detector(scheduler)
    for _ in range(10):
        detector.handle_heartbeat(DeviceHeartbeat(interval=5.0))
        scheduler.advance(5.0)

    assert detector.is_online
    assert changes == [(True, "seen:heartbeat")]


def test_offline_availability_is_debounced(scheduler: ManualScheduler) -> None:
    detector, _ = _detector(scheduler)
    detector.handle_availability(DeviceAvailability(online=True))
    detector.handle_availability(DeviceAvailability(online=False))

    scheduler.advance(0.5)
    assert detector.is_online
    scheduler.advance(0.2)
    assert not detector.is_online


def test_new_offline_message_restarts_debounce(scheduler: ManualScheduler) -> None:
    detector, _ = _detector(scheduler)
    detector.handle_availability(DeviceAvailability(online=True))
    detector.handle_availability(DeviceAvailability(online=False))
    scheduler.advance(0.4)
    detector.handle_availability(DeviceAvailability(online=False))

    scheduler.advance(0.4)
    assert detector.is_online
    scheduler.advance(0.3)
    assert not detector.is_online


def test_online_signal_cancels_pending_offline(scheduler: ManualScheduler) -> None:
    detector, changes = _detector(scheduler)
    detector.handle_availability(DeviceAvailability(online=True))
    detector.handle_availability(DeviceAvailability(online=False))
    scheduler.advance(0.3)
    detector.handle_availability(DeviceAvailability(online=True))

    scheduler.advance(2.0)
    assert detector.is_online
    assert changes == [(True, "seen:availability")]


def test_monitor_idle_without_heartbeats(scheduler: ManualScheduler) -> None:
    detector, _ = _detector(scheduler)
    detector.handle_availability(DeviceAvailability(online=True))

    scheduler.advance(120.0)
    assert detector.is_online


def test_declared_interval_is_adopted_and_monitor_rearmed(scheduler: ManualScheduler) -> None:
    detector, _ = _detector(scheduler)
    detector.handle_heartbeat(DeviceHeartbeat(interval=2.0))

    assert detector.belief.expected_interval == 2.0
    assert detector.belief.stale_after == pytest.approx(3.0)
    assert detector._monitor.interval == pytest.approx(1.5)  # type: ignore[attr-defined]

    scheduler.advance(3.1)
    assert detector.is_online
    scheduler.advance(1.5)
    assert not detector.is_online


def test_small_declared_interval_change_is_noise(scheduler: ManualScheduler) -> None:
    detector, _ = _detector(scheduler, expected_interval=5.0)
    detector.handle_heartbeat(DeviceHeartbeat(interval=5.1))
    assert detector.belief.expected_interval == 5.0


def test_implausible_interval_still_counts_as_signal(scheduler: ManualScheduler) -> None:
    detector, _ = _detector(scheduler)
    detector.handle_heartbeat(DeviceHeartbeat(interval=0.1))

    assert detector.is_online
    assert detector.belief.expected_interval == 30.0


def test_interval_estimated_from_gaps_after_two_samples(scheduler: ManualScheduler) -> None:
    detector, _ = _detector(scheduler)
    detector.handle_heartbeat(DeviceHeartbeat())
    scheduler.advance(2.0)
    detector.handle_heartbeat(DeviceHeartbeat())
    assert detector.belief.expected_interval == 30.0

    scheduler.advance(2.0)
    detector.handle_heartbeat(DeviceHeartbeat())
    assert detector.belief.expected_interval == pytest.approx(2.0)


def test_malformed_heartbeat_counts_as_liveness(scheduler: ManualScheduler) -> None:
    detector, _ = _detector(scheduler)
    heartbeat = parse_message(TopicKind.DEVICE_HEARTBEAT, b"\x7bnot json")
    assert isinstance(heartbeat, DeviceHeartbeat)
    detector.handle_heartbeat(heartbeat)
    assert detector.is_online


def test_bus_disconnect_forces_offline_and_cancels_debounce(scheduler: ManualScheduler) -> None:
    detector, changes = _detector(scheduler)
    detector.handle_availability(DeviceAvailability(online=True))
    detector.handle_availability(DeviceAvailability(online=False))
    detector.handle_bus_disconnected()

    assert not detector.is_online
    scheduler.advance(1.0)
    assert changes == [(True, "seen:availability"), (False, "bus-disconnected")]


def test_monitor_tick_period_is_clamped() -> None:
    assert monitor_tick_period(30.0) == 8.0
    assert monitor_tick_period(1.0) == 1.5
    assert monitor_tick_period(6.0) == 3.0
