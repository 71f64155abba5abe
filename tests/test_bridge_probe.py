from __future__ import annotations

import itertools
from typing import TYPE_CHECKING

from ventsync.bridge_probe import BridgeLivenessProber, BridgeState
from ventsync.exceptions import StoreError, StoreUnavailableError
from ventsync.models.messages import BridgePong, BridgeStatus

if TYPE_CHECKING:
    from conftest import ManualScheduler


class _Probe:
    def __init__(self, scheduler: ManualScheduler, *, failing_pings: int = 0) -> None:
        self.pings: list[str] = []
        self.settings_requests = 0
        self.states: list[BridgeState] = []
        self._failing = failing_pings
        counter = itertools.count(1)
        self.prober = BridgeLivenessProber(
            scheduler,
            self._send_ping,
            request_settings=self._request,
            on_change=self.states.append,
            id_factory=lambda: f"p{next(counter)}",
        )

    def _send_ping(self, ping_id: str) -> None:
        if self._failing:
            self._failing -= 1
            raise ConnectionError("not connected")
        self.pings.append(ping_id)

    def _request(self) -> None:
        self.settings_requests += 1


def test_connect_pings_immediately_then_fast_burst_then_slow(scheduler: ManualScheduler) -> None:
    probe = _Probe(scheduler)
    probe.prober.on_connected()
    assert probe.pings == ["p1"]

    scheduler.advance(0.95)
    assert len(probe.pings) == 10

    scheduler.advance(1.0)
    assert len(probe.pings) == 10
    scheduler.advance(0.5)
    assert len(probe.pings) == 11


def test_pong_stops_probe_and_requests_settings(scheduler: ManualScheduler) -> None:
    probe = _Probe(scheduler)
    probe.prober.on_connected()
    scheduler.advance(0.25)
    probe.prober.handle_pong(BridgePong(id="p2"))

    assert probe.prober.state == BridgeState.ONLINE
    assert not probe.prober.probing
    assert probe.settings_requests == 1
    sent = len(probe.pings)
    scheduler.advance(5.0)
    assert len(probe.pings) == sent
    assert not probe.prober.warning_visible


def test_startup_grace_without_evidence_shows_warning(scheduler: ManualScheduler) -> None:
    probe = _Probe(scheduler)
    probe.prober.on_connected()
    scheduler.advance(0.7)
    assert probe.prober.state == BridgeState.UNKNOWN
    assert not probe.prober.warning_visible

    scheduler.advance(0.1)
    assert probe.prober.state == BridgeState.OFFLINE
    assert probe.prober.warning_visible


def test_healthy_evidence_within_grace_keeps_warning_hidden(scheduler: ManualScheduler) -> None:
    probe = _Probe(scheduler)
    probe.prober.on_connected()
    probe.prober.handle_status(BridgeStatus(online=True))

    scheduler.advance(2.0)
    assert probe.prober.state == BridgeState.ONLINE
    assert not probe.prober.warning_visible


def test_bridge_dismissal_reset(scheduler: ManualScheduler) -> None:
    probe = _Probe(scheduler)
    prober = probe.prober
    prober.on_connected()
    prober.handle_status(BridgeStatus(online=False))
    assert prober.warning_visible

    prober.dismiss()
    assert prober.dismissed_by_user
    assert not prober.warning_visible

    prober.handle_status(BridgeStatus(online=True))
    assert not prober.dismissed_by_user

    prober.handle_status(BridgeStatus(online=False))
    assert prober.warning_visible


def test_dismissal_survives_repeated_offline_evidence(scheduler: ManualScheduler) -> None:
    probe = _Probe(scheduler)
    prober = probe.prober
    prober.on_connected()
    scheduler.advance(1.0)
    prober.dismiss()

    prober.handle_status(BridgeStatus(online=False))
    prober.note_store_failure(StoreUnavailableError("down"))
    assert not prober.warning_visible


def test_bus_disconnect_hides_warning_and_stops_probe(scheduler: ManualScheduler) -> None:
    probe = _Probe(scheduler)
    prober = probe.prober
    prober.on_connected()
    scheduler.advance(1.0)
    assert prober.warning_visible

    prober.on_disconnected()
    assert not prober.warning_visible
    assert prober.state == BridgeState.UNKNOWN
    sent = len(probe.pings)
    scheduler.advance(10.0)
    assert len(probe.pings) == sent


def test_settings_request_has_cooldown(scheduler: ManualScheduler) -> None:
    probe = _Probe(scheduler)
    prober = probe.prober
    prober.on_connected()
    prober.handle_status(BridgeStatus(online=True))
    prober.handle_status(BridgeStatus(online=False))
    scheduler.advance(1.0)
    prober.handle_pong(BridgePong(id="x"))
    assert probe.settings_requests == 1

    prober.handle_status(BridgeStatus(online=False))
    scheduler.advance(2.5)
    prober.note_store_success()
    assert probe.settings_requests == 2


def test_offline_after_online_resumes_slow_probe(scheduler: ManualScheduler) -> None:
    probe = _Probe(scheduler)
    prober = probe.prober
    prober.on_connected()
    prober.handle_status(BridgeStatus(online=True))
    sent = len(probe.pings)

    prober.handle_status(BridgeStatus(online=False))
    assert prober.probing
    scheduler.advance(1.6)
    assert len(probe.pings) == sent + 1


def test_store_outage_counts_against_bridge(scheduler: ManualScheduler) -> None:
    probe = _Probe(scheduler)
    prober = probe.prober
    prober.on_connected()
    prober.note_store_success()
    assert prober.state == BridgeState.ONLINE

    prober.note_store_failure(StoreError("permission denied", status_code=401))
    assert prober.state == BridgeState.ONLINE

    prober.note_store_failure(StoreError("bad gateway", status_code=502))
    assert prober.state == BridgeState.OFFLINE
    assert prober.warning_visible


def test_ping_failures_are_retried_on_next_tick(scheduler: ManualScheduler) -> None:
    probe = _Probe(scheduler, failing_pings=2)
    probe.prober.on_connected()
    assert probe.pings == []

    scheduler.advance(0.25)
    assert probe.pings == ["p3"]


def test_state_changes_are_reported(scheduler: ManualScheduler) -> None:
    probe = _Probe(scheduler)
    probe.prober.on_connected()
    scheduler.advance(1.0)
    probe.prober.handle_pong(BridgePong(pong=True))

    assert probe.states == [BridgeState.OFFLINE, BridgeState.ONLINE]
