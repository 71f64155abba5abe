from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any

import pytest

from ventsync._mqtt import BusRuntime, encode_payload, parse_broker_url
from ventsync.config import BusConfig
from ventsync.exceptions import VentSyncConfigError
from ventsync.models.messages import BusMessage


class _FakePublishInfo:
    rc = 0

    def __init__(self, client: _FakeClient) -> None:
        self._client = client

    def wait_for_publish(self, timeout: float | None = None) -> None:
        self._client.waited = True


class _FakeClient:
    instances: list[_FakeClient] = []

    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.subscribed: list[str] = []
        self.published: list[tuple[str, bytes | str, bool]] = []
        self.will: tuple[str, str, bool] | None = None
        self.ws_path: str | None = None
        self.tls = False
        self.credentials: tuple[str, str | None] | None = None
        self.connected_to: tuple[str, int] | None = None
        self.waited = False
        self.disconnected = False
        self.loop_stopped = False
        self.on_connect: Any = None
        self.on_message: Any = None
        self.on_disconnect: Any = None
        _FakeClient.instances.append(self)

    def enable_logger(self, _logger: Any) -> None:
        pass

    def ws_set_options(self, *, path: str) -> None:
        self.ws_path = path

    def tls_set(self) -> None:
        self.tls = True

    def username_pw_set(self, username: str, password: str | None) -> None:
        self.credentials = (username, password)

    def will_set(self, topic: str, payload: str, *, qos: int, retain: bool) -> None:
        self.will = (topic, payload, retain)

    def reconnect_delay_set(self, *, min_delay: int, max_delay: int) -> None:
        pass

    def connect_async(self, host: str, port: int, *, keepalive: int) -> None:
        self.connected_to = (host, port)

    def loop_start(self) -> None:
        pass

    def loop_stop(self) -> None:
        self.loop_stopped = True

    def subscribe(self, topic: str, *, qos: int) -> None:
        self.subscribed.append(topic)

    def publish(self, topic: str, payload: bytes | str, *, qos: int, retain: bool) -> _FakePublishInfo:
        self.published.append((topic, payload, retain))
        return _FakePublishInfo(self)

    def disconnect(self) -> None:
        self.disconnected = True


@pytest.fixture
def fake_client(monkeypatch: pytest.MonkeyPatch) -> type[_FakeClient]:
    _FakeClient.instances = []
    monkeypatch.setattr("ventsync._mqtt.mqtt.Client", _FakeClient)
    return _FakeClient


def test_parse_broker_url_websockets_with_tls() -> None:
    endpoint = parse_broker_url("wss://broker.example.com:8884/mqtt")
    assert endpoint.host == "broker.example.com"
    assert endpoint.port == 8884
    assert endpoint.transport == "websockets"
    assert endpoint.path == "/mqtt"
    assert endpoint.tls


def test_parse_broker_url_defaults() -> None:
    ws = parse_broker_url("ws://localhost")
    assert (ws.port, ws.path, ws.tls) == (80, "/mqtt", False)

    tcp = parse_broker_url("mqtt://10.0.0.2")
    assert (tcp.port, tcp.transport) == (1883, "tcp")

    secure = parse_broker_url("mqtts://broker")
    assert (secure.port, secure.tls) == (8883, True)


@pytest.mark.parametrize("url", ["http://broker", "broker:1883", "ws://"])
def test_parse_broker_url_rejects_bad_urls(url: str) -> None:
    with pytest.raises(VentSyncConfigError):
        parse_broker_url(url)


def test_encode_payload() -> None:
    assert encode_payload(None) == b""
    assert encode_payload("online") == b"online"
    assert encode_payload(b"\x01") == b"\x01"
    assert encode_payload({"angle": 40, "final": True}) == b'{"angle":40,"final":true}'


@pytest.mark.asyncio
async def test_runtime_subscribes_and_forwards_to_loop(fake_client: type[_FakeClient]) -> None:
    received: list[BusMessage] = []
    connects: list[bool] = []
    runtime = BusRuntime(
        BusConfig(url="wss://broker.example.com:8884/mqtt", username="u", password="p"),
        loop=asyncio.get_running_loop(),
        on_message=received.append,
        subscriptions=["home/dashboard/vent"],
        on_connect=lambda: connects.append(True),
        will=("home/dashboard/bridge_status", "offline"),
    )
    runtime.start()
    client = fake_client.instances[-1]

    assert client.connected_to == ("broker.example.com", 8884)
    assert client.ws_path == "/mqtt"
    assert client.tls
    assert client.credentials == ("u", "p")
    assert client.will == ("home/dashboard/bridge_status", "offline", True)

    client.on_connect(client, None, None, SimpleNamespace(value=0), None)
    client.on_message(client, None, SimpleNamespace(topic="home/dashboard/vent", payload=b'{"vent":true}', retain=False))
    await asyncio.sleep(0)

    assert client.subscribed == ["home/dashboard/vent"]
    assert runtime.is_connected
    assert connects == [True]
    assert received == [BusMessage(topic="home/dashboard/vent", payload=b'{"vent":true}')]


@pytest.mark.asyncio
async def test_runtime_publish_and_farewell(fake_client: type[_FakeClient]) -> None:
    runtime = BusRuntime(
        BusConfig(url="mqtt://localhost"),
        loop=asyncio.get_running_loop(),
        on_message=lambda _m: None,
        subscriptions=[],
    )
    assert not runtime.publish("t", "x")

    runtime.start()
    client = fake_client.instances[-1]
    assert runtime.publish("home/dashboard/settings", {"vent": True})
    assert client.published == [("home/dashboard/settings", b'{"vent":true}', False)]

    runtime.stop(farewell=("home/dashboard/bridge_status", "offline"))
    assert client.published[-1] == ("home/dashboard/bridge_status", "offline", True)
    assert client.waited
    assert client.disconnected
    assert client.loop_stopped
    assert not runtime.is_running


@pytest.mark.asyncio
async def test_runtime_disconnect_notifies_only_after_connect(fake_client: type[_FakeClient]) -> None:
    drops: list[bool] = []
    runtime = BusRuntime(
        BusConfig(url="mqtt://localhost"),
        loop=asyncio.get_running_loop(),
        on_message=lambda _m: None,
        subscriptions=[],
        on_disconnect=lambda: drops.append(True),
    )
    runtime.start()
    client = fake_client.instances[-1]

    client.on_disconnect(client, None, None, SimpleNamespace(value=7), None)
    await asyncio.sleep(0)
    assert drops == []

    client.on_connect(client, None, None, SimpleNamespace(value=0), None)
    client.on_disconnect(client, None, None, SimpleNamespace(value=7), None)
    await asyncio.sleep(0)
    assert drops == [True]
    assert not runtime.is_connected
