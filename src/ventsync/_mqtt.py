"""Internal MQTT runtime: paho network thread feeding the asyncio loop."""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, cast
from urllib.parse import urlsplit

import paho.mqtt.client as mqtt

from ventsync.config import BusConfig
from ventsync.exceptions import VentSyncConfigError
from ventsync.models.messages import BusMessage

_DEFAULT_PORTS = {"ws": 80, "wss": 443, "mqtt": 1883, "tcp": 1883, "mqtts": 8883, "ssl": 8883}


class Publisher(Protocol):
    """Best-effort publish used by every component that talks to the bus."""

    def publish(self, topic: str, payload: Any, *, retain: bool = False) -> bool: ...


@dataclass(frozen=True)
class BrokerEndpoint:
    host: str
    port: int
    transport: str
    path: str
    tls: bool


def parse_broker_url(url: str) -> BrokerEndpoint:
    """Split a broker URL into paho connection parameters.

    ``ws``/``wss`` select the websockets transport, ``mqtt``/``mqtts``
    plain TCP. ``wss`` and ``mqtts`` enable TLS.
    """
    parts = urlsplit(url.strip())
    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS:
        raise VentSyncConfigError(f"Unsupported broker URL scheme {scheme!r} in {url!r}")
    if not parts.hostname:
        raise VentSyncConfigError(f"Broker URL {url!r} has no host")
    return BrokerEndpoint(
        host=parts.hostname,
        port=parts.port or _DEFAULT_PORTS[scheme],
        transport="websockets" if scheme in ("ws", "wss") else "tcp",
        path=parts.path or "/mqtt",
        tls=scheme in ("wss", "mqtts", "ssl"),
    )


def encode_payload(payload: Any) -> bytes:
    if payload is None:
        return b""
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


class BusRuntime:
    """Threaded paho-mqtt runtime that hands messages to an asyncio loop.

    The paho thread never touches component state: every callback is
    forwarded with ``loop.call_soon_threadsafe``.
    """

    def __init__(
        self,
        config: BusConfig,
        *,
        loop: asyncio.AbstractEventLoop,
        on_message: Callable[[BusMessage], None],
        subscriptions: Sequence[str],
        on_connect: Callable[[], None] | None = None,
        on_disconnect: Callable[[], None] | None = None,
        will: tuple[str, str] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._endpoint = parse_broker_url(config.url)
        self._loop = loop
        self._on_message = on_message
        self._on_connect = on_connect
        self._on_disconnect = on_disconnect
        self._subscriptions = tuple(subscriptions)
        self._will = will
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._running = False
        self._connected = False
        self.client_id = f"{config.client_id_prefix}_{secrets.token_hex(4)}"

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_connected(self) -> bool:
        return self._connected

    def start(self) -> None:
        """Start the network loop; connection and reconnects are asynchronous."""
        self.stop()
        endpoint = self._endpoint
        self._logger.debug(
            "MQTT runtime start host=%s port=%s transport=%s client_id=%s",
            endpoint.host,
            endpoint.port,
            endpoint.transport,
            self.client_id,
        )

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            protocol=mqtt.MQTTv5,
            transport=endpoint.transport,
        )
        client.enable_logger(self._logger)
        if endpoint.transport == "websockets":
            client.ws_set_options(path=endpoint.path)
        if endpoint.tls:
            client.tls_set()
        if self._config.username is not None:
            client.username_pw_set(self._config.username, self._config.password)
        if self._will is not None:
            will_topic, will_payload = self._will
            client.will_set(will_topic, will_payload, qos=0, retain=True)
        client.reconnect_delay_set(min_delay=2, max_delay=30)

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                return
            self._logger.info("MQTT connected to %s", endpoint.host)
            for topic in self._subscriptions:
                c.subscribe(topic, qos=0)
            self._connected = True
            if self._on_connect is not None:
                self._loop.call_soon_threadsafe(self._on_connect)

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            message = BusMessage(topic=msg.topic, payload=bytes(msg.payload), retain=bool(msg.retain))
            self._loop.call_soon_threadsafe(self._on_message, message)

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            was_connected = self._connected
            self._connected = False
            if self._running:
                self._logger.info("MQTT disconnected: %s", reason_code)
            if was_connected and self._on_disconnect is not None:
                self._loop.call_soon_threadsafe(self._on_disconnect)

        client.on_connect = on_connect
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        client.connect_async(endpoint.host, endpoint.port, keepalive=self._config.keepalive)
        client.loop_start()

        self._client = client
        self._running = True
        self._logger.debug("MQTT network loop started")

    def publish(self, topic: str, payload: Any, *, retain: bool = False) -> bool:
        """Fire-and-forget publish. Returns whether paho accepted the message."""
        client = self._client
        if client is None:
            return False
        try:
            info = client.publish(topic, encode_payload(payload), qos=0, retain=retain)
        except Exception:
            self._logger.debug("MQTT publish to %s failed", topic, exc_info=True)
            return False
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self._logger.debug("MQTT publish to %s rejected rc=%s", topic, info.rc)
            return False
        return True

    def stop(self, *, farewell: tuple[str, str] | None = None, timeout: float = 2.0) -> None:
        """Disconnect, optionally publishing a retained farewell first."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False
        self._connected = False

        if client is None:
            return
        try:
            if was_running:
                if farewell is not None:
                    topic, payload = farewell
                    try:
                        client.publish(topic, payload, qos=0, retain=True).wait_for_publish(timeout=timeout)
                    except (RuntimeError, ValueError):
                        self._logger.debug("Farewell publish to %s not delivered", topic, exc_info=True)
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")
