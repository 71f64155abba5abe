"""Per-topic bus message variants and their fail-closed parser.

Each topic has exactly one message type. :func:`parse_message` turns raw
bytes into that type or raises :class:`MalformedMessageError`; callers
log and discard, never probe optional fields on a loose dict.
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    ValidationError,
    field_validator,
    model_validator,
)

from ventsync._constants import BRIDGE_SOURCE, SENSOR_FLAGS
from ventsync.config import TopicMap
from ventsync.exceptions import MalformedMessageError
from ventsync.models.settings import CanonicalSettings, GraphRange, clamp_threshold


class TopicKind(enum.StrEnum):
    DATA = "data"
    WINDOW = "window"
    WINDOW_STREAM = "window_stream"
    THRESHOLD = "threshold"
    VENT = "vent"
    AUTO = "auto"
    SENSORS = "sensors"
    GRAPH_RANGE = "graph_range"
    MAX_ANGLE = "max_angle"
    SETTINGS = "settings"
    SETTINGS_SNAPSHOT = "settings_snapshot"
    SETTINGS_GET = "settings_get"
    BRIDGE_STATUS = "bridge_status"
    BRIDGE_PING = "bridge_ping"
    BRIDGE_PONG = "bridge_pong"
    DEVICE_AVAILABILITY = "device_availability"
    DEVICE_HEARTBEAT = "device_heartbeat"


def classify_topic(topics: TopicMap, topic: str) -> TopicKind | None:
    """Map a concrete topic name to its :class:`TopicKind`."""
    if topic in topics.device_availability_topics():
        return TopicKind.DEVICE_AVAILABILITY
    if topic == topics.device_heartbeat:
        return TopicKind.DEVICE_HEARTBEAT
    table = {
        topics.data: TopicKind.DATA,
        topics.window: TopicKind.WINDOW,
        topics.window_stream: TopicKind.WINDOW_STREAM,
        topics.threshold: TopicKind.THRESHOLD,
        topics.vent: TopicKind.VENT,
        topics.auto: TopicKind.AUTO,
        topics.sensors: TopicKind.SENSORS,
        topics.graph_range: TopicKind.GRAPH_RANGE,
        topics.max_angle: TopicKind.MAX_ANGLE,
        topics.settings: TopicKind.SETTINGS,
        topics.settings_snapshot: TopicKind.SETTINGS_SNAPSHOT,
        topics.settings_get: TopicKind.SETTINGS_GET,
        topics.bridge_status: TopicKind.BRIDGE_STATUS,
        topics.bridge_ping: TopicKind.BRIDGE_PING,
        topics.bridge_pong: TopicKind.BRIDGE_PONG,
    }
    return table.get(topic)


@dataclass(frozen=True)
class BusMessage:
    """A raw message as received from the bus."""

    topic: str
    payload: bytes
    retain: bool = False


class _Message(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        allow_inf_nan=False,
    )


class TelemetryReading(_Message):
    """``…/data`` from the device."""

    temperature: float | None = Field(default=None, validation_alias=AliasChoices("temperature", "temparature"))
    humidity: float | None = None
    motion: bool | None = None
    condition: bool | None = None

    @property
    def has_climate(self) -> bool:
        return self.temperature is not None or self.humidity is not None


class WindowCommand(_Message):
    """``…/window`` and ``…/window/stream`` angle updates."""

    angle: float = Field(..., ge=0, validation_alias=AliasChoices("angle", "windowAngle"))
    final: StrictBool = False
    source: str | None = None
    clamped: StrictBool = False

    @property
    def from_bridge(self) -> bool:
        return self.source == BRIDGE_SOURCE

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"angle": self.angle, "final": self.final}
        if self.source is not None:
            payload["source"] = self.source
        if self.clamped:
            payload["clamped"] = True
        return payload


class ThresholdCommand(_Message):
    threshold: float
    final: StrictBool = False
    source: str | None = None

    @field_validator("threshold")
    @classmethod
    def _clamp(cls, value: float) -> float:
        return clamp_threshold(value)


class VentCommand(_Message):
    vent: StrictBool
    source: str | None = None


class AutoCommand(_Message):
    auto: StrictBool
    source: str | None = None


class SensorFlagsUpdate(_Message):
    """``…/sensors``: one or more ``*_enabled`` flags."""

    flags: dict[str, bool]
    source: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _collect_flags(cls, values: Any) -> Any:
        if not isinstance(values, dict) or "flags" in values:
            return values
        flags = {key: values[key] for key in SENSOR_FLAGS if isinstance(values.get(key), bool)}
        if not flags:
            raise ValueError("no sensor flags in payload")
        return {"flags": flags, "source": values.get("source")}


class GraphRangeCommand(_Message):
    range: GraphRange
    source: str | None = None


class MaxAngleBroadcast(_Message):
    max_angle: int = Field(..., ge=1)
    source: str | None = None

    @field_validator("max_angle", mode="before")
    @classmethod
    def _round(cls, value: Any) -> Any:
        if isinstance(value, float):
            return round(value)
        return value


class SettingsRequest(_Message):
    requestor: str | None = None


class BridgePing(_Message):
    id: str = Field(..., min_length=1)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class BridgePong(_Message):
    id: str | None = None
    pong: StrictBool | None = None

    @model_validator(mode="after")
    def _require_marker(self) -> BridgePong:
        if not self.id and not self.pong:
            raise ValueError("pong carries neither id nor pong marker")
        return self


_ONLINE_TOKENS = frozenset({"online", "1", "true"})
_OFFLINE_TOKENS = frozenset({"offline", "0", "false"})


class BridgeStatus(_Message):
    """Retained ``…/bridge_status``: bare token or small JSON envelope."""

    online: bool

    @classmethod
    def from_payload(cls, text: str) -> BridgeStatus:
        status = text.strip().lower()
        try:
            obj = json.loads(text)
        except ValueError:
            obj = None
        if isinstance(obj, dict):
            if isinstance(obj.get("online"), bool):
                return cls(online=obj["online"])
            if isinstance(obj.get("status"), str):
                status = obj["status"].strip().lower()
        if status in _ONLINE_TOKENS:
            return cls(online=True)
        if status in _OFFLINE_TOKENS:
            return cls(online=False)
        raise ValueError(f"unknown bridge status {text[:32]!r}")


class DeviceAvailability(_Message):
    """Device ``online``/``offline`` token, usually a retained last will."""

    online: bool

    @classmethod
    def from_payload(cls, text: str) -> DeviceAvailability:
        token = text.strip().lower()
        if token in ("online", "1"):
            return cls(online=True)
        if token in ("offline", "0"):
            return cls(online=False)
        raise ValueError(f"unknown availability token {text[:32]!r}")


class DeviceHeartbeat(_Message):
    """Device heartbeat. Any payload counts; ``interval`` is in seconds."""

    interval: float | None = None

    @classmethod
    def from_payload(cls, text: str) -> DeviceHeartbeat:
        try:
            obj = json.loads(text)
        except ValueError:
            return cls()
        if not isinstance(obj, dict):
            return cls()
        raw = next((obj[key] for key in ("interval_ms", "interval", "ms") if obj.get(key)), None)
        if isinstance(raw, bool) or raw is None:
            return cls()
        try:
            interval_ms = float(raw)
        except (TypeError, ValueError):
            return cls()
        if interval_ms != interval_ms or interval_ms in (float("inf"), float("-inf")):
            return cls()
        return cls(interval=round(interval_ms) / 1000.0)


Message = (
    TelemetryReading
    | WindowCommand
    | ThresholdCommand
    | VentCommand
    | AutoCommand
    | SensorFlagsUpdate
    | GraphRangeCommand
    | MaxAngleBroadcast
    | CanonicalSettings
    | SettingsRequest
    | BridgePing
    | BridgePong
    | BridgeStatus
    | DeviceAvailability
    | DeviceHeartbeat
)

_JSON_MODELS: dict[TopicKind, type[BaseModel]] = {
    TopicKind.DATA: TelemetryReading,
    TopicKind.WINDOW: WindowCommand,
    TopicKind.WINDOW_STREAM: WindowCommand,
    TopicKind.THRESHOLD: ThresholdCommand,
    TopicKind.VENT: VentCommand,
    TopicKind.AUTO: AutoCommand,
    TopicKind.SENSORS: SensorFlagsUpdate,
    TopicKind.GRAPH_RANGE: GraphRangeCommand,
    TopicKind.MAX_ANGLE: MaxAngleBroadcast,
    TopicKind.SETTINGS: CanonicalSettings,
    TopicKind.SETTINGS_SNAPSHOT: CanonicalSettings,
    TopicKind.SETTINGS_GET: SettingsRequest,
    TopicKind.BRIDGE_PING: BridgePing,
    TopicKind.BRIDGE_PONG: BridgePong,
}


def parse_message(kind: TopicKind, payload: bytes, *, topic: str = "") -> Message:
    """Parse *payload* as the message type of *kind*.

    Raises :class:`MalformedMessageError` for undecodable bytes, non-object
    JSON on JSON topics, and validation failures.
    """
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedMessageError("payload is not UTF-8", topic=topic) from exc

    try:
        if kind == TopicKind.DEVICE_HEARTBEAT:
            return DeviceHeartbeat.from_payload(text)
        if kind == TopicKind.DEVICE_AVAILABILITY:
            return DeviceAvailability.from_payload(text)
        if kind == TopicKind.BRIDGE_STATUS:
            return BridgeStatus.from_payload(text)
    except ValueError as exc:
        raise MalformedMessageError(str(exc), topic=topic) from exc

    model = _JSON_MODELS[kind]
    if kind == TopicKind.SETTINGS_GET and not text.strip():
        return SettingsRequest()
    try:
        obj = json.loads(text)
    except ValueError as exc:
        raise MalformedMessageError(f"invalid JSON: {text[:64]!r}", topic=topic) from exc
    if not isinstance(obj, dict):
        raise MalformedMessageError("payload is not a JSON object", topic=topic)
    try:
        return model.model_validate(obj)  # type: ignore[return-value]
    except ValidationError as exc:
        raise MalformedMessageError(f"invalid {model.__name__}: {exc.error_count()} error(s)", topic=topic) from exc
