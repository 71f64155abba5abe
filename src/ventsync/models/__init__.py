"""Data models for bus payloads and the settings record."""

from ventsync.models.messages import (
    AutoCommand,
    BridgePing,
    BridgePong,
    BridgeStatus,
    BusMessage,
    DeviceAvailability,
    DeviceHeartbeat,
    GraphRangeCommand,
    MaxAngleBroadcast,
    Message,
    SensorFlagsUpdate,
    SettingsRequest,
    TelemetryReading,
    ThresholdCommand,
    TopicKind,
    VentCommand,
    WindowCommand,
    classify_topic,
    parse_message,
)
from ventsync.models.settings import CanonicalSettings, GraphRange, SettingsField, clamp_threshold

__all__ = [
    "AutoCommand",
    "BridgePing",
    "BridgePong",
    "BridgeStatus",
    "BusMessage",
    "CanonicalSettings",
    "DeviceAvailability",
    "DeviceHeartbeat",
    "GraphRange",
    "GraphRangeCommand",
    "MaxAngleBroadcast",
    "Message",
    "SensorFlagsUpdate",
    "SettingsField",
    "SettingsRequest",
    "TelemetryReading",
    "ThresholdCommand",
    "TopicKind",
    "VentCommand",
    "WindowCommand",
    "clamp_threshold",
    "parse_message",
    "classify_topic",
]
