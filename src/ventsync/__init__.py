"""ventsync - liveness detection and settings reconciliation for a window/vent controller."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("ventsync")
except PackageNotFoundError:
    __version__ = "0+local"
from ventsync.bridge import Bridge, run_bridge
from ventsync.bridge_probe import BridgeLivenessProber, BridgeState
from ventsync.config import BridgeConfig, BusConfig, PresenceConfig, StoreConfig, TopicMap, ViewerConfig
from ventsync.echo_guard import EchoGuard, InboundVerdict
from ventsync.exceptions import (
    MalformedMessageError,
    StoreError,
    StoreUnavailableError,
    VentSyncConfigError,
    VentSyncError,
)
from ventsync.models import (
    BusMessage,
    CanonicalSettings,
    GraphRange,
    SettingsField,
    TopicKind,
    WindowCommand,
    parse_message,
)
from ventsync.presence import LivenessBelief, PresenceDetector
from ventsync.store import PostgrestStore
from ventsync.synchronizer import PendingWrite, SettingsSynchronizer
from ventsync.transient import AngleAction, AnglePublisher, classify_inbound_angle
from ventsync.viewer import ViewerSession, run_viewer

__all__ = [
    "__version__",
    "AngleAction",
    "AnglePublisher",
    "Bridge",
    "BridgeConfig",
    "BridgeLivenessProber",
    "BridgeState",
    "BusConfig",
    "BusMessage",
    "CanonicalSettings",
    "EchoGuard",
    "GraphRange",
    "InboundVerdict",
    "LivenessBelief",
    "MalformedMessageError",
    "PendingWrite",
    "PostgrestStore",
    "PresenceConfig",
    "PresenceDetector",
    "SettingsField",
    "SettingsSynchronizer",
    "StoreConfig",
    "StoreError",
    "StoreUnavailableError",
    "TopicKind",
    "TopicMap",
    "VentSyncConfigError",
    "VentSyncError",
    "ViewerConfig",
    "ViewerSession",
    "WindowCommand",
    "classify_inbound_angle",
    "parse_message",
    "run_bridge",
    "run_viewer",
]
