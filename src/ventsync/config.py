"""Process configuration for ventsync."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from ventsync._constants import (
    CLEANUP_CHECK_INTERVAL,
    DEFAULT_TOPIC_PREFIX,
    DEVICE_AVAILABILITY_TOPIC,
    DEVICE_HEARTBEAT_TOPIC,
    HEARTBEAT_EXPECTED_INTERVAL,
    HEARTBEAT_STALE_FACTOR,
    HEARTBEAT_STALE_FACTOR_RANGE,
    LEGACY_DEVICE_AVAILABILITY_TOPIC,
    PRESENCE_OFFLINE_HARD_CAP,
    THRESHOLD_DEBOUNCE,
)
from ventsync.exceptions import VentSyncConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_str(value: str | None) -> str | None:
    # Blank strings mean "unset" so a public broker works without credentials.
    if value is None or not value.strip():
        return None
    return value.strip()


@dataclasses.dataclass(frozen=True)
class TopicMap:
    """Bus topic names.

    The names are part of the wire protocol shared with the device firmware
    and the dashboard, so they must match exactly.
    """

    prefix: str = DEFAULT_TOPIC_PREFIX
    device_availability: str = DEVICE_AVAILABILITY_TOPIC
    legacy_device_availability: str = LEGACY_DEVICE_AVAILABILITY_TOPIC
    device_heartbeat: str = DEVICE_HEARTBEAT_TOPIC

    def _t(self, name: str) -> str:
        return f"{self.prefix.rstrip('/')}/{name}"

    @property
    def data(self) -> str:
        return self._t("data")

    @property
    def window(self) -> str:
        return self._t("window")

    @property
    def window_stream(self) -> str:
        return self._t("window/stream")

    @property
    def threshold(self) -> str:
        return self._t("threshold")

    @property
    def vent(self) -> str:
        return self._t("vent")

    @property
    def auto(self) -> str:
        return self._t("auto")

    @property
    def sensors(self) -> str:
        return self._t("sensors")

    @property
    def graph_range(self) -> str:
        return self._t("graphRange")

    @property
    def max_angle(self) -> str:
        return self._t("max_angle")

    @property
    def settings(self) -> str:
        return self._t("settings")

    @property
    def settings_snapshot(self) -> str:
        return self._t("settings_snapshot")

    @property
    def settings_get(self) -> str:
        return self._t("settings/get")

    @property
    def bridge_status(self) -> str:
        return self._t("bridge_status")

    @property
    def bridge_ping(self) -> str:
        return self._t("bridge_ping")

    @property
    def bridge_pong(self) -> str:
        return self._t("bridge_pong")

    def device_availability_topics(self) -> tuple[str, ...]:
        return (self.device_availability, self.legacy_device_availability)


@dataclasses.dataclass(frozen=True)
class BusConfig:
    """MQTT connection settings.

    Parameters
    ----------
    url : str
        Broker URL. ``ws://``/``wss://`` use the websockets transport,
        ``mqtt://``/``mqtts://`` plain TCP. ``wss``/``mqtts`` enable TLS.
    username, password : str or None
        Optional broker credentials.
    keepalive : int
        MQTT keepalive in seconds.
    client_id_prefix : str
        Prefix for the randomly suffixed client id.
    topics : TopicMap
        Topic names.
    """

    url: str = "wss://broker.hivemq.com:8884/mqtt"
    username: str | None = None
    password: str | None = None
    keepalive: int = 60
    client_id_prefix: str = "ventsync"
    topics: TopicMap = dataclasses.field(default_factory=TopicMap)

    @classmethod
    def from_env(cls, **overrides: Any) -> BusConfig:
        env = os.environ
        kwargs: dict[str, Any] = {}
        url = _env_str(env.get("MQTT_URL"))
        if url is not None:
            kwargs["url"] = url
        kwargs["username"] = _env_str(env.get("MQTT_USERNAME"))
        kwargs["password"] = _env_str(env.get("MQTT_PASSWORD"))
        keepalive_env = env.get("MQTT_KEEPALIVE")
        if keepalive_env is not None and "keepalive" not in overrides:
            kwargs["keepalive"] = int(keepalive_env)
        prefix = _env_str(env.get("MQTT_TOPIC_PREFIX"))
        if prefix is not None and "topics" not in overrides:
            kwargs["topics"] = TopicMap(prefix=prefix)
        kwargs.update(overrides)
        return cls(**kwargs)


@dataclasses.dataclass(frozen=True)
class StoreConfig:
    """Durable store (Supabase/PostgREST) settings.

    Parameters
    ----------
    url : str
        Project URL, e.g. ``https://xyz.supabase.co``.
    api_key : str
        Service-role key for the bridge, anon key for viewers.
    schema : str
        Postgres schema exposed through PostgREST.
    settings_table, readings_table : str
        Table names.
    change_detection : bool
        Skip settings writes whose fields all equal the last known values.
    application_name : str
        Sent as ``x-application-name`` for server-side log attribution.
    """

    url: str
    api_key: str
    schema: str = "public"
    settings_table: str = "settings"
    readings_table: str = "readings"
    change_detection: bool = True
    application_name: str = "window-telemetry-bridge"
    request_timeout: float = 10.0

    @classmethod
    def from_env(cls, *, key_var: str = "SUPABASE_SERVICE_ROLE", **overrides: Any) -> StoreConfig:
        """Create store configuration from ``SUPABASE_*`` variables.

        Raises :class:`VentSyncConfigError` when URL or key are missing.
        """
        env = os.environ
        kwargs: dict[str, Any] = {}
        url = _env_str(env.get("SUPABASE_URL"))
        key = _env_str(env.get(key_var))
        if url is not None:
            kwargs["url"] = url
        if key is not None:
            kwargs["api_key"] = key
        _ENV_CONFIG_MAP = {
            "SUPABASE_SCHEMA": "schema",
            "SUPABASE_SETTINGS": "settings_table",
            "SUPABASE_READINGS": "readings_table",
        }
        for env_key, field_name in _ENV_CONFIG_MAP.items():
            val = _env_str(env.get(env_key))
            if val is not None:
                kwargs[field_name] = val
        if "change_detection" not in overrides:
            kwargs["change_detection"] = _env_bool(env.get("SETTINGS_CHANGE_DETECTION"), True)
        kwargs.update(overrides)
        if not kwargs.get("url") or not kwargs.get("api_key"):
            raise VentSyncConfigError(f"Missing SUPABASE_URL or {key_var} in environment")
        return cls(**kwargs)


@dataclasses.dataclass(frozen=True)
class PresenceConfig:
    """Device presence tunables (seconds)."""

    expected_interval: float = HEARTBEAT_EXPECTED_INTERVAL
    stale_factor: float = HEARTBEAT_STALE_FACTOR
    hard_cap: float = PRESENCE_OFFLINE_HARD_CAP

    def __post_init__(self) -> None:
        low, high = HEARTBEAT_STALE_FACTOR_RANGE
        if not low <= self.stale_factor <= high:
            raise VentSyncConfigError(f"stale_factor must be between {low} and {high}, got {self.stale_factor}")
        if self.expected_interval <= 0 or self.hard_cap <= 0:
            raise VentSyncConfigError("expected_interval and hard_cap must be positive")

    @classmethod
    def from_env(cls, **overrides: Any) -> PresenceConfig:
        env = os.environ
        kwargs: dict[str, Any] = {}
        expected_env = env.get("HEARTBEAT_EXPECTED_MS")
        if expected_env is not None and "expected_interval" not in overrides:
            kwargs["expected_interval"] = float(expected_env) / 1000.0
        factor_env = env.get("HEARTBEAT_STALE_FACTOR")
        if factor_env is not None and "stale_factor" not in overrides:
            kwargs["stale_factor"] = float(factor_env)
        kwargs.update(overrides)
        return cls(**kwargs)


@dataclasses.dataclass(frozen=True)
class BridgeConfig:
    """Bridge process configuration.

    Parameters
    ----------
    bus : BusConfig
    store : StoreConfig
    presence : PresenceConfig
    threshold_debounce : float
        Seconds a non-final threshold change waits before it is persisted.
    cleanup_enabled : bool
        Purge old readings once per day.
    cleanup_purge_days : float
        Age in days beyond which readings are purged.
    cleanup_time : str
        Local ``HH:MM`` after which the daily purge runs.
    cleanup_check_interval : float
        Seconds between checks whether the daily purge is due.
    """

    bus: BusConfig
    store: StoreConfig
    presence: PresenceConfig = dataclasses.field(default_factory=PresenceConfig)
    threshold_debounce: float = THRESHOLD_DEBOUNCE
    cleanup_enabled: bool = False
    cleanup_purge_days: float = 1.0
    cleanup_time: str = "00:00"
    cleanup_check_interval: float = CLEANUP_CHECK_INTERVAL

    @classmethod
    def from_env(cls, **overrides: Any) -> BridgeConfig:
        env = os.environ
        kwargs: dict[str, Any] = {}
        if "bus" not in overrides:
            kwargs["bus"] = BusConfig.from_env(client_id_prefix="bridge")
        if "store" not in overrides:
            kwargs["store"] = StoreConfig.from_env()
        if "presence" not in overrides:
            kwargs["presence"] = PresenceConfig.from_env()
        if "cleanup_enabled" not in overrides:
            kwargs["cleanup_enabled"] = _env_bool(env.get("CLEANUP_ENABLED"), False)
        days_env = env.get("CLEANUP_PURGE_DAYS")
        if days_env is not None and "cleanup_purge_days" not in overrides:
            kwargs["cleanup_purge_days"] = float(days_env)
        time_env = _env_str(env.get("CLEANUP_TIME"))
        if time_env is not None and "cleanup_time" not in overrides:
            kwargs["cleanup_time"] = time_env
        kwargs.update(overrides)
        return cls(**kwargs)


@dataclasses.dataclass(frozen=True)
class ViewerConfig:
    """Viewer process configuration.

    ``store`` is optional: without it the viewer skips the cold bootstrap
    and relies on retained snapshots only.
    """

    bus: BusConfig = dataclasses.field(default_factory=BusConfig)
    store: StoreConfig | None = None
    presence: PresenceConfig = dataclasses.field(default_factory=PresenceConfig)
    publish_window_stream: bool = True

    @classmethod
    def from_env(cls, **overrides: Any) -> ViewerConfig:
        env = os.environ
        kwargs: dict[str, Any] = {}
        if "bus" not in overrides:
            kwargs["bus"] = BusConfig.from_env(client_id_prefix="viewer")
        if "store" not in overrides and _env_str(env.get("SUPABASE_URL")) and _env_str(env.get("SUPABASE_ANON_KEY")):
            kwargs["store"] = StoreConfig.from_env(key_var="SUPABASE_ANON_KEY", application_name="window-dashboard")
        if "presence" not in overrides:
            kwargs["presence"] = PresenceConfig.from_env()
        if "publish_window_stream" not in overrides:
            kwargs["publish_window_stream"] = _env_bool(env.get("FRONTEND_PUBLISH_WINDOW_STREAM"), True)
        kwargs.update(overrides)
        return cls(**kwargs)
