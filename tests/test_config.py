from __future__ import annotations

import pytest

from ventsync.config import BridgeConfig, BusConfig, PresenceConfig, StoreConfig, TopicMap, ViewerConfig
from ventsync.exceptions import VentSyncConfigError

_ENV_VARS = (
    "MQTT_URL",
    "MQTT_USERNAME",
    "MQTT_PASSWORD",
    "MQTT_KEEPALIVE",
    "MQTT_TOPIC_PREFIX",
    "SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE",
    "SUPABASE_ANON_KEY",
    "SUPABASE_SCHEMA",
    "SUPABASE_SETTINGS",
    "SUPABASE_READINGS",
    "SETTINGS_CHANGE_DETECTION",
    "HEARTBEAT_EXPECTED_MS",
    "HEARTBEAT_STALE_FACTOR",
    "CLEANUP_ENABLED",
    "CLEANUP_PURGE_DAYS",
    "CLEANUP_TIME",
    "FRONTEND_PUBLISH_WINDOW_STREAM",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_topic_map_names() -> None:
    topics = TopicMap()
    assert topics.window == "home/dashboard/window"
    assert topics.window_stream == "home/dashboard/window/stream"
    assert topics.graph_range == "home/dashboard/graphRange"
    assert topics.settings_get == "home/dashboard/settings/get"
    assert topics.device_availability_topics() == ("home/window/status", "home/esp32/availability")


def test_bus_config_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MQTT_URL", "mqtt://broker.local")
    monkeypatch.setenv("MQTT_USERNAME", "  ")
    monkeypatch.setenv("MQTT_PASSWORD", "secret")
    monkeypatch.setenv("MQTT_TOPIC_PREFIX", "lab")

    config = BusConfig.from_env(keepalive=15)

    assert config.url == "mqtt://broker.local"
    assert config.username is None
    assert config.password == "secret"
    assert config.keepalive == 15
    assert config.topics.vent == "lab/vent"


def test_store_config_requires_url_and_key() -> None:
    with pytest.raises(VentSyncConfigError):
        StoreConfig.from_env()


def test_store_config_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SUPABASE_URL", "https://x.supabase.co")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE", "service")
    monkeypatch.setenv("SUPABASE_SETTINGS", "vent_settings")
    monkeypatch.setenv("SETTINGS_CHANGE_DETECTION", "off")

    config = StoreConfig.from_env()

    assert config.api_key == "service"
    assert config.settings_table == "vent_settings"
    assert config.readings_table == "readings"
    assert config.change_detection is False


def test_presence_config_validates_stale_factor() -> None:
    with pytest.raises(VentSyncConfigError):
        PresenceConfig(stale_factor=4.0)
    with pytest.raises(VentSyncConfigError):
        PresenceConfig(hard_cap=0)


def test_presence_config_reads_milliseconds(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HEARTBEAT_EXPECTED_MS", "5000")
    assert PresenceConfig.from_env().expected_interval == 5.0


def test_bridge_config_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SUPABASE_URL", "https://x.supabase.co")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE", "service")
    monkeypatch.setenv("CLEANUP_ENABLED", "true")
    monkeypatch.setenv("CLEANUP_TIME", "03:30")

    config = BridgeConfig.from_env()

    assert config.bus.client_id_prefix == "bridge"
    assert config.cleanup_enabled
    assert config.cleanup_time == "03:30"
    assert config.threshold_debounce == 1.0


def test_viewer_store_is_optional(monkeypatch: pytest.MonkeyPatch) -> None:
    assert ViewerConfig.from_env().store is None

    monkeypatch.setenv("SUPABASE_URL", "https://x.supabase.co")
    monkeypatch.setenv("SUPABASE_ANON_KEY", "anon")
    monkeypatch.setenv("FRONTEND_PUBLISH_WINDOW_STREAM", "0")
    config = ViewerConfig.from_env()

    assert config.store is not None
    assert config.store.api_key == "anon"
    assert config.store.application_name == "window-dashboard"
    assert config.publish_window_stream is False
