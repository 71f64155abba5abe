"""Internal constants shared across the library.

All durations are in seconds.
"""

DEFAULT_TOPIC_PREFIX = "home/dashboard"
DEVICE_AVAILABILITY_TOPIC = "home/window/status"
LEGACY_DEVICE_AVAILABILITY_TOPIC = "home/esp32/availability"
DEVICE_HEARTBEAT_TOPIC = "home/window/heartbeat"

BRIDGE_SOURCE = "bridge"
DASHBOARD_SOURCE = "dashboard"

# ------------------------------------------------------------------
# Device presence
# ------------------------------------------------------------------

HEARTBEAT_EXPECTED_INTERVAL = 30.0
HEARTBEAT_STALE_FACTOR = 1.5
HEARTBEAT_STALE_FACTOR_RANGE = (1.05, 3.0)
PRESENCE_OFFLINE_HARD_CAP = 6.5
OFFLINE_DEBOUNCE = 0.6

# Self-declared heartbeat intervals outside this range are not adopted.
HEARTBEAT_INTERVAL_RANGE = (0.5, 600.0)
# Observed gaps outside this range do not feed the estimate.
HEARTBEAT_GAP_RANGE = (0.4, 600.0)
HEARTBEAT_EWMA_WEIGHT = 0.4
HEARTBEAT_MIN_SAMPLES = 2
HEARTBEAT_MAX_SAMPLES = 50
HEARTBEAT_NOISE_ABS = 0.2
HEARTBEAT_NOISE_REL = 0.12
MONITOR_TICK_RANGE = (1.5, 8.0)

# ------------------------------------------------------------------
# Echo suppression
# ------------------------------------------------------------------

SUPPRESS_WINDOW = 0.8
GUARD_WINDOW = 0.6
FINAL_ANGLE_GUARD_WINDOW = 0.7
ANGLE_MATCH_TOLERANCE = 1.0

# ------------------------------------------------------------------
# Bridge liveness probe
# ------------------------------------------------------------------

BRIDGE_PING_FAST_INTERVAL = 0.1
BRIDGE_PING_FAST_BURST = 10
BRIDGE_PING_SLOW_INTERVAL = 1.5
BRIDGE_STARTUP_GRACE = 0.75
SETTINGS_REQUEST_COOLDOWN = 3.0

# ------------------------------------------------------------------
# Settings synchronizer / transient protocol
# ------------------------------------------------------------------

THRESHOLD_DEBOUNCE = 1.0
THRESHOLD_RANGE = (0.0, 100.0)
ANGLE_PUBLISH_THROTTLE = 0.06
ANGLE_TRAILING_DELAY = ANGLE_PUBLISH_THROTTLE + 0.02

SENSOR_FLAGS: tuple[str, ...] = ("dht11_enabled", "water_enabled", "hw416b_enabled")
GRAPH_RANGES: tuple[str, ...] = ("live", "15m", "30m", "1h", "6h", "1d")

CLEANUP_CHECK_INTERVAL = 30.0
