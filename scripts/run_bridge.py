#!/usr/bin/env python3
"""Run the MQTT -> Supabase bridge.

Usage
-----
Set environment variables and run::

    export SUPABASE_URL="https://xyz.supabase.co"
    export SUPABASE_SERVICE_ROLE="..."
    export MQTT_URL="wss://broker.hivemq.com:8884/mqtt"
    python scripts/run_bridge.py

Optional: ``MQTT_USERNAME``, ``MQTT_PASSWORD``, ``MQTT_TOPIC_PREFIX``,
``SUPABASE_SCHEMA``, ``SUPABASE_SETTINGS``, ``SUPABASE_READINGS``,
``SETTINGS_CHANGE_DETECTION``, ``CLEANUP_ENABLED``, ``CLEANUP_PURGE_DAYS``,
``CLEANUP_TIME``.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

# Allow running from the repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from ventsync import BridgeConfig, VentSyncConfigError, run_bridge  # noqa: E402


async def main() -> int:
    parser = argparse.ArgumentParser(description="Persist window telemetry and reconcile settings.")
    parser.add_argument("--threshold-debounce", type=float, help="Seconds before a previewed threshold is written")
    parser.add_argument("--cleanup", action="store_true", help="Enable the daily readings purge")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    else:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    overrides: dict[str, object] = {}
    if args.threshold_debounce is not None:
        overrides["threshold_debounce"] = args.threshold_debounce
    if args.cleanup:
        overrides["cleanup_enabled"] = True
    try:
        config = BridgeConfig.from_env(**overrides)
    except VentSyncConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop.set))

    await run_bridge(config, stop=stop)
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
