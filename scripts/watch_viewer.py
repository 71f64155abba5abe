#!/usr/bin/env python3
"""Headless viewer: print device and bridge liveness plus settings changes.

Useful to check what a dashboard would show without opening one::

    python scripts/watch_viewer.py -v

With ``SUPABASE_URL`` and ``SUPABASE_ANON_KEY`` set, the viewer performs
the same cold bootstrap from the settings table as the dashboard.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Any

_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from ventsync import BridgeState, VentSyncConfigError, ViewerConfig, run_viewer  # noqa: E402


def _stamp() -> str:
    return datetime.now().strftime("%H:%M:%S.%f")[:-3]


def _on_field(field: str, value: Any, animate: bool) -> None:
    print(f"{_stamp()}  {field:<16} = {value!r}{'  (animated)' if animate else ''}")


def _on_device(online: bool, reason: str) -> None:
    print(f"{_stamp()}  device           {'ONLINE' if online else 'OFFLINE'} ({reason})")


def _on_bridge(state: BridgeState) -> None:
    print(f"{_stamp()}  bridge           {state.value.upper()}")


async def main() -> int:
    parser = argparse.ArgumentParser(description="Watch device/bridge liveness and settings like a dashboard.")
    parser.add_argument("--no-stream", action="store_true", help="Do not mirror angle previews to window/stream")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    else:
        logging.basicConfig(level=logging.WARNING)

    overrides: dict[str, Any] = {}
    if args.no_stream:
        overrides["publish_window_stream"] = False
    try:
        config = ViewerConfig.from_env(**overrides)
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

    print(f"Watching {config.bus.url} (prefix {config.bus.topics.prefix}); Ctrl+C to stop")
    await run_viewer(
        config,
        stop=stop,
        on_field=_on_field,
        on_device_change=_on_device,
        on_bridge_change=_on_bridge,
    )
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
