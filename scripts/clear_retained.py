#!/usr/bin/env python3
"""Clear retained messages left on the broker by the bridge and dashboards.

Publishes an empty retained payload on each topic, which makes the broker
drop the stored message::

    python scripts/clear_retained.py
    python scripts/clear_retained.py --dry-run
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from ventsync import BusConfig, TopicMap  # noqa: E402
from ventsync._mqtt import BusRuntime  # noqa: E402


def retained_topics(topics: TopicMap) -> list[str]:
    return [
        topics.bridge_status,
        topics.settings_snapshot,
        topics.settings,
        topics.sensors,
        topics.graph_range,
    ]


async def main() -> int:
    parser = argparse.ArgumentParser(description="Clear retained bridge/settings messages from the broker.")
    parser.add_argument("--timeout", type=float, default=10.0, help="Seconds to wait for the broker connection")
    parser.add_argument("--dry-run", action="store_true", help="Only list the topics that would be cleared")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    config = BusConfig.from_env(client_id_prefix="clear")
    topics = retained_topics(config.topics)
    if args.dry_run:
        print("\n".join(topics))
        return 0

    loop = asyncio.get_running_loop()
    connected = asyncio.Event()
    runtime = BusRuntime(
        config,
        loop=loop,
        on_message=lambda _message: None,
        subscriptions=(),
        on_connect=connected.set,
    )
    runtime.start()
    try:
        await asyncio.wait_for(connected.wait(), timeout=args.timeout)
    except asyncio.TimeoutError:
        print(f"Could not connect to {config.url} within {args.timeout}s", file=sys.stderr)
        runtime.stop()
        return 1

    failed = 0
    for topic in topics:
        if runtime.publish(topic, b"", retain=True):
            print(f"Cleared retained message on {topic}")
        else:
            print(f"Failed to clear {topic}", file=sys.stderr)
            failed += 1

    # Give the network thread time to flush before disconnecting.
    await asyncio.sleep(1.0)
    runtime.stop()
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
