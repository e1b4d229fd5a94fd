#!/usr/bin/env python3
"""
relaycore Quickstart — live dashboard plus an off-loop aggregation.

Connects to the analytics hub, subscribes to alerts and performance
updates, fetches the dashboard once, then summarizes its top templates
in the worker pool.
Run with: python examples/quickstart.py

Requires: pip install -e .
Hub must be running: RELAYCORE_HUB_URL (default ws://localhost:55244/hubs/template-analytics)
"""

import asyncio
import sys

from _common import create_service

from relaycore.errors import AuthenticationError
from relaycore.realtime import ConnectionState


async def main():
    service = create_service()

    # ── Lifecycle ─────────────────────────────────────────────────
    service.connection.on_state_change(
        lambda e: print(f"   [connection] {e['status']} ({e['state']})")
    )

    # ── Push handlers ─────────────────────────────────────────────
    service.hub.on_new_alert(lambda a: print(f"   [alert] {a.severity}: {a.message}"))
    service.hub.on_performance_update(
        lambda key, data: print(f"   [performance] {key}: {data}")
    )

    print("\n1. Connecting...")
    try:
        connected = await service.start()
    except AuthenticationError as e:
        print(f"   Rejected: {e}")
        sys.exit(1)
    if not connected:
        print("   Hub unreachable, retrying in the background...")

    try:
        while not service.connection.is_connected:
            if service.connection.state is ConnectionState.FAILED:
                print(f"   Gave up: {service.connection.last_error}")
                return
            await asyncio.sleep(0.5)

        # ── Subscribe ─────────────────────────────────────────────────
        print("\n2. Subscribing to alerts and performance updates...")
        await service.hub.subscribe_to_alerts()
        await service.hub.subscribe_to_performance_updates()

        # ── Dashboard ─────────────────────────────────────────────────
        print("\n3. Fetching the real-time dashboard...")
        dashboard = await service.hub.get_real_time_dashboard()
        print(f"   Active users:     {dashboard.active_users}")
        print(f"   Queries / minute: {dashboard.queries_per_minute}")

        # ── Process off the loop ──────────────────────────────────────
        print("\n4. Summarizing top templates in the worker pool...")
        rows = [t.model_dump(by_alias=True) for t in dashboard.top_templates]
        summary = await service.engine.aggregate(
            rows,
            {"totalUsages": "sum", "successRate": "avg", "templateKey": "count"},
            group_by="intentType",
        )
        for row in summary:
            print(f"   {row}")

        # ── Listen ────────────────────────────────────────────────────
        print("\n5. Listening for 30 seconds...")
        await asyncio.sleep(30)
    finally:
        await service.close()

    print("\n✓ Done.")


if __name__ == "__main__":
    asyncio.run(main())
