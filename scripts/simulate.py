"""
Concurrency Simulation Script

Fires several auto-create calls for the same branch at once, then checks that
no order ended up on two routes.
Run from project root (after scripts/seed_demo.py):
    python scripts/simulate.py --branch 1 --calls 10
"""

import asyncio
import sys
import time
import argparse
from collections import Counter
from datetime import datetime
from typing import Any

import httpx

# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

API_BASE_URL = "http://localhost:8001"


async def fire_auto_create(client: httpx.AsyncClient, call_num: int, headers: dict) -> dict[str, Any]:
    """Send one auto-create request."""
    start_time = time.time()

    try:
        response = await client.post(
            f"{API_BASE_URL}/api/delivery-assignments/auto-create",
            json={},
            headers=headers,
            timeout=30.0,
        )
        elapsed = round(time.time() - start_time, 3)
        data = response.json()

        if response.status_code == 200:
            return {
                "call_num": call_num,
                "success": True,
                "routes": data["stats"]["routes_created"],
                "assigned": data["stats"]["assigned_orders"],
                "time": elapsed,
            }
        return {
            "call_num": call_num,
            "success": False,
            "error": data.get("detail", response.text[:100]),
            "time": elapsed,
        }
    except Exception as e:
        elapsed = round(time.time() - start_time, 3)
        return {
            "call_num": call_num,
            "success": False,
            "error": str(e)[:100],
            "time": elapsed,
        }


async def run_simulation(branch_id: int, num_calls: int) -> bool:
    headers = {"X-Branch-Id": str(branch_id), "X-User-Id": "simulator"}

    print("=" * 70)
    print("🔥 AUTO-CREATE CONCURRENCY SIMULATION")
    print("=" * 70)
    print(f"📋 Concurrent calls: {num_calls}")
    print(f"🎯 Target: {API_BASE_URL} (branch #{branch_id})")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()

    async with httpx.AsyncClient() as client:
        response = await client.get(f"{API_BASE_URL}/health")
        print(f"\n🩺 Health: {response.json().get('status')}")

        tasks = [fire_auto_create(client, i + 1, headers) for i in range(num_calls)]
        results = await asyncio.gather(*tasks)

        response = await client.get(f"{API_BASE_URL}/api/delivery-assignments", headers=headers)
        assignments = response.json()["assignments"]

    total_time = round(time.time() - start_time, 2)

    successful = [r for r in results if r["success"]]
    failed = [r for r in results if not r["success"]]

    print("\n" + "=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)
    print(f"\n✅ Calls that created routes: {len(successful)}/{num_calls}")
    print(f"ℹ️  Calls rejected: {len(failed)}/{num_calls}")
    print(f"⏱️  Total Time: {total_time}s")

    for r in failed[:5]:
        print(f"   Call #{r['call_num']}: {r.get('error')}")

    # Each stop of an open route must still point at an order linked to that route
    open_routes = [a for a in assignments if a["status"] != "CANCELLED"]
    planned = Counter(
        point["order_id"] for a in open_routes for point in a["route"] if point["order_id"] is not None
    )
    stolen = {
        a["id"]: sorted(missing)
        for a in open_routes
        if (missing := {p["order_id"] for p in a["route"] if p["order_id"] is not None} - set(a["order_ids"]))
    }
    duplicates = [order_id for order_id, count in planned.items() if count > 1]

    print(f"\n🚚 Routes in branch: {len(assignments)}")
    print(f"📦 Orders on routes: {sum(len(a['order_ids']) for a in open_routes)}")

    if stolen:
        print(f"\n❌ Routes whose stops lost their orders: {stolen}")
        return False

    if duplicates:
        print(f"\n❌ Orders planned on more than one route: {duplicates}")
        return False

    print("\n✅ No order was assigned twice")
    print("=" * 70)
    return True


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Auto-create concurrency simulation")
    parser.add_argument("--branch", type=int, default=1, help="Branch id")
    parser.add_argument("--calls", type=int, default=10, help="Concurrent auto-create calls")
    args = parser.parse_args()

    ok = asyncio.run(run_simulation(args.branch, args.calls))
    sys.exit(0 if ok else 1)
