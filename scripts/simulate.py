"""
Chaos Simulation Script

Simulates many tables ordering at once against a running API: every diner
joins and adds items concurrently, editors race on the same item, and two
people hit "place order" at the same instant.
Run from project root: python scripts/simulate.py

Author: Khalil_Bannouri
Version: 4.0.0
"""

import asyncio
import sys
import random
import time
import argparse
from datetime import datetime
from typing import Any

import httpx

# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Configuration
API_BASE_URL = "http://localhost:8001"
TOTAL_TABLES = 20
RESTAURANT_ID = "resto-sim"

# Sample data for random tables
FIRST_NAMES = ["John", "Jane", "Mike", "Sarah", "Tom", "Emma", "David", "Lisa", "Chris", "Amy"]
MENU_ITEMS = [
    {"menu_item_id": "margherita", "name": "Pizza Margherita", "unit_price": "14.99"},
    {"menu_item_id": "pepperoni", "name": "Pepperoni Pizza", "unit_price": "16.99"},
    {"menu_item_id": "caesar", "name": "Caesar Salad", "unit_price": "8.99"},
    {"menu_item_id": "garlic-bread", "name": "Garlic Bread", "unit_price": "5.99"},
    {"menu_item_id": "carbonara", "name": "Pasta Carbonara", "unit_price": "13.99"},
    {"menu_item_id": "tiramisu", "name": "Tiramisu", "unit_price": "7.99"},
    {"menu_item_id": "coke", "name": "Coke", "unit_price": "2.99"},
    {"menu_item_id": "sparkling", "name": "Sparkling Water", "unit_price": "3.49"},
]
SPLITS = [
    {"method": "equal"},
    {"method": "items"},
]


def generate_random_diner() -> dict[str, str]:
    """Generate a random guest identity."""
    return {
        "name": f"{random.choice(FIRST_NAMES)} {random.randint(1, 99)}",
        "payment_method_ref": "pm_card_visa",
    }


def generate_random_items() -> list[dict]:
    """Generate random order items."""
    items = []
    for _ in range(random.randint(1, 3)):
        item = random.choice(MENU_ITEMS).copy()
        item["quantity"] = random.randint(1, 2)
        items.append(item)
    return items


# =============================================================================
# ONE TABLE
# =============================================================================

async def join_and_order(client: httpx.AsyncClient, join_code: str, session_id: str) -> str:
    """One diner: join by code, then add a few items."""
    joined = await client.post(
        f"{API_BASE_URL}/api/group-orders/join/{join_code}",
        json={"identity": generate_random_diner()},
    )
    joined.raise_for_status()
    participant_id = joined.json()["participant"]["id"]

    added = await client.post(
        f"{API_BASE_URL}/api/group-orders/{session_id}/items",
        json={"participant_id": participant_id, "items": generate_random_items()},
        headers={"X-Actor-Id": participant_id},
    )
    added.raise_for_status()
    return participant_id


async def race_on_item(client: httpx.AsyncClient, session_id: str, participant_id: str) -> int:
    """Two tabs of the same diner edit one item at once. Returns the number of conflicts."""
    added = await client.post(
        f"{API_BASE_URL}/api/group-orders/{session_id}/items",
        json={"participant_id": participant_id, "items": [MENU_ITEMS[-1]]},
        headers={"X-Actor-Id": participant_id},
    )
    added.raise_for_status()
    item_id = added.json()["items"][0]["id"]

    edits = await asyncio.gather(*[
        client.patch(
            f"{API_BASE_URL}/api/group-orders/{session_id}/items/{item_id}",
            json={"expected_version": 1, "quantity": q},
            headers={"X-Actor-Id": participant_id},
        )
        for q in (2, 3)
    ])
    return sum(1 for r in edits if r.status_code == 409)


async def run_table(client: httpx.AsyncClient, table_num: int) -> dict[str, Any]:
    """Open a group order, seat a table and place it."""
    host_id = f"host-{table_num}"
    headers = {"X-Actor-Id": host_id}
    start_time = time.time()

    try:
        created = await client.post(
            f"{API_BASE_URL}/api/group-orders",
            json={
                "restaurant_id": RESTAURANT_ID,
                "table_id": f"T{table_num}",
                "creator": {"name": f"Host {table_num}", "user_id": host_id},
                "expiration_minutes": 15,
                "payment_split": random.choice(SPLITS),
            },
            timeout=30.0,
        )
        created.raise_for_status()
        session = created.json()

        diners = await asyncio.gather(*[
            join_and_order(client, session["join_code"], session["id"])
            for _ in range(random.randint(2, 6))
        ])
        conflicts = await race_on_item(client, session["id"], diners[0])

        locked = await client.post(f"{API_BASE_URL}/api/group-orders/{session['id']}/lock", headers=headers)
        locked.raise_for_status()

        # Host and a diner press "place order" together; exactly one may win.
        placements = await asyncio.gather(
            client.post(f"{API_BASE_URL}/api/group-orders/{session['id']}/place", headers=headers, timeout=60.0),
            client.post(
                f"{API_BASE_URL}/api/group-orders/{session['id']}/place",
                headers={"X-Actor-Id": diners[-1]},
                timeout=60.0,
            ),
        )
        winners = [r for r in placements if r.status_code == 200]
        rejected = [r for r in placements if r.status_code == 409]
        elapsed = round(time.time() - start_time, 3)

        if len(winners) != 1 or len(rejected) != 1:
            return {
                "table_num": table_num,
                "success": False,
                "error": f"double placement: {[r.status_code for r in placements]}",
                "time": elapsed,
            }

        result = winners[0].json()
        return {
            "table_num": table_num,
            "success": result["success"],
            "order_reference": result.get("order_reference"),
            "diners": len(diners),
            "conflicts": conflicts,
            "total": sum(float(v) for v in result["owed"].values()),
            "error": None if result["success"] else f"{len(result['payment_failures'])} charge(s) declined",
            "time": elapsed,
        }

    except Exception as e:
        elapsed = round(time.time() - start_time, 3)
        return {
            "table_num": table_num,
            "success": False,
            "error": str(e)[:100],
            "time": elapsed,
        }


# =============================================================================
# MAIN SIMULATION RUNNER
# =============================================================================

async def run_simulation(num_tables: int = TOTAL_TABLES) -> dict[str, Any]:
    """
    Run the chaos simulation.

    Args:
        num_tables: Number of tables ordering concurrently
    """
    print("=" * 70)
    print("🔥 CHAOS SIMULATION - CONCURRENT GROUP ORDERS")
    print("=" * 70)
    print(f"📋 Tables: {num_tables}")
    print(f"🎯 Target: {API_BASE_URL}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()
    async with httpx.AsyncClient() as client:
        print("\n🚀 Seating tables...\n")
        results = await asyncio.gather(*[run_table(client, i + 1) for i in range(num_tables)])

    total_time = round(time.time() - start_time, 2)
    successful = [r for r in results if r["success"]]
    failed = [r for r in results if not r["success"]]

    print("\n" + "=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)
    print(f"\n✅ Placed Orders: {len(successful)}/{num_tables}")
    print(f"❌ Cancelled / Failed: {len(failed)}/{num_tables}")
    print(f"⏱️  Total Time: {total_time}s")

    if successful:
        avg_time = round(sum(r["time"] for r in successful) / len(successful), 3)
        conflicts = sum(r.get("conflicts", 0) for r in results)
        print(f"\n📈 Performance Metrics:")
        print(f"   Average Table: {avg_time}s")
        print(f"   Diners Served: {sum(r['diners'] for r in successful)}")
        print(f"   Edit Conflicts Detected: {conflicts}")
        print(f"   💰 Total Revenue: ${sum(r['total'] for r in successful):.2f}")

    if failed:
        print(f"\n⚠️  Failed Table Details (showing first 5):")
        for f in failed[:5]:
            print(f"   Table #{f['table_num']}: {f.get('error', 'Unknown error')}")

    print("\n" + "=" * 70)
    print("🔍 VERIFICATION STEPS")
    print("=" * 70)
    print("1. Every table shows exactly one winning placement")
    print("2. Cancelled tables: check the Celery terminal for refund tasks")
    print(f"3. GET {API_BASE_URL}/api/group-orders?restaurant_id={RESTAURANT_ID} lists no leftovers")
    print("=" * 70)

    return {
        "total": num_tables,
        "successful": len(successful),
        "failed": len(failed),
        "total_time": total_time,
        "results": results,
    }


async def check_health() -> bool:
    """Pre-flight check before the chaos run."""
    async with httpx.AsyncClient() as client:
        print("\n1️⃣ Health Check...")
        response = await client.get(f"{API_BASE_URL}/health")
        if response.status_code != 200:
            print(f"   ❌ Failed: {response.text}")
            return False
        data = response.json()
        print(f"   ✅ Status: {data.get('status')}")
        print(f"   Payment: {data.get('payment_service')}")
        print(f"   Scheduler: {data.get('scheduler')}")
        return True


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Chaos Simulation Script")
    parser.add_argument("--tables", type=int, default=TOTAL_TABLES, help="Number of tables")
    parser.add_argument("--skip-tests", action="store_true", help="Skip the health check")
    args = parser.parse_args()

    if not args.skip_tests:
        if not asyncio.run(check_health()):
            print("\n❌ Pre-flight check failed. Is the API running?")
            sys.exit(1)

    asyncio.run(run_simulation(num_tables=args.tables))
