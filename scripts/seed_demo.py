"""
Demo Data Seeder

Creates a branch with couriers and ready delivery orders around Recife so the
dispatch endpoints have something to work on.
Run from project root: python scripts/seed_demo.py --orders 20 --couriers 3
"""

import argparse
import asyncio
import os
import random
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from dispatch.database import async_session_maker, engine, init_db
from dispatch.models import Branch, Courier, DeliveryType, Order, OrderStatus

BRANCH_LAT, BRANCH_LNG = -8.0476, -34.8770

FIRST_NAMES = ["Ana", "Bruno", "Carla", "Diego", "Elisa", "Felipe", "Gabi", "Hugo", "Iris", "João"]
STREETS = ["Rua da Aurora", "Av. Boa Viagem", "Rua do Bom Jesus", "Av. Conde da Boa Vista", "Rua da Moeda"]


def random_point(radius_km: float = 6.0) -> tuple[float, float]:
    """Random coordinate within roughly ``radius_km`` of the branch."""
    degrees = radius_km / 111.0
    return (
        BRANCH_LAT + random.uniform(-degrees, degrees),
        BRANCH_LNG + random.uniform(-degrees, degrees),
    )


async def seed(num_orders: int, num_couriers: int) -> int:
    await init_db()

    async with async_session_maker() as session:
        branch = Branch(
            name="Recife Antigo",
            latitude=BRANCH_LAT,
            longitude=BRANCH_LNG,
            address_street="Rua do Bom Jesus, 100",
            address_city="Recife",
        )
        session.add(branch)
        await session.flush()

        for i in range(num_couriers):
            session.add(
                Courier(
                    branch_id=branch.id,
                    name=f"Courier {FIRST_NAMES[i % len(FIRST_NAMES)]}",
                    phone=f"81 9{random.randint(1000, 9999)}-{random.randint(1000, 9999)}",
                    active=True,
                    is_online=True,
                )
            )

        for i in range(num_orders):
            lat, lng = random_point()
            session.add(
                Order(
                    branch_id=branch.id,
                    order_number=i + 1,
                    delivery_type=DeliveryType.DELIVERY,
                    status=random.choice([OrderStatus.PREPARING, OrderStatus.READY]),
                    customer_name=random.choice(FIRST_NAMES),
                    delivery_address=f"{random.choice(STREETS)}, {random.randint(1, 999)}",
                    city="Recife",
                    state="PE",
                    latitude=lat,
                    longitude=lng,
                    total_amount=round(random.uniform(25, 120), 2),
                )
            )

        await session.commit()
        branch_id = branch.id

    await engine.dispose()
    return branch_id


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed demo dispatch data")
    parser.add_argument("--orders", type=int, default=20, help="Number of ready orders")
    parser.add_argument("--couriers", type=int, default=3, help="Number of online couriers")
    args = parser.parse_args()

    branch_id = asyncio.run(seed(args.orders, args.couriers))
    print("=" * 60)
    print(f"✅ Seeded branch #{branch_id}: {args.orders} orders, {args.couriers} couriers")
    print(f"   Use header X-Branch-Id: {branch_id}")
    print("=" * 60)
