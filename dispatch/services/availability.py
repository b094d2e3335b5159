"""
Courier Availability

Decides which couriers may receive new work under a branch's availability
rule, and in which order the pool is handed out.
"""

import logging

from dispatch.core.config import CourierSelection
from dispatch.models import AvailabilityRule
from dispatch.repositories.base import CourierRecord, DispatchStore

logger = logging.getLogger(__name__)


def is_available(courier: CourierRecord, rule: AvailabilityRule) -> bool:
    """
    AFTER_ALL_DELIVERED: no order of the courier is still DELIVERING.
    AFTER_TRIP_COMPLETED: no PENDING or IN_PROGRESS assignment.
    """
    if not (courier.active and courier.online):
        return False
    if rule == AvailabilityRule.AFTER_ALL_DELIVERED:
        return courier.delivering_orders == 0
    return courier.open_assignments == 0


def order_pool(couriers: list[CourierRecord], selection: CourierSelection) -> list[CourierRecord]:
    if selection == CourierSelection.LEAST_LOADED:
        return sorted(couriers, key=lambda c: (c.open_assignments, c.delivering_orders))
    return list(couriers)


async def available_couriers(
    store: DispatchStore,
    branch_id: int,
    rule: AvailabilityRule,
    selection: CourierSelection = CourierSelection.IN_ORDER,
) -> list[CourierRecord]:
    """
    Active, online couriers of the branch that satisfy ``rule``.

    Returns:
        list[CourierRecord]: Possibly empty, ordered by ``selection``
    """
    couriers = await store.couriers.find_active_online(branch_id)
    available = [courier for courier in couriers if is_available(courier, rule)]

    logger.debug(
        f"Branch #{branch_id}: {len(available)}/{len(couriers)} online couriers available "
        f"under {rule.value}"
    )
    return order_pool(available, selection)
