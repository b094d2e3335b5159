import asyncio

import pytest
from pydantic import ValidationError

from dispatch.core.config import CourierSelection, Settings
from dispatch.core.errors import NotFoundError
from dispatch.models import AssignmentStatus, AvailabilityRule, OrderStatus
from dispatch.repositories.base import AssignmentDraft, CourierRecord, PolicyRecord
from dispatch.services.availability import available_couriers, is_available, order_pool
from dispatch.services.policy import resolve_policy


def _courier(cid: int, open_assignments: int = 0, delivering: int = 0, online: bool = True) -> CourierRecord:
    return CourierRecord(
        id=cid,
        branch_id=1,
        name=f"Courier {cid}",
        phone=None,
        active=True,
        online=online,
        open_assignments=open_assignments,
        delivering_orders=delivering,
    )


# =============================================================================
# POLICY
# =============================================================================

def test_policy_is_created_with_defaults(store, branch, settings):
    policy = asyncio.run(resolve_policy(store, branch.id, settings))

    assert policy.branch_id == branch.id
    assert policy.auto_dispatch is False
    assert policy.max_per_trip == 5
    assert policy.max_cluster_distance_meters == 3000
    assert policy.max_cluster_time_minutes == 30
    assert policy.availability_rule == AvailabilityRule.AFTER_ALL_DELIVERED


def test_policy_creation_is_idempotent_under_concurrency(store, branch, settings):
    async def scenario():
        return await asyncio.gather(*(resolve_policy(store, branch.id, settings) for _ in range(5)))

    policies = asyncio.run(scenario())

    assert all(p == policies[0] for p in policies)
    assert len(store._state.policies) == 1


def test_existing_policy_is_returned_unchanged(store, branch, settings):
    custom = PolicyRecord(
        branch_id=branch.id,
        auto_dispatch=True,
        max_per_trip=2,
        max_cluster_distance_meters=500,
        max_cluster_time_minutes=15,
        availability_rule=AvailabilityRule.AFTER_TRIP_COMPLETED,
    )
    store._state.policies[branch.id] = custom

    assert asyncio.run(resolve_policy(store, branch.id, settings)) == custom


def test_policy_for_unknown_branch_is_not_found(store, settings):
    with pytest.raises(NotFoundError):
        asyncio.run(resolve_policy(store, 404, settings))


def test_default_rule_setting_is_parsed_as_enum(monkeypatch):
    monkeypatch.setenv("DEFAULT_AVAILABILITY_RULE", "AFTER_TRIP_COMPLETED")

    assert Settings().default_availability_rule is AvailabilityRule.AFTER_TRIP_COMPLETED


def test_unknown_default_rule_is_rejected(monkeypatch):
    monkeypatch.setenv("DEFAULT_AVAILABILITY_RULE", "WHEN_IDLE")

    with pytest.raises(ValidationError):
        Settings()


# =============================================================================
# AVAILABILITY
# =============================================================================

@pytest.mark.parametrize(
    "rule, open_assignments, delivering, expected",
    [
        (AvailabilityRule.AFTER_ALL_DELIVERED, 1, 0, True),
        (AvailabilityRule.AFTER_ALL_DELIVERED, 0, 2, False),
        (AvailabilityRule.AFTER_TRIP_COMPLETED, 1, 0, False),
        (AvailabilityRule.AFTER_TRIP_COMPLETED, 0, 2, True),
        (AvailabilityRule.AFTER_TRIP_COMPLETED, 0, 0, True),
    ],
)
def test_availability_rules(rule, open_assignments, delivering, expected):
    assert is_available(_courier(1, open_assignments, delivering), rule) is expected


def test_offline_courier_is_never_available():
    assert not is_available(_courier(1, online=False), AvailabilityRule.AFTER_TRIP_COMPLETED)


def test_least_loaded_selection_is_stable():
    pool = [_courier(1, 2, 0), _courier(2, 0, 1), _courier(3, 0, 0), _courier(4, 0, 1)]

    assert [c.id for c in order_pool(pool, CourierSelection.IN_ORDER)] == [1, 2, 3, 4]
    assert [c.id for c in order_pool(pool, CourierSelection.LEAST_LOADED)] == [3, 2, 4, 1]


def test_available_couriers_reads_workload_from_store(store, branch, make_order):
    idle = store.add_courier(branch.id, "Idle")
    on_trip = store.add_courier(branch.id, "On trip")
    store.add_courier(branch.id, "Offline", online=False)
    store.add_courier(branch.id, "Inactive", active=False)
    other_branch = store.add_branch("Other")
    store.add_courier(other_branch.id, "Elsewhere")

    async def scenario():
        async with store.transaction():
            record = await store.assignments.create(
                AssignmentDraft(
                    branch_id=branch.id,
                    name="Busy",
                    courier_id=on_trip.id,
                    status=AssignmentStatus.IN_PROGRESS,
                    route=[],
                    estimated_distance=0,
                    estimated_time=0,
                )
            )
            order = make_order(north_m=100)
            await store.orders.link_to_assignment([order.id], record.id, on_trip.id, OrderStatus.DELIVERING)

        return (
            await available_couriers(store, branch.id, AvailabilityRule.AFTER_ALL_DELIVERED),
            await available_couriers(store, branch.id, AvailabilityRule.AFTER_TRIP_COMPLETED),
        )

    after_delivered, after_trip = asyncio.run(scenario())

    assert [c.id for c in after_delivered] == [idle.id]
    assert [c.id for c in after_trip] == [idle.id]


def test_no_courier_is_an_empty_list(store, branch):
    assert asyncio.run(available_couriers(store, branch.id, AvailabilityRule.AFTER_ALL_DELIVERED)) == []
