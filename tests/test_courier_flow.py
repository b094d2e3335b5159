import asyncio
from dataclasses import replace

import pytest

from dispatch.core.errors import BadRequestError, ForbiddenError, NotFoundError
from dispatch.models import AssignmentStatus, AvailabilityRule, OrderStatus
from dispatch.services.policy import default_policy


def run(coro):
    return asyncio.run(coro)


def _trip(store, branch, service, make_order, stops=2):
    courier = store.add_courier(branch.id, "Ana")
    orders = [make_order(north_m=100 * (i + 1)) for i in range(stops)]
    view = run(service.create(branch.id, [o.id for o in orders], courier_id=courier.id))
    run(service.update_status(branch.id, view.id, "IN_PROGRESS"))
    return courier, orders, view


def test_delivering_every_order_completes_the_trip(store, branch, service, make_order):
    courier, orders, view = _trip(store, branch, service, make_order)

    first = run(service.update_order_status(branch.id, courier.id, orders[0].id, "DELIVERED"))
    assert first.order.status == OrderStatus.DELIVERED
    assert first.assignment_completed is False
    assert store._state.assignments[view.id].status == AssignmentStatus.IN_PROGRESS

    last = run(service.update_order_status(branch.id, courier.id, orders[1].id, "DELIVERED"))

    record = store._state.assignments[view.id]
    assert last.assignment_completed is True
    assert record.status == AssignmentStatus.COMPLETED
    assert record.completed_at is not None
    assert record.started_at is not None


def test_pending_trip_gets_a_start_time_when_completed_by_courier(store, branch, service, make_order):
    courier = store.add_courier(branch.id, "Ana")
    order = make_order()
    view = run(service.create(branch.id, [order.id], courier_id=courier.id))

    result = run(service.update_order_status(branch.id, courier.id, order.id, "DELIVERED"))

    record = store._state.assignments[view.id]
    assert result.assignment_completed is True
    assert record.started_at == record.completed_at


def test_delivering_keeps_the_trip_open(store, branch, service, make_order):
    courier, orders, view = _trip(store, branch, service, make_order, stops=1)

    result = run(service.update_order_status(branch.id, courier.id, orders[0].id, OrderStatus.DELIVERING))

    assert result.order.status == OrderStatus.DELIVERING
    assert result.assignment_completed is False
    assert store._state.assignments[view.id].completed_at is None


def test_order_status_never_moves_back(store, branch, service, make_order):
    courier, orders, _ = _trip(store, branch, service, make_order)
    run(service.update_order_status(branch.id, courier.id, orders[0].id, "DELIVERED"))

    with pytest.raises(ForbiddenError, match="cannot move back"):
        run(service.update_order_status(branch.id, courier.id, orders[0].id, "DELIVERING"))

    assert store.get_order(orders[0].id).status == OrderStatus.DELIVERED


@pytest.mark.parametrize("status", ["READY", "CANCELLED", "PENDING"])
def test_couriers_only_set_delivery_statuses(store, branch, service, make_order, status):
    courier, orders, _ = _trip(store, branch, service, make_order, stops=1)

    with pytest.raises(ForbiddenError):
        run(service.update_order_status(branch.id, courier.id, orders[0].id, status))

    assert store.get_order(orders[0].id).status == OrderStatus.DELIVERING


def test_unknown_order_status_is_rejected(store, branch, service, make_order):
    courier, orders, _ = _trip(store, branch, service, make_order, stops=1)

    with pytest.raises(BadRequestError):
        run(service.update_order_status(branch.id, courier.id, orders[0].id, "LOST"))


def test_order_of_another_courier_is_forbidden(store, branch, service, make_order):
    _, orders, _ = _trip(store, branch, service, make_order, stops=1)
    intruder = store.add_courier(branch.id, "Bruno")

    with pytest.raises(ForbiddenError):
        run(service.update_order_status(branch.id, intruder.id, orders[0].id, "DELIVERED"))

    assert store.get_order(orders[0].id).status == OrderStatus.DELIVERING


def test_unknown_or_foreign_order_is_not_found(store, branch, service, make_order):
    courier, orders, _ = _trip(store, branch, service, make_order, stops=1)
    other = store.add_branch("Other")

    with pytest.raises(NotFoundError):
        run(service.update_order_status(branch.id, courier.id, 999, "DELIVERED"))
    with pytest.raises(NotFoundError):
        run(service.update_order_status(other.id, courier.id, orders[0].id, "DELIVERED"))


@pytest.mark.parametrize("rule", list(AvailabilityRule))
def test_courier_is_released_after_the_last_delivery(store, branch, service, make_order, settings, rule):
    store._state.policies[branch.id] = replace(default_policy(branch.id, settings), availability_rule=rule)
    courier, orders, _ = _trip(store, branch, service, make_order)

    assert run(service.available_couriers(branch.id)) == []

    for order in orders:
        run(service.update_order_status(branch.id, courier.id, order.id, "DELIVERED"))

    assert [c.id for c in run(service.available_couriers(branch.id))] == [courier.id]
