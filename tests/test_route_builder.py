import logging

import pytest

from dispatch.models import OrderStatus
from dispatch.repositories.base import BranchRecord, DeliverableOrder
from dispatch.services.geo import haversine_meters
from dispatch.services.route_builder import RouteOrigin, build_route, resolve_origin, stop_label

ORIGIN = RouteOrigin(lat=-8.0476, lng=-34.8770, address="Rua do Bom Jesus, 100")


def _order(oid: int, lat: float, lng: float) -> DeliverableOrder:
    return DeliverableOrder(
        id=oid,
        branch_id=1,
        order_number=oid,
        customer_name="Ana",
        address=f"Rua {oid}",
        city="Recife",
        state="PE",
        total=30.0,
        lat=lat,
        lng=lng,
        status=OrderStatus.READY,
    )


def test_route_starts_at_branch_and_has_one_point_per_order():
    orders = [_order(1, -8.05, -34.88), _order(2, -8.06, -34.89), _order(3, -8.04, -34.87)]

    plan = build_route(ORIGIN, orders)

    assert len(plan.points) == len(orders) + 1
    origin = plan.points[0]
    assert origin.is_origin and origin.order_id is None and origin.label == "Branch"
    assert origin.address == "Rua do Bom Jesus, 100"
    assert [p.order_id for p in plan.points[1:]] == [1, 2, 3]
    assert [p.label for p in plan.points[1:]] == ["Stop A", "Stop B", "Stop C"]
    assert plan.points[1].address == "Rua 1, Recife"


def test_distance_is_rounded_sum_of_segments():
    orders = [_order(1, -8.05, -34.88), _order(2, -8.06, -34.89)]

    plan = build_route(ORIGIN, orders)

    expected = (
        haversine_meters(ORIGIN.lat, ORIGIN.lng, -8.05, -34.88)
        + haversine_meters(-8.05, -34.88, -8.06, -34.89)
    )
    assert plan.estimated_distance_meters == round(expected)
    assert isinstance(plan.estimated_distance_meters, int)


def test_time_is_travel_at_30_kmh_plus_five_minutes_per_stop():
    three_km_north = ORIGIN.lat + 3000 / 111_195.0

    plan = build_route(ORIGIN, [_order(1, three_km_north, ORIGIN.lng)])

    assert plan.estimated_distance_meters == 3000
    assert plan.estimated_time_minutes == 11


def test_speed_and_dwell_are_configurable():
    three_km_north = ORIGIN.lat + 3000 / 111_195.0

    plan = build_route(ORIGIN, [_order(1, three_km_north, ORIGIN.lng)], average_speed_kmh=60, stop_dwell_minutes=2)

    assert plan.estimated_time_minutes == 5


def test_order_at_the_branch_only_costs_dwell_time():
    plan = build_route(ORIGIN, [_order(1, ORIGIN.lat, ORIGIN.lng)])

    assert plan.estimated_distance_meters == 0
    assert plan.estimated_time_minutes == 5


def test_order_without_coordinates_is_rejected():
    with pytest.raises(ValueError):
        build_route(ORIGIN, [_order(1, -8.05, None)])


def test_origin_prefers_branch_coordinates(settings):
    branch = BranchRecord(id=1, name="A", latitude=-8.1, longitude=-34.9, address_lat=-8.2, address_lng=-35.0)

    origin = resolve_origin(branch, settings)

    assert (origin.lat, origin.lng) == (-8.1, -34.9)
    assert not origin.is_fallback


def test_origin_uses_address_coordinates_when_branch_has_none(settings):
    branch = BranchRecord(id=1, name="A", address_street="Av. Recife", address_lat=-8.2, address_lng=-35.0)

    origin = resolve_origin(branch, settings)

    assert (origin.lat, origin.lng) == (-8.2, -35.0)
    assert origin.address == "Av. Recife"


def test_branch_without_any_coordinates_falls_back_with_warning(settings, caplog):
    branch = BranchRecord(id=9, name="Nowhere")

    with caplog.at_level(logging.WARNING, logger="dispatch.services.route_builder"):
        origin = resolve_origin(branch, settings)
        plan = build_route(origin, [_order(1, -8.05, -34.88)])

    assert (origin.lat, origin.lng) == (-8.0476, -34.8770)
    assert origin.address == "Branch"
    assert plan.used_fallback_origin
    assert len(plan.points) == 2
    assert "fallback origin" in caplog.text


def test_stop_labels_continue_after_z():
    assert stop_label(0) == "Stop A"
    assert stop_label(25) == "Stop Z"
    assert stop_label(26) == "Stop AA"
    assert stop_label(27) == "Stop AB"
