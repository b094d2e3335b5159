import math

import pytest

from dispatch.models import OrderStatus
from dispatch.repositories.base import DeliverableOrder
from dispatch.services.clustering import cluster_orders
from dispatch.services.geo import haversine_meters, path_length_meters
from dispatch.services.geo.haversine import EARTH_RADIUS_METERS

SEED = (-8.0476, -34.8770)
METERS_PER_DEGREE_LAT = 111_195.0


def _order(oid: int, north_m: float = 0.0, lat=None, lng=None) -> DeliverableOrder:
    if lat is None:
        lat = SEED[0] + north_m / METERS_PER_DEGREE_LAT
        lng = SEED[1]
    return DeliverableOrder(
        id=oid,
        branch_id=1,
        order_number=oid,
        customer_name=f"Customer {oid}",
        address="Rua da Aurora",
        city="Recife",
        state="PE",
        total=50.0,
        lat=lat,
        lng=lng,
        status=OrderStatus.READY,
    )


def test_haversine_is_symmetric_and_zero_on_same_point():
    a = (-8.0476, -34.8770)
    b = (-8.1200, -34.9050)

    assert haversine_meters(*a, *a) == 0
    assert haversine_meters(*a, *b) == pytest.approx(haversine_meters(*b, *a))


def test_haversine_one_degree_of_latitude():
    assert haversine_meters(0.0, 0.0, 1.0, 0.0) == pytest.approx(111_195, rel=1e-4)


@pytest.mark.parametrize(
    "a, b",
    [((0.0, 0.0), (0.0, 180.0)), ((0.0, 0.0), (1e-9, 180.0)), ((45.0, -45.0), (-45.0, 135.0))],
)
def test_haversine_handles_antipodal_points(a, b):
    # Rounding can push the intermediate term just above 1
    assert haversine_meters(*a, *b) == pytest.approx(math.pi * EARTH_RADIUS_METERS, rel=1e-6)


def test_path_length_is_sum_of_segments_and_grows_with_points():
    points = [(-8.0476, -34.8770), (-8.0500, -34.8800), (-8.0600, -34.8700), (-8.0600, -34.8700)]

    partial = [path_length_meters(points[:n]) for n in range(1, len(points) + 1)]
    segments = sum(haversine_meters(*points[i], *points[i + 1]) for i in range(len(points) - 1))

    assert partial[0] == 0
    assert partial == sorted(partial)
    assert partial[-1] == pytest.approx(segments)


def test_near_orders_join_the_seed_and_far_order_gets_its_own_group():
    seed = _order(1)
    near_a = _order(2, north_m=120)
    far = _order(3, north_m=5_000)
    near_b = _order(4, north_m=-180)

    groups = cluster_orders([seed, near_a, far, near_b], max_per_group=5, max_distance_meters=3000)

    assert [[o.id for o in g] for g in groups] == [[1, 2, 4], [3]]


def test_group_size_cap_takes_first_orders_in_list_order():
    orders = [_order(i, north_m=50 * i) for i in range(1, 5)]

    groups = cluster_orders(orders, max_per_group=2, max_distance_meters=3000)

    assert [[o.id for o in g] for g in groups] == [[1, 2], [3, 4]]


def test_clusters_partition_input_and_respect_bounds():
    offsets = [0, 900, 2_500, 4_000, 7_500, 7_700, 12_000, 3_100, 150, 8_000, 60, 11_900]
    orders = [_order(i, north_m=m) for i, m in enumerate(offsets, start=1)]

    groups = cluster_orders(orders, max_per_group=3, max_distance_meters=2_000)

    flat = [o.id for g in groups for o in g]
    assert sorted(flat) == [o.id for o in orders]
    assert len(flat) == len(set(flat))
    for group in groups:
        assert 1 <= len(group) <= 3
        seed = group[0]
        for member in group[1:]:
            assert haversine_meters(seed.lat, seed.lng, member.lat, member.lng) <= 2_000


def test_empty_input_gives_no_groups():
    assert cluster_orders([], max_per_group=5, max_distance_meters=3000) == []


def test_zero_radius_only_groups_identical_coordinates():
    orders = [_order(1), _order(2), _order(3, north_m=10)]

    groups = cluster_orders(orders, max_per_group=5, max_distance_meters=0)

    assert [[o.id for o in g] for g in groups] == [[1, 2], [3]]


@pytest.mark.parametrize("max_per_group, max_distance", [(0, 3000), (-1, 3000), (3, -1)])
def test_invalid_limits_are_rejected(max_per_group, max_distance):
    with pytest.raises(ValueError):
        cluster_orders([_order(1)], max_per_group=max_per_group, max_distance_meters=max_distance)


def test_orders_without_coordinates_are_rejected():
    with pytest.raises(ValueError):
        cluster_orders([_order(1, lat=-8.0, lng=None)], max_per_group=2, max_distance_meters=100)
